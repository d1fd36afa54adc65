"""Shared pytest configuration and fixtures for the tethercam test suite."""

import io
import subprocess
import sys
from pathlib import Path

import pytest
from rich.console import Console

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import tethercam  # noqa: E402


# =============================================================================
# Fakes
# =============================================================================

class FakeRunner:
    """Stands in for tethercam.run_cmd; answers by longest matching command prefix."""

    def __init__(self):
        self.calls = []
        self._responses = []

    def respond(self, prefix, returncode=0, stdout="", stderr="", effect=None):
        prefix = tuple(prefix)
        self._responses = [r for r in self._responses if r[0] != prefix]
        self._responses.append((prefix, returncode, stdout, stderr, effect))
        self._responses.sort(key=lambda r: len(r[0]), reverse=True)

    def __call__(self, cmd, check=False):
        self.calls.append(list(cmd))
        for prefix, returncode, stdout, stderr, effect in self._responses:
            if tuple(cmd[:len(prefix)]) == prefix:
                if effect is not None:
                    effect()
                return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)
        return subprocess.CompletedProcess(cmd, 1, "", "")

    def called(self, prefix):
        return [c for c in self.calls if tuple(c[:len(prefix)]) == tuple(prefix)]


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def fake_run(monkeypatch):
    """Replace external command execution with a scripted FakeRunner."""
    runner = FakeRunner()
    monkeypatch.setattr(tethercam, "run_cmd", runner)
    return runner


@pytest.fixture
def reporter():
    """Reporter writing plain text into a buffer."""
    console = Console(file=io.StringIO(), width=200, color_system=None, highlight=False)
    return tethercam.Reporter("INFO", console=console)


@pytest.fixture
def output(reporter):
    """Return a callable giving everything the reporter printed so far."""
    return lambda: reporter.console.file.getvalue()


@pytest.fixture
def dev_root(tmp_path, monkeypatch):
    """Redirect /dev lookups into a temporary directory."""
    root = tmp_path / "dev"
    root.mkdir()
    monkeypatch.setattr(tethercam, "DEV_ROOT", root)
    return root
