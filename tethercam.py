#!/usr/bin/env python3
"""
tethercam.py — use a tethered camera as a webcam via gphoto2 + ffmpeg + v4l2loopback

Key design:
  - gphoto2 streams the camera's live view (--capture-movie) to stdout.
  - ffmpeg reads that stream on stdin and writes raw frames into /dev/video<N>.
  - /dev/video<N> is a v4l2loopback node, (re)created on demand with
    exclusive_caps=1 so browsers and meeting apps see a real capture device.
  - Both stages run in their own process group; the group is torn down on
    every exit path together with the two stderr capture files.

Usage:
  ./tethercam.py
  ./tethercam.py --device 4 --camera "Canon EOS 600D"
  ./tethercam.py --gphoto-args="--port usb:001,005" --ffmpeg-args="-vf scale=1280:-2"
  ./tethercam.py --log-level WARN
"""

from __future__ import annotations

import argparse
import os
import re
import shlex
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
import time
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, IO, List, Optional, Sequence, Tuple

from rich.console import Console
from rich.text import Text

__version__ = "1.0.0"

DEV_ROOT = Path("/dev")
DEFAULT_DEVICE = 0

GPHOTO = "gphoto2"
FFMPEG = "ffmpeg"
MODULE = "v4l2loopback"
CARD_LABEL_MAX = 31  # v4l2loopback card_label is char[32]

REQUIRED_COMMANDS = (GPHOTO, FFMPEG, "sudo", "pgrep", "modinfo", "modprobe", "lsmod")
COMPETING_PROCESSES = "gvfs-gphoto2-volume-monitor|gvfsd-gphoto2"

LOG_LEVELS = ("INFO", "WARN", "FATAL")
LEVEL_STYLES = {"INFO": "bold green", "WARN": "bold yellow", "FATAL": "bold red"}

SAMPLE_SIZE = 64
POLL_INTERVAL = 0.05
TERMINATE_GRACE = 1.0

# gphoto2 prints this when the movie capture is interrupted; it is not a diagnosis
ABORT_MARKER = "abort."

VALUE_FLAGS = {
    "-c": "--camera", "--camera": "--camera",
    "-d": "--device", "--device": "--device",
    "-g": "--gphoto-args", "--gphoto-args": "--gphoto-args",
    "-f": "--ffmpeg-args", "--ffmpeg-args": "--ffmpeg-args",
    "-l": "--log-level", "--log-level": "--log-level",
}

RE_DEVICE_NUMBER = re.compile(r"[0-9]+")
RE_AUTODETECT_HEADER = re.compile(r"^\s*Model\s{2,}Port\s*$")
RE_AUTODETECT_SEPARATOR = re.compile(r"^\s*-+\s*$")
RE_FIELD_GAP = re.compile(r"\s{2,}")


class TethercamError(Exception):
    """Base class for errors reported as a single fatal line."""


class UsageError(TethercamError):
    pass


class FatalError(TethercamError):
    pass


@dataclass(frozen=True)
class Config:
    camera: Optional[str] = None
    device: int = DEFAULT_DEVICE
    gphoto_args: Tuple[str, ...] = ()
    ffmpeg_args: Tuple[str, ...] = ()
    log_level: str = "INFO"


class Reporter:
    """Colorized, level-tagged status lines on stderr."""

    def __init__(self, level: str = "INFO", console: Optional[Console] = None) -> None:
        self.level = level
        self.console = console or Console(stderr=True, highlight=False)

    def enabled(self, level: str) -> bool:
        return level == "FATAL" or LOG_LEVELS.index(level) >= LOG_LEVELS.index(self.level)

    def emit(self, level: str, message: str) -> None:
        if not self.enabled(level):
            return
        line = Text.assemble((f"[{level}]", LEVEL_STYLES[level]), " ", message)
        self.console.print(line, soft_wrap=True)

    def info(self, message: str) -> None:
        self.emit("INFO", message)

    def warn(self, message: str) -> None:
        self.emit("WARN", message)

    def fatal(self, message: str) -> None:
        self.emit("FATAL", message)


# ---------------------------------------------------------------------------
# Arguments
# ---------------------------------------------------------------------------


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise UsageError(message)


def _non_empty(value: str) -> str:
    if not value:
        raise argparse.ArgumentTypeError("missing argument")
    return value


def _device_number(value: str) -> int:
    if not value:
        raise argparse.ArgumentTypeError("missing argument")
    if not RE_DEVICE_NUMBER.fullmatch(value):
        raise argparse.ArgumentTypeError(f"must be a non-negative integer, got '{value}'")
    return int(value)


def _arg_list(value: str) -> List[str]:
    if not value.strip():
        raise argparse.ArgumentTypeError("missing argument")
    try:
        return shlex.split(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"cannot split '{value}': {e}") from None


def _log_level(value: str) -> str:
    if not value:
        raise argparse.ArgumentTypeError("missing argument")
    if value not in LOG_LEVELS:
        raise argparse.ArgumentTypeError(
            f"invalid log level '{value}' (choose from {', '.join(LOG_LEVELS)})"
        )
    return value


def build_parser() -> argparse.ArgumentParser:
    ap = _ArgumentParser(
        prog="tethercam",
        description="Use a gphoto2-supported camera as a v4l2loopback webcam.",
        allow_abbrev=False,
        exit_on_error=False,
    )
    ap.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("-c", "--camera", type=_non_empty, default=None,
                    help="camera model passed to gphoto2 --camera (default: auto-detect)")
    ap.add_argument("-d", "--device", type=_device_number, default=DEFAULT_DEVICE,
                    help=f"number N of the /dev/videoN loopback node (default {DEFAULT_DEVICE})")
    ap.add_argument("-g", "--gphoto-args", type=_arg_list, action="extend", default=[],
                    help="extra gphoto2 arguments, shell-quoted; repeatable")
    ap.add_argument("-f", "--ffmpeg-args", type=_arg_list, action="extend", default=[],
                    help="extra ffmpeg output arguments, shell-quoted; repeatable")
    ap.add_argument("-l", "--log-level", type=_log_level, default="INFO",
                    help="one of INFO, WARN, FATAL (default INFO)")
    return ap


def attach_values(args: Sequence[str]) -> List[str]:
    """Glue each value-taking flag to its value as ``--long=value``.

    argparse would otherwise read a value such as ``-an`` as another option.
    Stops at ``--``; a flag with nothing after it is left for argparse to
    report as missing.
    """
    out: List[str] = []
    it = iter(args)
    for arg in it:
        if arg == "--":
            break
        flag = VALUE_FLAGS.get(arg)
        if flag is None:
            out.append(arg)
            continue
        value = next(it, None)
        if value is None or value == "--":
            out.append(flag)
            break
        out.append(f"{flag}={value}")
    return out


def parse_args(argv: Optional[Sequence[str]] = None) -> Config:
    args = attach_values(sys.argv[1:] if argv is None else argv)

    ap = build_parser()
    try:
        ns, extras = ap.parse_known_args(args)
    except argparse.ArgumentError as e:
        message = e.message
        if message == "expected one argument":
            message = "missing argument"
        raise UsageError(f"{e.argument_name}: {message}") from None

    for extra in extras:
        if extra.startswith("-"):
            raise UsageError(f"unsupported flag '{extra}'")
        raise UsageError(f"unexpected argument '{extra}'")

    return Config(
        camera=ns.camera,
        device=ns.device,
        gphoto_args=tuple(ns.gphoto_args),
        ffmpeg_args=tuple(ns.ffmpeg_args),
        log_level=ns.log_level,
    )


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


def run_cmd(cmd: List[str], check: bool = False) -> subprocess.CompletedProcess:
    return subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, check=check)


def check_dependencies(commands: Sequence[str] = REQUIRED_COMMANDS) -> None:
    for prog in commands:
        if not shutil.which(prog):
            raise FatalError(f"required program not found in PATH: {prog}")


def parse_auto_detect(output: str) -> Optional[str]:
    """Return the model of the first camera in `gphoto2 --auto-detect` output.

    The output is a header row (``Model   Port``), a dashed separator and one
    row per camera, with columns separated by runs of spaces. Returns None
    when no camera row is present and raises FatalError when the header or
    separator do not look as expected.
    """
    lines = output.splitlines()
    if (
        len(lines) < 2
        or not RE_AUTODETECT_HEADER.match(lines[0])
        or not RE_AUTODETECT_SEPARATOR.match(lines[1])
    ):
        raise FatalError(f"unexpected '{GPHOTO} --auto-detect' output:\n{output.strip()}")

    for line in lines[2:]:
        row = line.strip()
        if row:
            return RE_FIELD_GAP.split(row, maxsplit=1)[0]
    return None


def warn_competing_processes(reporter: Reporter) -> None:
    cp = run_cmd(["pgrep", "-f", COMPETING_PROCESSES])
    if cp.returncode == 0:
        reporter.warn("a gvfs gphoto2 daemon is running and may claim the camera")


def detect_camera(config: Config, reporter: Reporter) -> str:
    warn_competing_processes(reporter)
    if config.camera:
        return config.camera

    cp = run_cmd([GPHOTO, "--auto-detect"])
    if cp.returncode != 0:
        raise FatalError(f"{GPHOTO} --auto-detect failed: {cp.stderr.strip()}")
    name = parse_auto_detect(cp.stdout)
    if not name:
        raise FatalError("couldn't detect any cameras")
    return name


# ---------------------------------------------------------------------------
# Loopback device
# ---------------------------------------------------------------------------


def device_node(number: int) -> Path:
    return DEV_ROOT / f"video{number}"


def card_label(camera: str) -> str:
    return f"{camera} (tethercam)"[:CARD_LABEL_MAX]


def module_available() -> bool:
    return run_cmd(["modinfo", MODULE]).returncode == 0


def module_loaded() -> bool:
    cp = run_cmd(["lsmod"])
    for line in cp.stdout.splitlines()[1:]:
        fields = line.split()
        if fields and fields[0] == MODULE:
            return True
    return False


def ensure_loopback_device(config: Config, camera: str, reporter: Reporter) -> Path:
    node = device_node(config.device)
    if node.exists():
        reporter.info(f"using existing device {node}")
        return node

    if not module_available():
        reporter.warn(f"possibly missing module {MODULE}")

    if module_loaded():
        reporter.warn(f"reloading {MODULE}; other loopback devices will be removed")
        cp = run_cmd(["sudo", "modprobe", "-r", MODULE])
        if cp.returncode != 0:
            raise FatalError(f"failed to unload {MODULE}: {cp.stderr.strip()}")

    cp = run_cmd([
        "sudo", "modprobe", MODULE,
        f"video_nr={config.device}",
        f"card_label={card_label(camera)}",
        "exclusive_caps=1",
    ])
    if cp.returncode != 0:
        raise FatalError(f"failed to load {MODULE}: {cp.stderr.strip()}")

    if not node.exists():
        raise FatalError(f"failed to add device {node}")
    reporter.info(f"added device {node}")
    return node


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def is_group_running(pgid: int) -> bool:
    if pgid <= 0:
        return False
    try:
        os.killpg(pgid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


def signal_group(pgid: int, sig: int) -> None:
    with suppress(ProcessLookupError, PermissionError):
        os.killpg(pgid, sig)


def capture_command(config: Config) -> List[str]:
    cmd = [GPHOTO]
    if config.camera:
        cmd += ["--camera", config.camera]
    return cmd + [*config.gphoto_args, "--stdout", "--capture-movie"]


def transcode_command(config: Config, node: Path) -> List[str]:
    return [
        FFMPEG,
        "-hide_banner",
        "-loglevel", "error",
        "-i", "-",
        *config.ffmpeg_args,
        "-vcodec", "rawvideo",
        "-pix_fmt", "yuv420p",
        "-threads", "0",
        "-f", "v4l2",
        str(node),
    ]


@dataclass
class Pipeline:
    capture: subprocess.Popen
    transcode: subprocess.Popen

    @property
    def pgid(self) -> int:
        return self.capture.pid

    def is_alive(self) -> bool:
        return is_group_running(self.pgid)

    def wait(self) -> int:
        """Block until both stages exit; ffmpeg's failure takes precedence."""
        transcode_rc = self.transcode.wait()
        capture_rc = self.capture.wait()
        return transcode_rc or capture_rc

    def terminate(self, grace: float = TERMINATE_GRACE) -> None:
        # once both are reaped the pgid may belong to someone else
        if self.capture.poll() is not None and self.transcode.poll() is not None:
            return
        signal_group(self.pgid, signal.SIGTERM)
        deadline = time.monotonic() + grace
        for proc in (self.transcode, self.capture):
            try:
                proc.wait(timeout=max(0.0, deadline - time.monotonic()))
            except subprocess.TimeoutExpired:
                signal_group(self.pgid, signal.SIGKILL)
                with suppress(subprocess.TimeoutExpired):
                    proc.wait(timeout=grace)


def start_pipeline(config: Config, node: Path, capture_log: IO, transcode_log: IO) -> Pipeline:
    capture = subprocess.Popen(
        capture_command(config),
        stdout=subprocess.PIPE,
        stderr=capture_log,
        process_group=0,
    )
    try:
        transcode = subprocess.Popen(
            transcode_command(config, node),
            stdin=capture.stdout,
            stdout=subprocess.DEVNULL,
            stderr=transcode_log,
            process_group=capture.pid,
        )
    except (OSError, subprocess.SubprocessError):
        capture.kill()
        capture.wait()
        raise
    # only ffmpeg holds the read end, so gphoto2 sees EPIPE when ffmpeg dies
    capture.stdout.close()
    return Pipeline(capture=capture, transcode=transcode)


# ---------------------------------------------------------------------------
# Liveness
# ---------------------------------------------------------------------------


def read_sample(node: Path, size: int = SAMPLE_SIZE) -> bytes:
    try:
        with open(node, "rb", buffering=0) as f:
            return f.read(size) or b""
    except OSError:
        return b""


class LivenessMonitor:
    """Report once the device starts producing frames.

    Two consecutive samples that differ while the pipeline is alive count as
    a successful start. The monitor stops silently when the pipeline dies
    first or when it is cancelled.
    """

    def __init__(
        self,
        node: Path,
        is_alive: Callable[[], bool],
        on_started: Callable[[], None],
        interval: float = POLL_INTERVAL,
        sample_size: int = SAMPLE_SIZE,
    ) -> None:
        self.node = node
        self.is_alive = is_alive
        self.on_started = on_started
        self.interval = interval
        self.sample_size = sample_size
        self.started = False
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="liveness-monitor", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def _run(self) -> None:
        previous = read_sample(self.node, self.sample_size)
        while not self._stop.is_set():
            if not self.is_alive():
                return
            current = read_sample(self.node, self.sample_size)
            if current != previous:
                self.started = True
                self.on_started()
                return
            previous = current
            self._stop.wait(self.interval)


# ---------------------------------------------------------------------------
# Failure report
# ---------------------------------------------------------------------------


def read_log(path: Path) -> str:
    try:
        return path.read_text(errors="replace")
    except OSError:
        return ""


def strip_through_abort(text: str) -> str:
    lines = text.splitlines(keepends=True)
    for i, line in enumerate(lines):
        if ABORT_MARKER in line:
            return "".join(lines[i + 1:])
    return text


def report_pipeline_failure(status: int, capture_log: Path, transcode_log: Path,
                            reporter: Reporter) -> int:
    """Report what each stage wrote to stderr. Returns the number of reports."""
    reported = 0

    capture_err = strip_through_abort(read_log(capture_log)).strip()
    if capture_err:
        reporter.fatal(f"{GPHOTO}: {capture_err}")
        reported += 1

    transcode_err = read_log(transcode_log).strip()
    if transcode_err:
        reporter.fatal(f"{FFMPEG}: {transcode_err}")
        reported += 1

    if not reported:
        reporter.fatal(f"pipeline exited with status {status}")
        reported = 1
    return reported


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class Session:
    """Owns the pipeline, its monitor and the two stderr capture files.

    Use as a context manager; leaving the block kills the process group,
    cancels the monitor and removes the capture files.
    """

    def __init__(self) -> None:
        self.pipeline: Optional[Pipeline] = None
        self.monitor: Optional[LivenessMonitor] = None
        self.capture_log: Optional[IO] = None
        self.transcode_log: Optional[IO] = None
        self._closed = False

    def __enter__(self) -> "Session":
        self.capture_log = tempfile.NamedTemporaryFile(prefix=f"tethercam-{GPHOTO}-", suffix=".log", delete=False)
        self.transcode_log = tempfile.NamedTemporaryFile(prefix=f"tethercam-{FFMPEG}-", suffix=".log", delete=False)
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def capture_log_path(self) -> Path:
        return Path(self.capture_log.name)

    @property
    def transcode_log_path(self) -> Path:
        return Path(self.transcode_log.name)

    def start(self, config: Config, node: Path, reporter: Reporter) -> Pipeline:
        if self.pipeline is not None:
            raise RuntimeError("pipeline already started")
        self.pipeline = start_pipeline(config, node, self.capture_log, self.transcode_log)
        self.monitor = LivenessMonitor(
            node,
            is_alive=self.pipeline.is_alive,
            on_started=lambda: reporter.info(f"successfully started, streaming to {node}"),
        )
        self.monitor.start()
        return self.pipeline

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self.monitor is not None:
            self.monitor.cancel()
        if self.pipeline is not None:
            with suppress(OSError):
                self.pipeline.terminate()
        for f in (self.capture_log, self.transcode_log):
            if f is None:
                continue
            with suppress(OSError):
                f.close()
            with suppress(OSError):
                Path(f.name).unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _exit_on_signal(signum, frame) -> None:
    raise SystemExit(128 + signum)


def install_signal_handlers() -> None:
    for sig in (signal.SIGTERM, signal.SIGHUP):
        signal.signal(sig, _exit_on_signal)


def run(config: Config, reporter: Reporter) -> int:
    with Session() as session:
        check_dependencies()

        camera = detect_camera(config, reporter)
        reporter.info(f"using camera {camera}")

        node = ensure_loopback_device(config, camera, reporter)

        pipeline = session.start(config, node, reporter)
        reporter.info(f"pipeline running (pgid {pipeline.pgid})")
        status = pipeline.wait()
        session.monitor.cancel()
        if status != 0:
            report_pipeline_failure(status, session.capture_log_path, session.transcode_log_path, reporter)
            return 1

    reporter.info("pipeline stopped")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    reporter = Reporter()
    try:
        config = parse_args(argv)
    except UsageError as e:
        reporter.fatal(str(e))
        return 1

    reporter = Reporter(config.log_level)
    install_signal_handlers()
    try:
        return run(config, reporter)
    except TethercamError as e:
        reporter.fatal(str(e))
        return 1
    except KeyboardInterrupt:
        reporter.warn("interrupted")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
