"""Tests for command-line parsing and usage errors."""

import shutil

import pytest

import tethercam
from tethercam import Config, UsageError, parse_args


def test_defaults():
    assert parse_args([]) == Config()


def test_all_flags():
    config = parse_args([
        "-c", "Canon EOS 600D",
        "-d", "7",
        "--gphoto-args=--port usb:001,005",
        "--ffmpeg-args=-vf 'scale=1280:-2'",
        "-l", "WARN",
    ])
    assert config.camera == "Canon EOS 600D"
    assert config.device == 7
    assert config.gphoto_args == ("--port", "usb:001,005")
    assert config.ffmpeg_args == ("-vf", "scale=1280:-2")
    assert config.log_level == "WARN"


def test_argument_lists_accumulate_in_order():
    config = parse_args(["--gphoto-args=--port usb:", "-g", "'two words'", "--gphoto-args=--debug"])
    assert config.gphoto_args == ("--port", "usb:", "two words", "--debug")


def test_long_form_with_equals():
    config = parse_args(["--device=12", "--camera=Nikon DSC D750"])
    assert config.device == 12
    assert config.camera == "Nikon DSC D750"


@pytest.mark.parametrize("argv, expected", [
    (["-g", "--debug"], ("--debug",)),
    (["--gphoto-args", "--port=usb:"], ("--port=usb:",)),
    (["-f", "-an", "-f", "-vf hflip"], ("-an", "-vf", "hflip")),
    (["--ffmpeg-args", "-vf"], ("-vf",)),
])
def test_dash_values_are_taken_verbatim(argv, expected):
    config = parse_args(argv)
    assert config.gphoto_args + config.ffmpeg_args == expected


def test_dash_camera_name_is_a_value():
    assert parse_args(["-c", "-weird-"]).camera == "-weird-"


@pytest.mark.parametrize("value", ["abc", "-1", "1.5", " 3", "0x10", "3\n", "\n"])
def test_device_must_be_non_negative_integer(value):
    with pytest.raises(UsageError, match="-d/--device: must be a non-negative integer"):
        parse_args(["--device", value])


@pytest.mark.parametrize("argv, flag", [
    (["-d"], "-d/--device"),
    (["--device", ""], "-d/--device"),
    (["--camera"], "-c/--camera"),
    (["-c", ""], "-c/--camera"),
    (["--gphoto-args", ""], "-g/--gphoto-args"),
    (["-f", "  "], "-f/--ffmpeg-args"),
    (["-l"], "-l/--log-level"),
    (["-d", "--", "3"], "-d/--device"),
])
def test_missing_argument(argv, flag):
    with pytest.raises(UsageError) as exc:
        parse_args(argv)
    assert str(exc.value) == f"{flag}: missing argument"


@pytest.mark.parametrize("level", ["DEBUG", "info", "Warn", "ERROR"])
def test_invalid_log_level(level):
    with pytest.raises(UsageError, match="invalid log level"):
        parse_args(["--log-level", level])


@pytest.mark.parametrize("flag", ["--bogus", "-x", "--dev"])
def test_unsupported_flag(flag):
    with pytest.raises(UsageError, match=f"unsupported flag '{flag}'"):
        parse_args([flag, "1"])


def test_stray_positional_is_rejected():
    with pytest.raises(UsageError, match="unexpected argument 'oops'"):
        parse_args(["oops"])


def test_arguments_after_double_dash_are_ignored():
    config = parse_args(["-d", "2", "--", "--bogus", "whatever"])
    assert config.device == 2


def test_unbalanced_quotes_are_rejected():
    with pytest.raises(UsageError, match="cannot split"):
        parse_args(["--ffmpeg-args=-vf 'scale"])


def test_help_exits_successfully(capsys):
    with pytest.raises(SystemExit) as exc:
        parse_args(["--help"])
    assert exc.value.code == 0
    assert "--gphoto-args" in capsys.readouterr().out


def test_version_exits_successfully(capsys):
    with pytest.raises(SystemExit) as exc:
        parse_args(["-v"])
    assert exc.value.code == 0
    assert f"tethercam {tethercam.__version__}" in capsys.readouterr().out


def test_usage_error_exits_before_any_external_action(monkeypatch, capsys):
    def forbidden(*args, **kwargs):
        raise AssertionError("no external lookup expected")

    monkeypatch.setattr(shutil, "which", forbidden)
    monkeypatch.setattr(tethercam, "run_cmd", forbidden)

    assert tethercam.main(["--device", "abc"]) == 1
    err = capsys.readouterr().err
    assert "[FATAL]" in err
    assert "--device" in err


def test_invalid_log_level_exit_code(capsys):
    assert tethercam.main(["--log-level", "DEBUG"]) == 1
    assert "invalid log level" in capsys.readouterr().err
