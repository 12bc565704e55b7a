from __future__ import annotations

import sys

import pytest

from babymonitor.capture import AudioCapture, CaptureError, _parse_arecord_stderr


def test_parse_arecord_stderr_detects_xruns():
    state: dict[str, str] = {"buffer": ""}

    events = _parse_arecord_stderr(b"arecord: pcm_read: overrun!!!\n", state)
    assert events == ["overrun"]
    assert state["buffer"] == ""

    events = _parse_arecord_stderr(b"arecord: underrun!!!\n", state)
    assert events == ["underrun"]
    assert state["buffer"] == ""


def test_parse_arecord_stderr_handles_partial_lines_and_noise():
    state: dict[str, str] = {"buffer": ""}

    events = _parse_arecord_stderr(b"random status line\n", state)
    assert events == []

    events = _parse_arecord_stderr(b"misc data ", state)
    assert events == []
    assert state["buffer"] == "misc data "

    events = _parse_arecord_stderr(b"overrun!!!\n", state)
    assert events == ["overrun"]
    assert state["buffer"] == ""


def test_read_frame_returns_fixed_size_frames_then_fails_at_eof():
    # 8 bytes of little-endian PCM, written in two uneven chunks
    script = (
        "import os, time\n"
        "os.write(1, bytes(range(3)))\n"
        "time.sleep(0.05)\n"
        "os.write(1, bytes(range(3, 8)))\n"
    )
    capture = AudioCapture("default", 1, 44100, 2, command=[sys.executable, "-c", script])
    capture.start()
    try:
        assert capture.read_frame().tolist() == [256, 770]
        assert capture.read_frame().tolist() == [1284, 1798]
        with pytest.raises(CaptureError):
            capture.read_frame()
    finally:
        capture.close()
    assert not capture.running


def test_stop_unblocks_a_pending_read():
    script = "import time\ntime.sleep(30)\n"
    capture = AudioCapture("default", 1, 44100, 128, command=[sys.executable, "-c", script])
    capture.start()
    assert capture.running

    capture.stop()

    with pytest.raises(CaptureError):
        capture.read_frame()
    capture.close()


def test_missing_binary_raises_capture_error():
    capture = AudioCapture("default", 1, 44100, 128, command=["/nonexistent/arecord"])
    with pytest.raises(CaptureError):
        capture.start()


def test_read_before_start_fails():
    capture = AudioCapture("default", 1, 44100, 128)
    with pytest.raises(CaptureError):
        capture.read_frame()


def test_only_mono_capture_supported():
    with pytest.raises(CaptureError):
        AudioCapture("default", 2, 44100, 128)


def test_arecord_command_targets_device(monkeypatch):
    monkeypatch.setenv("AUDIO_DEV", "hw:CARD=Device,DEV=0")

    capture = AudioCapture.open_default_input(1, 48000, 256)
    cmd = capture._build_command()

    assert cmd[0] == "arecord"
    assert cmd[cmd.index("-D") + 1] == "hw:CARD=Device,DEV=0"
    assert cmd[cmd.index("-r") + 1] == "48000"
    assert cmd[cmd.index("-f") + 1] == "S16_LE"
    assert capture.frame_bytes == 512


def test_explicit_device_wins_over_env(monkeypatch):
    monkeypatch.setenv("AUDIO_DEV", "hw:1,0")

    capture = AudioCapture.open_default_input(1, 44100, 128, device="plughw:2,0")

    assert capture.device == "plughw:2,0"


def test_device_open_failure_reports_arecord_reason():
    script = (
        "import sys\n"
        "sys.stderr.write('arecord: main:850: audio open error: No such file or directory\\n')\n"
        "sys.exit(1)\n"
    )
    capture = AudioCapture("hw:9,0", 1, 44100, 128, command=[sys.executable, "-c", script])
    capture.start()
    try:
        with pytest.raises(CaptureError) as excinfo:
            capture.read_frame()
    finally:
        capture.close()

    message = str(excinfo.value)
    assert "audio open error" in message
    assert "rc=1" in message
