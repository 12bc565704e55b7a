from __future__ import annotations

import io
import sys
import threading
import time

import numpy as np
import pytest

from babymonitor.encoder import EncoderError, Mp3Encoder, new_encoder

# Stands in for ffmpeg: copies stdin to stdout unchanged.
PASSTHROUGH = [
    sys.executable,
    "-c",
    "import os\n"
    "while True:\n"
    "    data = os.read(0, 4096)\n"
    "    if not data:\n"
    "        break\n"
    "    os.write(1, data)\n",
]


class CollectingSink:
    def __init__(self):
        self.buffer = io.BytesIO()
        self.lock = threading.Lock()

    def write(self, data):
        with self.lock:
            self.buffer.write(data)

    def getvalue(self):
        with self.lock:
            return self.buffer.getvalue()


class FailingSink:
    def write(self, data):
        raise ConnectionResetError("client went away")


def test_frames_flow_to_sink_in_order():
    sink = CollectingSink()
    encoder = new_encoder(sink, 1, 44100, 2, command=PASSTHROUGH)

    encoder.write_frame(np.array([1, 2], dtype=np.int16))
    encoder.write_frame([3, -4])
    result = encoder.close()

    assert result.success
    assert result.frames_sent == 2
    assert result.bytes_out == 8
    assert np.frombuffer(sink.getvalue(), dtype="<i2").tolist() == [1, 2, 3, -4]


def test_ffmpeg_command_encodes_mono_pcm_to_mp3():
    encoder = Mp3Encoder(io.BytesIO(), 1, 22050, 5, bitrate="64k")

    cmd = encoder._build_command()

    assert cmd[0] == "ffmpeg"
    assert cmd[cmd.index("-f") + 1] == "s16le"
    assert cmd[cmd.index("-ar") + 1] == "22050"
    assert cmd[cmd.index("-ac") + 1] == "1"
    assert cmd[cmd.index("-c:a") + 1] == "libmp3lame"
    assert cmd[cmd.index("-b:a") + 1] == "64k"
    assert cmd[cmd.index("-compression_level") + 1] == "5"
    # input options precede the pipe input, output options follow it
    assert cmd.index("-ar") < cmd.index("pipe:0") < cmd.index("-c:a")
    assert cmd[-1] == "pipe:1"


def test_sink_failure_surfaces_on_next_write():
    encoder = new_encoder(FailingSink(), 1, 44100, 2, command=PASSTHROUGH)

    encoder.write_frame([1, 2, 3])
    deadline = time.monotonic() + 5.0
    while not encoder.failed and time.monotonic() < deadline:
        time.sleep(0.01)

    assert encoder.failed
    with pytest.raises(EncoderError):
        encoder.write_frame([4, 5, 6])

    result = encoder.close()
    assert not result.success
    assert isinstance(result.error, ConnectionResetError)


def test_missing_binary_raises_encoder_error():
    with pytest.raises(EncoderError):
        new_encoder(io.BytesIO(), 1, 44100, 2, command=["/nonexistent/ffmpeg-binary"])


def test_close_is_idempotent_and_write_after_close_fails():
    encoder = new_encoder(CollectingSink(), 1, 44100, 2, command=PASSTHROUGH)

    first = encoder.close()
    second = encoder.close()

    assert first is second
    with pytest.raises(EncoderError):
        encoder.write_frame([1])


def test_unexpected_exit_marks_encoder_failed():
    encoder = new_encoder(CollectingSink(), 1, 44100, 2, command=[sys.executable, "-c", "pass"])

    deadline = time.monotonic() + 5.0
    while not encoder.failed and time.monotonic() < deadline:
        time.sleep(0.01)

    with pytest.raises(EncoderError):
        encoder.write_frame([1])
    encoder.close()


def test_full_queue_drops_frames_instead_of_blocking():
    encoder = Mp3Encoder(CollectingSink(), queue_frames=2)
    # pretend started without pump threads so nothing drains the queue
    encoder._process = object()

    for _ in range(5):
        encoder.write_frame([0])

    assert encoder.dropped_frames == 3


def test_only_mono_supported():
    with pytest.raises(ValueError):
        Mp3Encoder(io.BytesIO(), channels=2)
