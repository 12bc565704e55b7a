#!/usr/bin/env python3
"""
Mp3Encoder: streams PCM frames through an ffmpeg/libmp3lame child process.

- write_frame() is non-blocking; frames are queued for the stdin pump and
  dropped (and counted) when the queue is full.
- A reader thread copies encoded bytes from ffmpeg's stdout into the sink,
  which is anything with a write(bytes) method (open file, HTTP response).
- A sink or pipe failure marks the encoder failed and kills ffmpeg; the
  next write_frame() raises EncoderError so the owner can drop the consumer.
"""

from __future__ import annotations

import logging
import queue
import subprocess
import threading
from dataclasses import dataclass
from typing import Any

import numpy as np

from babymonitor.ffmpeg_io import mp3_pipe_output_args, pcm_pipe_input_args

MAX_QUEUE_FRAMES = 512
READ_CHUNK_BYTES = 4096

log = logging.getLogger("encoder")


class EncoderError(RuntimeError):
    """Raised when the encoder cannot start or has stopped accepting frames."""


@dataclass
class EncoderResult:
    success: bool
    returncode: int | None
    error: BaseException | None
    stderr: str | None
    frames_sent: int
    bytes_out: int
    dropped_frames: int


class Mp3Encoder:
    def __init__(
        self,
        sink: Any,
        channels: int = 1,
        sample_rate: int = 44100,
        quality: int = 2,
        *,
        bitrate: str = "128k",
        queue_frames: int = MAX_QUEUE_FRAMES,
    ) -> None:
        if channels != 1:
            raise ValueError("Mp3Encoder only supports mono input")
        self.sink = sink
        self.channels = channels
        self.sample_rate = int(sample_rate)
        self.quality = int(quality)
        self.bitrate = bitrate
        self._queue: queue.Queue[bytes | None] = queue.Queue(maxsize=max(1, queue_frames))
        self._process: subprocess.Popen | None = None
        self._writer: threading.Thread | None = None
        self._reader: threading.Thread | None = None
        self._error: BaseException | None = None
        self._closing = False
        self._close_lock = threading.Lock()
        self._result: EncoderResult | None = None
        self._frames_sent = 0
        self._bytes_out = 0
        self._dropped = 0

    def _build_command(self) -> list[str]:
        return [
            "ffmpeg",
            "-hide_banner",
            "-loglevel",
            "error",
            *pcm_pipe_input_args(self.sample_rate, self.channels),
            *mp3_pipe_output_args(self.quality, self.bitrate),
        ]

    def start(self, command: list[str] | None = None) -> "Mp3Encoder":
        if self._process is not None:
            raise RuntimeError("Mp3Encoder already started")
        if command is None:
            command = self._build_command()
        try:
            self._process = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except OSError as exc:
            self._error = exc
            raise EncoderError(f"failed to launch encoder: {exc}") from exc

        self._writer = threading.Thread(target=self._pump_stdin, name="mp3-encoder-in", daemon=True)
        self._reader = threading.Thread(target=self._pump_stdout, name="mp3-encoder-out", daemon=True)
        self._writer.start()
        self._reader.start()
        return self

    @property
    def failed(self) -> bool:
        return self._error is not None

    @property
    def dropped_frames(self) -> int:
        return self._dropped

    def write_frame(self, frame: Any) -> None:
        error = self._error
        if error is not None:
            raise EncoderError(f"encoder failed: {error!r}") from error
        if self._process is None or self._closing:
            raise EncoderError("encoder is not running")
        pcm = np.asarray(frame, dtype="<i2").tobytes()
        try:
            self._queue.put_nowait(pcm)
        except queue.Full:
            self._dropped += 1

    def _fail(self, exc: BaseException) -> None:
        if self._error is None:
            self._error = exc
            log.debug("encoder failed: %r", exc)
        proc = self._process
        if proc is not None and proc.poll() is None:
            try:
                proc.kill()
            except OSError as kill_exc:
                log.warning("failed to kill encoder process: %r", kill_exc)

    def _pump_stdin(self) -> None:
        proc = self._process
        assert proc is not None and proc.stdin is not None
        stdin = proc.stdin
        try:
            while True:
                chunk = self._queue.get()
                if chunk is None:
                    break
                try:
                    stdin.write(chunk)
                    self._frames_sent += 1
                except OSError as exc:
                    self._fail(exc)
                    break
        finally:
            try:
                stdin.close()
            except OSError:
                pass

    def _pump_stdout(self) -> None:
        proc = self._process
        assert proc is not None and proc.stdout is not None
        stdout = proc.stdout
        try:
            while True:
                try:
                    data = stdout.read(READ_CHUNK_BYTES)
                except OSError as exc:
                    self._fail(exc)
                    break
                if not data:
                    break
                self._bytes_out += len(data)
                try:
                    self.sink.write(data)
                except Exception as exc:  # noqa: BLE001
                    self._fail(exc)
                    break
        finally:
            if not self._closing and self._error is None:
                self._fail(EncoderError("encoder exited unexpectedly"))

    def close(self, *, timeout: float | None = 2.0) -> EncoderResult:
        """Flush pending frames through the encoder and stop it.

        Safe to call more than once and from several threads; later calls
        return the first result.
        """
        with self._close_lock:
            if self._result is not None:
                return self._result
            self._closing = True
            proc = self._process
            if proc is None:
                self._result = self._build_result(None, None)
                return self._result

            try:
                self._queue.put(None, timeout=timeout)
            except queue.Full:
                # stdin pump stopped draining; discard what is left
                drained = 0
                while True:
                    try:
                        self._queue.get_nowait()
                    except queue.Empty:
                        break
                    drained += 1
                self._dropped += drained
                self._queue.put_nowait(None)

            if self._writer is not None:
                self._writer.join(timeout)
            if self._reader is not None:
                self._reader.join(timeout)

            if proc.poll() is None:
                try:
                    proc.wait(timeout=timeout)
                except subprocess.TimeoutExpired:
                    log.warning("encoder did not exit after EOF; killing")
                    proc.kill()
                    proc.wait()

            stderr_text = None
            if proc.stderr is not None:
                try:
                    stderr_text = proc.stderr.read().decode("utf-8", errors="ignore") or None
                except OSError:
                    stderr_text = None
                finally:
                    proc.stderr.close()
            if proc.stdout is not None:
                proc.stdout.close()

            self._result = self._build_result(proc.returncode, stderr_text)
            if not self._result.success:
                log.debug(
                    "encoder closed rc=%s error=%r stderr=%s",
                    proc.returncode,
                    self._error,
                    stderr_text,
                )
            return self._result

    def _build_result(self, returncode: int | None, stderr: str | None) -> EncoderResult:
        return EncoderResult(
            success=self._process is not None and self._error is None and (returncode or 0) == 0,
            returncode=returncode,
            error=self._error,
            stderr=stderr,
            frames_sent=self._frames_sent,
            bytes_out=self._bytes_out,
            dropped_frames=self._dropped,
        )


def new_encoder(
    sink: Any,
    channels: int,
    sample_rate: int,
    quality: int,
    *,
    bitrate: str = "128k",
    command: list[str] | None = None,
) -> Mp3Encoder:
    """Create and start an encoder writing MP3 bytes into ``sink``."""
    encoder = Mp3Encoder(sink, channels, sample_rate, quality, bitrate=bitrate)
    return encoder.start(command=command)
