#!/usr/bin/env python3
"""
Microphone capture through an ``arecord`` child process.

arecord writes raw S16_LE mono PCM on stdout; read_frame() blocks until one
full frame of ``frame_size`` samples is available. The process is never
restarted here: a read failure is fatal for the capture loop.
"""

from __future__ import annotations

import logging
import os
import subprocess

import numpy as np

log = logging.getLogger("capture")

_XRUN_MARKERS = ("overrun", "underrun")


class CaptureError(RuntimeError):
    """Raised when the capture device cannot be opened or read."""


def _parse_arecord_stderr(data: bytes, state: dict[str, str]) -> list[str]:
    """Return xrun events found in an arecord stderr chunk.

    ``state["buffer"]`` carries an incomplete trailing line between calls.
    """
    text = state.get("buffer", "") + data.decode("utf-8", errors="ignore")
    lines = text.split("\n")
    state["buffer"] = lines.pop()
    events: list[str] = []
    for line in lines:
        lowered = line.lower()
        for marker in _XRUN_MARKERS:
            if marker in lowered:
                events.append(marker)
                break
    return events


class AudioCapture:
    def __init__(
        self,
        device: str,
        channels: int,
        sample_rate: int,
        frame_size: int,
        *,
        command: list[str] | None = None,
    ) -> None:
        if channels != 1:
            raise CaptureError("only mono capture is supported")
        if frame_size <= 0:
            raise CaptureError("frame_size must be positive")
        self.device = device
        self.channels = channels
        self.sample_rate = int(sample_rate)
        self.frame_size = int(frame_size)
        self.frame_bytes = self.frame_size * 2 * self.channels
        self._command = command
        self._proc: subprocess.Popen | None = None
        self._stderr_state: dict[str, str] = {"buffer": ""}
        self._stderr_tail = ""

    @classmethod
    def open_default_input(
        cls,
        channels: int,
        sample_rate: int,
        frame_size: int,
        device: str | None = None,
        *,
        command: list[str] | None = None,
    ) -> "AudioCapture":
        device = device or os.environ.get("AUDIO_DEV") or "default"
        log.info("Open sound input device %s (%d Hz, %d samples/frame)", device, sample_rate, frame_size)
        return cls(device, channels, sample_rate, frame_size, command=command)

    def _build_command(self) -> list[str]:
        return [
            "arecord",
            "-D", self.device,
            "-c", str(self.channels),
            "-f", "S16_LE",
            "-r", str(self.sample_rate),
            "-t", "raw",
            "-q",
            "-",
        ]

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def start(self) -> None:
        if self._proc is not None:
            raise CaptureError("capture already started")
        command = self._command or self._build_command()
        try:
            self._proc = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                bufsize=0,
                start_new_session=True,
            )
        except OSError as exc:
            raise CaptureError(f"failed to launch capture process: {exc}") from exc
        if self._proc.stderr is not None:
            os.set_blocking(self._proc.stderr.fileno(), False)
        log.info("Start listening")

    def read_frame(self) -> np.ndarray:
        proc = self._proc
        if proc is None or proc.stdout is None:
            raise CaptureError("capture not started")
        buf = bytearray()
        while len(buf) < self.frame_bytes:
            try:
                chunk = proc.stdout.read(self.frame_bytes - len(buf))
            except (OSError, ValueError) as exc:
                raise CaptureError(f"failed to read stream: {exc}") from exc
            if not chunk:
                raise CaptureError(self._exit_reason(proc))
            buf.extend(chunk)
        self._drain_stderr()
        return np.frombuffer(bytes(buf), dtype="<i2")

    def _drain_stderr(self) -> None:
        proc = self._proc
        if proc is None or proc.stderr is None:
            return
        while True:
            try:
                data = proc.stderr.read(4096)
            except (BlockingIOError, OSError, ValueError):
                return
            if not data:
                return
            for event in _parse_arecord_stderr(data, self._stderr_state):
                log.warning("arecord reported %s", event)
            lines = [line.strip() for line in data.decode("utf-8", errors="ignore").splitlines()]
            lines = [line for line in lines if line]
            if lines:
                self._stderr_tail = lines[-1]

    def _exit_reason(self, proc: subprocess.Popen) -> str:
        """Describe why the capture stream ended, with arecord's last complaint."""
        try:
            rc = proc.wait(timeout=1)
        except subprocess.TimeoutExpired:
            rc = proc.poll()
        self._drain_stderr()
        message = f"capture stream ended (rc={rc})"
        if self._stderr_tail:
            message = f"{message}: {self._stderr_tail}"
        return message

    def stop(self) -> None:
        proc = self._proc
        if proc is None or proc.poll() is not None:
            return
        try:
            proc.terminate()
            proc.wait(timeout=1)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
        except OSError as exc:
            log.warning("capture stop error: %r", exc)

    def close(self) -> None:
        self.stop()
        proc = self._proc
        if proc is None:
            return
        for pipe in (proc.stdout, proc.stderr):
            if pipe is not None:
                try:
                    pipe.close()
                except OSError:
                    pass
