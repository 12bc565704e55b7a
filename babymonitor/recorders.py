"""Optional debug taps that persist the captured audio to disk."""

from __future__ import annotations

import logging
import wave
from typing import Any

import numpy as np

from babymonitor.encoder import EncoderError, Mp3Encoder, new_encoder

log = logging.getLogger("recorders")


class WavRecorder:
    """16-bit mono WAV file fed one frame at a time."""

    def __init__(self, path: str, sample_rate: int) -> None:
        self.path = path
        self.name = f"wav:{path}"
        self._wav: wave.Wave_write | None = wave.open(path, "wb")
        self._wav.setnchannels(1)
        self._wav.setsampwidth(2)
        self._wav.setframerate(int(sample_rate))

    def write_frame(self, frame: Any) -> None:
        if self._wav is None:
            raise OSError("recorder is closed")
        self._wav.writeframes(np.asarray(frame, dtype="<i2").tobytes())

    def close(self) -> None:
        wav, self._wav = self._wav, None
        if wav is not None:
            wav.close()


class Mp3FileRecorder:
    """Encodes the captured stream into an MP3 file."""

    def __init__(
        self,
        path: str,
        sample_rate: int,
        quality: int,
        *,
        bitrate: str = "128k",
        command: list[str] | None = None,
    ) -> None:
        self.path = path
        self.name = f"mp3:{path}"
        self._file = open(path, "wb")
        try:
            self._encoder: Mp3Encoder | None = new_encoder(
                self._file, 1, sample_rate, quality, bitrate=bitrate, command=command
            )
        except EncoderError:
            self._file.close()
            raise

    def write_frame(self, frame: Any) -> None:
        if self._encoder is None:
            raise EncoderError("recorder is closed")
        self._encoder.write_frame(frame)

    def close(self) -> None:
        encoder, self._encoder = self._encoder, None
        if encoder is None:
            return
        try:
            result = encoder.close()
            if not result.success:
                log.warning("mp3 recorder %s closed with error: %r", self.path, result.error)
        finally:
            self._file.close()


def build_recorders(settings: Any) -> list[Any]:
    """Open the debug recorders enabled in ``settings``.

    Any failure closes what was already opened and propagates, so startup
    aborts without leaving half-written files open.
    """
    recorders: list[Any] = []
    try:
        if settings.debug_wav_enabled:
            recorders.append(WavRecorder(settings.debug_wav_filename, settings.sample_rate))
            log.info("Recording debug WAV to %s", settings.debug_wav_filename)
        if settings.debug_mp3_enabled:
            recorders.append(
                Mp3FileRecorder(
                    settings.debug_mp3_filename,
                    settings.sample_rate,
                    settings.mp3_lame_quality,
                    bitrate=settings.mp3_bitrate,
                )
            )
            log.info("Recording debug MP3 to %s", settings.debug_mp3_filename)
    except Exception:
        for recorder in recorders:
            recorder.close()
        raise
    return recorders
