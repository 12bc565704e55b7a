#!/usr/bin/env python3
"""
Capture/broadcast loop.

One thread reads a frame from the capture device per iteration and hands it,
in order, to the debug recorders, the level trigger and every registered
stream client. The loop ends on request_stop() (signal, Esc key) or on a
capture error, and then shuts everything down in a fixed order:

  stop capture -> close recorders -> release clients -> stop servers -> close capture
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence

from babymonitor.actions import ActionDispatcher
from babymonitor.capture import AudioCapture, CaptureError
from babymonitor.clients import ClientRegistry
from babymonitor.config import MonitorSettings
from babymonitor.encoder import new_encoder
from babymonitor.level_trigger import LevelTriggerDetector
from babymonitor.recorders import build_recorders
from babymonitor.stream_server import start_stream_server_in_thread

log = logging.getLogger("monitor")


@dataclass
class ShutdownResult:
    reason: str
    error: Optional[BaseException] = None
    frames: int = 0

    @property
    def clean(self) -> bool:
        return self.error is None


class BroadcastLoop:
    def __init__(
        self,
        capture: Any,
        registry: ClientRegistry,
        detector: Optional[LevelTriggerDetector] = None,
        recorders: Iterable[Any] = (),
        *,
        servers: Sequence[Any] = (),
    ) -> None:
        self.capture = capture
        self.registry = registry
        self.detector = detector
        self.recorders = list(recorders)
        self.servers = list(servers)
        self._stop = threading.Event()
        self._stop_reason = "stop requested"
        self._frames = 0

    @property
    def frames(self) -> int:
        return self._frames

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self, reason: str = "stop requested") -> None:
        """Ask the loop to finish after the current iteration.

        Also stops the capture device so a blocked read returns promptly.
        """
        if self._stop.is_set():
            return
        self._stop_reason = reason
        self._stop.set()
        log.info("Stop requested: %s", reason)
        try:
            self.capture.stop()
        except Exception as exc:  # noqa: BLE001
            log.warning("capture stop during stop request failed: %r", exc)

    def distribute(self, frame: Any) -> None:
        """Hand one captured frame to every consumer."""
        for recorder in list(self.recorders):
            try:
                recorder.write_frame(frame)
            except Exception as exc:  # noqa: BLE001
                log.error("Debug recorder %s failed, closing it: %r", getattr(recorder, "name", recorder), exc)
                self.recorders.remove(recorder)
                self._close_recorder(recorder)

        if self.detector is not None:
            self.detector.feed(frame)

        self.registry.broadcast(frame)

    def run(self) -> ShutdownResult:
        result: ShutdownResult | None = None
        try:
            while not self._stop.is_set():
                try:
                    frame = self.capture.read_frame()
                except CaptureError as exc:
                    if self._stop.is_set():
                        break
                    log.error("Failed to read stream: %s", exc)
                    result = ShutdownResult("capture error", exc)
                    break
                self._frames += 1
                self.distribute(frame)
        finally:
            if result is None:
                result = ShutdownResult(self._stop_reason)
            result.frames = self._frames
            self.shutdown()
        return result

    def shutdown(self) -> None:
        log.info("Stop. Cleaning...")
        self._stop.set()
        try:
            self.capture.stop()
        except Exception as exc:  # noqa: BLE001
            log.warning("capture stop error: %r", exc)

        recorders, self.recorders = self.recorders, []
        for recorder in recorders:
            self._close_recorder(recorder)

        self.registry.release_all()

        for server in self.servers:
            try:
                server.stop()
            except Exception as exc:  # noqa: BLE001
                log.warning("server stop error: %r", exc)

        try:
            self.capture.close()
        except Exception as exc:  # noqa: BLE001
            log.warning("capture close error: %r", exc)

    @staticmethod
    def _close_recorder(recorder: Any) -> None:
        try:
            recorder.close()
        except Exception as exc:  # noqa: BLE001
            log.warning("recorder close error: %r", exc)


def build_monitor(settings: MonitorSettings, *, access_log: bool = False) -> BroadcastLoop:
    """Open every collaborator described by ``settings``.

    Startup is all-or-nothing: if any piece fails, what was already opened is
    closed again and the error propagates. The capture device must deliver
    one frame before recorders and the HTTP server are started.
    """
    registry = ClientRegistry()
    dispatcher = ActionDispatcher(settings.actions, timeout=settings.action_timeout_sec)
    detector = LevelTriggerDetector.from_settings(settings, dispatcher.fire)
    log.info(
        "Level trigger: %d ms window (%d samples), level %.3f, pause %ss, %d action(s)",
        settings.measure_time_ms,
        detector.capacity,
        settings.level,
        settings.trigger_pause_sec,
        len(settings.actions),
    )

    def encoder_factory(sink: Any) -> Any:
        return new_encoder(
            sink,
            1,
            settings.sample_rate,
            settings.mp3_lame_quality,
            bitrate=settings.mp3_bitrate,
        )

    capture = AudioCapture.open_default_input(
        1, settings.sample_rate, settings.frame_size, device=settings.device
    )
    recorders: list[Any] = []
    server = None
    try:
        capture.start()
        # arecord reports a bad device by exiting; surface that before serving
        capture.read_frame()
        recorders = build_recorders(settings)
        server = start_stream_server_in_thread(
            registry,
            encoder_factory,
            settings.http_host,
            settings.http_port,
            access_log=access_log,
        )
    except BaseException:
        for recorder in recorders:
            BroadcastLoop._close_recorder(recorder)
        capture.close()
        raise

    return BroadcastLoop(capture, registry, detector, recorders, servers=[server])