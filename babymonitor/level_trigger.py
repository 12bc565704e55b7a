#!/usr/bin/env python3
"""
Level trigger: turns the raw capture stream into rate-limited events.

Samples are collected into a fixed-size measurement window. When the window
fills, its normalised mean amplitude is evaluated off the capture thread:

    mean = (sum(|sample|) / PEAK_AMPLITUDE) / capacity

If ``mean >= level`` and at least ``cooldown_sec`` elapsed since the last
fire, the ``on_fire`` callback runs and the cooldown clock restarts. The
window is emptied after every evaluation.

While a full window waits for evaluation, incoming frames are dropped rather
than buffered, and a frame that completes the window only contributes the
samples that fit.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

import numpy as np

PEAK_AMPLITUDE = 32767

log = logging.getLogger("level_trigger")


class LevelTriggerDetector:
    def __init__(
        self,
        capacity: int,
        level: float,
        cooldown_sec: float,
        on_fire: Callable[[float], Any],
        *,
        peak: int = PEAK_AMPLITUDE,
        clock: Callable[[], float] = time.monotonic,
        run_async: bool = True,
    ) -> None:
        if capacity <= 0:
            raise ValueError("measurement window capacity must be positive")
        self.capacity = int(capacity)
        self.level = float(level)
        self.cooldown_sec = float(cooldown_sec)
        self.peak = int(peak)
        self._on_fire = on_fire
        self._clock = clock
        self._run_async = run_async

        self._lock = threading.Lock()
        self._window = np.zeros(self.capacity, dtype=np.int16)
        self._fill = 0
        self._last_fire: Optional[float] = None
        self._evaluations = 0
        self._fires = 0
        self._last_level: Optional[float] = None

    @classmethod
    def from_settings(cls, settings: Any, on_fire: Callable[[float], Any]) -> "LevelTriggerDetector":
        return cls(
            settings.window_capacity,
            settings.level,
            settings.trigger_pause_sec,
            on_fire,
        )

    @property
    def fill_count(self) -> int:
        with self._lock:
            return self._fill

    @property
    def evaluations(self) -> int:
        with self._lock:
            return self._evaluations

    @property
    def fires(self) -> int:
        with self._lock:
            return self._fires

    @property
    def last_level(self) -> Optional[float]:
        with self._lock:
            return self._last_level

    def feed(self, frame: Any) -> bool:
        """Append a frame; returns True when it completed the window."""
        samples = np.asarray(frame, dtype=np.int16)
        with self._lock:
            if self._fill >= self.capacity:
                # window already full and being evaluated
                return False
            count = min(samples.size, self.capacity - self._fill)
            self._window[self._fill:self._fill + count] = samples[:count]
            self._fill += count
            if self._fill < self.capacity:
                return False

        if self._run_async:
            threading.Thread(target=self._evaluate, name="level-trigger-eval", daemon=True).start()
        else:
            self._evaluate()
        return True

    def measure(self) -> float:
        """Normalised mean absolute amplitude of the current window."""
        total = np.abs(self._window.astype(np.int64)).sum()
        return float(total) / self.peak / self.capacity

    def _evaluate(self) -> None:
        # The window is not written while full, so it can be read unlocked.
        mean = self.measure()
        fired = False
        with self._lock:
            self._evaluations += 1
            self._last_level = mean
            now = self._clock()
            cooled_down = self._last_fire is None or now - self._last_fire >= self.cooldown_sec
            if mean >= self.level and cooled_down:
                self._last_fire = now
                self._fires += 1
                fired = True
            self._fill = 0
        log.debug("window level %.4f (threshold %.4f)", mean, self.level)

        if not fired:
            return
        try:
            self._on_fire(mean)
        except Exception:  # noqa: BLE001
            log.exception("level trigger action dispatch failed")
