from __future__ import annotations

import logging
import threading

import numpy as np
import pytest

from babymonitor import level_trigger
from babymonitor.level_trigger import PEAK_AMPLITUDE, LevelTriggerDetector

LOUD = [32767, -32767, 32767, -32767]


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


def _detector(capacity=4, level=0.5, cooldown=60.0, clock=None):
    fired: list[float] = []
    detector = LevelTriggerDetector(
        capacity,
        level,
        cooldown,
        fired.append,
        clock=clock or FakeClock(),
        run_async=False,
    )
    return detector, fired


def test_quiet_window_does_not_fire():
    detector, fired = _detector(capacity=4, level=0.5)

    assert detector.feed([100, -200, 300, -100]) is True

    assert fired == []
    assert detector.evaluations == 1
    assert detector.last_level == pytest.approx(700 / PEAK_AMPLITUDE / 4)
    assert detector.last_level == pytest.approx(0.0053, abs=1e-4)
    assert detector.fill_count == 0


def test_fill_count_bounded_and_one_evaluation_per_window():
    detector, _ = _detector(capacity=10, level=1.0)

    # 3-sample frames: windows complete on the 4th frame (2 samples discarded)
    for _ in range(12):
        detector.feed(np.full(3, 5, dtype=np.int16))
        assert 0 <= detector.fill_count <= 10

    assert detector.evaluations == 3
    assert detector.fill_count == 0


def test_excess_samples_of_completing_frame_are_discarded():
    detector, fired = _detector(capacity=4, level=0.001)

    assert detector.feed([0, 0, 0]) is False
    assert detector.feed([0, 32767, 32767]) is True

    assert detector.evaluations == 1
    assert fired == []
    assert detector.last_level == 0.0

    # the discarded samples did not leak into the next window
    assert detector.fill_count == 0


def test_loud_window_fires_then_cooldown_blocks_refire():
    clock = FakeClock()
    detector, fired = _detector(capacity=4, level=0.5, cooldown=60, clock=clock)

    detector.feed(LOUD)
    assert fired == [pytest.approx(1.0)]

    clock.now += 30
    detector.feed(LOUD)
    assert len(fired) == 1
    assert detector.evaluations == 2

    clock.now += 30
    detector.feed(LOUD)
    assert len(fired) == 2
    assert detector.fires == 2


def test_threshold_is_inclusive():
    detector, fired = _detector(capacity=2, level=0.5, cooldown=0)

    detector.feed([16384, -16383])  # exactly 32767 / 32767 / 2

    assert detector.last_level == pytest.approx(0.5)
    assert len(fired) == 1


def test_frames_dropped_while_full_window_awaits_evaluation(monkeypatch):
    pending = []

    class DeferredThread:
        def __init__(self, target, name=None, daemon=None):
            self.target = target

        def start(self):
            pending.append(self.target)

    monkeypatch.setattr(level_trigger.threading, "Thread", DeferredThread)
    fired: list[float] = []
    detector = LevelTriggerDetector(4, 0.5, 0, fired.append, clock=FakeClock())

    assert detector.feed(LOUD) is True
    assert len(pending) == 1
    assert detector.fill_count == 4

    assert detector.feed([1, 2]) is False
    assert detector.fill_count == 4
    assert len(pending) == 1

    pending[0]()

    assert len(fired) == 1
    assert detector.fill_count == 0


def test_async_evaluation_runs_off_the_caller():
    done = threading.Event()
    detector = LevelTriggerDetector(4, 0.5, 0, lambda level: done.set())

    detector.feed(LOUD)

    assert done.wait(timeout=2.0)


def test_fire_callback_failure_is_logged_and_window_resets(caplog):
    def boom(level):
        raise RuntimeError("dispatch exploded")

    detector = LevelTriggerDetector(4, 0.5, 0, boom, clock=FakeClock(), run_async=False)

    with caplog.at_level(logging.ERROR, logger="level_trigger"):
        detector.feed(LOUD)

    assert "dispatch failed" in caplog.text
    assert detector.fill_count == 0
    assert detector.fires == 1


def test_full_scale_negative_samples_do_not_overflow():
    detector, fired = _detector(capacity=2, level=0.99, cooldown=0)

    detector.feed([-32768, -32768])

    assert detector.last_level > 1.0
    assert len(fired) == 1


def test_zero_capacity_rejected():
    with pytest.raises(ValueError):
        LevelTriggerDetector(0, 0.5, 0, lambda level: None)
