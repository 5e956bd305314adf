from __future__ import annotations

import threading

import allure
import pytest

from droid_scheduler.orchestrator.watchdog import Watchdog
from support import wait_for

pytestmark = [
    allure.epic("Task Scheduler"),
    allure.feature("Watchdog"),
]


def test_watchdog_ticks_until_stopped() -> None:
    ticks: list[int] = []
    watchdog = Watchdog(interval_seconds=0.02, on_tick=lambda: ticks.append(1))

    watchdog.start()
    assert wait_for(lambda: len(ticks) >= 3, timeout=5)
    watchdog.stop()

    assert watchdog.running is False
    stopped_at = len(ticks)
    threading.Event().wait(0.1)
    assert len(ticks) == stopped_at


def test_failing_tick_does_not_stop_the_loop() -> None:
    calls: list[int] = []

    def _tick() -> None:
        calls.append(1)
        raise RuntimeError("tick failed")

    watchdog = Watchdog(interval_seconds=0.02, on_tick=_tick)
    watchdog.start()
    try:
        assert wait_for(lambda: len(calls) >= 2, timeout=5)
    finally:
        watchdog.stop()


def test_watchdog_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError, match="interval"):
        Watchdog(interval_seconds=0, on_tick=lambda: None)


def test_stopped_watchdog_cannot_be_restarted() -> None:
    watchdog = Watchdog(interval_seconds=0.02, on_tick=lambda: None)
    watchdog.stop()
    watchdog.start()

    assert watchdog.running is False
