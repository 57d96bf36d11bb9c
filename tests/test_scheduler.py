from __future__ import annotations

import threading

import pytest

from batchwork.scheduler import MIN_INTERVAL_SECONDS, ThreadingScheduler


@pytest.fixture
def timers():
    scheduler = ThreadingScheduler()
    yield scheduler
    scheduler.shutdown()


def test_register_reports_next_fire_time(timers) -> None:
    assert timers.next_fire_time("bw_job_cron") is None

    timers.register("bw_job_cron", 300, lambda: None)

    assert timers.next_fire_time("bw_job_cron") is not None


def test_deregister_stops_schedule(timers) -> None:
    timers.register("bw_job_cron", 300, lambda: None)
    timers.deregister("bw_job_cron")
    timers.deregister("bw_job_cron")

    assert timers.next_fire_time("bw_job_cron") is None


def test_callback_fires_repeatedly_and_survives_errors(timers, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("batchwork.scheduler.MIN_INTERVAL_SECONDS", 0.01)
    fired = threading.Event()
    calls = []

    def callback():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first tick fails")
        fired.set()

    timers.register("bw_job_cron", 0.01, callback)

    assert fired.wait(timeout=5)
    assert len(calls) >= 2


def test_interval_has_floor() -> None:
    assert MIN_INTERVAL_SECONDS == 1.0


def test_shutdown_ignores_new_registrations() -> None:
    scheduler = ThreadingScheduler()
    scheduler.register("a", 300, lambda: None)
    scheduler.shutdown()
    scheduler.register("b", 300, lambda: None)

    assert scheduler.next_fire_time("a") is None
    assert scheduler.next_fire_time("b") is None
