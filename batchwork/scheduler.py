"""Recurring scheduler backing the self-healing health check.

Simple threaded timers keyed by name; each tick re-arms the next one.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 1.0


class RecurringScheduler(Protocol):
    """Protocol for recurring timers keyed by name."""

    def register(self, name: str, interval_seconds: float, callback: Callable[[], None]) -> None: ...

    def deregister(self, name: str) -> None: ...

    def next_fire_time(self, name: str) -> Optional[float]: ...

    def shutdown(self) -> None: ...


@dataclass
class _Schedule:
    interval: float
    callback: Callable[[], None]
    next_fire: float
    timer: Optional[threading.Timer] = None


class ThreadingScheduler:
    """Run recurring callbacks on daemon ``threading.Timer`` chains.

    A callback that raises is logged and the schedule keeps firing.
    """

    def __init__(self) -> None:
        self._schedules: Dict[str, _Schedule] = {}
        self._lock = threading.Lock()
        self._running = True

    def register(self, name: str, interval_seconds: float, callback: Callable[[], None]) -> None:
        """Start firing ``callback`` every ``interval_seconds`` under ``name``.

        Re-registering an existing name replaces its schedule.
        """
        interval = max(float(interval_seconds), MIN_INTERVAL_SECONDS)
        with self._lock:
            if not self._running:
                logger.warning("Scheduler is shut down; ignoring registration of %s", name)
                return
            previous = self._schedules.pop(name, None)
            if previous is not None and previous.timer is not None:
                previous.timer.cancel()
            schedule = _Schedule(interval=interval, callback=callback, next_fire=time.time() + interval)
            self._schedules[name] = schedule
            self._arm(name, schedule)
        logger.info("Scheduled %s every %.0fs", name, interval)

    def _arm(self, name: str, schedule: _Schedule) -> None:
        timer = threading.Timer(schedule.interval, self._fire, args=(name, schedule))
        timer.daemon = True
        timer.name = f"batchwork-cron-{name}"
        schedule.timer = timer
        timer.start()

    def _fire(self, name: str, schedule: _Schedule) -> None:
        with self._lock:
            if self._schedules.get(name) is not schedule:
                return
            schedule.next_fire = time.time() + schedule.interval
            self._arm(name, schedule)
        try:
            schedule.callback()
        except Exception:
            logger.exception("Scheduled callback %s failed", name)

    def deregister(self, name: str) -> None:
        with self._lock:
            schedule = self._schedules.pop(name, None)
        if schedule is not None:
            if schedule.timer is not None:
                schedule.timer.cancel()
            logger.info("Unscheduled %s", name)

    def next_fire_time(self, name: str) -> Optional[float]:
        with self._lock:
            schedule = self._schedules.get(name)
            return schedule.next_fire if schedule else None

    def shutdown(self) -> None:
        """Cancel every pending timer; later registrations are ignored."""
        with self._lock:
            self._running = False
            schedules = list(self._schedules.values())
            self._schedules.clear()
        for schedule in schedules:
            if schedule.timer is not None:
                schedule.timer.cancel()
        logger.info("Stopped scheduler")
