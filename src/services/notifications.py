"""
Default Notifier and ForwardTimer implementations.

LogNotifier writes outcomes to the log (a UI layer would show them instead).
ForwardTimerManager counts up for durationless sessions and excludes paused
time.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class LogNotifier:
    """Notifier that only logs."""

    def notify_task_completed(self, name: str, streak: int,
                              message: Optional[str] = None) -> None:
        logger.info("Completed %s (streak #%d)%s", name, streak,
                    f": {message}" if message else "")

    def notify_task_failed(self, name: str, reason: str) -> None:
        logger.info("Failed %s: %s", name, reason)

    def notify_schedule_failed(self, name: str) -> None:
        logger.info("Booking for %s expired", name)


@dataclass
class _RunningTimer:
    started: float
    paused_at: Optional[float] = None
    paused_total: float = 0.0


class ForwardTimerManager:
    """Count-up timers keyed by "<chain_id>_<started epoch ms>"."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._timers: Dict[str, _RunningTimer] = {}

    def start_timer(self, key: str, offset_seconds: int = 0) -> None:
        self._timers[key] = _RunningTimer(started=self._clock() - offset_seconds)

    def pause_timer(self, key: str) -> None:
        timer = self._timers.get(key)
        if timer and timer.paused_at is None:
            timer.paused_at = self._clock()

    def resume_timer(self, key: str) -> None:
        timer = self._timers.get(key)
        if timer and timer.paused_at is not None:
            timer.paused_total += self._clock() - timer.paused_at
            timer.paused_at = None

    def get_elapsed(self, key: str) -> int:
        timer = self._timers.get(key)
        if timer is None:
            return 0
        end = timer.paused_at if timer.paused_at is not None else self._clock()
        return max(0, int(end - timer.started - timer.paused_total))

    def stop_timer(self, key: str) -> int:
        elapsed = self.get_elapsed(key)
        if self._timers.pop(key, None) is None:
            logger.warning("stop_timer: no forward timer for %s", key)
        return elapsed

    def clear_timer(self, key: str) -> None:
        self._timers.pop(key, None)

    def is_running(self, key: str) -> bool:
        return key in self._timers
