"""
Tracking Service — periodic sweeps for expired bookings and group windows.

Two QTimers drive the session engine's idempotent sweep bodies:
  - booking sweep (default every 10 s): expired bookings → judgment queue
  - group sweep   (default every 60 s): expired time-limited groups → reset
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from PySide6.QtCore import QTimer

from src.data.storage import StorageError
from src.services.session_service import SessionService
from src.services.settings import DEFAULT_CONFIG

logger = logging.getLogger(__name__)


class TrackingService:
    """
    Runs the periodic sweeps on the Qt event loop.

    on_schedule_expired receives the ids of bookings that just expired so a
    UI can ask the user for a judgment.
    """

    def __init__(
        self,
        session_service: SessionService,
        on_schedule_expired: Optional[Callable[[List[str]], None]] = None,
        on_groups_reset: Optional[Callable[[List[str]], None]] = None,
        config: Optional[dict] = None,
    ) -> None:
        self.session_svc = session_service
        self.on_schedule_expired = on_schedule_expired
        self.on_groups_reset = on_groups_reset

        config = config or DEFAULT_CONFIG
        self.session_sweep_interval_s = config["session_sweep_interval_s"]
        self.group_sweep_interval_s = config["group_sweep_interval_s"]

        self._session_timer = QTimer()
        self._session_timer.timeout.connect(self._sweep_sessions)

        self._group_timer = QTimer()
        self._group_timer.timeout.connect(self._sweep_groups)

    # ── Public API ──────────────────────────────────────────────────────────

    def start(self) -> None:
        self._session_timer.start(int(self.session_sweep_interval_s * 1000))
        self._group_timer.start(int(self.group_sweep_interval_s * 1000))
        logger.info("Sweeps started: bookings every %ss, groups every %ss",
                    self.session_sweep_interval_s, self.group_sweep_interval_s)

    def stop_all(self) -> None:
        self._session_timer.stop()
        self._group_timer.stop()

    def is_running(self) -> bool:
        return self._session_timer.isActive() or self._group_timer.isActive()

    # ── Timer callbacks ─────────────────────────────────────────────────────

    def _sweep_sessions(self) -> None:
        try:
            expired = self.session_svc.sweep_expired_sessions()
        except StorageError:
            logger.exception("Booking sweep failed; reloading state.")
            self.session_svc.reload()
            return
        if expired and self.on_schedule_expired:
            self.on_schedule_expired(expired)

    def _sweep_groups(self) -> None:
        try:
            reset = self.session_svc.sweep_expired_groups()
        except StorageError:
            logger.exception("Group sweep failed; reloading state.")
            self.session_svc.reload()
            return
        if reset and self.on_groups_reset:
            self.on_groups_reset(reset)


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Fires the two background checks the time-delay protocol needs: "did a
#   booking run out?" and "did a time-boxed group run out?"
#
# Key design decisions:
#   - QTimer (PySide6) so sweeps run on the Qt event loop, the same thread
#     as every user action. No locks around AppState.
#   - The sweep bodies live in SessionService and are idempotent, so a timer
#     firing twice, or a sweep racing a manual refresh, never double-penalizes.
#   - Callbacks are injected, keeping the service UI-agnostic and testable.
#
# Data flow:
#   QTimer fires → _sweep_sessions() → SessionService.sweep_expired_sessions()
#   → bookings dropped + judgments queued → on_schedule_expired(ids) → UI.
