"""
Collaborators the session engine calls out to.

Notifier surfaces outcomes to the user; ForwardTimer measures durationless
sessions. Concrete implementations live in notifications.py.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol


def forward_timer_key(chain_id: str, started_at: datetime) -> str:
    """Key a forward timer by chain and session start (epoch millis)."""
    return f"{chain_id}_{int(started_at.timestamp() * 1000)}"


class Notifier(Protocol):
    def notify_task_completed(self, name: str, streak: int,
                              message: Optional[str] = None) -> None: ...

    def notify_task_failed(self, name: str, reason: str) -> None: ...

    def notify_schedule_failed(self, name: str) -> None: ...


class ForwardTimer(Protocol):
    def start_timer(self, key: str, offset_seconds: int = 0) -> None:
        """Start counting, already ``offset_seconds`` in."""
        ...

    def pause_timer(self, key: str) -> None: ...

    def resume_timer(self, key: str) -> None: ...

    def get_elapsed(self, key: str) -> int: ...

    def stop_timer(self, key: str) -> int:
        """Stop and forget the timer, returning elapsed whole seconds."""
        ...

    def clear_timer(self, key: str) -> None: ...
