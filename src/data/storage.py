"""
Storage contract the engine is written against.

Repository is the SQLite implementation. Anything else that satisfies the
protocol (a remote store, a test double) can be handed to the services.
"""

from __future__ import annotations

from typing import List, Optional, Protocol

from .models import ActiveSession, Chain, CompletionHistory, ScheduledSession, TaskTimeStats


class StorageError(Exception):
    """A read or write against the record store failed."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation


class Storage(Protocol):
    def get_chains(self) -> List[Chain]: ...

    def get_active_chains(self) -> List[Chain]: ...

    def get_deleted_chains(self) -> List[Chain]: ...

    def save_chains(self, chains: List[Chain]) -> None: ...

    def soft_delete_chain(self, chain_id: str) -> List[str]: ...

    def restore_chain(self, chain_id: str) -> List[str]: ...

    def permanently_delete_chain(self, chain_id: str) -> List[str]: ...

    def cleanup_expired_deleted_chains(self, days: int = 30) -> int: ...

    def get_scheduled_sessions(self) -> List[ScheduledSession]: ...

    def save_scheduled_sessions(self, sessions: List[ScheduledSession]) -> None: ...

    def get_active_session(self) -> Optional[ActiveSession]: ...

    def save_active_session(self, session: Optional[ActiveSession]) -> None: ...

    def get_completion_history(self) -> List[CompletionHistory]: ...

    def save_completion_history(self, history: List[CompletionHistory]) -> None: ...

    def get_task_time_stats(self) -> List[TaskTimeStats]: ...

    def update_task_time_stats(self, chain_id: str, minutes: int) -> None: ...
