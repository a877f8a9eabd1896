"""
Repository — the single place where SQL lives.

Every other module talks to Repository (through the Storage protocol), never
to raw SQL. This makes it easy to swap SQLite for another store (or mock in
tests) without touching business logic.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional

from .models import (
    ActiveSession,
    Chain,
    CompletionHistory,
    ScheduledSession,
    TaskTimeStats,
)
from .storage import StorageError

logger = logging.getLogger(__name__)

# helper: parse ISO datetime strings from SQLite
_parse_dt = lambda s: datetime.fromisoformat(s) if s else None
_fmt_dt = lambda d: d.isoformat() if d else None

_CHAIN_COLUMNS = (
    "id", "name", "parent_id", "type", "sort_order", "trigger_text", "duration",
    "description", "is_durationless", "auxiliary_signal", "auxiliary_duration",
    "auxiliary_completion_trigger", "current_streak", "auxiliary_streak",
    "total_completions", "total_failures", "auxiliary_failures",
    "task_repeat_count", "exceptions", "auxiliary_exceptions",
    "time_limit_hours", "time_limit_exceptions", "group_started_at",
    "group_expires_at", "created_at", "last_completed_at", "deleted_at",
)


class Repository:
    """Data-access layer wrapping a sqlite3 connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    # ── Chains ──────────────────────────────────────────────────────────────

    def get_chains(self) -> List[Chain]:
        """All chains, including soft-deleted ones."""
        with self._reading("get_chains"):
            rows = self.conn.execute(
                "SELECT * FROM chains ORDER BY sort_order, rowid"
            ).fetchall()
        return [self._row_to_chain(r) for r in rows]

    def get_active_chains(self) -> List[Chain]:
        with self._reading("get_active_chains"):
            rows = self.conn.execute(
                "SELECT * FROM chains WHERE deleted_at IS NULL ORDER BY sort_order, rowid"
            ).fetchall()
        return [self._row_to_chain(r) for r in rows]

    def get_deleted_chains(self) -> List[Chain]:
        with self._reading("get_deleted_chains"):
            rows = self.conn.execute(
                "SELECT * FROM chains WHERE deleted_at IS NOT NULL ORDER BY deleted_at DESC"
            ).fetchall()
        return [self._row_to_chain(r) for r in rows]

    def save_chains(self, chains: List[Chain]) -> None:
        """Upsert every given chain. Chains not in the list are left alone."""
        placeholders = ", ".join("?" * len(_CHAIN_COLUMNS))
        # Update in place so the rowid, which breaks sort_order ties, never changes.
        updates = ", ".join(f"{col} = excluded.{col}" for col in _CHAIN_COLUMNS if col != "id")
        sql = (
            f"INSERT INTO chains ({', '.join(_CHAIN_COLUMNS)}) "
            f"VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}"
        )
        with self._writing("save_chains"):
            self.conn.executemany(sql, [self._chain_to_params(c) for c in chains])

    def soft_delete_chain(self, chain_id: str, now: Optional[datetime] = None) -> List[str]:
        """Move a chain and all its descendants to the recycle bin."""
        ids = self._chain_and_descendant_ids(chain_id)
        if not ids:
            return []
        stamp = (now or datetime.now()).isoformat()
        with self._writing("soft_delete_chain"):
            self.conn.execute(
                f"UPDATE chains SET deleted_at = ? WHERE id IN ({self._marks(ids)})",
                [stamp, *ids],
            )
        logger.info("Soft-deleted %d chain(s) under %s", len(ids), chain_id)
        return ids

    def restore_chain(self, chain_id: str) -> List[str]:
        ids = self._chain_and_descendant_ids(chain_id)
        if not ids:
            return []
        with self._writing("restore_chain"):
            self.conn.execute(
                f"UPDATE chains SET deleted_at = NULL WHERE id IN ({self._marks(ids)})",
                ids,
            )
        logger.info("Restored %d chain(s) under %s", len(ids), chain_id)
        return ids

    def permanently_delete_chain(self, chain_id: str) -> List[str]:
        ids = self._chain_and_descendant_ids(chain_id)
        if not ids:
            return []
        with self._writing("permanently_delete_chain"):
            self.conn.execute(f"DELETE FROM chains WHERE id IN ({self._marks(ids)})", ids)
        logger.info("Permanently deleted %d chain(s) under %s", len(ids), chain_id)
        return ids

    def cleanup_expired_deleted_chains(self, days: int = 30,
                                       now: Optional[datetime] = None) -> int:
        """Permanently delete chains that sat in the recycle bin longer than `days`."""
        cutoff = (now or datetime.now()) - timedelta(days=days)
        with self._writing("cleanup_expired_deleted_chains"):
            rows = self.conn.execute(
                "SELECT id FROM chains WHERE deleted_at IS NOT NULL AND deleted_at < ?",
                (cutoff.isoformat(),),
            ).fetchall()
            ids = [r["id"] for r in rows]
            if ids:
                self.conn.execute(
                    f"DELETE FROM chains WHERE id IN ({self._marks(ids)})", ids
                )
        if ids:
            logger.info("Cleaned up %d expired deleted chain(s)", len(ids))
        return len(ids)

    # ── Scheduled sessions ──────────────────────────────────────────────────

    def get_scheduled_sessions(self) -> List[ScheduledSession]:
        with self._reading("get_scheduled_sessions"):
            rows = self.conn.execute(
                "SELECT * FROM scheduled_sessions ORDER BY scheduled_at"
            ).fetchall()
        return [
            ScheduledSession(
                chain_id=r["chain_id"],
                scheduled_at=_parse_dt(r["scheduled_at"]),
                expires_at=_parse_dt(r["expires_at"]),
                auxiliary_signal=r["auxiliary_signal"],
            )
            for r in rows
        ]

    def save_scheduled_sessions(self, sessions: List[ScheduledSession]) -> None:
        """Replace the stored bookings with `sessions`."""
        with self._writing("save_scheduled_sessions"):
            self.conn.execute("DELETE FROM scheduled_sessions")
            self.conn.executemany(
                "INSERT INTO scheduled_sessions (chain_id, scheduled_at, expires_at, auxiliary_signal) "
                "VALUES (?, ?, ?, ?)",
                [
                    (s.chain_id, _fmt_dt(s.scheduled_at), _fmt_dt(s.expires_at), s.auxiliary_signal)
                    for s in sessions
                ],
            )

    # ── Active session ──────────────────────────────────────────────────────

    def get_active_session(self) -> Optional[ActiveSession]:
        with self._reading("get_active_session"):
            row = self.conn.execute("SELECT * FROM active_session WHERE slot = 1").fetchone()
        if not row:
            return None
        return ActiveSession(
            chain_id=row["chain_id"],
            started_at=_parse_dt(row["started_at"]),
            duration=row["duration"],
            is_paused=bool(row["is_paused"]),
            paused_at=_parse_dt(row["paused_at"]),
            total_paused_time=row["total_paused_time"],
        )

    def save_active_session(self, session: Optional[ActiveSession]) -> None:
        with self._writing("save_active_session"):
            if session is None:
                self.conn.execute("DELETE FROM active_session")
                return
            self.conn.execute(
                "INSERT OR REPLACE INTO active_session "
                "(slot, chain_id, started_at, duration, is_paused, paused_at, total_paused_time) "
                "VALUES (1, ?, ?, ?, ?, ?, ?)",
                (
                    session.chain_id, _fmt_dt(session.started_at), session.duration,
                    int(session.is_paused), _fmt_dt(session.paused_at),
                    session.total_paused_time,
                ),
            )

    # ── Completion history ──────────────────────────────────────────────────

    def get_completion_history(self) -> List[CompletionHistory]:
        with self._reading("get_completion_history"):
            rows = self.conn.execute(
                "SELECT * FROM completion_history ORDER BY id"
            ).fetchall()
        return [self._row_to_history(r) for r in rows]

    def save_completion_history(self, history: List[CompletionHistory]) -> None:
        """Replace the stored history with `history` (order preserved)."""
        with self._writing("save_completion_history"):
            self.conn.execute("DELETE FROM completion_history")
            self.conn.executemany(
                "INSERT INTO completion_history (chain_id, completed_at, duration, actual_duration, "
                "was_successful, reason_for_failure, is_forward_timed, description, notes) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        h.chain_id, _fmt_dt(h.completed_at), h.duration, h.actual_duration,
                        int(h.was_successful), h.reason_for_failure,
                        int(h.is_forward_timed), h.description, h.notes,
                    )
                    for h in history
                ],
            )

    # ── Time stats ──────────────────────────────────────────────────────────

    def get_task_time_stats(self) -> List[TaskTimeStats]:
        with self._reading("get_task_time_stats"):
            rows = self.conn.execute("SELECT * FROM task_time_stats").fetchall()
        return [
            TaskTimeStats(
                chain_id=r["chain_id"],
                last_completion_time=r["last_completion_time"],
                average_completion_time=r["average_completion_time"],
                total_completions=r["total_completions"],
                total_time=r["total_time"],
            )
            for r in rows
        ]

    def get_task_average_time(self, chain_id: str) -> Optional[int]:
        with self._reading("get_task_average_time"):
            row = self.conn.execute(
                "SELECT average_completion_time FROM task_time_stats WHERE chain_id = ?",
                (chain_id,),
            ).fetchone()
        return row[0] if row else None

    def update_task_time_stats(self, chain_id: str, minutes: int) -> None:
        """Fold one successful completion of `minutes` into the running stats."""
        with self._writing("update_task_time_stats"):
            row = self.conn.execute(
                "SELECT total_completions, total_time FROM task_time_stats WHERE chain_id = ?",
                (chain_id,),
            ).fetchone()
            total_completions = (row["total_completions"] if row else 0) + 1
            total_time = (row["total_time"] if row else 0) + minutes
            self.conn.execute(
                "INSERT OR REPLACE INTO task_time_stats "
                "(chain_id, last_completion_time, average_completion_time, total_completions, total_time) "
                "VALUES (?, ?, ?, ?, ?)",
                (chain_id, minutes, round(total_time / total_completions),
                 total_completions, total_time),
            )

    # ── Internal ────────────────────────────────────────────────────────────

    @contextmanager
    def _writing(self, operation: str) -> Iterator[None]:
        """Commit on success; roll back and raise StorageError on failure."""
        try:
            yield
            self.conn.commit()
        except sqlite3.Error as exc:
            logger.exception("Storage write %s failed", operation)
            try:
                self.conn.rollback()
            except sqlite3.Error:
                logger.warning("Rollback after failed %s also failed", operation)
            raise StorageError(operation, str(exc)) from exc

    @contextmanager
    def _reading(self, operation: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as exc:
            logger.exception("Storage read %s failed", operation)
            raise StorageError(operation, str(exc)) from exc

    def _chain_and_descendant_ids(self, chain_id: str) -> List[str]:
        with self._reading("find_descendants"):
            rows = self.conn.execute("SELECT id, parent_id FROM chains").fetchall()
        known = {r["id"] for r in rows}
        if chain_id not in known:
            return []
        children: Dict[str, List[str]] = {}
        for r in rows:
            if r["parent_id"] and r["parent_id"] != r["id"]:
                children.setdefault(r["parent_id"], []).append(r["id"])

        ids: List[str] = []
        seen = set()
        stack = [chain_id]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            ids.append(current)
            stack.extend(children.get(current, []))
        return ids

    @staticmethod
    def _marks(ids: List[str]) -> str:
        return ",".join("?" * len(ids))

    # ── Row mappers ─────────────────────────────────────────────────────────

    @staticmethod
    def _chain_to_params(c: Chain) -> tuple:
        return (
            c.id, c.name, c.parent_id, c.type.value, c.sort_order, c.trigger,
            c.duration, c.description, int(c.is_durationless), c.auxiliary_signal,
            c.auxiliary_duration, c.auxiliary_completion_trigger, c.current_streak,
            c.auxiliary_streak, c.total_completions, c.total_failures,
            c.auxiliary_failures, c.task_repeat_count, json.dumps(c.exceptions),
            json.dumps(c.auxiliary_exceptions), c.time_limit_hours,
            json.dumps(c.time_limit_exceptions), _fmt_dt(c.group_started_at),
            _fmt_dt(c.group_expires_at), _fmt_dt(c.created_at or datetime.now()),
            _fmt_dt(c.last_completed_at), _fmt_dt(c.deleted_at),
        )

    @staticmethod
    def _row_to_chain(row: sqlite3.Row) -> Chain:
        return Chain(
            id=row["id"], name=row["name"], parent_id=row["parent_id"],
            type=row["type"], sort_order=row["sort_order"],
            trigger=row["trigger_text"], duration=row["duration"],
            description=row["description"],
            is_durationless=bool(row["is_durationless"]),
            auxiliary_signal=row["auxiliary_signal"],
            auxiliary_duration=row["auxiliary_duration"],
            auxiliary_completion_trigger=row["auxiliary_completion_trigger"],
            current_streak=row["current_streak"],
            auxiliary_streak=row["auxiliary_streak"],
            total_completions=row["total_completions"],
            total_failures=row["total_failures"],
            auxiliary_failures=row["auxiliary_failures"],
            task_repeat_count=row["task_repeat_count"],
            exceptions=json.loads(row["exceptions"] or "[]"),
            auxiliary_exceptions=json.loads(row["auxiliary_exceptions"] or "[]"),
            time_limit_hours=row["time_limit_hours"],
            time_limit_exceptions=json.loads(row["time_limit_exceptions"] or "[]"),
            group_started_at=_parse_dt(row["group_started_at"]),
            group_expires_at=_parse_dt(row["group_expires_at"]),
            created_at=_parse_dt(row["created_at"]),
            last_completed_at=_parse_dt(row["last_completed_at"]),
            deleted_at=_parse_dt(row["deleted_at"]),
        )

    @staticmethod
    def _row_to_history(row: sqlite3.Row) -> CompletionHistory:
        return CompletionHistory(
            chain_id=row["chain_id"],
            completed_at=_parse_dt(row["completed_at"]),
            duration=row["duration"],
            actual_duration=row["actual_duration"],
            was_successful=bool(row["was_successful"]),
            reason_for_failure=row["reason_for_failure"],
            is_forward_timed=bool(row["is_forward_timed"]),
            description=row["description"],
            notes=row["notes"],
        )


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   The Repository is the ONLY place raw SQL queries live. Services call
#   methods like repo.save_chains() instead of writing SQL strings. This is
#   the "Repository Pattern."
#
# Key methods:
#   - Chain CRUD plus the recycle bin (soft delete, restore, permanent
#     delete, retention cleanup). Deleting a group always takes its whole
#     subtree with it.
#   - Bookings / active session / history are saved as whole collections,
#     matching how the service layer holds them in memory.
#   - update_task_time_stats(): running average per chain.
#
# Error handling:
#   Every statement runs inside _reading/_writing. A sqlite3.Error becomes a
#   StorageError (after a rollback for writes), so callers can tell "the
#   store failed" apart from programming errors and reload authoritative
#   state.
#
# Interviewer-friendly talking points:
#   1. INSERT OR REPLACE for chains: one statement covers create and update.
#   2. Descendant lookup walks an in-memory parent map with a seen-set, so a
#      corrupted parent cycle in the table cannot loop forever.
