"""
Chain store: SQLite schema and connection lifecycle.

The schema lives here as SCHEMA_SQL and is stamped with PRAGMA user_version.
Queries belong in Repository.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
DEFAULT_DB_PATH = Path(__file__).resolve().parent.parent.parent / "chain_tracker.db"

SCHEMA_SQL = """
-- Chains (units and groups, flat) --------------------------------------------
CREATE TABLE IF NOT EXISTS chains (
    id                          TEXT    PRIMARY KEY,
    name                        TEXT    NOT NULL DEFAULT '',
    parent_id                   TEXT,
    type                        TEXT    NOT NULL DEFAULT 'unit',
    sort_order                  INTEGER NOT NULL DEFAULT 0,
    trigger_text                TEXT    NOT NULL DEFAULT '',
    duration                    INTEGER NOT NULL DEFAULT 45,
    description                 TEXT    NOT NULL DEFAULT '',
    is_durationless             INTEGER NOT NULL DEFAULT 0,
    auxiliary_signal            TEXT    NOT NULL DEFAULT '',
    auxiliary_duration          INTEGER NOT NULL DEFAULT 15,
    auxiliary_completion_trigger TEXT   NOT NULL DEFAULT '',
    current_streak              INTEGER NOT NULL DEFAULT 0,
    auxiliary_streak            INTEGER NOT NULL DEFAULT 0,
    total_completions           INTEGER NOT NULL DEFAULT 0,
    total_failures              INTEGER NOT NULL DEFAULT 0,
    auxiliary_failures          INTEGER NOT NULL DEFAULT 0,
    task_repeat_count           INTEGER NOT NULL DEFAULT 1,
    exceptions                  TEXT    NOT NULL DEFAULT '[]',
    auxiliary_exceptions        TEXT    NOT NULL DEFAULT '[]',
    time_limit_hours            REAL,
    time_limit_exceptions       TEXT    NOT NULL DEFAULT '[]',
    group_started_at            TEXT,
    group_expires_at            TEXT,
    created_at                  TEXT    NOT NULL DEFAULT (datetime('now')),
    last_completed_at           TEXT,
    deleted_at                  TEXT
);

-- Bookings --------------------------------------------------------------------
CREATE TABLE IF NOT EXISTS scheduled_sessions (
    chain_id            TEXT    PRIMARY KEY,
    scheduled_at        TEXT    NOT NULL,
    expires_at          TEXT    NOT NULL,
    auxiliary_signal    TEXT    NOT NULL DEFAULT ''
);

-- The single running focus session -----------------------------------------------
CREATE TABLE IF NOT EXISTS active_session (
    slot                INTEGER PRIMARY KEY CHECK (slot = 1),
    chain_id            TEXT    NOT NULL,
    started_at          TEXT    NOT NULL,
    duration            INTEGER NOT NULL DEFAULT 0,
    is_paused           INTEGER NOT NULL DEFAULT 0,
    paused_at           TEXT,
    total_paused_time   INTEGER NOT NULL DEFAULT 0
);

-- Completion history (append-only) --------------------------------------------
CREATE TABLE IF NOT EXISTS completion_history (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    chain_id            TEXT    NOT NULL,
    completed_at        TEXT    NOT NULL,
    duration            INTEGER NOT NULL DEFAULT 0,
    actual_duration     INTEGER,
    was_successful      INTEGER NOT NULL,
    reason_for_failure  TEXT,
    is_forward_timed    INTEGER NOT NULL DEFAULT 0,
    description         TEXT,
    notes               TEXT
);

-- Per-chain time stats -----------------------------------------------------------
CREATE TABLE IF NOT EXISTS task_time_stats (
    chain_id                TEXT    PRIMARY KEY,
    last_completion_time    INTEGER NOT NULL DEFAULT 0,
    average_completion_time INTEGER NOT NULL DEFAULT 0,
    total_completions       INTEGER NOT NULL DEFAULT 0,
    total_time              INTEGER NOT NULL DEFAULT 0
);

-- Indexes for common queries -------------------------------------------------
CREATE INDEX IF NOT EXISTS idx_chains_parent    ON chains(parent_id);
CREATE INDEX IF NOT EXISTS idx_chains_deleted   ON chains(deleted_at);
CREATE INDEX IF NOT EXISTS idx_history_chain    ON completion_history(chain_id);
"""


class Database:
    """Owns the chain store's SQLite connection."""

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = db_path or DEFAULT_DB_PATH
        self.conn: Optional[sqlite3.Connection] = None

    # -- lifecycle -----------------------------------------------------------

    def connect(self) -> sqlite3.Connection:
        """Open the chain store (once) and bring its schema up to date."""
        if self.conn is None:
            logger.info("Opening chain store at %s", self.db_path)
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self.conn = conn
            self._ensure_schema()
        return self.conn

    def close(self) -> None:
        if self.conn is None:
            return
        self.conn.close()
        self.conn = None
        logger.info("Chain store closed.")

    # -- internal ------------------------------------------------------------

    def _ensure_schema(self) -> None:
        found = self.conn.execute("PRAGMA user_version").fetchone()[0]
        self.conn.executescript(SCHEMA_SQL)
        if found != SCHEMA_VERSION:
            self.conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            logger.info("Chain store schema v%d -> v%d", found, SCHEMA_VERSION)
        self.conn.commit()


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Manages the SQLite connection and makes sure all tables exist on startup.
#
# Key pieces:
#   - SCHEMA_SQL: the full DDL. CREATE IF NOT EXISTS makes it idempotent,
#     so it is safe to run every launch.
#   - chains is deliberately flat: parent_id is a plain column with no
#     foreign key, because a dangling parent is repaired on load rather than
#     rejected on write.
#   - active_session has a CHECK (slot = 1) so the table can never hold
#     more than one running session.
#
# Interviewer-friendly talking points:
#   1. Lists (exception names) are stored as JSON text. They are only ever
#      read whole, so a child table would add joins for no benefit.
#   2. Soft delete is a nullable deleted_at column plus an index, which
#      keeps "active chains" a cheap IS NULL filter.
