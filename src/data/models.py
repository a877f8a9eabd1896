"""
Data models for the chain tracker.

These are plain dataclasses that represent stored records. They decouple the
rest of the app from raw SQL rows so every layer speaks the same "language."
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import List, Optional

MIN_TIME_LIMIT_HOURS = 1
MAX_TIME_LIMIT_HOURS = 168


class ChainType(str, Enum):
    """
    Chain classification.

    Only GROUP is structurally different. Every other member is a flavor of
    a unit and behaves exactly like UNIT.
    """
    UNIT = "unit"
    GROUP = "group"
    ASSAULT = "assault"
    RECON = "recon"
    COMMAND = "command"
    SPECIAL_OPS = "special_ops"
    ENGINEERING = "engineering"
    QUARTERMASTER = "quartermaster"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ChainType":
        try:
            return cls(value)
        except ValueError:
            return cls.UNIT


@dataclass
class Chain:
    """A single trackable task (unit) or task-group record."""
    id: str = ""
    name: str = ""
    parent_id: Optional[str] = None
    type: ChainType = ChainType.UNIT
    sort_order: int = 0

    # Scheduling payload
    trigger: str = ""
    duration: int = 45               # minutes
    description: str = ""
    is_durationless: bool = False

    # Auxiliary (booking) payload
    auxiliary_signal: str = ""
    auxiliary_duration: int = 15     # minutes
    auxiliary_completion_trigger: str = ""

    # Counters, only moved by the session state machine
    current_streak: int = 0
    auxiliary_streak: int = 0
    total_completions: int = 0
    total_failures: int = 0
    auxiliary_failures: int = 0

    task_repeat_count: int = 1
    exceptions: List[str] = field(default_factory=list)
    auxiliary_exceptions: List[str] = field(default_factory=list)

    # Group-only
    time_limit_hours: Optional[float] = None
    time_limit_exceptions: List[str] = field(default_factory=list)
    group_started_at: Optional[datetime] = None
    group_expires_at: Optional[datetime] = None

    created_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.type = ChainType.parse(self.type)
        if not self.task_repeat_count or self.task_repeat_count < 1:
            self.task_repeat_count = 1
        if self.time_limit_hours is not None:
            self.time_limit_hours = max(
                MIN_TIME_LIMIT_HOURS, min(MAX_TIME_LIMIT_HOURS, self.time_limit_hours)
            )

    @property
    def is_group(self) -> bool:
        return self.type == ChainType.GROUP

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class ChainTreeNode(Chain):
    """A Chain decorated with its children. Built fresh, never persisted."""
    children: List["ChainTreeNode"] = field(default_factory=list)
    depth: int = 0

    @classmethod
    def from_chain(cls, chain: Chain) -> "ChainTreeNode":
        return cls(**{f.name: getattr(chain, f.name) for f in fields(Chain)})


@dataclass
class ScheduledSession:
    """An in-flight booking for one chain."""
    chain_id: str = ""
    scheduled_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    auxiliary_signal: str = ""


@dataclass
class ActiveSession:
    """
    The currently running focus timer.

    duration is 0 for durationless chains; those are measured forward.
    total_paused_time is in milliseconds.
    """
    chain_id: str = ""
    started_at: Optional[datetime] = None
    duration: int = 0
    is_paused: bool = False
    paused_at: Optional[datetime] = None
    total_paused_time: int = 0


@dataclass
class CompletionHistory:
    """One session outcome. Append-only."""
    chain_id: str = ""
    completed_at: Optional[datetime] = None
    duration: int = 0                # planned, minutes
    actual_duration: Optional[int] = None
    was_successful: bool = True
    reason_for_failure: Optional[str] = None
    is_forward_timed: bool = False
    description: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class TaskTimeStats:
    """Running time totals per chain, updated on each successful completion."""
    chain_id: str = ""
    last_completion_time: int = 0
    average_completion_time: int = 0
    total_completions: int = 0
    total_time: int = 0


@dataclass
class AppState:
    """In-memory copy of everything the engine works on."""
    chains: List[Chain] = field(default_factory=list)
    scheduled_sessions: List[ScheduledSession] = field(default_factory=list)
    active_session: Optional[ActiveSession] = None
    completion_history: List[CompletionHistory] = field(default_factory=list)
    pending_judgments: List[str] = field(default_factory=list)

    def find_chain(self, chain_id: str) -> Optional[Chain]:
        for chain in self.chains:
            if chain.id == chain_id:
                return chain
        return None

    def find_scheduled(self, chain_id: str) -> Optional[ScheduledSession]:
        for session in self.scheduled_sessions:
            if session.chain_id == chain_id:
                return session
        return None


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Defines the "shape" of every record in the system as Python dataclasses.
#   They carry data but have no database logic themselves.
#
# Key classes and why they exist:
#   - Chain: the one record type for both tasks and task groups. A group is
#     just a Chain whose type is GROUP; its children point at it through
#     parent_id. That keeps storage flat (one table).
#   - ChainTreeNode: a Chain plus children/depth, rebuilt from flat records
#     whenever the structure is read.
#   - ScheduledSession / ActiveSession: the two in-flight timers (booking
#     and focus).
#   - CompletionHistory: one row per outcome, never edited.
#   - AppState: the in-memory snapshot services mutate and persist.
#
# Interviewer-friendly talking points:
#   1. Flat storage + rebuilt tree: parent pointers are trivial to store and
#      move, and the tree is cheap to rebuild for a personal-sized dataset.
#   2. __post_init__ normalization: bad repeat counts and out-of-range time
#      limits are clamped at the edge, so the engine never sees them.
#   3. Subclassing for the tree node means progress code reads
#      node.current_streak directly with no wrapper indirection.
