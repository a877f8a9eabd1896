"""
Group Progress Engine — completion queries and group-cycle transitions.

Two progress notions are kept apart on purpose:
  * repeat progress: how many repetitions are done out of how many required
  * unit progress:   how many units are fully done out of how many exist
                     (the "X/Y completed" figure users see)

Every non-group chain type counts as an executable unit.

The transition helpers are pure: they take a list of chains and return a new
list with replaced records, leaving their input untouched.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from src.chains.tree import build_tree, collect_unit_ids, find_node
from src.data.models import Chain, ChainTreeNode

logger = logging.getLogger(__name__)


def _required(node: Chain) -> int:
    return node.task_repeat_count or 1


# ── Queries ─────────────────────────────────────────────────────────────────

def get_group_progress(node: ChainTreeNode) -> Dict[str, int]:
    """Repeat-level progress: {'completed': n, 'total': m}."""
    if not node.is_group:
        required = _required(node)
        return {"completed": min(node.current_streak, required), "total": required}

    completed = total = 0
    for child in node.children:
        progress = get_group_progress(child)
        completed += progress["completed"]
        total += progress["total"]
    return {"completed": completed, "total": total}


def get_group_unit_progress(node: ChainTreeNode) -> Dict[str, int]:
    """Unit-level progress: {'completed': done units, 'total': units}."""
    if not node.is_group:
        done = node.current_streak >= _required(node)
        return {"completed": 1 if done else 0, "total": 1}

    completed = total = 0
    for child in node.children:
        progress = get_group_unit_progress(child)
        completed += progress["completed"]
        total += progress["total"]
    return {"completed": completed, "total": total}


def get_next_unit_in_group(node: ChainTreeNode) -> Optional[ChainTreeNode]:
    """First unfinished unit in depth-first, sort_order order, or None."""
    if not node.is_group:
        return node if node.current_streak < _required(node) else None

    for child in node.children:
        unit = get_next_unit_in_group(child)
        if unit is not None:
            return unit
    return None


def is_group_fully_completed(node: ChainTreeNode) -> bool:
    if not node.is_group:
        return node.current_streak >= _required(node)
    return all(is_group_fully_completed(child) for child in node.children)


def is_task_completed(node: Chain) -> bool:
    if node.is_group:
        return False
    return node.current_streak >= _required(node)


def get_remaining_repeats(node: Chain) -> int:
    if node.is_group:
        return 0
    return max(0, _required(node) - node.current_streak)


# ── Transitions ─────────────────────────────────────────────────────────────

def reset_group_task_progress(chains: List[Chain], group_id: str) -> List[Chain]:
    """Zero current_streak on every unit below the group. Group counters stay."""
    group = find_node(build_tree(chains), group_id)
    if group is None or not group.is_group:
        logger.warning("reset_group_task_progress: %s is not a known group", group_id)
        return list(chains)

    unit_ids = set(collect_unit_ids(group))
    logger.info("Resetting progress of %d unit(s) in group %s", len(unit_ids), group_id)
    return [
        replace(c, current_streak=0) if c.id in unit_ids else c
        for c in chains
    ]


def increment_group_completion_count(chains: List[Chain], group_id: str,
                                     now: Optional[datetime] = None) -> List[Chain]:
    """Close one group cycle: bump the group's counters, then reset its units."""
    now = now or datetime.now()
    updated: List[Chain] = []
    for c in chains:
        if c.id == group_id and c.is_group:
            c = replace(
                c,
                current_streak=c.current_streak + 1,
                total_completions=c.total_completions + 1,
                last_completed_at=now,
                group_started_at=None,
                group_expires_at=None,
            )
        updated.append(c)
    return reset_group_task_progress(updated, group_id)


def reset_group_completion_count(chains: List[Chain], group_id: str) -> List[Chain]:
    """A unit in the group failed: break the group's streak, keep unit progress."""
    return [
        replace(c, current_streak=0, total_failures=c.total_failures + 1)
        if c.id == group_id and c.is_group else c
        for c in chains
    ]


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Answers "how far along is this group?" and "what should I do next?",
#   and performs the two group-cycle transitions.
#
# Key rules:
#   - A unit is done for this cycle once current_streak >= task_repeat_count.
#   - Next unit = first not-done unit in depth-first, sort_order order.
#   - Group cycle complete: group streak +1, then every unit below it goes
#     back to 0 so the next cycle starts fresh.
#   - Unit failure: only the group's own streak drops to 0 (plus a failure
#     count). Finished siblings keep their progress so the user can resume.
#
# Interviewer-friendly talking points:
#   1. The asymmetry between success (reset units) and failure (keep units)
#      is a product decision: failing one subtask shouldn't erase work
#      already done in the cycle.
#   2. Pure list-in/list-out transitions make the state machine easy to test
#      and let the caller persist everything in one save.
#   3. A completed time-limited cycle also clears the group clock, so the
#      next cycle gets its own full window.
