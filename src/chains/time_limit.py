"""
Wall-clock limits for time-boxed task groups.

A group with time_limit_hours starts its clock on first entry. If the window
closes before the cycle completes, the group is force-reset the next time it
is touched (on entry or by the periodic sweep): unit progress is voided and
the clock cleared.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from src.chains.progress import reset_group_task_progress
from src.data.models import Chain


def start_group_timer(chain: Chain, now: Optional[datetime] = None) -> Chain:
    if not chain.is_group or not chain.time_limit_hours:
        return chain
    now = now or datetime.now()
    return replace(
        chain,
        group_started_at=now,
        group_expires_at=now + timedelta(hours=chain.time_limit_hours),
    )


def is_group_expired(chain: Chain, now: Optional[datetime] = None) -> bool:
    if not chain.is_group or not chain.time_limit_hours or chain.group_expires_at is None:
        return False
    return (now or datetime.now()) > chain.group_expires_at


def reset_group_progress(chains: List[Chain], group_id: str) -> List[Chain]:
    """Force-reset an expired group: clear its clock and its units' streaks."""
    cleared = [
        replace(c, group_started_at=None, group_expires_at=None) if c.id == group_id else c
        for c in chains
    ]
    return reset_group_task_progress(cleared, group_id)


def get_group_time_status(chain: Chain, now: Optional[datetime] = None) -> Dict[str, object]:
    now = now or datetime.now()
    if not chain.is_group or not chain.time_limit_hours:
        return {"has_limit": False, "is_running": False, "is_expired": False,
                "remaining_seconds": None}
    if chain.group_expires_at is None:
        return {"has_limit": True, "is_running": False, "is_expired": False,
                "remaining_seconds": int(chain.time_limit_hours * 3600)}
    remaining = int((chain.group_expires_at - now).total_seconds())
    return {
        "has_limit": True,
        "is_running": now <= chain.group_expires_at,
        "is_expired": now > chain.group_expires_at,
        "remaining_seconds": max(0, remaining),
    }
