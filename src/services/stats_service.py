"""
Time statistics — how long each chain actually takes.

Works from the completion history, so it needs no extra bookkeeping:
  - summarize(): counts, success rate and duration percentiles
  - suggest_duration(): a recency-weighted estimate for the next session
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import numpy as np

from src.data.models import CompletionHistory
from src.data.storage import Storage

logger = logging.getLogger(__name__)

MIN_SAMPLES_FOR_SUGGESTION = 3


class TimeStatsService:
    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    # ── Public API ──────────────────────────────────────────────────────────

    def summarize(self, chain_id: str) -> Dict[str, Optional[float]]:
        """
        Summary of a chain's history.

        Duration figures cover successful sessions only and are None when
        there are none.
        """
        records = self._records(chain_id)
        successes = [r.actual_duration for r in records if r.was_successful and r.actual_duration]
        summary: Dict[str, Optional[float]] = {
            "count": len(records),
            "success_count": sum(1 for r in records if r.was_successful),
            "success_rate": None,
            "avg_actual_duration": None,
            "median_actual_duration": None,
            "p90_actual_duration": None,
            "total_minutes": 0,
        }
        if records:
            summary["success_rate"] = summary["success_count"] / len(records)
        if successes:
            arr = np.array(successes, dtype=float)
            summary["avg_actual_duration"] = float(np.mean(arr))
            summary["median_actual_duration"] = float(np.median(arr))
            summary["p90_actual_duration"] = float(np.percentile(arr, 90))
            summary["total_minutes"] = int(arr.sum())
        return summary

    def suggest_duration(self, chain_id: str) -> Optional[int]:
        """Recommended minutes for the next session, or None without enough data."""
        values = [
            float(r.actual_duration) for r in self._records(chain_id)
            if r.was_successful and r.actual_duration
        ]
        if len(values) < MIN_SAMPLES_FOR_SUGGESTION:
            return None
        suggestion = int(round(self._exponential_moving_average(values)))
        logger.debug("Suggested %d min for %s from %d sessions", suggestion, chain_id, len(values))
        return max(1, suggestion)

    # ── Internal ────────────────────────────────────────────────────────────

    def _records(self, chain_id: str) -> List[CompletionHistory]:
        return [h for h in self.storage.get_completion_history() if h.chain_id == chain_id]

    @staticmethod
    def _exponential_moving_average(values: List[float], alpha: float = 0.3) -> float:
        """alpha=0.3: the most recent session contributes 30%."""
        ema = values[0]
        for v in values[1:]:
            ema = alpha * v + (1 - alpha) * ema
        return float(ema)


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Turns raw completion records into numbers a user cares about: "I finish
#   this chain 80% of the time and it usually takes 40 minutes."
#
# Key design decisions:
#   - Percentiles over means alone: one forgotten 4-hour forward-timed
#     session would drag the average; the median and p90 stay honest.
#   - EMA with alpha=0.3 for the suggestion, so a user who is getting
#     faster sees the suggestion follow them.
#   - Fewer than 3 successful sessions → None. A suggestion from one data
#     point would just echo it back.
