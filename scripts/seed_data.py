"""
Seed Data Generator — creates a demo chain tree with some history.

Run: python scripts/seed_data.py [days]
"""

import random
import sys
from datetime import datetime, timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.chains.cache import TreeCache
from src.data.database import Database
from src.data.models import AppState, Chain, ChainType, CompletionHistory
from src.data.repository import Repository
from src.services.chain_service import ChainService


def seed(days: int = 30) -> None:
    db = Database()
    db.connect()
    repo = Repository(db.conn)
    chains = ChainService(repo, AppState(chains=repo.get_active_chains()), TreeCache())

    # ── Chains ──────────────────────────────────────────────────────────
    reading = chains.save_chain(Chain(
        name="Morning reading", trigger="Coffee poured", duration=25,
        auxiliary_signal="Phone in drawer", auxiliary_duration=10,
    ))
    journal = chains.save_chain(Chain(
        name="Journal", trigger="After reading", is_durationless=True,
    ))
    group = chains.save_chain(Chain(
        name="Exam prep", type=ChainType.GROUP, time_limit_hours=48,
    ))
    unit_specs = [
        ("Flashcards", ChainType.RECON, 15, 2),
        ("Practice problems", ChainType.ASSAULT, 45, 1),
        ("Review mistakes", ChainType.ENGINEERING, 20, 1),
    ]
    for order, (name, kind, minutes, repeats) in enumerate(unit_specs):
        chains.save_chain(Chain(
            name=name, type=kind, duration=minutes, task_repeat_count=repeats,
            parent_id=group.id, sort_order=order,
        ))

    # ── History ─────────────────────────────────────────────────────────
    base_date = datetime.now() - timedelta(days=days)
    history = []
    for i in range(days):
        for chain in (reading, journal):
            done_at = base_date + timedelta(days=i, hours=random.randint(7, 10))
            ok = random.random() < 0.8
            planned = 0 if chain.is_durationless else chain.duration
            actual = random.randint(5, 40) if chain.is_durationless else planned
            history.append(CompletionHistory(
                chain_id=chain.id,
                completed_at=done_at,
                duration=planned,
                actual_duration=actual,
                was_successful=ok,
                reason_for_failure=None if ok else "Got distracted",
                is_forward_timed=chain.is_durationless,
            ))
            if ok:
                repo.update_task_time_stats(chain.id, actual)
    repo.save_completion_history(history)

    db.close()
    print(f"Seeded {len(chains.state.chains)} chains and {len(history)} history records.")


if __name__ == "__main__":
    count = int(sys.argv[1]) if len(sys.argv) > 1 else 30
    seed(count)


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this script does:
#   Builds a small but representative tree (two standalone chains and a
#   time-limited group of three units) plus a month of history, so the
#   stats and group views have something to show.
#
# Key points:
#   - Goes through ChainService and Repository like the real app does, so
#     ids, created_at stamps and time stats are filled in the normal way.
#   - One durationless chain exercises the forward-timed history path.
