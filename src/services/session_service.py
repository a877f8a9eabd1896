"""
Session Service — the booking and focus-session state machine.

Handles: booking a chain, starting (including group entry), pause/resume,
completion, interruption, auxiliary judgments, and the streak bookkeeping
each transition triggers.

Two independent lifecycles:
    booking:  idle → scheduled → idle   (expiry, judgment, completion, start)
    focus:    idle → active ⇄ paused → completed | interrupted → idle
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from src.chains.cache import TreeCache
from src.chains.progress import (
    get_next_unit_in_group,
    increment_group_completion_count,
    is_group_fully_completed,
    reset_group_completion_count,
)
from src.chains.time_limit import is_group_expired, reset_group_progress, start_group_timer
from src.chains.tree import find_node
from src.data.models import (
    ActiveSession,
    AppState,
    Chain,
    ChainTreeNode,
    CompletionHistory,
    ScheduledSession,
)
from src.data.storage import Storage, StorageError
from src.services.interfaces import ForwardTimer, Notifier, forward_timer_key
from src.services.notifications import ForwardTimerManager, LogNotifier
from src.services.settings import DEFAULT_CONFIG

logger = logging.getLogger(__name__)

_KEEP = object()


class SessionService:
    """
    Owns the in-memory AppState and every transition that moves streaks.

    Each transition computes its new records first, attempts every storage
    write it needs, and only then swaps the new records into AppState. If any
    write fails, AppState is left untouched and StorageError propagates; call
    reload() to re-sync with the store.

    Calls that don't fit the current state (double booking, resuming a
    running session, completing with no session, ...) are no-ops that
    return None or False.
    """

    def __init__(
        self,
        storage: Storage,
        state: Optional[AppState] = None,
        cache: Optional[TreeCache] = None,
        notifier: Optional[Notifier] = None,
        forward_timer: Optional[ForwardTimer] = None,
        config: Optional[dict] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.storage = storage
        self.state = state if state is not None else AppState()
        self.config = config or DEFAULT_CONFIG.copy()
        self.cache = cache or TreeCache(ttl_seconds=self.config["query_cache_ttl_s"])
        self.notifier = notifier or LogNotifier()
        self.forward_timer = forward_timer or ForwardTimerManager()
        self._now = clock

    # ── Loading ─────────────────────────────────────────────────────────────

    def load(self) -> AppState:
        """Startup load: purge old recycle-bin entries, repair, drop stale bookings."""
        try:
            purged = self.storage.cleanup_expired_deleted_chains(
                self.config["recycle_retention_days"]
            )
            if purged:
                logger.info("Auto-cleaned %d expired deleted chain(s)", purged)
        except StorageError:
            logger.warning("Recycle bin cleanup failed, continuing with load.")

        chains = self.storage.get_active_chains()
        self_refs = [c for c in chains if c.parent_id == c.id]
        if self_refs:
            fixed = [replace(c, parent_id=None) for c in self_refs]
            self.storage.save_chains(fixed)
            self.cache.on_data_change("chains")
            fixed_by_id = {c.id: c for c in fixed}
            chains = [fixed_by_id.get(c.id, c) for c in chains]
            logger.warning("Repaired %d self-referencing chain(s)", len(fixed))

        now = self._now()
        all_scheduled = self.storage.get_scheduled_sessions()
        scheduled = [s for s in all_scheduled if not self._is_expired(s, now)]
        if len(scheduled) != len(all_scheduled):
            self.storage.save_scheduled_sessions(scheduled)

        active = self.storage.get_active_session()
        history = self.storage.get_completion_history()

        self.state.chains = chains
        self.state.scheduled_sessions = scheduled
        self.state.active_session = active
        self.state.completion_history = history
        self.state.pending_judgments = []

        if active is not None:
            chain = self.state.find_chain(active.chain_id)
            if chain is not None and chain.is_durationless:
                key = forward_timer_key(active.chain_id, active.started_at)
                offset = int(self.get_elapsed_seconds(now))
                self.forward_timer.start_timer(key, offset_seconds=offset)
                if active.is_paused:
                    self.forward_timer.pause_timer(key)
                logger.info("Resumed forward timer for %s at %ds (paused=%s)",
                            chain.id, offset, active.is_paused)
        logger.info("Loaded %d chain(s), %d booking(s), active=%s",
                    len(chains), len(scheduled), active.chain_id if active else None)
        return self.state

    def reload(self) -> AppState:
        """Re-fetch authoritative state after a failed transition."""
        self.cache.on_data_change("chains")
        self.cache.on_data_change("sessions")
        self.cache.on_data_change("history")
        batch = self.cache.deduplicate("batchedData", lambda: {
            "chains": self.storage.get_active_chains(),
            "scheduled_sessions": self.storage.get_scheduled_sessions(),
            "active_session": self.storage.get_active_session(),
            "completion_history": self.storage.get_completion_history(),
        })
        self.state.chains = list(batch["chains"])
        self.state.scheduled_sessions = list(batch["scheduled_sessions"])
        self.state.active_session = batch["active_session"]
        self.state.completion_history = list(batch["completion_history"])
        return self.state

    def get_tree(self) -> List[ChainTreeNode]:
        return self.cache.get_tree(self.state.chains)

    # ── Booking ─────────────────────────────────────────────────────────────

    def schedule_chain(self, chain_id: str) -> Optional[ScheduledSession]:
        """Book a chain. Booking itself counts as an auxiliary success."""
        if self.state.find_scheduled(chain_id) is not None:
            logger.info("Chain %s is already booked", chain_id)
            return None
        chain = self.state.find_chain(chain_id)
        if chain is None:
            logger.warning("schedule_chain: unknown chain %s", chain_id)
            return None

        now = self._now()
        booking = ScheduledSession(
            chain_id=chain_id,
            scheduled_at=now,
            expires_at=now + timedelta(minutes=chain.auxiliary_duration),
            auxiliary_signal=chain.auxiliary_signal,
        )
        chains = self._update_chain(chain_id, auxiliary_streak=chain.auxiliary_streak + 1)
        self._save_and_commit(
            "schedule_chain",
            chains=chains,
            scheduled=self.state.scheduled_sessions + [booking],
        )
        logger.info("Booked %s until %s", chain_id, booking.expires_at)
        return booking

    def cancel_scheduled_session(self, chain_id: str) -> bool:
        """Ask for an auxiliary judgment on a booking the user is abandoning."""
        if self.state.find_scheduled(chain_id) is None:
            return False
        self._queue_judgment(chain_id)
        return True

    def complete_booking(self, chain_id: str) -> bool:
        """The booked cue happened: drop the booking, count an auxiliary success."""
        chain = self.state.find_chain(chain_id)
        if chain is None or self.state.find_scheduled(chain_id) is None:
            return False
        chains = self._update_chain(chain_id, auxiliary_streak=chain.auxiliary_streak + 1)
        self._save_and_commit(
            "complete_booking",
            chains=chains,
            scheduled=self._without_booking(chain_id),
        )
        self._drop_judgment(chain_id)
        self.notifier.notify_task_completed(
            f"{chain.name} (booking)", chain.auxiliary_streak + 1, "Booking completed"
        )
        return True

    def judge_auxiliary_failure(self, chain_id: str) -> bool:
        """Judged as a broken booking: reset the auxiliary streak."""
        chain = self._judgeable(chain_id)
        if chain is None:
            return False
        chains = self._update_chain(
            chain_id, auxiliary_streak=0, auxiliary_failures=chain.auxiliary_failures + 1
        )
        self._save_and_commit(
            "judge_auxiliary_failure",
            chains=chains,
            scheduled=self._without_booking(chain_id),
        )
        self._drop_judgment(chain_id)
        logger.info("Auxiliary chain of %s judged failed", chain_id)
        return True

    def judge_auxiliary_allow(self, chain_id: str, exception_rule: str) -> bool:
        """
        Judged as allowed: record `exception_rule` permanently on the chain.

        The rule is matched by exact name from then on (see
        is_exception_pre_approved); streaks are left alone.
        """
        chain = self._judgeable(chain_id)
        if chain is None:
            return False
        rules = list(chain.auxiliary_exceptions)
        if exception_rule not in rules:
            rules.append(exception_rule)
        chains = self._update_chain(chain_id, auxiliary_exceptions=rules)
        self._save_and_commit(
            "judge_auxiliary_allow",
            chains=chains,
            scheduled=self._without_booking(chain_id),
        )
        self._drop_judgment(chain_id)
        logger.info("Auxiliary exception %r added to %s", exception_rule, chain_id)
        return True

    # ── Focus session ───────────────────────────────────────────────────────

    def start_chain(self, chain_id: str) -> Optional[ActiveSession]:
        """Start a unit, or enter a group by starting its next unit."""
        chain = self.state.find_chain(chain_id)
        if chain is None:
            logger.warning("start_chain: unknown chain %s", chain_id)
            return None
        if self.state.active_session is not None:
            logger.warning("start_chain: %s is already running",
                           self.state.active_session.chain_id)
            return None
        if chain.is_group:
            return self._enter_group(chain)
        return self._start_unit(chain)

    def pause_session(self) -> Optional[ActiveSession]:
        session = self.state.active_session
        if session is None or session.is_paused:
            return None
        paused = replace(session, is_paused=True, paused_at=self._now())
        self._save_and_commit("pause_session", active=paused)
        self.forward_timer.pause_timer(forward_timer_key(session.chain_id, session.started_at))
        return paused

    def resume_session(self) -> Optional[ActiveSession]:
        session = self.state.active_session
        if session is None or not session.is_paused or session.paused_at is None:
            return None
        paused_ms = int((self._now() - session.paused_at).total_seconds() * 1000)
        resumed = replace(
            session,
            is_paused=False,
            paused_at=None,
            total_paused_time=session.total_paused_time + paused_ms,
        )
        self._save_and_commit("resume_session", active=resumed)
        self.forward_timer.resume_timer(forward_timer_key(session.chain_id, session.started_at))
        return resumed

    def complete_session(self, description: Optional[str] = None,
                         notes: Optional[str] = None) -> Optional[CompletionHistory]:
        session = self.state.active_session
        if session is None:
            logger.info("complete_session: no active session")
            return None
        chain = self.state.find_chain(session.chain_id)
        if chain is None:
            logger.warning("complete_session: chain %s no longer exists", session.chain_id)
            return None

        now = self._now()
        timer_key = forward_timer_key(session.chain_id, session.started_at)
        actual_duration = session.duration
        if chain.is_durationless:
            actual_duration = math.ceil(self.forward_timer.get_elapsed(timer_key) / 60)

        record = CompletionHistory(
            chain_id=chain.id,
            completed_at=now,
            duration=session.duration,
            actual_duration=actual_duration,
            was_successful=True,
            is_forward_timed=chain.is_durationless,
            description=description,
            notes=notes,
        )
        chains = self._update_chain(
            chain.id,
            current_streak=chain.current_streak + 1,
            total_completions=chain.total_completions + 1,
            last_completed_at=now,
        )

        completed_group = None
        if chain.parent_id and not chain.is_group:
            group = find_node(self.cache.get_tree(chains), chain.parent_id)
            if group is not None and group.is_group and is_group_fully_completed(group):
                chains = increment_group_completion_count(chains, group.id, now)
                completed_group = next(c for c in chains if c.id == group.id)
                logger.info("Group %s finished a cycle", group.id)

        self._save_and_commit(
            "complete_session",
            chains=chains,
            active=None,
            history=self.state.completion_history + [record],
            time_stats=(chain.id, actual_duration) if actual_duration else None,
        )
        if chain.is_durationless:
            self.forward_timer.stop_timer(timer_key)
        self.notifier.notify_task_completed(chain.name, chain.current_streak + 1)
        if completed_group is not None:
            self.notifier.notify_task_completed(
                f"{completed_group.name} (group)", completed_group.current_streak,
                "Group cycle completed",
            )
        return record

    def interrupt_session(self, reason: Optional[str] = None) -> Optional[CompletionHistory]:
        session = self.state.active_session
        if session is None:
            logger.info("interrupt_session: no active session")
            return None
        chain = self.state.find_chain(session.chain_id)
        if chain is None:
            logger.warning("interrupt_session: chain %s no longer exists", session.chain_id)
            return None

        record = CompletionHistory(
            chain_id=chain.id,
            completed_at=self._now(),
            duration=session.duration,
            actual_duration=session.duration,
            was_successful=False,
            reason_for_failure=reason or self.config["default_interrupt_reason"],
            is_forward_timed=chain.is_durationless,
        )
        chains = self._update_chain(
            chain.id, current_streak=0, total_failures=chain.total_failures + 1
        )
        if chain.parent_id and not chain.is_group:
            chains = reset_group_completion_count(chains, chain.parent_id)

        self._save_and_commit(
            "interrupt_session",
            chains=chains,
            active=None,
            history=self.state.completion_history + [record],
        )
        if chain.is_durationless:
            self.forward_timer.clear_timer(forward_timer_key(session.chain_id, session.started_at))
        self.notifier.notify_task_failed(chain.name, record.reason_for_failure)
        return record

    def add_exception(self, exception_rule: str) -> bool:
        """Record an allowed irregular action on the running chain."""
        session = self.state.active_session
        if session is None:
            return False
        chain = self.state.find_chain(session.chain_id)
        if chain is None:
            return False
        rules = list(chain.exceptions)
        if exception_rule not in rules:
            rules.append(exception_rule)
        self._save_and_commit(
            "add_exception", chains=self._update_chain(chain.id, exceptions=rules)
        )
        return True

    def is_exception_pre_approved(self, chain_id: str, rule: str,
                                  auxiliary: bool = False) -> bool:
        """Exact, case-sensitive match against the chain's recorded rules."""
        chain = self.state.find_chain(chain_id)
        if chain is None:
            return False
        rules = chain.auxiliary_exceptions if auxiliary else chain.exceptions
        return rule in rules

    # ── Timing helpers ──────────────────────────────────────────────────────

    def get_elapsed_seconds(self, now: Optional[datetime] = None) -> float:
        """Wall-clock time since start, minus every pause."""
        session = self.state.active_session
        if session is None or session.started_at is None:
            return 0.0
        now = now or self._now()
        elapsed = (now - session.started_at).total_seconds()
        elapsed -= session.total_paused_time / 1000.0
        if session.is_paused and session.paused_at is not None:
            elapsed -= (now - session.paused_at).total_seconds()
        return max(0.0, elapsed)

    def get_remaining_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        """Countdown for timed sessions; None for durationless ones."""
        session = self.state.active_session
        if session is None or session.duration == 0:
            return None
        return max(0.0, session.duration * 60 - self.get_elapsed_seconds(now))

    # ── Periodic sweeps (idempotent) ────────────────────────────────────────

    def sweep_expired_sessions(self, now: Optional[datetime] = None) -> List[str]:
        """Drop expired bookings and queue a judgment for each one."""
        now = now or self._now()
        expired = [s for s in self.state.scheduled_sessions if self._is_expired(s, now)]
        if not expired:
            return []
        remaining = [s for s in self.state.scheduled_sessions if not self._is_expired(s, now)]
        self._save_and_commit("sweep_expired_sessions", scheduled=remaining)

        expired_ids = [s.chain_id for s in expired]
        for chain_id in expired_ids:
            chain = self.state.find_chain(chain_id)
            if chain is not None:
                self.notifier.notify_schedule_failed(chain.name)
            self._queue_judgment(chain_id)
        logger.info("Booking(s) expired: %s", expired_ids)
        return expired_ids

    def sweep_expired_groups(self, now: Optional[datetime] = None) -> List[str]:
        """Force-reset every time-limited group whose window has closed."""
        now = now or self._now()
        expired_ids = [c.id for c in self.state.chains if is_group_expired(c, now)]
        if not expired_ids:
            return []
        chains = list(self.state.chains)
        for group_id in expired_ids:
            chains = reset_group_progress(chains, group_id)
        self._save_and_commit("sweep_expired_groups", chains=chains)
        logger.info("Group time limit exceeded, progress reset: %s", expired_ids)
        return expired_ids

    # ── Internal ────────────────────────────────────────────────────────────

    def _start_unit(self, chain: Chain,
                    chains: Optional[List[Chain]] = None) -> ActiveSession:
        """Begin a focus session on a leaf.

        ``chains`` carries pending chain edits (a freshly started group
        clock) that must land in the same commit as the session.
        """
        chain_id = chain.id
        now = self._now()
        session = ActiveSession(
            chain_id=chain_id,
            started_at=now,
            duration=0 if chain.is_durationless else chain.duration,
        )
        booking = self.state.find_scheduled(chain_id)
        if booking is not None:
            chains = [
                replace(c, auxiliary_streak=chain.auxiliary_streak + 1) if c.id == chain_id else c
                for c in (chains if chains is not None else self.state.chains)
            ]

        self._save_and_commit(
            "start_chain",
            chains=chains,
            scheduled=self._without_booking(chain_id),
            active=session,
        )
        if chain.is_durationless:
            self.forward_timer.start_timer(forward_timer_key(chain_id, now))
        if booking is not None:
            self._drop_judgment(chain_id)
            self.notifier.notify_task_completed(
                f"{chain.name} (booking)", chain.auxiliary_streak + 1, "Booking completed"
            )
        logger.info("Started %s (%s min)", chain_id, session.duration or "forward-timed")
        return session

    def _enter_group(self, group: Chain) -> Optional[ActiveSession]:
        now = self._now()
        if is_group_expired(group, now):
            self._save_and_commit(
                "start_chain", chains=reset_group_progress(self.state.chains, group.id)
            )
            self.notifier.notify_task_failed(group.name, "Group time limit exceeded")
            return None

        node = find_node(self.get_tree(), group.id)
        if node is None:
            logger.error("start_chain: group %s missing from tree", group.id)
            return None
        unit = get_next_unit_in_group(node)
        if unit is None:
            self.notifier.notify_task_completed(group.name, 0, "All tasks complete")
            return None

        chains = None
        if group.time_limit_hours and group.group_started_at is None:
            started = start_group_timer(group, now)
            chains = [started if c.id == group.id else c for c in self.state.chains]
            logger.info("Group %s clock starts, expires %s", group.id, started.group_expires_at)
        logger.info("Group %s continues with %s", group.id, unit.id)
        return self._start_unit(self.state.find_chain(unit.id), chains)

    def _save_and_commit(
        self,
        operation: str,
        chains: Optional[List[Chain]] = None,
        scheduled: Optional[List[ScheduledSession]] = None,
        active=_KEEP,
        history: Optional[List[CompletionHistory]] = None,
        time_stats: Optional[tuple] = None,
    ) -> None:
        writes = []
        if chains is not None:
            writes.append(("chains", lambda: self.storage.save_chains(chains)))
        if scheduled is not None:
            writes.append(("sessions", lambda: self.storage.save_scheduled_sessions(scheduled)))
        if active is not _KEEP:
            writes.append(("sessions", lambda: self.storage.save_active_session(active)))
        if history is not None:
            writes.append(("history", lambda: self.storage.save_completion_history(history)))
        if time_stats is not None:
            writes.append(("history", lambda: self.storage.update_task_time_stats(*time_stats)))

        failures: List[StorageError] = []
        for data_type, write in writes:
            try:
                write()
            except StorageError as exc:
                failures.append(exc)
            finally:
                self.cache.on_data_change(data_type)

        if failures:
            logger.error("%s: %d of %d write(s) failed; reload required",
                         operation, len(failures), len(writes))
            raise failures[0]

        if chains is not None:
            self.state.chains = chains
        if scheduled is not None:
            self.state.scheduled_sessions = scheduled
        if active is not _KEEP:
            self.state.active_session = active
        if history is not None:
            self.state.completion_history = history

    def _update_chain(self, chain_id: str, **changes) -> List[Chain]:
        return [replace(c, **changes) if c.id == chain_id else c for c in self.state.chains]

    def _without_booking(self, chain_id: str) -> List[ScheduledSession]:
        return [s for s in self.state.scheduled_sessions if s.chain_id != chain_id]

    def _judgeable(self, chain_id: str) -> Optional[Chain]:
        if (chain_id not in self.state.pending_judgments
                and self.state.find_scheduled(chain_id) is None):
            logger.info("No booking awaiting judgment for %s", chain_id)
            return None
        return self.state.find_chain(chain_id)

    def _queue_judgment(self, chain_id: str) -> None:
        if chain_id not in self.state.pending_judgments:
            self.state.pending_judgments.append(chain_id)

    def _drop_judgment(self, chain_id: str) -> None:
        if chain_id in self.state.pending_judgments:
            self.state.pending_judgments.remove(chain_id)

    @staticmethod
    def _is_expired(session: ScheduledSession, now: datetime) -> bool:
        return session.expires_at is not None and now > session.expires_at


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   The state machine behind the chain time-delay protocol. A booking is a
#   short pre-commitment ("I'll start within 15 minutes"); the focus session
#   is the real work. Both move streak counters.
#
# Transition summary:
#   - schedule:  auxiliary streak +1 immediately.
#   - start:     a pending booking is absorbed as a second auxiliary +1.
#                Starting a group starts its next unfinished unit (after the
#                group time-limit check).
#   - complete:  streak +1; may close the parent group's cycle.
#   - interrupt: streak to 0, and the parent group's streak to 0 too.
#   - judgment:  failure resets the auxiliary streak; allow records a
#                permanent, named exception instead.
#
# Data flow:
#   User action → SessionService.method() → new records computed →
#   Repository writes → AppState swapped → Notifier informed.
#
# Interviewer-friendly talking points:
#   1. Compute, write, then commit: if the store rejects a write, memory
#      still shows the pre-transition state, and reload() fetches the
#      truth. No half-applied transition is ever visible.
#   2. Out-of-order calls are no-ops, not exceptions. Completing with no
#      session returns None, so a stray timer callback can't crash the app.
#   3. Sweeps are idempotent: once an expired booking is dropped, the next
#      sweep finds nothing, so a penalty is never applied twice.
