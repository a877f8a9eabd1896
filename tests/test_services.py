"""Unit tests for the service layer."""

import sqlite3
import pytest
from datetime import datetime, timedelta
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.data.database import SCHEMA_SQL
from src.data.models import ActiveSession, Chain, ChainType, ScheduledSession
from src.data.repository import Repository
from src.data.storage import StorageError
from src.services.interfaces import forward_timer_key
from src.services.notifications import ForwardTimerManager
from src.services.session_service import SessionService

NOW = datetime(2024, 5, 1, 9, 0)


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now += timedelta(**kw)


class RecordingNotifier:
    def __init__(self):
        self.completed = []
        self.failed = []
        self.schedule_failed = []

    def notify_task_completed(self, name, streak, message=None):
        self.completed.append((name, streak, message))

    def notify_task_failed(self, name, reason):
        self.failed.append((name, reason))

    def notify_schedule_failed(self, name):
        self.schedule_failed.append(name)


class FakeForwardTimer:
    def __init__(self, elapsed=0):
        self.elapsed = elapsed
        self.started = []
        self.offsets = {}
        self.stopped = []
        self.cleared = []
        self.paused = []
        self.resumed = []

    def start_timer(self, key, offset_seconds=0):
        self.started.append(key)
        self.offsets[key] = offset_seconds

    def pause_timer(self, key):
        self.paused.append(key)

    def resume_timer(self, key):
        self.resumed.append(key)

    def get_elapsed(self, key):
        return self.elapsed

    def stop_timer(self, key):
        self.stopped.append(key)
        return self.elapsed

    def clear_timer(self, key):
        self.cleared.append(key)


class FailingRepository(Repository):
    """Repository whose named write methods raise StorageError."""

    def __init__(self, conn):
        super().__init__(conn)
        self.fail_on = set()

    def _maybe_fail(self, operation):
        if operation in self.fail_on:
            raise StorageError(operation, "disk full")

    def save_chains(self, chains):
        self._maybe_fail("save_chains")
        super().save_chains(chains)

    def save_scheduled_sessions(self, sessions):
        self._maybe_fail("save_scheduled_sessions")
        super().save_scheduled_sessions(sessions)

    def save_active_session(self, session):
        self._maybe_fail("save_active_session")
        super().save_active_session(session)


@pytest.fixture
def repo():
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    return FailingRepository(conn)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def timer():
    return FakeForwardTimer()


@pytest.fixture
def svc(repo, clock, notifier, timer):
    repo.save_chains([
        Chain(id="x", name="Read", duration=25, auxiliary_duration=15),
        Chain(id="free", name="Journal", is_durationless=True),
        Chain(id="g", name="Study", type=ChainType.GROUP, sort_order=1),
        Chain(id="a", name="Flashcards", parent_id="g", sort_order=0, duration=10),
        Chain(id="b", name="Problems", parent_id="g", sort_order=1, duration=30),
        Chain(id="empty", name="Empty group", type=ChainType.GROUP, sort_order=2),
        Chain(id="tl", name="Timed group", type=ChainType.GROUP, time_limit_hours=1),
        Chain(id="t1", name="Timed unit", parent_id="tl", duration=10),
    ])
    service = SessionService(repo, notifier=notifier, forward_timer=timer, clock=clock)
    service.load()
    return service


def _chain(svc, chain_id):
    return svc.state.find_chain(chain_id)


def _stored(repo, chain_id):
    return next(c for c in repo.get_chains() if c.id == chain_id)


class TestBooking:
    def test_schedule_creates_booking_and_counts_success(self, svc, repo):
        booking = svc.schedule_chain("x")
        assert booking.expires_at == booking.scheduled_at + timedelta(minutes=15)
        assert _chain(svc, "x").auxiliary_streak == 1
        assert _stored(repo, "x").auxiliary_streak == 1
        assert [s.chain_id for s in repo.get_scheduled_sessions()] == ["x"]

    def test_double_booking_is_noop(self, svc):
        svc.schedule_chain("x")
        assert svc.schedule_chain("x") is None
        assert _chain(svc, "x").auxiliary_streak == 1
        assert len(svc.state.scheduled_sessions) == 1

    def test_unknown_chain(self, svc):
        assert svc.schedule_chain("nope") is None

    def test_expiry_then_judged_failure(self, svc, repo, clock, notifier):
        svc.schedule_chain("x")
        clock.advance(minutes=16)
        assert svc.sweep_expired_sessions() == ["x"]
        assert svc.state.scheduled_sessions == []
        assert repo.get_scheduled_sessions() == []
        assert svc.state.pending_judgments == ["x"]
        assert notifier.schedule_failed == ["Read"]

        assert svc.judge_auxiliary_failure("x")
        chain = _chain(svc, "x")
        assert chain.auxiliary_streak == 0
        assert chain.auxiliary_failures == 1
        assert svc.state.pending_judgments == []

    def test_sweep_is_idempotent(self, svc, clock):
        svc.schedule_chain("x")
        clock.advance(minutes=16)
        svc.sweep_expired_sessions()
        assert svc.sweep_expired_sessions() == []
        assert svc.state.pending_judgments == ["x"]

    def test_sweep_leaves_live_bookings(self, svc, clock):
        svc.schedule_chain("x")
        clock.advance(minutes=14)
        assert svc.sweep_expired_sessions() == []
        assert svc.state.find_scheduled("x") is not None

    def test_judgment_without_booking_is_noop(self, svc):
        assert not svc.judge_auxiliary_failure("x")
        assert _chain(svc, "x").auxiliary_failures == 0

    def test_judged_allow_records_rule_once(self, svc):
        svc.schedule_chain("x")
        assert svc.judge_auxiliary_allow("x", "Urgent call")
        svc.schedule_chain("x")
        assert svc.judge_auxiliary_allow("x", "Urgent call")
        chain = _chain(svc, "x")
        assert chain.auxiliary_exceptions == ["Urgent call"]
        assert chain.auxiliary_streak == 2
        assert svc.state.scheduled_sessions == []

    def test_pre_approved_is_exact_match(self, svc):
        svc.schedule_chain("x")
        svc.judge_auxiliary_allow("x", "Urgent call")
        assert svc.is_exception_pre_approved("x", "Urgent call", auxiliary=True)
        assert not svc.is_exception_pre_approved("x", "urgent call", auxiliary=True)
        assert not svc.is_exception_pre_approved("x", "Urgent call")

    def test_cancel_queues_judgment(self, svc):
        svc.schedule_chain("x")
        assert svc.cancel_scheduled_session("x")
        assert svc.state.pending_judgments == ["x"]
        assert not svc.cancel_scheduled_session("free")

    def test_complete_booking(self, svc, notifier):
        svc.schedule_chain("x")
        assert svc.complete_booking("x")
        assert _chain(svc, "x").auxiliary_streak == 2
        assert svc.state.scheduled_sessions == []
        assert notifier.completed[-1][2] == "Booking completed"


class TestFocusSession:
    def test_early_start_absorbs_booking(self, svc, repo, notifier):
        svc.schedule_chain("x")
        session = svc.start_chain("x")
        assert session.duration == 25
        assert svc.state.scheduled_sessions == []
        assert repo.get_scheduled_sessions() == []
        assert _chain(svc, "x").auxiliary_streak == 2
        assert repo.get_active_session().chain_id == "x"
        assert notifier.completed[-1][0] == "Read (booking)"

    def test_start_without_booking_keeps_aux_streak(self, svc):
        svc.start_chain("x")
        assert _chain(svc, "x").auxiliary_streak == 0

    def test_cannot_start_twice(self, svc):
        svc.start_chain("x")
        assert svc.start_chain("free") is None
        assert svc.state.active_session.chain_id == "x"

    def test_complete_timed(self, svc, repo):
        svc.start_chain("x")
        record = svc.complete_session(description="chapter 3")
        assert record.was_successful
        assert record.actual_duration == 25
        assert not record.is_forward_timed
        chain = _chain(svc, "x")
        assert chain.current_streak == 1
        assert chain.total_completions == 1
        assert chain.last_completed_at == NOW
        assert svc.state.active_session is None
        assert repo.get_active_session() is None
        assert repo.get_completion_history()[-1].description == "chapter 3"
        assert repo.get_task_average_time("x") == 25

    def test_durationless_completion_rounds_up(self, svc, timer):
        timer.elapsed = 125
        session = svc.start_chain("free")
        assert session.duration == 0
        key = forward_timer_key("free", NOW)
        assert timer.started == [key]
        record = svc.complete_session()
        assert record.actual_duration == 3
        assert record.is_forward_timed
        assert timer.stopped == [key]

    def test_complete_without_session_is_noop(self, svc):
        assert svc.complete_session() is None
        assert svc.state.completion_history == []

    def test_interrupt_without_session_is_noop(self, svc):
        assert svc.interrupt_session("why") is None

    def test_interrupt_resets_streak(self, svc, notifier):
        svc.start_chain("x")
        svc.complete_session()
        svc.start_chain("x")
        record = svc.interrupt_session()
        assert not record.was_successful
        assert record.reason_for_failure == "Interrupted by user"
        chain = _chain(svc, "x")
        assert chain.current_streak == 0
        assert chain.total_failures == 1
        assert notifier.failed == [("Read", "Interrupted by user")]

    def test_interrupt_durationless_clears_timer(self, svc, timer):
        svc.start_chain("free")
        svc.interrupt_session("phone rang")
        assert timer.cleared == [forward_timer_key("free", NOW)]
        assert svc.state.completion_history[-1].reason_for_failure == "phone rang"

    def test_pause_resume_accounting(self, svc, clock, timer):
        svc.start_chain("x")
        clock.advance(minutes=5)
        assert svc.pause_session().is_paused
        assert svc.pause_session() is None
        clock.advance(seconds=30)
        assert svc.get_elapsed_seconds() == 300
        resumed = svc.resume_session()
        assert resumed.total_paused_time == 30_000
        assert resumed.paused_at is None
        assert svc.resume_session() is None
        clock.advance(minutes=1)
        assert svc.get_elapsed_seconds() == 360
        assert svc.get_remaining_seconds() == 25 * 60 - 360
        assert timer.paused and timer.resumed

    def test_remaining_none_for_durationless(self, svc):
        svc.start_chain("free")
        assert svc.get_remaining_seconds() is None

    def test_add_exception(self, svc):
        assert not svc.add_exception("water")
        svc.start_chain("x")
        assert svc.add_exception("water")
        assert svc.add_exception("water")
        assert _chain(svc, "x").exceptions == ["water"]
        assert svc.is_exception_pre_approved("x", "water")


class TestGroups:
    def test_start_group_runs_next_unit(self, svc):
        session = svc.start_chain("g")
        assert session.chain_id == "a"

    def test_cycle_completion(self, svc, notifier):
        svc.start_chain("g")
        svc.complete_session()
        assert _chain(svc, "g").current_streak == 0
        assert svc.start_chain("g").chain_id == "b"
        svc.complete_session()

        group = _chain(svc, "g")
        assert group.current_streak == 1
        assert group.total_completions == 1
        assert _chain(svc, "a").current_streak == 0
        assert _chain(svc, "b").current_streak == 0
        assert notifier.completed[-1] == ("Study (group)", 1, "Group cycle completed")

    def test_unit_failure_breaks_group_streak_only(self, svc, repo):
        repo.save_chains([
            Chain(id="g", name="Study", type=ChainType.GROUP, sort_order=1, current_streak=3),
        ])
        svc.reload()
        svc.start_chain("g")
        svc.complete_session()
        svc.start_chain("g")
        svc.interrupt_session()

        group = _chain(svc, "g")
        assert group.current_streak == 0
        assert group.total_failures == 1
        assert _chain(svc, "a").current_streak == 1
        assert _chain(svc, "b").current_streak == 0

    def test_empty_group_reports_all_complete(self, svc, notifier):
        assert svc.start_chain("empty") is None
        assert svc.state.active_session is None
        assert notifier.completed[-1] == ("Empty group", 0, "All tasks complete")

    def test_time_limit_starts_on_entry(self, svc):
        svc.start_chain("tl")
        group = _chain(svc, "tl")
        assert group.group_started_at == NOW
        assert group.group_expires_at == NOW + timedelta(hours=1)

    def test_refused_entry_leaves_clock_unstarted(self, svc, repo):
        svc.start_chain("x")
        assert svc.start_chain("tl") is None
        assert svc.state.active_session.chain_id == "x"
        assert _chain(svc, "tl").group_started_at is None
        assert _stored(repo, "tl").group_started_at is None

    def test_timed_group_without_units_keeps_clock_unstarted(self, svc, repo):
        repo.save_chains([
            Chain(id="tl2", name="Empty timed group", type=ChainType.GROUP, time_limit_hours=2),
        ])
        svc.reload()
        assert svc.start_chain("tl2") is None
        assert _stored(repo, "tl2").group_started_at is None

    def test_cycle_inside_window_clears_clock(self, svc, clock):
        svc.start_chain("tl")
        clock.advance(minutes=10)
        svc.complete_session()
        group = _chain(svc, "tl")
        assert group.current_streak == 1
        assert group.group_expires_at is None
        assert _chain(svc, "t1").current_streak == 0

    def test_expired_partial_group_is_voided(self, svc, repo, clock, notifier):
        repo.save_chains([
            Chain(id="t2", name="Second timed unit", parent_id="tl", sort_order=1),
        ])
        svc.reload()
        svc.start_chain("tl")
        svc.complete_session()
        assert _chain(svc, "t1").current_streak == 1

        clock.advance(hours=2)
        assert svc.start_chain("tl") is None
        assert notifier.failed[-1] == ("Timed group", "Group time limit exceeded")
        assert _chain(svc, "t1").current_streak == 0
        assert _chain(svc, "tl").group_expires_at is None

    def test_group_sweep_is_idempotent(self, svc, repo, clock):
        repo.save_chains([
            Chain(id="t2", name="Second timed unit", parent_id="tl", sort_order=1),
        ])
        svc.reload()
        svc.start_chain("tl")
        svc.complete_session()
        clock.advance(hours=2)
        assert svc.sweep_expired_groups() == ["tl"]
        assert svc.sweep_expired_groups() == []
        assert _stored(repo, "tl").group_started_at is None
        assert _stored(repo, "t1").current_streak == 0


class TestStorageFailures:
    def test_failed_write_leaves_state_untouched(self, svc, repo):
        repo.fail_on.add("save_scheduled_sessions")
        with pytest.raises(StorageError):
            svc.schedule_chain("x")
        assert _chain(svc, "x").auxiliary_streak == 0
        assert svc.state.scheduled_sessions == []

    def test_reload_reconciles_partial_write(self, svc, repo):
        repo.fail_on.add("save_scheduled_sessions")
        with pytest.raises(StorageError):
            svc.schedule_chain("x")
        svc.reload()
        # the chain write went through, the booking did not
        assert _chain(svc, "x").auxiliary_streak == 1
        assert svc.state.scheduled_sessions == []

    def test_failed_start_keeps_no_session(self, svc, repo):
        repo.fail_on.add("save_active_session")
        with pytest.raises(StorageError):
            svc.start_chain("x")
        assert svc.state.active_session is None
        repo.fail_on.clear()
        assert svc.start_chain("x") is not None

    def test_failed_group_start_commits_nothing(self, svc, repo):
        repo.fail_on.add("save_active_session")
        with pytest.raises(StorageError):
            svc.start_chain("tl")
        assert svc.state.active_session is None
        assert _chain(svc, "tl").group_started_at is None

    def test_failed_completion_keeps_forward_timer(self, svc, repo, timer):
        timer.elapsed = 600
        svc.start_chain("free")
        repo.fail_on.add("save_chains")
        with pytest.raises(StorageError):
            svc.complete_session()
        assert timer.stopped == []
        assert svc.state.active_session is not None

        repo.fail_on.clear()
        record = svc.complete_session()
        assert record.actual_duration == 10
        assert timer.stopped == [forward_timer_key("free", NOW)]

    def test_failed_interrupt_keeps_forward_timer(self, svc, repo, timer):
        svc.start_chain("free")
        repo.fail_on.add("save_chains")
        with pytest.raises(StorageError):
            svc.interrupt_session()
        assert timer.cleared == []
        repo.fail_on.clear()
        svc.interrupt_session()
        assert timer.cleared == [forward_timer_key("free", NOW)]

    def test_failed_write_invalidates_tree(self, svc, repo):
        tree = svc.get_tree()
        repo.fail_on.add("save_chains")
        with pytest.raises(StorageError):
            svc.schedule_chain("x")
        assert svc.get_tree() is not tree


class TestLoad:
    def test_repairs_self_reference(self, repo, clock, notifier, timer):
        repo.save_chains([Chain(id="loop", parent_id="loop")])
        svc = SessionService(repo, notifier=notifier, forward_timer=timer, clock=clock)
        svc.load()
        assert _chain(svc, "loop").parent_id is None
        assert _stored(repo, "loop").parent_id is None

    def test_prunes_expired_bookings(self, repo, clock, notifier, timer):
        repo.save_chains([Chain(id="x")])
        repo.save_scheduled_sessions([
            ScheduledSession("x", NOW - timedelta(hours=1), NOW - timedelta(minutes=30)),
        ])
        svc = SessionService(repo, notifier=notifier, forward_timer=timer, clock=clock)
        svc.load()
        assert svc.state.scheduled_sessions == []
        assert repo.get_scheduled_sessions() == []

    def test_skips_deleted_chains(self, repo, clock):
        repo.save_chains([Chain(id="x"), Chain(id="y")])
        repo.soft_delete_chain("y")
        svc = SessionService(repo, clock=clock)
        svc.load()
        assert [c.id for c in svc.state.chains] == ["x"]

    def test_restarts_forward_timer(self, repo, clock, timer):
        repo.save_chains([Chain(id="free", is_durationless=True)])
        repo.save_active_session(ActiveSession("free", NOW - timedelta(minutes=3)))
        svc = SessionService(repo, forward_timer=timer, clock=clock)
        svc.load()
        assert svc.state.active_session.chain_id == "free"
        key = forward_timer_key("free", NOW - timedelta(minutes=3))
        assert timer.started == [key]
        assert timer.offsets[key] == 180
        assert timer.paused == []

    def test_forward_timer_continues_across_restart(self, repo, clock):
        repo.save_chains([Chain(id="free", name="Journal", is_durationless=True)])
        repo.save_active_session(ActiveSession("free", NOW - timedelta(minutes=30)))
        ticks = [1000.0]
        svc = SessionService(
            repo, forward_timer=ForwardTimerManager(clock=lambda: ticks[0]), clock=clock
        )
        svc.load()
        ticks[0] += 300
        clock.advance(minutes=5)
        assert svc.complete_session().actual_duration == 35

    def test_paused_session_stays_paused_across_restart(self, repo, clock):
        started = NOW - timedelta(minutes=30)
        repo.save_chains([Chain(id="free", name="Journal", is_durationless=True)])
        repo.save_active_session(ActiveSession(
            "free", started, is_paused=True, paused_at=NOW - timedelta(minutes=10),
        ))
        ticks = [1000.0]
        timers = ForwardTimerManager(clock=lambda: ticks[0])
        svc = SessionService(repo, forward_timer=timers, clock=clock)
        svc.load()

        ticks[0] += 600
        clock.advance(minutes=10)
        assert timers.get_elapsed(forward_timer_key("free", started)) == 20 * 60
        svc.resume_session()
        ticks[0] += 300
        clock.advance(minutes=5)
        assert svc.complete_session().actual_duration == 25
