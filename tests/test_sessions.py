from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime, timedelta

import pytest

from proposal_orchestrator.checkpoint import WorkflowCheckpointStore
from proposal_orchestrator.errors import AccessDeniedError, InvalidStateError, SessionNotFoundError
from proposal_orchestrator.interrupts import InterruptController
from proposal_orchestrator.models import FeedbackSubmission, FeedbackType, SectionRef, SessionState
from proposal_orchestrator.reducers import create_workflow_state
from proposal_orchestrator.sessions import (
    ARCHIVE_NAMESPACE,
    LIFETIME_EXCEEDED,
    SESSION_NAMESPACE,
    SessionManager,
    SweepReport,
)
from proposal_orchestrator.settings import RuntimeSettings
from proposal_orchestrator.threads import generate_thread_id
from proposal_orchestrator.workflow import ProposalWorkflow

T0 = datetime(2026, 4, 1, 8, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture
def manager(store: WorkflowCheckpointStore, clock: FakeClock) -> SessionManager:
    store.put(generate_thread_id("p1", "alice"), create_workflow_state(["P", "M"], now=T0))
    return SessionManager(
        store,
        session_timeout_seconds=30 * 60,
        check_interval_seconds=60,
        max_lifetime_seconds=24 * 60 * 60,
        clock=clock,
    )


def test_create_session_binds_owner_thread(manager: SessionManager) -> None:
    session = manager.create_session("p1", "alice")

    assert session.session_id.startswith("session:p1:")
    assert session.thread_id == "proposal:p1:user:alice"
    assert session.state == SessionState.RUNNING
    assert session.created_at == session.last_activity == T0
    assert manager.get_session(session.session_id) == session
    assert manager.store.records.get(f"{SESSION_NAMESPACE}:{session.session_id}") is not None


def test_create_session_checks_access(manager: SessionManager) -> None:
    with pytest.raises(SessionNotFoundError):
        manager.create_session("missing", "alice")
    with pytest.raises(AccessDeniedError):
        manager.create_session("p1", "mallory")


def test_idle_session_is_paused_not_completed(manager: SessionManager, clock: FakeClock) -> None:
    session = manager.create_session("p1", "alice")

    report = manager.check_sessions(clock.advance(minutes=31))

    assert report.paused == [session.session_id]
    assert report.closed == []
    paused = manager.get_session(session.session_id)
    assert paused.state == SessionState.PAUSED
    assert paused.error_details == "inactive for 31 minutes"


def test_recent_activity_keeps_session_running(manager: SessionManager, clock: FakeClock) -> None:
    session = manager.create_session("p1", "alice")
    clock.advance(minutes=20)
    manager.record_activity(session.session_id)

    report = manager.check_sessions(clock.advance(minutes=20))

    assert report.paused == report.closed == []
    assert manager.get_session(session.session_id).state == SessionState.RUNNING


def test_session_past_lifetime_is_completed_despite_activity(manager: SessionManager, clock: FakeClock) -> None:
    session = manager.create_session("p1", "alice")
    clock.advance(hours=24, minutes=1)
    manager.record_activity(session.session_id)

    report = manager.check_sessions(clock.advance(minutes=1))

    assert report.closed == [session.session_id]
    assert manager.get_session(session.session_id) is None
    archived = manager.get_archived_session(session.session_id)
    assert archived is not None
    assert archived.state == SessionState.COMPLETED
    assert archived.error_details == LIFETIME_EXCEEDED
    assert manager.store.records.get(f"{SESSION_NAMESPACE}:{session.session_id}") is None
    assert manager.store.records.get(f"{ARCHIVE_NAMESPACE}:{session.session_id}") is not None


def test_paused_sessions_are_not_swept_again(manager: SessionManager, clock: FakeClock) -> None:
    session = manager.create_session("p1", "alice")
    manager.pause_session(session.session_id, "user stepped away")
    report = manager.check_sessions(clock.advance(hours=30))
    assert report.paused == report.closed == []
    assert manager.get_session(session.session_id).state == SessionState.PAUSED


def test_resume_session_requires_paused(manager: SessionManager, clock: FakeClock) -> None:
    session = manager.create_session("p1", "alice")
    with pytest.raises(InvalidStateError, match="not paused"):
        manager.resume_session(session.session_id)

    manager.pause_session(session.session_id, "idle")
    resumed = manager.resume_session(session.session_id)
    assert resumed.state == SessionState.RUNNING
    assert resumed.error_details is None


def test_update_session_refreshes_activity_and_protects_identity(
    manager: SessionManager, clock: FakeClock
) -> None:
    session = manager.create_session("p1", "alice")
    later = clock.advance(minutes=5)

    updated = manager.update_session(session.session_id, current_phase="M", current_step="evaluate:M")

    assert updated.current_phase == "M"
    assert updated.last_activity == later
    with pytest.raises(InvalidStateError, match="cannot be changed"):
        manager.update_session(session.session_id, user_id="mallory")


def test_error_close_keeps_record_for_recovery(
    store: WorkflowCheckpointStore, manager: SessionManager, clock: FakeClock
) -> None:
    session = manager.create_session("p1", "alice")
    closed = manager.close_session(session.session_id, SessionState.ERROR, "generator outage")
    assert closed.state == SessionState.ERROR
    assert manager.get_session(session.session_id) is None

    restarted = SessionManager(store, clock=clock)
    recovered = restarted.recover_session(session.session_id)
    assert recovered.state == SessionState.RUNNING
    assert recovered.user_id == "alice"


def test_close_session_rejects_non_terminal_state(manager: SessionManager) -> None:
    session = manager.create_session("p1", "alice")
    with pytest.raises(InvalidStateError):
        manager.close_session(session.session_id, SessionState.PAUSED)


def test_recover_unknown_session_raises(manager: SessionManager) -> None:
    with pytest.raises(SessionNotFoundError):
        manager.recover_session("session:p1:nope")


def test_load_sessions_restores_running_and_paused(
    store: WorkflowCheckpointStore, manager: SessionManager, clock: FakeClock
) -> None:
    store.put(generate_thread_id("p2", "bob"), create_workflow_state(["P"], now=T0))
    running = manager.create_session("p1", "alice")
    paused = manager.create_session("p2", "bob")
    finished = manager.create_session("p1", "alice")
    manager.pause_session(paused.session_id)
    manager.close_session(finished.session_id)

    restarted = SessionManager(store, clock=clock)
    assert restarted.load_sessions() == 2
    assert {session.session_id for session in restarted.list_sessions()} == {running.session_id, paused.session_id}
    assert [session.session_id for session in restarted.get_user_sessions("bob")] == [paused.session_id]
    assert [session.session_id for session in restarted.get_proposal_sessions("p1")] == [running.session_id]


def test_from_settings_uses_session_windows(store: WorkflowCheckpointStore) -> None:
    settings = RuntimeSettings(session_timeout_seconds=120, session_max_lifetime_seconds=600)
    manager = SessionManager.from_settings(store, settings)
    assert manager.session_timeout == timedelta(seconds=120)
    assert manager.max_lifetime == timedelta(seconds=600)


def test_background_sweep_starts_and_stops(manager: SessionManager) -> None:
    manager.start()
    manager.start()
    manager.stop(timeout=1.0)
    assert manager._sweeper is None


def test_sync_progress_copies_thread_position(
    manager: SessionManager, engine: ProposalWorkflow
) -> None:
    session = manager.create_session("p1", "alice")
    thread_id = generate_thread_id("p1", "carol")
    state = engine.start(thread_id, ["P", "M"])

    synced = manager.sync_progress(session.session_id, state)

    assert synced.current_phase == "P"
    assert synced.current_step == "evaluate:P"


def test_background_sweep_survives_a_failed_pass(
    manager: SessionManager, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    manager.check_interval = 0
    calls: list[datetime | None] = []
    recovered = threading.Event()

    def flaky_check(now: datetime | None = None) -> SweepReport:
        calls.append(now)
        if len(calls) == 1:
            raise RuntimeError("disk full")
        recovered.set()
        return SweepReport()

    monkeypatch.setattr(manager, "check_sessions", flaky_check)
    with caplog.at_level(logging.ERROR, logger="proposal_orchestrator.sessions"):
        manager.start()
        try:
            assert recovered.wait(timeout=5.0)
        finally:
            manager.stop(timeout=1.0)

    assert len(calls) >= 2
    assert "Session sweep failed" in caplog.text


def test_review_rounds_keep_the_session_alive(store: WorkflowCheckpointStore, make_engine) -> None:  # noqa: ANN001
    clock = FakeClock(T0)
    manager = SessionManager(store, session_timeout_seconds=60, clock=clock)
    engine = make_engine(sessions=manager, locks=manager.locks, clock=clock)
    controller = InterruptController(engine, clock=clock)
    thread_id = generate_thread_id("p9", "dana")

    engine.start(thread_id, ["P", "M", "B"])
    session = manager.create_session("p9", "dana")
    for unit in ("P", "M"):
        clock.advance(seconds=50)
        controller.submit_feedback(
            FeedbackSubmission(
                thread_id=thread_id, type=FeedbackType.APPROVE, content_reference=SectionRef(section_id=unit)
            )
        )
        controller.resume(thread_id)

    report = manager.check_sessions(clock.advance(seconds=50))

    current = manager.get_session(session.session_id)
    assert report.paused == []
    assert current.state == SessionState.RUNNING
    assert current.current_step == "evaluate:B"
    assert current.last_activity == T0 + timedelta(seconds=100)
