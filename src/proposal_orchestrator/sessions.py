"""Session Lifecycle Manager.

Tracks which user is working on which proposal thread, pauses idle sessions
and closes sessions that outlive the hard lifetime ceiling. Session records
are kept in memory and mirrored to the store's record backend under
``proposal_sessions:<session_id>`` so they survive a restart.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from .canonical import deserialize_session, serialize_session
from .checkpoint import WorkflowCheckpointStore
from .errors import AccessDeniedError, InvalidStateError, PersistenceError, SessionNotFoundError
from .locks import ThreadLockRegistry
from .models import SessionMetadata, SessionState, WorkflowState, utc_now
from .settings import RuntimeSettings
from .threads import get_proposal_thread_ids, parse_thread_id

logger = logging.getLogger(__name__)

SESSION_NAMESPACE = "proposal_sessions"
ARCHIVE_NAMESPACE = "proposal_sessions_archive"
LIFETIME_EXCEEDED = "exceeded maximum lifetime"

_IMMUTABLE_FIELDS = frozenset({"session_id", "proposal_id", "user_id", "thread_id", "created_at"})


@dataclass
class SweepReport:
    paused: list[str] = field(default_factory=list)
    closed: list[str] = field(default_factory=list)


def _describe_progress(state: WorkflowState | None) -> tuple[str, str | None]:
    if state is None:
        return "", None
    step = state.interrupt_status.interruption_point if state.interrupt_status.is_interrupted else None
    phase = state.active_unit.unit_id if state.active_unit is not None else state.status.value
    return phase, step


class SessionManager:
    def __init__(
        self,
        store: WorkflowCheckpointStore,
        *,
        locks: ThreadLockRegistry | None = None,
        session_timeout_seconds: int = 30 * 60,
        check_interval_seconds: int = 60,
        max_lifetime_seconds: int = 24 * 60 * 60,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.locks = locks if locks is not None else ThreadLockRegistry()
        self.session_timeout = timedelta(seconds=session_timeout_seconds)
        self.check_interval = check_interval_seconds
        self.max_lifetime = timedelta(seconds=max_lifetime_seconds)
        self._clock = clock
        self._sessions: dict[str, SessionMetadata] = {}
        self._guard = threading.RLock()
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    @classmethod
    def from_settings(
        cls,
        store: WorkflowCheckpointStore,
        settings: RuntimeSettings,
        *,
        locks: ThreadLockRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "SessionManager":
        return cls(
            store,
            locks=locks,
            session_timeout_seconds=settings.session_timeout_seconds,
            check_interval_seconds=settings.session_check_interval_seconds,
            max_lifetime_seconds=settings.session_max_lifetime_seconds,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Periodic sweep
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background sweep thread. Calling it twice is a no-op."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="session-sweep", daemon=True)
        self._sweeper.start()
        logger.info("Session sweep started (every %ss)", self.check_interval)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout)
            self._sweeper = None
            logger.info("Session sweep stopped")

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.check_interval):
            try:
                self.check_sessions()
            except Exception:  # noqa: BLE001
                logger.exception("Session sweep failed; retrying in %ss", self.check_interval)

    def check_sessions(self, now: datetime | None = None) -> SweepReport:
        """Close sessions past the lifetime ceiling, then pause idle ones.

        Only ``RUNNING`` sessions are considered; each change is made while
        holding the session's thread lock.
        """
        now = now or self._clock()
        report = SweepReport()
        with self._guard:
            candidates = [s for s in self._sessions.values() if s.state == SessionState.RUNNING]

        for session in candidates:
            with self.locks.hold(session.thread_id):
                current = self.get_session(session.session_id)
                if current is None or current.state != SessionState.RUNNING:
                    continue
                if now - current.created_at > self.max_lifetime:
                    self.close_session(current.session_id, SessionState.COMPLETED, LIFETIME_EXCEEDED)
                    report.closed.append(current.session_id)
                elif now - current.last_activity > self.session_timeout:
                    idle_minutes = int((now - current.last_activity).total_seconds() // 60)
                    self.pause_session(current.session_id, f"inactive for {idle_minutes} minutes")
                    report.paused.append(current.session_id)

        if report.paused or report.closed:
            logger.info("Session sweep paused %d and closed %d session(s)", len(report.paused), len(report.closed))
        return report

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_session(self, proposal_id: str, user_id: str) -> SessionMetadata:
        """Open a session on the proposal's main thread for its owner.

        Raises:
            SessionNotFoundError: If no thread exists for the proposal.
            AccessDeniedError: If the proposal's thread belongs to another user.
        """
        thread_ids = [
            thread_id
            for thread_id in get_proposal_thread_ids(self.store, proposal_id)
            if parse_thread_id(thread_id).subgraph is None
        ]
        if not thread_ids:
            raise SessionNotFoundError(f"no thread found for proposal {proposal_id}")
        owned = [thread_id for thread_id in thread_ids if parse_thread_id(thread_id).user_id == user_id]
        if not owned:
            raise AccessDeniedError(f"user {user_id} does not have access to proposal {proposal_id}")

        thread_id = owned[0]
        now = self._clock()
        phase, step = _describe_progress(self.store.get(thread_id))
        session = SessionMetadata(
            session_id=f"session:{proposal_id}:{uuid.uuid4().hex[:12]}",
            thread_id=thread_id,
            proposal_id=proposal_id,
            user_id=user_id,
            created_at=now,
            last_activity=now,
            state=SessionState.RUNNING,
            current_phase=phase,
            current_step=step,
        )
        with self._guard:
            self._sessions[session.session_id] = session
        self._persist(session)
        logger.info("Created session %s for %s on %s", session.session_id, user_id, thread_id)
        return session

    def record_activity(self, session_id: str) -> SessionMetadata:
        return self._replace(session_id, last_activity=self._clock())

    def update_session(self, session_id: str, **updates: Any) -> SessionMetadata:
        """Update mutable session fields and refresh ``last_activity``.

        Raises:
            InvalidStateError: If an identity field is named.
        """
        forbidden = sorted(set(updates) & _IMMUTABLE_FIELDS)
        if forbidden:
            raise InvalidStateError(f"session fields cannot be changed: {forbidden}")
        return self._replace(session_id, **{**updates, "last_activity": self._clock()})

    def sync_progress(self, session_id: str, state: WorkflowState) -> SessionMetadata:
        """Copy the thread's current position into the session record."""
        phase, step = _describe_progress(state)
        return self.update_session(session_id, current_phase=phase, current_step=step)

    def record_thread_activity(self, thread_id: str, state: WorkflowState) -> list[SessionMetadata]:
        """Sync every live session bound to ``thread_id``.

        The engine calls this while it still holds the thread lock, so a sweep
        never pauses a session in the middle of a review round.
        """
        with self._guard:
            session_ids = [session.session_id for session in self._sessions.values() if session.thread_id == thread_id]
        return [self.sync_progress(session_id, state) for session_id in session_ids]

    def get_session(self, session_id: str) -> SessionMetadata | None:
        with self._guard:
            return self._sessions.get(session_id)

    def list_sessions(self) -> list[SessionMetadata]:
        with self._guard:
            return sorted(self._sessions.values(), key=lambda session: session.created_at)

    def get_user_sessions(self, user_id: str) -> list[SessionMetadata]:
        with self._guard:
            return [session for session in self._sessions.values() if session.user_id == user_id]

    def get_proposal_sessions(self, proposal_id: str) -> list[SessionMetadata]:
        with self._guard:
            return [session for session in self._sessions.values() if session.proposal_id == proposal_id]

    def pause_session(self, session_id: str, reason: str | None = None) -> SessionMetadata:
        updates: dict[str, Any] = {"state": SessionState.PAUSED}
        if reason:
            updates["error_details"] = reason
        session = self._replace(session_id, **updates)
        logger.info("Paused session %s%s", session_id, f": {reason}" if reason else "")
        return session

    def resume_session(self, session_id: str) -> SessionMetadata:
        """Raises ``InvalidStateError`` unless the session is paused."""
        session = self._require(session_id)
        if session.state != SessionState.PAUSED:
            raise InvalidStateError(f"session {session_id} is not paused")
        return self._replace(
            session_id, state=SessionState.RUNNING, last_activity=self._clock(), error_details=None
        )

    def recover_session(self, session_id: str) -> SessionMetadata:
        """Bring a session back to ``RUNNING``, reloading it from the store if needed.

        Raises:
            SessionNotFoundError: If the session is neither in memory nor persisted.
        """
        with self._guard:
            session = self._sessions.get(session_id)
            if session is None:
                session = self._load(session_id)
                if session is None:
                    raise SessionNotFoundError(f"session not found: {session_id}")
                self._sessions[session_id] = session
        recovered = self._replace(session_id, state=SessionState.RUNNING, last_activity=self._clock())
        logger.info("Recovered session %s", session_id)
        return recovered

    def close_session(
        self,
        session_id: str,
        state: SessionState = SessionState.COMPLETED,
        reason: str | None = None,
    ) -> SessionMetadata:
        """Archive the final record and drop the session from memory.

        A ``COMPLETED`` session's active record is deleted; an ``ERROR``
        session's record is kept for later recovery.
        """
        state = SessionState(state)
        if state not in {SessionState.COMPLETED, SessionState.ERROR}:
            raise InvalidStateError(f"sessions can only be closed as completed or error, got {state.value}")
        with self._guard:
            session = self._require(session_id)
            updates: dict[str, Any] = {"state": state}
            if reason:
                updates["error_details"] = reason
            final = session.model_copy(update=updates)
            del self._sessions[session_id]

        self.store.records.put(f"{ARCHIVE_NAMESPACE}:{session_id}", serialize_session(final))
        if state == SessionState.COMPLETED:
            self.store.records.delete(self._namespace(session_id))
        else:
            self._persist(final)
        logger.info("Closed session %s as %s%s", session_id, state.value, f": {reason}" if reason else "")
        return final

    def load_sessions(self) -> int:
        """Reload ``RUNNING`` and ``PAUSED`` sessions from the store after a restart."""
        loaded = 0
        prefix = f"{SESSION_NAMESPACE}:"
        for namespace in self.store.records.list_namespaces(prefix):
            session = self._load(namespace[len(prefix) :])
            if session is None or session.state not in {SessionState.RUNNING, SessionState.PAUSED}:
                continue
            with self._guard:
                self._sessions[session.session_id] = session
            loaded += 1
        logger.info("Loaded %d session(s) from the checkpoint store", loaded)
        return loaded

    def get_archived_session(self, session_id: str) -> SessionMetadata | None:
        payload = self.store.records.get(f"{ARCHIVE_NAMESPACE}:{session_id}")
        return None if payload is None else self._decode(payload, session_id)

    def clear(self) -> None:
        with self._guard:
            self._sessions.clear()

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _namespace(session_id: str) -> str:
        return f"{SESSION_NAMESPACE}:{session_id}"

    def _require(self, session_id: str) -> SessionMetadata:
        with self._guard:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"session not found: {session_id}")
        return session

    def _replace(self, session_id: str, **updates: Any) -> SessionMetadata:
        with self._guard:
            session = self._require(session_id).model_copy(update=updates)
            self._sessions[session_id] = session
        self._persist(session)
        return session

    def _persist(self, session: SessionMetadata) -> None:
        self.store.records.put(self._namespace(session.session_id), serialize_session(session))

    def _load(self, session_id: str) -> SessionMetadata | None:
        payload = self.store.records.get(self._namespace(session_id))
        return None if payload is None else self._decode(payload, session_id)

    @staticmethod
    def _decode(payload: str, session_id: str) -> SessionMetadata:
        try:
            return deserialize_session(payload)
        except ValueError as exc:
            raise PersistenceError(f"stored session {session_id} is unreadable: {exc}") from exc
