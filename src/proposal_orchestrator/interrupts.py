"""Interrupt/Resume Controller.

A thread pauses whenever the engine's ``human_review`` node calls
``interrupt()``. While paused, feedback submission is the only permitted
operation. Feedback is checkpointed as ``PENDING`` (through the graph's
``update_state``) before its status change is applied, so it survives a crash
between submission and resume. Resuming hands the feedback back to the
graph as ``Command(resume=...)``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from .errors import (
    InterruptedStateError,
    InvalidStateError,
    OrchestrationError,
    PersistenceError,
    ValidationError,
    classify_error,
)
from .models import (
    ErrorRecord,
    FeedbackProcessingStatus,
    FeedbackSubmission,
    InterruptDetails,
    InterruptStatusResponse,
    ResumeResponse,
    WorkflowState,
    utc_now,
)
from .reducers import apply_update
from .state_machine import apply_feedback
from .threads import require_thread_id

if TYPE_CHECKING:
    from .workflow import ProposalWorkflow

logger = logging.getLogger(__name__)


class ControllerPhase(str, Enum):
    RUNNING = "running"
    INTERRUPTED = "interrupted"
    FEEDBACK_PENDING = "feedback_pending"
    RESUMING = "resuming"


def controller_phase(state: WorkflowState) -> ControllerPhase:
    status = state.interrupt_status
    pending = status.processing_status == FeedbackProcessingStatus.PENDING
    if status.is_interrupted:
        return ControllerPhase.FEEDBACK_PENDING if pending else ControllerPhase.INTERRUPTED
    return ControllerPhase.RESUMING if pending else ControllerPhase.RUNNING


def ensure_not_interrupted(thread_id: str, state: WorkflowState) -> None:
    """Raises ``InterruptedStateError`` if the thread is paused."""
    if state.interrupt_status.is_interrupted:
        raise InterruptedStateError(thread_id, state.interrupt_status.interruption_point)


class InterruptController:
    """Applies human feedback to a paused thread and resumes it."""

    def __init__(self, engine: ProposalWorkflow, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.engine = engine
        self.locks = engine.locks
        self._clock = clock

    def submit_feedback(self, submission: FeedbackSubmission) -> WorkflowState:
        """Record feedback for a paused thread and apply its status change.

        Raises:
            ValidationError: If the thread id is malformed or the feedback
                targets a unit other than the paused one.
            InvalidStateError: If the thread is not paused, already has
                pending feedback, or the implied transition is illegal.
        """
        thread_id = submission.thread_id
        require_thread_id(thread_id)
        with self.locks.hold(thread_id):
            state = self.engine.load(thread_id)
            status = state.interrupt_status
            if not status.is_interrupted:
                raise InvalidStateError(f"thread {thread_id} is not interrupted")
            if status.processing_status == FeedbackProcessingStatus.PENDING:
                raise InvalidStateError(f"thread {thread_id} already has pending feedback")
            paused_on = state.interrupt_metadata.content_reference if state.interrupt_metadata else None
            if paused_on is not None and submission.content_reference != paused_on:
                raise ValidationError(
                    f"feedback targets {submission.content_reference.unit_id} "
                    f"but thread {thread_id} is paused on {paused_on.unit_id}"
                )

            now = self._clock()
            feedback = submission.to_feedback().model_copy(update={"timestamp": now})
            state = apply_update(
                state,
                {
                    "user_feedback": feedback,
                    "interrupt_status": {
                        "feedback": feedback,
                        "processing_status": FeedbackProcessingStatus.PENDING,
                    },
                    "last_updated_at": now,
                },
            )
            self.engine.save(thread_id, state)

            try:
                state = apply_feedback(
                    state, submission.content_reference, feedback, self.engine.dependency_graph, now=now
                )
            except InvalidStateError as exc:
                self._record_failure(thread_id, state, exc, f"feedback {feedback.type.value}")
                raise
            self.engine.save(thread_id, state)
            self.engine.record_activity(thread_id, state)
            logger.info(
                "Recorded %s feedback for %s on thread %s",
                feedback.type.value,
                submission.content_reference.unit_id,
                thread_id,
            )
            return state

    def resume(self, thread_id: str) -> ResumeResponse:
        """Hand the pending feedback to the paused graph and let it run on.

        Reaching another pause point straight away is reported through
        ``new_interrupt`` and is not an error.

        Raises:
            InvalidStateError: If no feedback is pending.
        """
        require_thread_id(thread_id)
        with self.locks.hold(thread_id):
            state = self.engine.load(thread_id)
            status = state.interrupt_status
            if status.processing_status != FeedbackProcessingStatus.PENDING:
                raise InvalidStateError(f"thread {thread_id} has no pending feedback to resume")
            feedback = status.feedback
            if feedback is None:
                raise InvalidStateError(f"thread {thread_id} has pending status but no feedback")

            try:
                final = self.engine.resume(thread_id, feedback)
            except PersistenceError:
                raise
            except OrchestrationError as exc:
                latest = self.engine.get_state(thread_id) or state
                self._record_failure(thread_id, latest, exc, "resume")
                raise

        new_interrupt = final.interrupt_status.is_interrupted
        logger.info(
            "Resumed thread %s: status %s%s",
            thread_id,
            final.status.value,
            f", paused again at {final.interrupt_status.interruption_point}" if new_interrupt else "",
        )
        return ResumeResponse(success=True, status=final.status, new_interrupt=new_interrupt)

    def get_interrupt_status(self, thread_id: str) -> InterruptStatusResponse:
        require_thread_id(thread_id)
        state = self.engine.load(thread_id)
        status = state.interrupt_status
        reference = state.interrupt_metadata.content_reference if state.interrupt_metadata else None
        return InterruptStatusResponse(
            interrupted=status.is_interrupted,
            interrupt_point=status.interruption_point if status.is_interrupted else None,
            content_reference=reference if status.is_interrupted else None,
        )

    def get_interrupt_details(self, thread_id: str) -> InterruptDetails | None:
        require_thread_id(thread_id)
        state = self.engine.load(thread_id)
        status = state.interrupt_status
        metadata = state.interrupt_metadata
        if not status.is_interrupted or metadata is None:
            return None
        return InterruptDetails(
            node_id=status.interruption_point or "",
            reason=metadata.reason,
            content_reference=metadata.content_reference,
            evaluation=metadata.evaluation,
            timestamp=metadata.timestamp,
        )

    def _record_failure(self, thread_id: str, state: WorkflowState, exc: Exception, action: str) -> None:
        now = self._clock()
        unit = state.interrupt_status.feedback.content_reference if state.interrupt_status.feedback else None
        error = ErrorRecord(
            unit_id=unit.unit_id if unit is not None else None,
            message=str(exc) or type(exc).__name__,
            category=classify_error(exc),
            attempted_transition=action,
            timestamp=now,
        )
        failed = apply_update(
            state,
            {
                "interrupt_status": {"processing_status": FeedbackProcessingStatus.FAILED},
                "errors": error,
                "last_updated_at": now,
            },
        )
        self.engine.save(thread_id, failed)
        logger.error("%s failed on thread %s: %s", action.capitalize(), thread_id, error.message)
