"""Per-unit status lifecycle shared by phases and sections."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .canonical import to_canonical_json
from .dependencies import DependencyGraph, StaleDecision, propagate_stale, resolve_stale
from .errors import InvalidStateError, classify_error
from .models import (
    ContentReference,
    ErrorRecord,
    EvaluationResult,
    FeedbackType,
    PhaseStatus,
    SectionRef,
    UserFeedback,
    WorkflowState,
    utc_now,
)
from .reducers import apply_update, unit_update
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

# REGENERATE feedback moves a reviewed or errored unit to STALE, not straight
# to QUEUED; resuming the thread then resolves the stale unit as regenerate.
STATUS_TRANSITIONS: dict[PhaseStatus, frozenset[PhaseStatus]] = {
    PhaseStatus.NOT_STARTED: frozenset({PhaseStatus.QUEUED}),
    PhaseStatus.QUEUED: frozenset({PhaseStatus.RUNNING}),
    PhaseStatus.RUNNING: frozenset({PhaseStatus.AWAITING_EVALUATION, PhaseStatus.ERROR}),
    PhaseStatus.AWAITING_EVALUATION: frozenset(
        {
            PhaseStatus.APPROVED,
            PhaseStatus.NEEDS_REVISION,
            PhaseStatus.AWAITING_REVIEW,
            PhaseStatus.ERROR,
        }
    ),
    PhaseStatus.AWAITING_REVIEW: frozenset(
        {
            PhaseStatus.APPROVED,
            PhaseStatus.EDITED,
            PhaseStatus.STALE,
            PhaseStatus.NEEDS_REVISION,
        }
    ),
    PhaseStatus.NEEDS_REVISION: frozenset({PhaseStatus.QUEUED, PhaseStatus.ERROR}),
    PhaseStatus.APPROVED: frozenset({PhaseStatus.EDITED, PhaseStatus.STALE}),
    PhaseStatus.EDITED: frozenset({PhaseStatus.EDITED, PhaseStatus.STALE}),
    PhaseStatus.STALE: frozenset({PhaseStatus.APPROVED, PhaseStatus.EDITED, PhaseStatus.QUEUED}),
    PhaseStatus.ERROR: frozenset(
        {
            PhaseStatus.APPROVED,
            PhaseStatus.EDITED,
            PhaseStatus.STALE,
            PhaseStatus.NEEDS_REVISION,
            PhaseStatus.QUEUED,
        }
    ),
}

FEEDBACK_STATUS: dict[FeedbackType, PhaseStatus] = {
    FeedbackType.APPROVE: PhaseStatus.APPROVED,
    FeedbackType.EDIT: PhaseStatus.EDITED,
    FeedbackType.REGENERATE: PhaseStatus.STALE,
    FeedbackType.REJECT: PhaseStatus.NEEDS_REVISION,
}


@dataclass(frozen=True)
class EvaluationPolicy:
    """How evaluation results and regeneration budgets map onto statuses."""

    max_attempts: int = 3
    human_review_enabled: bool = True
    auto_approve_score: float | None = None

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "EvaluationPolicy":
        return cls(
            max_attempts=settings.max_regeneration_attempts,
            human_review_enabled=settings.human_review_enabled,
            auto_approve_score=settings.auto_approve_score,
        )

    def outcome(self, evaluation: EvaluationResult | None) -> PhaseStatus:
        if evaluation is None or not evaluation.passed:
            return PhaseStatus.NEEDS_REVISION
        if not self.human_review_enabled:
            return PhaseStatus.APPROVED
        if self.auto_approve_score is not None and evaluation.overall_score >= self.auto_approve_score:
            return PhaseStatus.APPROVED
        return PhaseStatus.AWAITING_REVIEW


def check_transition(unit_id: str, current: PhaseStatus, new: PhaseStatus) -> None:
    if new not in STATUS_TRANSITIONS[current]:
        raise InvalidStateError(f"Illegal status transition for {unit_id}: {current.value} -> {new.value}")


def transition(
    state: WorkflowState,
    reference: ContentReference,
    new_status: PhaseStatus,
    *,
    now: datetime | None = None,
    **fields: Any,
) -> WorkflowState:
    """Move one unit to ``new_status`` after checking the transition table.

    Raises:
        InvalidStateError: If the transition is not allowed.
    """
    record = state.record_for(reference)
    check_transition(reference.unit_id, record.status, new_status)
    stamp = now or utc_now()
    update = unit_update(reference, status=new_status, last_updated=stamp, **fields)
    update["last_updated_at"] = stamp
    return apply_update(state, update)


def _transition_label(current: PhaseStatus, new: PhaseStatus) -> str:
    return f"{current.value} -> {new.value}"


# ---------------------------------------------------------------------------
# Generation lifecycle
# ---------------------------------------------------------------------------


def start_generation(state: WorkflowState, reference: ContentReference, *, now: datetime | None = None) -> WorkflowState:
    """``QUEUED -> RUNNING`` and count one more attempt."""
    record = state.record_for(reference)
    if record.status == PhaseStatus.NOT_STARTED:
        state = transition(state, reference, PhaseStatus.QUEUED, now=now)
        record = state.record_for(reference)
    return transition(state, reference, PhaseStatus.RUNNING, now=now, attempts=record.attempts + 1)


def complete_generation(
    state: WorkflowState,
    reference: ContentReference,
    output: str | dict[str, Any],
    *,
    now: datetime | None = None,
) -> WorkflowState:
    """``RUNNING -> AWAITING_EVALUATION`` with the generated content attached."""
    fields: dict[str, Any] = {"evaluation": None}
    if isinstance(reference, SectionRef):
        fields["content"] = output if isinstance(output, str) else to_canonical_json(output)
    else:
        fields["result"] = output
    return transition(state, reference, PhaseStatus.AWAITING_EVALUATION, now=now, **fields)


def fail_unit(
    state: WorkflowState,
    reference: ContentReference,
    cause: BaseException,
    *,
    now: datetime | None = None,
) -> WorkflowState:
    """Force a unit to ``ERROR`` and record why."""
    record = state.record_for(reference)
    stamp = now or utc_now()
    state = transition(state, reference, PhaseStatus.ERROR, now=stamp)
    error = ErrorRecord(
        unit_id=reference.unit_id,
        message=str(cause) or type(cause).__name__,
        category=classify_error(cause),
        attempted_transition=_transition_label(record.status, PhaseStatus.ERROR),
        timestamp=stamp,
    )
    logger.warning("Unit %s moved to error: %s", reference.unit_id, error.message)
    return apply_update(state, {"errors": error})


def apply_evaluation(
    state: WorkflowState,
    reference: ContentReference,
    evaluation: EvaluationResult | None,
    policy: EvaluationPolicy,
    *,
    now: datetime | None = None,
) -> WorkflowState:
    """Resolve ``AWAITING_EVALUATION`` from an evaluation result.

    A missing result (the evaluator itself failed) counts as not passed.
    """
    outcome = policy.outcome(evaluation)
    return transition(state, reference, outcome, now=now, evaluation=evaluation)


def apply_regeneration(
    state: WorkflowState,
    reference: ContentReference,
    policy: EvaluationPolicy,
    *,
    now: datetime | None = None,
) -> WorkflowState:
    """``NEEDS_REVISION -> QUEUED``, or ``ERROR`` once the attempt budget is spent."""
    record = state.record_for(reference)
    if record.attempts < policy.max_attempts:
        logger.info(
            "Requeueing %s for regeneration (attempt %d of %d)",
            reference.unit_id,
            record.attempts + 1,
            policy.max_attempts,
        )
        return transition(state, reference, PhaseStatus.QUEUED, now=now)
    summary = record.evaluation.summary if record.evaluation is not None else "no evaluation result"
    cause = InvalidStateError(
        f"{reference.unit_id} failed evaluation {record.attempts} time(s), "
        f"exceeding the regeneration budget of {policy.max_attempts}: {summary}"
    )
    return fail_unit(state, reference, cause, now=now)


# ---------------------------------------------------------------------------
# Human decisions
# ---------------------------------------------------------------------------


def apply_feedback(
    state: WorkflowState,
    reference: ContentReference,
    feedback: UserFeedback,
    graph: DependencyGraph,
    *,
    now: datetime | None = None,
) -> WorkflowState:
    """Apply the status change implied by human feedback to one unit.

    Feedback comments become guidance for the next generation attempt. A unit
    under a stale review treats ``APPROVE`` as the keep decision; regenerate
    and reject leave it stale until resume applies the regenerate decision.

    Raises:
        InvalidStateError: If the implied transition is not allowed.
    """
    stamp = now or utc_now()
    record = state.record_for(reference)
    fields: dict[str, Any] = {}
    if feedback.comments:
        fields["guidance"] = feedback.comments

    if record.status == PhaseStatus.STALE and feedback.type != FeedbackType.EDIT:
        if feedback.type == FeedbackType.APPROVE:
            state = resolve_stale(state, reference, StaleDecision.KEEP, now=stamp)
        if fields:
            state = apply_update(state, unit_update(reference, **fields))
        return state

    target = FEEDBACK_STATUS[feedback.type]
    if record.status == PhaseStatus.ERROR:
        fields["attempts"] = 0
    if target == PhaseStatus.STALE:
        fields["previous_status"] = record.status
    elif record.status == PhaseStatus.STALE:
        fields["previous_status"] = None
    if feedback.type == FeedbackType.EDIT:
        if feedback.edited_content is None:
            raise InvalidStateError(f"EDIT feedback for {reference.unit_id} carries no edited content")
        if isinstance(reference, SectionRef):
            fields["content"] = feedback.edited_content
        else:
            fields["result"] = feedback.edited_content

    state = transition(state, reference, target, now=stamp, **fields)
    if feedback.type == FeedbackType.EDIT and isinstance(reference, SectionRef):
        state, _ = propagate_stale(state, graph, reference.section_id, now=stamp)
    return state
