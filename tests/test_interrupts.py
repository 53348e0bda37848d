from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from proposal_orchestrator.checkpoint import thread_config
from proposal_orchestrator.errors import InvalidStateError, ValidationError
from proposal_orchestrator.interrupts import ControllerPhase, InterruptController, controller_phase
from proposal_orchestrator.models import (
    FeedbackProcessingStatus,
    FeedbackSubmission,
    FeedbackType,
    JobStatus,
    PhaseStatus,
    SectionRef,
)
from proposal_orchestrator.threads import generate_thread_id
from proposal_orchestrator.workflow import ProposalWorkflow

THREAD = generate_thread_id("p-200", "carol")


def _submission(feedback_type: FeedbackType, unit: str = "P", **extra: str) -> FeedbackSubmission:
    return FeedbackSubmission(
        thread_id=THREAD, type=feedback_type, content_reference=SectionRef(section_id=unit), **extra
    )


def test_paused_thread_reports_interrupt_details(engine: ProposalWorkflow, controller: InterruptController) -> None:
    engine.start(THREAD, ["P", "M"])

    status = controller.get_interrupt_status(THREAD)
    assert status.interrupted is True
    assert status.interrupt_point == "evaluate:P"
    assert status.content_reference == SectionRef(section_id="P")

    details = controller.get_interrupt_details(THREAD)
    assert details is not None
    assert details.node_id == "evaluate:P"
    assert details.evaluation is not None and details.evaluation.passed is True
    assert controller_phase(engine.load(THREAD)) == ControllerPhase.INTERRUPTED


def test_feedback_is_persisted_pending_before_resume(engine: ProposalWorkflow, controller: InterruptController) -> None:
    engine.start(THREAD, ["P", "M"])
    state = controller.submit_feedback(_submission(FeedbackType.APPROVE, comments="looks right"))

    stored = engine.load(THREAD)
    assert stored == state
    assert stored.interrupt_status.processing_status == FeedbackProcessingStatus.PENDING
    assert stored.interrupt_status.is_interrupted is True
    assert stored.user_feedback is not None and stored.user_feedback.comments == "looks right"
    assert stored.sections["P"].status == PhaseStatus.APPROVED
    assert controller_phase(stored) == ControllerPhase.FEEDBACK_PENDING


def test_resume_processes_feedback_and_advances(engine: ProposalWorkflow, controller: InterruptController) -> None:
    engine.start(THREAD, ["P", "M", "B"])
    controller.submit_feedback(_submission(FeedbackType.APPROVE))
    controller.resume(THREAD)
    controller.submit_feedback(_submission(FeedbackType.APPROVE, unit="M"))

    response = controller.resume(THREAD)

    state = engine.load(THREAD)
    assert response.success is True
    assert response.new_interrupt is True
    assert response.status == JobStatus.AWAITING_REVIEW
    assert state.sections["M"].status == PhaseStatus.APPROVED
    assert state.active_unit == SectionRef(section_id="B")
    assert state.interrupt_status.interruption_point == "evaluate:B"


def test_resume_to_completion_reports_no_new_interrupt(
    engine: ProposalWorkflow, controller: InterruptController
) -> None:
    engine.start(THREAD, ["P"])
    controller.submit_feedback(_submission(FeedbackType.APPROVE))
    response = controller.resume(THREAD)

    state = engine.load(THREAD)
    assert response.new_interrupt is False
    assert response.status == JobStatus.COMPLETE
    assert state.interrupt_status.processing_status == FeedbackProcessingStatus.PROCESSED
    assert state.interrupt_metadata is None
    assert controller.get_interrupt_details(THREAD) is None
    assert controller_phase(state) == ControllerPhase.RUNNING


def test_reject_regenerates_with_guidance(engine: ProposalWorkflow, controller: InterruptController) -> None:
    engine.start(THREAD, ["P"])
    controller.submit_feedback(_submission(FeedbackType.REJECT, comments="cite the 2025 survey"))
    controller.resume(THREAD)

    record = engine.load(THREAD).sections["P"]
    assert record.status == PhaseStatus.AWAITING_REVIEW
    assert record.attempts == 2
    assert "cite the 2025 survey" in record.content


def test_edit_feedback_applies_content(engine: ProposalWorkflow, controller: InterruptController) -> None:
    engine.start(THREAD, ["P", "M"])
    controller.submit_feedback(_submission(FeedbackType.EDIT, edited_content="Hand-written problem statement."))
    controller.resume(THREAD)

    state = engine.load(THREAD)
    assert state.sections["P"].status == PhaseStatus.EDITED
    assert state.sections["P"].content == "Hand-written problem statement."
    assert state.interrupt_status.interruption_point == "evaluate:M"


def test_edit_submission_requires_content() -> None:
    with pytest.raises(PydanticValidationError, match="edited_content"):
        _submission(FeedbackType.EDIT)


def test_feedback_must_target_paused_unit(engine: ProposalWorkflow, controller: InterruptController) -> None:
    engine.start(THREAD, ["P", "M"])
    with pytest.raises(ValidationError, match="paused on P"):
        controller.submit_feedback(_submission(FeedbackType.APPROVE, unit="M"))


def test_second_submission_while_pending_is_rejected(
    engine: ProposalWorkflow, controller: InterruptController
) -> None:
    engine.start(THREAD, ["P"])
    controller.submit_feedback(_submission(FeedbackType.APPROVE))
    with pytest.raises(InvalidStateError, match="pending feedback"):
        controller.submit_feedback(_submission(FeedbackType.REJECT))


def test_feedback_on_running_thread_is_rejected(engine: ProposalWorkflow, controller: InterruptController) -> None:
    engine.start(THREAD, ["P"])
    controller.submit_feedback(_submission(FeedbackType.APPROVE))
    controller.resume(THREAD)
    with pytest.raises(InvalidStateError, match="not interrupted"):
        controller.submit_feedback(_submission(FeedbackType.APPROVE))


def test_resume_without_pending_feedback_is_rejected(
    engine: ProposalWorkflow, controller: InterruptController
) -> None:
    engine.start(THREAD, ["P"])
    with pytest.raises(InvalidStateError, match="no pending feedback"):
        controller.resume(THREAD)


def test_illegal_feedback_transition_is_recorded_as_failed(
    engine: ProposalWorkflow, controller: InterruptController
) -> None:
    engine.start(THREAD, ["P", "M"])
    state = engine.load(THREAD)
    engine.store.put(THREAD, state.model_copy(update={"interrupt_metadata": None}))

    with pytest.raises(InvalidStateError, match="queued -> approved"):
        controller.submit_feedback(_submission(FeedbackType.APPROVE, unit="M"))

    stored = engine.load(THREAD)
    assert stored.interrupt_status.processing_status == FeedbackProcessingStatus.FAILED
    assert stored.errors[-1].unit_id == "M"
    assert stored.errors[-1].attempted_transition == "feedback approve"


def test_malformed_thread_ids_are_rejected(controller: InterruptController) -> None:
    with pytest.raises(ValidationError):
        controller.resume("proposal:only")
    with pytest.raises(ValidationError):
        controller.get_interrupt_status("user:x")


def test_paused_thread_waits_in_human_review_node(engine: ProposalWorkflow, controller: InterruptController) -> None:
    engine.start(THREAD, ["P"])
    snapshot = engine.graph.get_state(thread_config(THREAD))
    assert snapshot.next == ("human_review",)
    assert snapshot.tasks[0].interrupts[0].value["interruption_point"] == "evaluate:P"

    controller.submit_feedback(_submission(FeedbackType.APPROVE))
    assert engine.graph.get_state(thread_config(THREAD)).next == ("human_review",)

    controller.resume(THREAD)
    assert engine.graph.get_state(thread_config(THREAD)).next == ()
