"""LangGraph engine that drives one thread of the proposal workflow.

The graph is acyclic in intent: every node reads the whole ``WorkflowState``,
applies one step through the state machine, and hands a ``RouteDecision`` to
the conditional edge that follows it. Regeneration "loops" are ordinary
status transitions bounded by the attempt counter on each unit.

The graph is compiled with the store's LangGraph checkpointer and runs under
``configurable.thread_id`` set to the structured thread id, so every step is
checkpointed. Review and error pauses end in ``human_review``, which stops
the run with ``interrupt()``. The interrupt controller writes the reviewer's
feedback with ``update_state`` and resumes with ``Command(resume=...)``.
Channels hold JSON payloads (``WorkflowState.model_dump(mode="json")``).
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command, interrupt

from .checkpoint import WorkflowCheckpointStore, state_to_payload, thread_config
from .dependencies import DependencyGraph, StaleDecision
from .dependencies import resolve_stale as resolve_stale_decision
from .errors import InvalidStateError, PersistenceError, UpstreamServiceError, classify_error
from .generation import Evaluator, GenerationRequest, GenerationTable
from .interrupts import ensure_not_interrupted
from .locks import ThreadLockRegistry
from .models import (
    ContentReference,
    ErrorRecord,
    FeedbackProcessingStatus,
    FeedbackType,
    InterruptMetadata,
    InterruptStatus,
    JobStatus,
    PhaseName,
    PhaseStatus,
    SectionRef,
    SourceDocument,
    UserFeedback,
    WorkflowState,
    utc_now,
)
from .reducers import apply_update, create_workflow_state
from .routing import (
    RouteDecision,
    RouteTarget,
    determine_next_step,
    interruption_point,
    route_after_evaluation,
    route_finalization,
)
from .sessions import SessionManager
from .settings import RuntimeSettings
from .state_machine import (
    EvaluationPolicy,
    apply_evaluation,
    apply_feedback,
    apply_regeneration,
    complete_generation,
    fail_unit,
    start_generation,
)
from .threads import require_thread_id

logger = logging.getLogger(__name__)


class WorkflowGraphState(TypedDict, total=False):
    workflow: dict[str, Any]
    route: dict[str, Any] | None


_NODE_TARGETS: dict[str, str] = {
    RouteTarget.SELECT.value: "select",
    RouteTarget.GENERATE.value: "generate",
    RouteTarget.EVALUATE.value: "evaluate",
    RouteTarget.REGENERATE.value: "regenerate",
    RouteTarget.AWAIT_REVIEW.value: "await_review",
    RouteTarget.HUMAN_REVIEW.value: "human_review",
    RouteTarget.ERROR_HANDLER.value: "error_handler",
    RouteTarget.FINALIZE.value: "finalize",
    RouteTarget.COMPLETE.value: END,
}


class ProposalWorkflow:
    """Phase state machine plus routing, compiled as a LangGraph ``StateGraph``."""

    def __init__(
        self,
        *,
        store: WorkflowCheckpointStore,
        dependency_graph: DependencyGraph,
        generators: GenerationTable,
        evaluator: Evaluator,
        settings: RuntimeSettings | None = None,
        locks: ThreadLockRegistry | None = None,
        sessions: SessionManager | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings()
        self.store = store
        self.dependency_graph = dependency_graph
        self.generators = generators
        self.evaluator = evaluator
        self.locks = locks if locks is not None else ThreadLockRegistry()
        self.sessions = sessions
        self.policy = EvaluationPolicy.from_settings(self.settings)
        self._clock = clock
        self.graph = self._build_graph().compile(checkpointer=store.checkpointer)

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(WorkflowGraphState)
        graph.add_node("select", self._select_node)
        graph.add_node("generate", self._generate_node)
        graph.add_node("evaluate", self._evaluate_node)
        graph.add_node("regenerate", self._regenerate_node)
        graph.add_node("await_review", self._await_review_node)
        graph.add_node("human_review", self._human_review_node)
        graph.add_node("error_handler", self._error_handler_node)
        graph.add_node("finalize", self._finalize_node)

        graph.add_edge(START, "select")
        for node in ("select", "generate", "evaluate", "regenerate", "error_handler", "finalize"):
            graph.add_conditional_edges(node, self._route, _NODE_TARGETS)
        graph.add_edge("await_review", "human_review")
        graph.add_edge("human_review", "select")
        return graph

    @staticmethod
    def _route(state: WorkflowGraphState) -> str:
        payload = state.get("route")
        if payload is None:
            return RouteTarget.SELECT.value
        return payload["target"]

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _select_node(self, state: WorkflowGraphState) -> dict[str, Any]:
        workflow = self._workflow(state)
        decision = determine_next_step(workflow, self.dependency_graph)
        logger.debug("Next step: %s %s (%s)", decision.target.value, decision.unit_id, decision.reason)
        update: dict[str, Any] = {"active_unit": decision.reference}
        if workflow.status == JobStatus.QUEUED:
            update["status"] = JobStatus.RUNNING
        return self._emit(apply_update(workflow, update), decision)

    def _generate_node(self, state: WorkflowGraphState) -> dict[str, Any]:
        reference = self._reference(state)
        now = self._clock()
        workflow = start_generation(self._workflow(state), reference, now=now)
        workflow = apply_update(workflow, {"active_unit": reference, "status": JobStatus.RUNNING})
        request = GenerationRequest.build(workflow, reference, self.dependency_graph)
        generator = self.generators.for_unit(reference)

        failure: Exception | None = None
        for call in range(1, self.policy.max_attempts + 1):
            try:
                output = generator(request)
            except (UpstreamServiceError, TimeoutError) as exc:
                failure = exc
                logger.warning(
                    "Generation of %s failed (call %d of %d): %s",
                    reference.unit_id,
                    call,
                    self.policy.max_attempts,
                    exc,
                )
                continue
            logger.info("Generated %s (attempt %d)", reference.unit_id, request.attempt)
            workflow = complete_generation(workflow, reference, output, now=self._clock())
            return self._emit(workflow, RouteDecision(RouteTarget.EVALUATE, reference, "content generated"))

        assert failure is not None
        workflow = fail_unit(workflow, reference, failure, now=self._clock())
        return self._emit(workflow, RouteDecision(RouteTarget.ERROR_HANDLER, reference, f"generation failed: {failure}"))

    def _evaluate_node(self, state: WorkflowGraphState) -> dict[str, Any]:
        reference = self._reference(state)
        workflow = self._workflow(state)
        record = workflow.record_for(reference)
        output = record.content if isinstance(reference, SectionRef) else record.result
        request = GenerationRequest.build(workflow, reference, self.dependency_graph)
        now = self._clock()

        try:
            evaluation = self.evaluator(request, output if output is not None else "")
        except (UpstreamServiceError, TimeoutError) as exc:
            logger.warning("Evaluation of %s failed: %s", reference.unit_id, exc)
            evaluation = None
            workflow = apply_update(
                workflow,
                {
                    "errors": ErrorRecord(
                        unit_id=reference.unit_id,
                        message=str(exc) or type(exc).__name__,
                        category=classify_error(exc),
                        attempted_transition="awaiting_evaluation -> needs_revision",
                        timestamp=now,
                    )
                },
            )

        workflow = apply_evaluation(workflow, reference, evaluation, self.policy, now=now)
        outcome = workflow.record_for(reference).status
        logger.info(
            "Evaluated %s: %s (score %s)",
            reference.unit_id,
            outcome.value,
            f"{evaluation.overall_score:.1f}" if evaluation is not None else "n/a",
        )
        return self._emit(workflow, route_after_evaluation(workflow, reference))

    def _regenerate_node(self, state: WorkflowGraphState) -> dict[str, Any]:
        reference = self._reference(state)
        workflow = apply_regeneration(self._workflow(state), reference, self.policy, now=self._clock())
        if workflow.record_for(reference).status == PhaseStatus.ERROR:
            decision = RouteDecision(RouteTarget.ERROR_HANDLER, reference, "regeneration budget exhausted")
        else:
            decision = RouteDecision(RouteTarget.GENERATE, reference, "regenerating after failed evaluation")
        return self._emit(workflow, decision)

    def _await_review_node(self, state: WorkflowGraphState) -> dict[str, Any]:
        decision = self._decision(state)
        workflow = self._pause(self._workflow(state), decision, JobStatus.AWAITING_REVIEW)
        return self._emit(workflow, decision)

    def _error_handler_node(self, state: WorkflowGraphState) -> dict[str, Any]:
        decision = self._decision(state)
        workflow = self._workflow(state)
        now = self._clock()
        reference = decision.reference

        if reference is None:
            logger.error("Job cannot make progress: %s", decision.reason)
            error = ErrorRecord(message=decision.reason, attempted_transition=None, timestamp=now)
            workflow = apply_update(
                workflow,
                {"errors": error, "status": JobStatus.ERROR, "active_unit": None, "last_updated_at": now},
            )
            return self._emit(workflow, RouteDecision(RouteTarget.COMPLETE, None, decision.reason))

        if workflow.record_for(reference).status == PhaseStatus.RUNNING:
            cause = InvalidStateError(f"{reference.unit_id} was left running: {decision.reason}")
            workflow = fail_unit(workflow, reference, cause, now=now)
        logger.error("Pausing for a decision on %s: %s", reference.unit_id, decision.reason)
        workflow = self._pause(workflow, decision, JobStatus.ERROR)
        return self._emit(workflow, RouteDecision(RouteTarget.HUMAN_REVIEW, reference, decision.reason))

    def _human_review_node(self, state: WorkflowGraphState) -> dict[str, Any]:
        """Stop the run until a reviewer's feedback arrives as the resume value.

        The node runs again from the top on resume, so everything before
        ``interrupt()`` must stay free of side effects.
        """
        workflow = self._workflow(state)
        metadata = workflow.interrupt_metadata
        reference = metadata.content_reference if metadata is not None else None
        resumed = interrupt(
            {
                "interruption_point": workflow.interrupt_status.interruption_point,
                "content_reference": reference.model_dump(mode="json") if reference is not None else None,
                "reason": metadata.reason if metadata is not None else "",
            }
        )
        feedback = UserFeedback.model_validate(resumed)
        workflow = self._clear_pause(workflow, feedback)
        return self._emit(workflow, RouteDecision(RouteTarget.SELECT, None, f"{feedback.type.value} feedback processed"))

    def _finalize_node(self, state: WorkflowGraphState) -> dict[str, Any]:
        workflow = self._workflow(state)
        decision = route_finalization(workflow)
        if decision.target == RouteTarget.COMPLETE:
            now = self._clock()
            logger.info("All required units accepted; job complete")
            workflow = apply_update(
                workflow, {"status": JobStatus.COMPLETE, "active_unit": None, "last_updated_at": now}
            )
        return self._emit(workflow, decision)

    # ------------------------------------------------------------------
    # Node helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _workflow(state: WorkflowGraphState) -> WorkflowState:
        return WorkflowState.model_validate(state["workflow"])

    @staticmethod
    def _decision(state: WorkflowGraphState) -> RouteDecision:
        payload = state.get("route")
        if payload is None:
            raise InvalidStateError("node reached without a routing decision")
        return RouteDecision.from_payload(payload)

    @classmethod
    def _reference(cls, state: WorkflowGraphState) -> ContentReference:
        decision = cls._decision(state)
        if decision.reference is None:
            raise InvalidStateError("node reached without a unit to work on")
        return decision.reference

    @staticmethod
    def _emit(workflow: WorkflowState, decision: RouteDecision) -> dict[str, Any]:
        return {"workflow": state_to_payload(workflow), "route": decision.to_payload()}

    def _pause(self, workflow: WorkflowState, decision: RouteDecision, status: JobStatus) -> WorkflowState:
        now = self._clock()
        point = interruption_point(decision, workflow)
        evaluation = workflow.record_for(decision.reference).evaluation if decision.reference is not None else None
        logger.info("Interrupted at %s", point)
        return apply_update(
            workflow,
            {
                "interrupt_status": InterruptStatus(is_interrupted=True, interruption_point=point),
                "interrupt_metadata": InterruptMetadata(
                    content_reference=decision.reference,
                    reason=decision.reason,
                    evaluation=evaluation,
                    timestamp=now,
                ),
                "active_unit": decision.reference,
                "status": status,
                "last_updated_at": now,
            },
        )

    def _clear_pause(self, workflow: WorkflowState, feedback: UserFeedback) -> WorkflowState:
        """Mark the feedback processed and leave the pause.

        A unit still ``STALE`` after regenerate or reject feedback is resolved
        as a regenerate decision, with the comments as guidance.
        """
        now = self._clock()
        reference = feedback.content_reference
        if (
            feedback.type in {FeedbackType.REGENERATE, FeedbackType.REJECT}
            and workflow.record_for(reference).status == PhaseStatus.STALE
        ):
            workflow = resolve_stale_decision(
                workflow, reference, StaleDecision.REGENERATE, guidance=feedback.comments, now=now
            )
        logger.info("Processing %s feedback on %s", feedback.type.value, reference.unit_id)
        return apply_update(
            workflow,
            {
                "interrupt_status": InterruptStatus(
                    feedback=feedback, processing_status=FeedbackProcessingStatus.PROCESSED
                ),
                "interrupt_metadata": None,
                "status": JobStatus.RUNNING,
                "last_updated_at": now,
            },
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load(self, thread_id: str) -> WorkflowState:
        """Latest checkpointed state of a thread.

        Raises:
            ValidationError: If the thread id is malformed.
            InvalidStateError: If the thread has no checkpoint.
        """
        state = self.store.get(thread_id)
        if state is None:
            raise InvalidStateError(f"no checkpoint for thread {thread_id}")
        return state

    def get_state(self, thread_id: str) -> WorkflowState | None:
        return self.store.get(thread_id)

    def start(
        self,
        thread_id: str,
        required_sections: Iterable[str],
        *,
        required_phases: Iterable[PhaseName] = (),
        source_document: SourceDocument | None = None,
    ) -> WorkflowState:
        """Create a job on a new thread and run it to its first pause point.

        Raises:
            ValidationError: On a malformed thread id or section list, or a unit
                no generator covers.
            InvalidStateError: If the thread already has a checkpoint.
        """
        require_thread_id(thread_id)
        state = create_workflow_state(
            required_sections,
            required_phases=required_phases,
            source_document=source_document,
            now=self._clock(),
        )
        self.generators.require([phase.value for phase in state.required_phases] + list(state.required_sections))
        with self.locks.hold(thread_id):
            if self.store.get(thread_id) is not None:
                raise InvalidStateError(f"thread {thread_id} already exists")
            logger.info("Starting thread %s with sections %s", thread_id, state.required_sections)
            return self._run_from(thread_id, state)

    def run(self, thread_id: str) -> WorkflowState:
        """Advance a thread until it completes or pauses.

        Raises:
            InterruptedStateError: If the thread is paused for human input.
        """
        with self.locks.hold(thread_id):
            state = self.load(thread_id)
            ensure_not_interrupted(thread_id, state)
            if state.status == JobStatus.COMPLETE:
                return state
            return self._run_from(thread_id, state)

    def resume(self, thread_id: str, feedback: UserFeedback) -> WorkflowState:
        """Continue a paused thread from ``human_review`` with ``feedback`` as the resume value."""
        with self.locks.hold(thread_id):
            return self._execute(thread_id, Command(resume=feedback.model_dump(mode="json")))

    def save(self, thread_id: str, state: WorkflowState) -> None:
        """Write ``state`` as the thread's latest checkpoint.

        A paused state is recorded as the output of ``await_review`` so the
        thread's next step stays ``human_review``. Any other state goes
        through the store and is picked up by the next run.
        """
        if not state.interrupt_status.is_interrupted:
            self.store.put(thread_id, state)
            return
        try:
            self.graph.update_state(
                thread_config(thread_id), {"workflow": state_to_payload(state)}, as_node="await_review"
            )
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot write checkpoint {thread_id}: {exc}") from exc

    def edit_section(
        self,
        thread_id: str,
        section_id: str,
        content: str,
        *,
        advance: bool = True,
    ) -> WorkflowState:
        """Replace an accepted section's content and mark its dependents stale.

        Raises:
            InterruptedStateError: If the thread is paused.
            InvalidStateError: If the section is not part of the job or not
                in a state that can be edited.
        """
        with self.locks.hold(thread_id):
            state = self.load(thread_id)
            ensure_not_interrupted(thread_id, state)
            reference = SectionRef(section_id=section_id)
            if section_id not in state.sections:
                raise InvalidStateError(f"section {section_id} is not part of thread {thread_id}")
            now = self._clock()
            feedback = UserFeedback(
                type=FeedbackType.EDIT,
                content_reference=reference,
                edited_content=content,
                timestamp=now,
            )
            state = apply_feedback(state, reference, feedback, self.dependency_graph, now=now)
            state = apply_update(state, {"status": JobStatus.RUNNING, "last_updated_at": now})
            return self._run_from(thread_id, state) if advance else self._store(thread_id, state)

    def resolve_stale(
        self,
        thread_id: str,
        section_id: str,
        decision: StaleDecision | str,
        *,
        guidance: str | None = None,
        advance: bool = True,
    ) -> WorkflowState:
        """Apply a keep/regenerate decision to a stale section outside a pause.

        Raises:
            InterruptedStateError: If the thread is paused; use feedback instead.
            InvalidStateError: If the section is not stale.
        """
        with self.locks.hold(thread_id):
            state = self.load(thread_id)
            ensure_not_interrupted(thread_id, state)
            state = resolve_stale_decision(
                state, section_id, StaleDecision(decision), guidance=guidance, now=self._clock()
            )
            return self._run_from(thread_id, state) if advance else self._store(thread_id, state)

    def record_activity(self, thread_id: str, state: WorkflowState) -> None:
        """Refresh the sessions bound to ``thread_id`` with its current position."""
        if self.sessions is not None:
            self.sessions.record_thread_activity(thread_id, state)

    def _store(self, thread_id: str, state: WorkflowState) -> WorkflowState:
        self.store.put(thread_id, state)
        self.record_activity(thread_id, state)
        return state

    def _run_from(self, thread_id: str, state: WorkflowState) -> WorkflowState:
        """Start a fresh run of the graph from ``state``, dropping any pending step."""
        return self._execute(thread_id, {"workflow": state_to_payload(state), "route": None})

    def _execute(self, thread_id: str, graph_input: dict[str, Any] | Command) -> WorkflowState:
        config = {"recursion_limit": self.settings.recursion_limit, **thread_config(thread_id)}
        try:
            self.graph.invoke(graph_input, config=config)
        except sqlite3.Error as exc:
            raise PersistenceError(f"checkpoint write failed for thread {thread_id}: {exc}") from exc
        final = self.load(thread_id)
        logger.info(
            "Thread %s stopped with status %s%s",
            thread_id,
            final.status.value,
            f" at {final.interrupt_status.interruption_point}" if final.interrupt_status.is_interrupted else "",
        )
        self.record_activity(thread_id, final)
        return final
