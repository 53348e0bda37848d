"""Routing functions that decide the next unit of work from the whole state.

Every function here is pure: it reads a ``WorkflowState`` and the static
``DependencyGraph`` and returns a ``RouteDecision``. The engine turns
decisions into graph edges.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .dependencies import DependencyGraph
from .errors import DependencyViolationError
from .models import (
    CONTENT_REFERENCE_ADAPTER,
    READY_STATUSES,
    ConnectionsRef,
    ContentReference,
    PhaseName,
    PhaseStatus,
    ResearchRef,
    SectionRef,
    SolutionRef,
    WorkflowState,
    phase_reference,
)


class RouteTarget(str, Enum):
    SELECT = "select"
    GENERATE = "generate"
    EVALUATE = "evaluate"
    REGENERATE = "regenerate"
    AWAIT_REVIEW = "await_review"
    HUMAN_REVIEW = "human_review"
    ERROR_HANDLER = "error_handler"
    FINALIZE = "finalize"
    COMPLETE = "complete"


@dataclass(frozen=True)
class RouteDecision:
    target: RouteTarget
    reference: ContentReference | None = None
    reason: str = ""

    @property
    def unit_id(self) -> str | None:
        return self.reference.unit_id if self.reference is not None else None

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe form, as held in the graph's ``route`` channel."""
        return {
            "target": self.target.value,
            "reference": self.reference.model_dump(mode="json") if self.reference is not None else None,
            "reason": self.reason,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "RouteDecision":
        reference = payload.get("reference")
        return cls(
            target=RouteTarget(payload["target"]),
            reference=CONTENT_REFERENCE_ADAPTER.validate_python(reference) if reference is not None else None,
            reason=payload.get("reason", ""),
        )


def interruption_point(decision: RouteDecision, state: WorkflowState) -> str:
    """Name the pause point a decision stops at, e.g. ``evaluate:methodology``."""
    unit = decision.unit_id or "job"
    if decision.target == RouteTarget.ERROR_HANDLER:
        return f"error:{unit}"
    if decision.reference is not None and state.record_for(decision.reference).status == PhaseStatus.STALE:
        return f"stale:{unit}"
    return f"evaluate:{unit}"


# ---------------------------------------------------------------------------
# Section routing
# ---------------------------------------------------------------------------


def _unready_prerequisites(state: WorkflowState, graph: DependencyGraph, section_id: str) -> list[str]:
    """Prerequisites inside this job that are not ``APPROVED``/``EDITED``.

    Prerequisites that the job does not require are ignored.
    """
    required = set(state.required_sections)
    blocked: list[str] = []
    for prerequisite in sorted(graph.prerequisites_of(section_id) & required):
        record = state.sections.get(prerequisite)
        if record is None or record.status not in READY_STATUSES:
            blocked.append(prerequisite)
    return blocked


def _stuck_decision(state: WorkflowState, graph: DependencyGraph) -> RouteDecision:
    for section_id in state.required_sections:
        record = state.sections.get(section_id)
        if record is None or record.status not in {PhaseStatus.QUEUED, PhaseStatus.STALE}:
            continue
        for prerequisite in _unready_prerequisites(state, graph, section_id):
            blocking = state.sections.get(prerequisite)
            status = blocking.status.value if blocking is not None else "missing"
            if blocking is not None and blocking.status in {PhaseStatus.QUEUED, PhaseStatus.STALE}:
                continue
            violation = DependencyViolationError(section_id, prerequisite, status)
            return RouteDecision(RouteTarget.ERROR_HANDLER, SectionRef(section_id=prerequisite), str(violation))

    for section_id in state.required_sections:
        record = state.sections.get(section_id)
        if record is None:
            return RouteDecision(RouteTarget.ERROR_HANDLER, None, f"section {section_id} has no record")
        if record.status not in READY_STATUSES | {PhaseStatus.QUEUED, PhaseStatus.STALE}:
            return RouteDecision(
                RouteTarget.ERROR_HANDLER,
                SectionRef(section_id=section_id),
                f"section {section_id} is stuck in {record.status.value}",
            )
    return RouteDecision(RouteTarget.ERROR_HANDLER, None, "no section can make progress")


def determine_next_section(state: WorkflowState, graph: DependencyGraph) -> RouteDecision:
    """Pick the next section to work on.

    Rules, in order: no required sections is an error; a section awaiting
    review is surfaced first; otherwise the first required section in
    declared order that is ``QUEUED`` or ``STALE`` and whose prerequisites are
    all accepted is selected; when everything is accepted the job finalizes;
    anything else is a stuck condition routed to the error handler.

    A selected ``STALE`` section goes to review rather than generation, so it
    only leaves ``STALE`` through a human keep/regenerate decision.
    """
    if not state.required_sections:
        return RouteDecision(RouteTarget.ERROR_HANDLER, None, "job has no required sections")

    for section_id in state.required_sections:
        record = state.sections.get(section_id)
        if record is not None and record.status == PhaseStatus.AWAITING_REVIEW:
            return RouteDecision(RouteTarget.AWAIT_REVIEW, SectionRef(section_id=section_id), "awaiting review")

    for section_id in state.required_sections:
        record = state.sections.get(section_id)
        if record is None or record.status not in {PhaseStatus.QUEUED, PhaseStatus.STALE}:
            continue
        if _unready_prerequisites(state, graph, section_id):
            continue
        reference = SectionRef(section_id=section_id)
        if record.status == PhaseStatus.STALE:
            return RouteDecision(RouteTarget.AWAIT_REVIEW, reference, "upstream content changed")
        return RouteDecision(RouteTarget.GENERATE, reference, "prerequisites satisfied")

    if all(
        section_id in state.sections and state.sections[section_id].status in READY_STATUSES
        for section_id in state.required_sections
    ):
        return RouteDecision(RouteTarget.FINALIZE, None, "all sections accepted")

    return _stuck_decision(state, graph)


# ---------------------------------------------------------------------------
# Phase routing
# ---------------------------------------------------------------------------


def _phase_decision(state: WorkflowState, phase: PhaseName) -> RouteDecision | None:
    """Decision for a phase that still needs work, or None once it is accepted."""
    record = state.phase(phase)
    reference = phase_reference(phase)
    match record.status:
        case PhaseStatus.APPROVED | PhaseStatus.EDITED:
            return None
        case PhaseStatus.NOT_STARTED | PhaseStatus.QUEUED:
            return RouteDecision(RouteTarget.GENERATE, reference, f"{phase.value} phase is next")
        case PhaseStatus.AWAITING_REVIEW | PhaseStatus.STALE:
            return RouteDecision(RouteTarget.AWAIT_REVIEW, reference, "awaiting review")
        case PhaseStatus.AWAITING_EVALUATION:
            return RouteDecision(RouteTarget.EVALUATE, reference, "generated content awaits evaluation")
        case PhaseStatus.NEEDS_REVISION:
            return RouteDecision(RouteTarget.REGENERATE, reference, "evaluation did not pass")
        case PhaseStatus.RUNNING | PhaseStatus.ERROR:
            return RouteDecision(
                RouteTarget.ERROR_HANDLER, reference, f"{phase.value} phase is stuck in {record.status.value}"
            )


def _phase_successor(state: WorkflowState, phase: PhaseName) -> RouteDecision:
    phases = list(state.required_phases)
    remaining = phases[phases.index(phase) + 1 :] if phase in phases else phases
    for successor in remaining:
        decision = _phase_decision(state, successor)
        if decision is not None:
            return decision
    return RouteDecision(RouteTarget.SELECT, None, "research phases complete")


def route_after_phase_evaluation(state: WorkflowState, phase: PhaseName) -> RouteDecision:
    """Two-outcome rule for a top-level phase, feeding the phase's successor."""
    record = state.phase(phase)
    reference = phase_reference(phase)
    if record.evaluation is None or not record.evaluation.passed:
        return RouteDecision(RouteTarget.REGENERATE, reference, "evaluation did not pass")
    if record.status == PhaseStatus.AWAITING_REVIEW:
        return RouteDecision(RouteTarget.AWAIT_REVIEW, reference, "awaiting review")
    return _phase_successor(state, phase)


def route_after_evaluation(state: WorkflowState, reference: ContentReference) -> RouteDecision:
    """Two-outcome rule: regenerate on a missing or failed evaluation, else select next."""
    match reference:
        case ResearchRef() | SolutionRef() | ConnectionsRef():
            return route_after_phase_evaluation(state, PhaseName(reference.unit_id))
        case SectionRef():
            record = state.record_for(reference)
            if record.evaluation is None or not record.evaluation.passed:
                return RouteDecision(RouteTarget.REGENERATE, reference, "evaluation did not pass")
            return RouteDecision(RouteTarget.SELECT, None, "evaluation passed")


# ---------------------------------------------------------------------------
# Whole-job routing
# ---------------------------------------------------------------------------


def _pending_section_step(state: WorkflowState) -> RouteDecision | None:
    for section_id in state.required_sections:
        record = state.sections.get(section_id)
        if record is None:
            continue
        reference = SectionRef(section_id=section_id)
        if record.status == PhaseStatus.NEEDS_REVISION:
            return RouteDecision(RouteTarget.REGENERATE, reference, "evaluation did not pass")
        if record.status == PhaseStatus.AWAITING_EVALUATION:
            return RouteDecision(RouteTarget.EVALUATE, reference, "generated content awaits evaluation")
    return None


def determine_next_step(state: WorkflowState, graph: DependencyGraph) -> RouteDecision:
    """Next step for the whole job: required phases in order, then sections.

    Units left half-way (``NEEDS_REVISION`` after a rejection, or
    ``AWAITING_EVALUATION`` after a restart) are picked up before new work.
    """
    for phase in state.required_phases:
        decision = _phase_decision(state, phase)
        if decision is not None:
            return decision
    pending = _pending_section_step(state)
    if pending is not None:
        return pending
    return determine_next_section(state, graph)


def route_finalization(state: WorkflowState) -> RouteDecision:
    """Complete only if every required unit is still accepted; a late edit reopens the job."""
    phases_done = all(state.phase(phase).status in READY_STATUSES for phase in state.required_phases)
    sections_done = bool(state.required_sections) and all(
        section_id in state.sections and state.sections[section_id].status in READY_STATUSES
        for section_id in state.required_sections
    )
    if phases_done and sections_done:
        return RouteDecision(RouteTarget.COMPLETE, None, "all required units accepted")
    return RouteDecision(RouteTarget.SELECT, None, "job reopened by a late change")
