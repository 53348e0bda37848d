"""Contracts for the content-generation collaborator.

The engine never looks generators up by name at runtime: a ``GenerationTable``
mapping unit ids to callables is built once at startup and handed to the
engine.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .canonical import to_canonical_json
from .dependencies import DependencyGraph
from .errors import ValidationError
from .models import (
    PHASE_ORDER,
    READY_STATUSES,
    ContentReference,
    EvaluationResult,
    SectionRef,
    WorkflowState,
)

UnitId = str
GenerationOutput = str | dict[str, Any]


@dataclass(frozen=True)
class GenerationRequest:
    """Everything a generator may use to produce one unit."""

    reference: ContentReference
    attempt: int
    guidance: str | None = None
    source_text: str | None = None
    context: Mapping[str, str] = field(default_factory=dict)
    previous_evaluation: EvaluationResult | None = None

    @property
    def unit_id(self) -> str:
        return self.reference.unit_id

    @classmethod
    def build(cls, state: WorkflowState, reference: ContentReference, graph: DependencyGraph) -> "GenerationRequest":
        """Collect accepted upstream content for ``reference``.

        Phases see the results of earlier phases; sections also see their
        accepted prerequisite sections.
        """
        record = state.record_for(reference)
        context: dict[str, str] = {}
        for phase in PHASE_ORDER:
            if phase.value == reference.unit_id:
                break
            phase_record = state.phase(phase)
            if phase_record.status in READY_STATUSES and phase_record.result is not None:
                result = phase_record.result
                context[phase.value] = result if isinstance(result, str) else to_canonical_json(result)
        if isinstance(reference, SectionRef):
            for prerequisite in sorted(graph.prerequisites_of(reference.section_id)):
                upstream = state.sections.get(prerequisite)
                if upstream is not None and upstream.status in READY_STATUSES:
                    context[prerequisite] = upstream.content
        return cls(
            reference=reference,
            attempt=record.attempts,
            guidance=record.guidance,
            source_text=state.source_document.text,
            context=context,
            previous_evaluation=record.evaluation,
        )


GenerationFn = Callable[[GenerationRequest], GenerationOutput]
Evaluator = Callable[[GenerationRequest, GenerationOutput], EvaluationResult]


class GenerationTable:
    """Explicit ``UnitId -> GenerationFn`` table with an optional fallback."""

    def __init__(self, entries: Mapping[UnitId, GenerationFn], *, default: GenerationFn | None = None) -> None:
        self._entries = dict(entries)
        self._default = default

    def __contains__(self, unit_id: object) -> bool:
        return isinstance(unit_id, str) and (unit_id in self._entries or self._default is not None)

    @property
    def units(self) -> frozenset[UnitId]:
        return frozenset(self._entries)

    def for_unit(self, reference: ContentReference) -> GenerationFn:
        """Return the generator for a unit.

        Raises:
            ValidationError: If neither an entry nor a default covers the unit.
        """
        generator = self._entries.get(reference.unit_id, self._default)
        if generator is None:
            raise ValidationError(f"No generator registered for unit {reference.unit_id}")
        return generator

    def require(self, unit_ids: list[UnitId]) -> None:
        """Fail fast when a job names units this table cannot generate."""
        missing = [unit_id for unit_id in unit_ids if unit_id not in self]
        if missing:
            raise ValidationError(f"No generator registered for units: {missing}")


# ---------------------------------------------------------------------------
# Deterministic collaborators (offline mode and tests)
# ---------------------------------------------------------------------------


def _title(unit_id: str) -> str:
    return unit_id.replace("_", " ").strip().title()


def template_generator(request: GenerationRequest) -> GenerationOutput:
    """Offline generator producing a fixed-shape draft without calling a model."""
    title = _title(request.unit_id)
    if not isinstance(request.reference, SectionRef):
        return {
            "unit": request.unit_id,
            "summary": f"{title} findings (attempt {request.attempt})",
            "inputs": sorted(request.context),
            "guidance": request.guidance or "",
        }
    lines = [f"# {title}", "", f"Draft {request.attempt} for {title.lower()}."]
    if request.context:
        lines.append("Builds on: " + ", ".join(sorted(request.context)) + ".")
    if request.guidance:
        lines.append(f"Reviewer guidance applied: {request.guidance}")
    return "\n".join(lines)


@dataclass(frozen=True)
class StaticEvaluator:
    """Offline evaluator that scores every criterion with the same value."""

    score: float = 85.0
    pass_threshold: float = 70.0
    criteria: tuple[str, ...] = ("relevance", "completeness", "clarity")

    def __call__(self, request: GenerationRequest, output: GenerationOutput) -> EvaluationResult:
        scores = {criterion: self.score for criterion in self.criteria}
        return EvaluationResult.from_scores(
            scores,
            pass_threshold=self.pass_threshold,
            feedback={criterion: "scored offline" for criterion in self.criteria},
            summary=f"{request.unit_id} scored {self.score:g} offline",
        )
