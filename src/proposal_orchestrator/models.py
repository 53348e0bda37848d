from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from .errors import ErrorCategory


def utc_now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class PhaseStatus(str, Enum):
    NOT_STARTED = "not_started"
    QUEUED = "queued"
    RUNNING = "running"
    AWAITING_EVALUATION = "awaiting_evaluation"
    AWAITING_REVIEW = "awaiting_review"
    NEEDS_REVISION = "needs_revision"
    APPROVED = "approved"
    EDITED = "edited"
    STALE = "stale"
    ERROR = "error"


READY_STATUSES = frozenset({PhaseStatus.APPROVED, PhaseStatus.EDITED})


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    AWAITING_REVIEW = "awaiting_review"
    COMPLETE = "complete"
    ERROR = "error"


class PhaseName(str, Enum):
    RESEARCH = "research"
    SOLUTION = "solution"
    CONNECTIONS = "connections"


PHASE_ORDER: tuple[PhaseName, ...] = (PhaseName.RESEARCH, PhaseName.SOLUTION, PhaseName.CONNECTIONS)


class DocumentStatus(str, Enum):
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


class FeedbackType(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REGENERATE = "regenerate"
    EDIT = "edit"


class FeedbackProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class SessionState(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Content references
# ---------------------------------------------------------------------------


class ResearchRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["research"] = "research"

    @property
    def unit_id(self) -> str:
        return PhaseName.RESEARCH.value


class SolutionRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["solution"] = "solution"

    @property
    def unit_id(self) -> str:
        return PhaseName.SOLUTION.value


class ConnectionsRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["connections"] = "connections"

    @property
    def unit_id(self) -> str:
        return PhaseName.CONNECTIONS.value


class SectionRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["section"] = "section"
    section_id: str = Field(min_length=1)

    @property
    def unit_id(self) -> str:
        return self.section_id


ContentReference = Annotated[
    ResearchRef | SolutionRef | ConnectionsRef | SectionRef,
    Field(discriminator="kind"),
]
CONTENT_REFERENCE_ADAPTER: TypeAdapter[ResearchRef | SolutionRef | ConnectionsRef | SectionRef] = TypeAdapter(
    ContentReference
)

_PHASE_REFS: dict[PhaseName, ResearchRef | SolutionRef | ConnectionsRef] = {
    PhaseName.RESEARCH: ResearchRef(),
    PhaseName.SOLUTION: SolutionRef(),
    PhaseName.CONNECTIONS: ConnectionsRef(),
}


def phase_reference(phase: PhaseName) -> ResearchRef | SolutionRef | ConnectionsRef:
    return _PHASE_REFS[phase]


def reference_for_unit(unit_id: str) -> ResearchRef | SolutionRef | ConnectionsRef | SectionRef:
    """Build the reference for a bare unit id; phase names win over section ids."""
    try:
        return _PHASE_REFS[PhaseName(unit_id)]
    except ValueError:
        return SectionRef(section_id=unit_id)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class EvaluationResult(BaseModel):
    """One evaluation attempt. Immutable once attached to a unit."""

    model_config = ConfigDict(frozen=True)

    scores: dict[str, float] = Field(default_factory=dict)
    feedback: dict[str, str] = Field(default_factory=dict)
    overall_score: float
    passed: bool
    summary: str = ""

    @classmethod
    def from_scores(
        cls,
        scores: dict[str, float],
        *,
        pass_threshold: float,
        feedback: dict[str, str] | None = None,
        summary: str = "",
    ) -> "EvaluationResult":
        overall = sum(scores.values()) / len(scores) if scores else 0.0
        return cls(
            scores=scores,
            feedback=feedback or {},
            overall_score=overall,
            passed=overall >= pass_threshold,
            summary=summary,
        )


class SourceDocument(BaseModel):
    id: str = ""
    status: DocumentStatus = DocumentStatus.NOT_LOADED
    text: str | None = None


class PhaseRecord(BaseModel):
    status: PhaseStatus = PhaseStatus.NOT_STARTED
    result: dict[str, Any] | str | None = None
    evaluation: EvaluationResult | None = None
    previous_status: PhaseStatus | None = None
    attempts: int = 0
    guidance: str | None = None
    last_updated: datetime | None = None


class SectionRecord(BaseModel):
    id: str
    content: str = ""
    status: PhaseStatus = PhaseStatus.QUEUED
    evaluation: EvaluationResult | None = None
    previous_status: PhaseStatus | None = None
    attempts: int = 0
    guidance: str | None = None
    last_updated: datetime = Field(default_factory=utc_now)


UnitRecord = PhaseRecord | SectionRecord


class UserFeedback(BaseModel):
    type: FeedbackType
    comments: str | None = None
    content_reference: ContentReference | None = None
    edited_content: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class InterruptStatus(BaseModel):
    is_interrupted: bool = False
    interruption_point: str | None = None
    feedback: UserFeedback | None = None
    processing_status: FeedbackProcessingStatus | None = None


class InterruptMetadata(BaseModel):
    content_reference: ContentReference | None = None
    reason: str
    evaluation: EvaluationResult | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class ErrorRecord(BaseModel):
    unit_id: str | None = None
    message: str
    category: ErrorCategory = ErrorCategory.UNKNOWN
    attempted_transition: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class WorkflowState(BaseModel):
    """Aggregate root for one job. Mutated only through ``reducers.apply_update``."""

    model_config = ConfigDict(extra="forbid")

    source_document: SourceDocument = Field(default_factory=SourceDocument)
    research: PhaseRecord = Field(default_factory=PhaseRecord)
    solution: PhaseRecord = Field(default_factory=PhaseRecord)
    connections: PhaseRecord = Field(default_factory=PhaseRecord)
    required_phases: list[PhaseName] = Field(default_factory=list)
    sections: dict[str, SectionRecord] = Field(default_factory=dict)
    required_sections: list[str] = Field(default_factory=list)
    interrupt_status: InterruptStatus = Field(default_factory=InterruptStatus)
    interrupt_metadata: InterruptMetadata | None = None
    user_feedback: UserFeedback | None = None
    active_unit: ContentReference | None = None
    errors: list[ErrorRecord] = Field(default_factory=list)
    created_at: datetime | None = None
    last_updated_at: datetime | None = None
    status: JobStatus = JobStatus.QUEUED

    def phase(self, name: PhaseName) -> PhaseRecord:
        return getattr(self, name.value)

    def record_for(self, reference: ResearchRef | SolutionRef | ConnectionsRef | SectionRef) -> UnitRecord:
        match reference:
            case ResearchRef():
                return self.research
            case SolutionRef():
                return self.solution
            case ConnectionsRef():
                return self.connections
            case SectionRef(section_id=section_id):
                try:
                    return self.sections[section_id]
                except KeyError as exc:
                    raise KeyError(f"section {section_id} is not part of this job") from exc


class ThreadIdFormat(BaseModel):
    """Components of ``proposal:<proposal_id>:user:<user_id>[:subgraph:<name>]``."""

    model_config = ConfigDict(frozen=True)

    proposal_id: str = Field(min_length=1, pattern=r"^[^:]+$")
    user_id: str = Field(min_length=1, pattern=r"^[^:]+$")
    subgraph: str | None = Field(default=None, min_length=1, pattern=r"^[^:]+$")


class SessionMetadata(BaseModel):
    session_id: str
    thread_id: str
    proposal_id: str
    user_id: str
    created_at: datetime = Field(default_factory=utc_now)
    last_activity: datetime = Field(default_factory=utc_now)
    state: SessionState = SessionState.RUNNING
    current_phase: str = ""
    current_step: str | None = None
    error_details: str | None = None


# ---------------------------------------------------------------------------
# External payloads
# ---------------------------------------------------------------------------


class FeedbackSubmission(BaseModel):
    thread_id: str
    type: FeedbackType
    comments: str | None = None
    content_reference: ContentReference
    edited_content: str | None = None

    @model_validator(mode="after")
    def _edit_requires_content(self) -> "FeedbackSubmission":
        if self.type == FeedbackType.EDIT and self.edited_content is None:
            raise ValueError("edited_content is required for EDIT feedback")
        return self

    def to_feedback(self) -> UserFeedback:
        return UserFeedback(
            type=self.type,
            comments=self.comments,
            content_reference=self.content_reference,
            edited_content=self.edited_content,
        )


class ResumeResponse(BaseModel):
    success: bool
    status: JobStatus
    new_interrupt: bool | None = None


class InterruptStatusResponse(BaseModel):
    interrupted: bool
    interrupt_point: str | None = None
    content_reference: ContentReference | None = None


class InterruptDetails(BaseModel):
    node_id: str
    reason: str
    content_reference: ContentReference | None = None
    evaluation: EvaluationResult | None = None
    timestamp: datetime
