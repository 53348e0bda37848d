from importlib.metadata import version

from .canonical import deserialize_state, serialize_state, to_canonical_json
from .checkpoint import (
    CheckpointRecord,
    FileRecordBackend,
    InMemoryRecordBackend,
    WorkflowCheckpointStore,
    build_checkpoint_store,
)
from .dependencies import DependencyGraph, StaleDecision, propagate_stale, resolve_stale
from .errors import (
    AccessDeniedError,
    DependencyGraphError,
    DependencyViolationError,
    ErrorCategory,
    InterruptedStateError,
    InvalidStateError,
    OrchestrationError,
    ParseError,
    PersistenceError,
    SessionNotFoundError,
    UpstreamServiceError,
    ValidationError,
    classify_error,
)
from .generation import GenerationRequest, GenerationTable, StaticEvaluator, template_generator
from .interrupts import ControllerPhase, InterruptController, controller_phase
from .locks import ThreadLockRegistry
from .models import (
    ConnectionsRef,
    EvaluationResult,
    FeedbackSubmission,
    FeedbackType,
    JobStatus,
    PhaseName,
    PhaseStatus,
    ResearchRef,
    SectionRef,
    SessionMetadata,
    SessionState,
    SolutionRef,
    ThreadIdFormat,
    WorkflowState,
)
from .reducers import apply_update, create_workflow_state
from .routing import RouteDecision, RouteTarget, determine_next_section, route_after_evaluation
from .sessions import SessionManager
from .settings import RuntimeSettings
from .threads import generate_proposal_id, generate_thread_id, is_valid_thread_id, parse_thread_id
from .workflow import ProposalWorkflow


def get_version() -> str:
    try:
        return version("proposal-orchestrator")
    except Exception:
        return "0.0.0"


__all__ = [
    "AccessDeniedError",
    "CheckpointRecord",
    "ConnectionsRef",
    "ControllerPhase",
    "DependencyGraph",
    "DependencyGraphError",
    "DependencyViolationError",
    "ErrorCategory",
    "EvaluationResult",
    "FeedbackSubmission",
    "FeedbackType",
    "FileRecordBackend",
    "GenerationRequest",
    "GenerationTable",
    "InMemoryRecordBackend",
    "InterruptController",
    "InterruptedStateError",
    "InvalidStateError",
    "JobStatus",
    "OrchestrationError",
    "ParseError",
    "PersistenceError",
    "PhaseName",
    "PhaseStatus",
    "ProposalWorkflow",
    "ResearchRef",
    "RouteDecision",
    "RouteTarget",
    "RuntimeSettings",
    "SectionRef",
    "SessionManager",
    "SessionMetadata",
    "SessionNotFoundError",
    "SessionState",
    "SolutionRef",
    "StaleDecision",
    "StaticEvaluator",
    "ThreadIdFormat",
    "ThreadLockRegistry",
    "UpstreamServiceError",
    "ValidationError",
    "WorkflowCheckpointStore",
    "WorkflowState",
    "apply_update",
    "build_checkpoint_store",
    "classify_error",
    "controller_phase",
    "create_workflow_state",
    "deserialize_state",
    "determine_next_section",
    "generate_proposal_id",
    "generate_thread_id",
    "get_version",
    "is_valid_thread_id",
    "parse_thread_id",
    "propagate_stale",
    "resolve_stale",
    "route_after_evaluation",
    "serialize_state",
    "template_generator",
    "to_canonical_json",
]
