from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ParseError, UpstreamServiceError
from .generation import GenerationOutput, GenerationRequest, GenerationTable
from .models import EvaluationResult, SectionRef
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 2


class SupportsInvoke(Protocol):
    """Protocol for any LangChain-compatible runnable that supports invoke."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Wraps a structured-output runnable and validates its response."""

    schema: type[ModelT]
    runnable: SupportsInvoke

    def invoke(self, prompt: str) -> ModelT:
        """Invoke the model and return a validated schema instance.

        Raises:
            UpstreamServiceError: If the model call itself fails.
            ParseError: If the model returns unparseable or invalid output.
        """
        try:
            raw_output = self.runnable.invoke(prompt)
        except Exception as exc:  # noqa: BLE001 - provider errors have no common base.
            raise UpstreamServiceError(f"{self.schema.__name__} request failed: {exc}") from exc
        return normalize_structured_output(raw_output=raw_output, schema=self.schema)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or ``.env`` and return it.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required when PROPOSAL_USE_LLM is enabled")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI client with a bounded request timeout.

    Raises:
        ValueError: If ``model_name`` is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    return ChatOpenAI(model=model_name, temperature=temperature, timeout=timeout, max_retries=max_retries)


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Normalize raw structured output into a validated model instance.

    Handles the ``include_raw=True`` envelope, model instances and plain dicts.

    Raises:
        ParseError: If the output cannot be parsed or validated against the schema.
    """
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        parsing_error = payload.get("parsing_error")
        if parsing_error is not None:
            raise ParseError(f"Structured output parsing failed for {schema.__name__}: {parsing_error!r}")
        payload = payload.get("parsed")
        if payload is None:
            raise ParseError(f"Structured output returned no parsed payload for {schema.__name__}")

    if isinstance(payload, schema):
        return payload

    if isinstance(payload, BaseModel):
        candidate = payload.model_dump(mode="json")
    elif isinstance(payload, dict):
        candidate = payload
    else:
        raise ParseError(
            f"Structured output for {schema.__name__} returned unsupported payload type {type(payload).__name__}"
        )

    try:
        return schema.model_validate(candidate)
    except PydanticValidationError as exc:
        raise ParseError(f"Structured output validation failed for {schema.__name__}: {exc}") from exc


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    """Bind ``schema`` to a chat model through strict function calling.

    Raises:
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    model = get_chat_model(
        model_name=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
        repo_root=repo_root,
    )
    runnable = model.with_structured_output(
        schema,
        method="function_calling",
        include_raw=True,
        strict=True,
    )
    return StructuredOutputAdapter(schema=schema, runnable=runnable)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class CriterionScore(BaseModel):
    criterion: str
    score: float = Field(ge=0, le=100)
    feedback: str


class EvaluationDraft(BaseModel):
    criteria: list[CriterionScore] = Field(min_length=1)
    summary: str


def _render_prompt(request: GenerationRequest) -> str:
    kind = "section" if isinstance(request.reference, SectionRef) else "analysis phase"
    parts = [f"Write the {request.unit_id} {kind} of a funding proposal."]
    if request.source_text:
        parts.append(f"Source document:\n{request.source_text}")
    for unit_id, content in request.context.items():
        parts.append(f"Accepted {unit_id}:\n{content}")
    if request.previous_evaluation is not None:
        parts.append(f"Previous evaluation: {request.previous_evaluation.summary}")
    if request.guidance:
        parts.append(f"Reviewer guidance: {request.guidance}")
    return "\n\n".join(parts)


@dataclass(slots=True)
class LLMGenerator:
    """Generation collaborator backed by a chat model."""

    model: SupportsInvoke

    def __call__(self, request: GenerationRequest) -> GenerationOutput:
        prompt = _render_prompt(request)
        try:
            message = self.model.invoke(prompt)
        except Exception as exc:  # noqa: BLE001 - provider errors have no common base.
            raise UpstreamServiceError(f"generation of {request.unit_id} failed: {exc}") from exc
        content = getattr(message, "content", message)
        if not isinstance(content, str) or not content.strip():
            raise ParseError(f"generation of {request.unit_id} returned no text content")
        logger.debug("Generated %d characters for %s", len(content), request.unit_id)
        return content


@dataclass(slots=True)
class LLMEvaluator:
    """Evaluation collaborator: structured rubric scores from a chat model."""

    adapter: StructuredOutputAdapter[EvaluationDraft]
    pass_threshold: float = 70.0

    def __call__(self, request: GenerationRequest, output: GenerationOutput) -> EvaluationResult:
        content = output if isinstance(output, str) else repr(output)
        prompt = (
            f"Score the {request.unit_id} content below from 0 to 100 on relevance, completeness "
            f"and clarity, with one sentence of feedback per criterion.\n\n{content}"
        )
        draft = self.adapter.invoke(prompt)
        return EvaluationResult.from_scores(
            {item.criterion: item.score for item in draft.criteria},
            pass_threshold=self.pass_threshold,
            feedback={item.criterion: item.feedback for item in draft.criteria},
            summary=draft.summary,
        )


def build_llm_collaborators(
    settings: RuntimeSettings, *, repo_root: Path | None = None
) -> tuple[GenerationTable, LLMEvaluator]:
    """Build the model-backed generator table and evaluator once at startup."""
    model = get_chat_model(
        model_name=settings.model,
        temperature=0.2,
        timeout=settings.request_timeout_seconds,
        repo_root=repo_root,
    )
    adapter = get_structured_chat_model(
        model_name=settings.model,
        schema=EvaluationDraft,
        timeout=settings.request_timeout_seconds,
        repo_root=repo_root,
    )
    return GenerationTable({}, default=LLMGenerator(model)), LLMEvaluator(adapter, settings.pass_threshold)
