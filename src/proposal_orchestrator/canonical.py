from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .models import SessionMetadata, WorkflowState

_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert models, enums and timestamps into JSON primitives.

    Raises:
        TypeError: If value contains a type that has no JSON representation.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_normalize_for_jcs(item) for item in value]
        if isinstance(value, (set, frozenset)):
            items.sort(key=repr)
        return items
    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to byte-for-byte reproducible JSON per RFC 8785."""
    return rfc8785.dumps(_normalize_for_jcs(value)).decode("utf-8")


def serialize_state(state: WorkflowState) -> str:
    return to_canonical_json(state)


def deserialize_state(text: str) -> WorkflowState:
    """Inverse of ``serialize_state``.

    Raises:
        ValueError: If the payload is not a valid serialized WorkflowState.
    """
    try:
        return WorkflowState.model_validate_json(text)
    except PydanticValidationError as exc:
        raise ValueError(f"workflow state payload failed validation: {exc}") from exc


def serialize_session(metadata: SessionMetadata) -> str:
    return to_canonical_json(metadata)


def deserialize_session(text: str) -> SessionMetadata:
    try:
        return SessionMetadata.model_validate_json(text)
    except PydanticValidationError as exc:
        raise ValueError(f"session metadata payload failed validation: {exc}") from exc
