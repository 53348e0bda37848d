"""Workflow State Store.

``apply_update`` merges a partial update into a ``WorkflowState`` using one
reducer per field. Reducers are pure: they never mutate their inputs and they
never stamp wall-clock time themselves, so replaying the same sequence of
updates always produces the same state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from functools import partial
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import (
    ConnectionsRef,
    ContentReference,
    ErrorRecord,
    InterruptStatus,
    PhaseName,
    PhaseRecord,
    PhaseStatus,
    ResearchRef,
    SectionRecord,
    SectionRef,
    SolutionRef,
    SourceDocument,
    WorkflowState,
    utc_now,
)

logger = logging.getLogger(__name__)

Reducer = Callable[[Any, Any], Any]


# ---------------------------------------------------------------------------
# Field reducers
# ---------------------------------------------------------------------------


def last_value(_current: Any, new: Any) -> Any:
    return new


def last_value_strict(current: Any, new: Any) -> Any:
    """Last write wins, except that ``None`` never overwrites a value."""
    return current if new is None else new


def earliest_timestamp(current: datetime | None, new: datetime | None) -> datetime | None:
    if current is None:
        return new
    if new is None:
        return current
    return min(current, new)


def latest_timestamp(current: datetime | None, new: datetime | None) -> datetime | None:
    if current is None:
        return new
    if new is None:
        return current
    return max(current, new)


def append_errors(
    current: list[ErrorRecord], new: ErrorRecord | Mapping[str, Any] | Iterable[ErrorRecord | Mapping[str, Any]] | None
) -> list[ErrorRecord]:
    if new is None:
        return list(current)
    if isinstance(new, (ErrorRecord, Mapping)):
        items = [new]
    else:
        items = list(new)
    records = list(current)
    for item in items:
        try:
            records.append(ErrorRecord.model_validate(item))
        except PydanticValidationError as exc:
            logger.warning("Dropping malformed error record: %s", exc)
    return records


def _merge_model(current: BaseModel, new: BaseModel | Mapping[str, Any] | None) -> Any:
    """Replace with a full model, shallow-merge a mapping, ignore ``None``."""
    if new is None:
        return current
    if isinstance(new, BaseModel):
        return new
    merged = {name: getattr(current, name) for name in type(current).model_fields}
    merged.update(new)
    return type(current).model_validate(merged)


def merge_interrupt_status(current: InterruptStatus, new: InterruptStatus | Mapping[str, Any] | None) -> InterruptStatus:
    return _merge_model(current, new)


def merge_phase(current: PhaseRecord, new: PhaseRecord | Mapping[str, Any] | None) -> PhaseRecord:
    return _merge_model(current, new)


def merge_source_document(
    current: SourceDocument, new: SourceDocument | Mapping[str, Any] | None
) -> SourceDocument:
    return _merge_model(current, new)


def merge_sections(
    current: Mapping[str, SectionRecord],
    new: Mapping[str, SectionRecord | Mapping[str, Any]] | SectionRecord | None,
    allowed: Iterable[str] | None = None,
) -> dict[str, SectionRecord]:
    """Deep-merge section updates.

    Accepts either a single ``SectionRecord`` or a mapping of section id to a
    full record or a partial field mapping. Only the sections named in the
    update are touched, and within a partial only the named fields change.
    Ids outside ``allowed`` are dropped, and so is any single section
    update that fails validation.
    """
    merged = dict(current)
    if new is None:
        return merged
    updates: Mapping[str, SectionRecord | Mapping[str, Any]]
    updates = {new.id: new} if isinstance(new, SectionRecord) else new
    if not isinstance(updates, Mapping):
        raise TypeError(f"sections update must be a mapping, got {type(new).__name__}")
    allowed_ids = set(allowed) if allowed is not None else None

    for section_id, value in updates.items():
        if allowed_ids is not None and section_id not in allowed_ids:
            logger.warning("Dropping update for section %s: not a required section", section_id)
            continue
        existing = merged.get(section_id)
        try:
            if isinstance(value, SectionRecord):
                merged[section_id] = value
            elif existing is None:
                merged[section_id] = SectionRecord.model_validate({"id": section_id, **value})
            else:
                merged[section_id] = _merge_model(existing, value)
        except (TypeError, ValueError) as exc:
            logger.warning("Ignoring invalid update for section %s: %s", section_id, exc)
    return merged


FIELD_REDUCERS: dict[str, Reducer] = {
    "source_document": merge_source_document,
    "research": merge_phase,
    "solution": merge_phase,
    "connections": merge_phase,
    "required_phases": last_value,
    "required_sections": last_value,
    "interrupt_status": merge_interrupt_status,
    "interrupt_metadata": last_value,
    "user_feedback": last_value,
    "active_unit": last_value,
    "errors": append_errors,
    "created_at": earliest_timestamp,
    "last_updated_at": latest_timestamp,
    "status": last_value,
}


# ---------------------------------------------------------------------------
# apply
# ---------------------------------------------------------------------------


def apply_update(state: WorkflowState, update: Mapping[str, Any] | None) -> WorkflowState:
    """Merge ``update`` into ``state`` and return the new state.

    Keys absent from ``update`` leave their field unchanged; unknown keys are
    ignored with a warning. Each field's merged value is validated on its
    own: a value that fails validation is dropped with a warning and the
    field keeps its current value, so a bad partial update never raises.
    """
    if not update:
        return state
    values = {name: getattr(state, name) for name in WorkflowState.model_fields}

    if "required_sections" in update:
        _set_field(values, "required_sections", last_value, update["required_sections"])
    for key, new in update.items():
        if key == "required_sections":
            continue
        if key == "sections":
            reducer = partial(merge_sections, allowed=values["required_sections"])
        else:
            reducer = FIELD_REDUCERS.get(key)
        if reducer is None:
            logger.warning("Ignoring unknown workflow state field in update: %s", key)
            continue
        _set_field(values, key, reducer, new)

    try:
        return WorkflowState.model_validate(values)
    except PydanticValidationError as exc:
        logger.warning("Discarding update that leaves the workflow state invalid: %s", exc)
        return state


def _set_field(values: dict[str, Any], key: str, reducer: Reducer, new: Any) -> None:
    try:
        candidate = reducer(values[key], new)
        validated = WorkflowState.model_validate({**values, key: candidate})
    except (TypeError, ValueError) as exc:
        logger.warning("Ignoring invalid update to workflow state field %s: %s", key, exc)
        return
    values[key] = getattr(validated, key)


def apply_updates(state: WorkflowState, updates: Iterable[Mapping[str, Any]]) -> WorkflowState:
    for update in updates:
        state = apply_update(state, update)
    return state


def unit_update(reference: ContentReference, **fields: Any) -> dict[str, Any]:
    """Partial update that touches a single phase or section record."""
    match reference:
        case SectionRef(section_id=section_id):
            return {"sections": {section_id: fields}}
        case ResearchRef() | SolutionRef() | ConnectionsRef():
            return {reference.unit_id: fields}


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def create_workflow_state(
    required_sections: Iterable[str],
    *,
    required_phases: Iterable[PhaseName] = (),
    source_document: SourceDocument | None = None,
    known_sections: Iterable[str] | None = None,
    now: datetime | None = None,
) -> WorkflowState:
    """Build the initial state of a job with every required unit ``QUEUED``.

    Raises:
        ValidationError: On an empty or duplicated section list, or a section
            id outside ``known_sections`` when that is given.
    """
    sections = [section_id.strip() for section_id in required_sections]
    if not sections:
        raise ValidationError("required_sections must not be empty")
    if any(not section_id for section_id in sections):
        raise ValidationError("required_sections must not contain blank ids")
    duplicates = sorted({section_id for section_id in sections if sections.count(section_id) > 1})
    if duplicates:
        raise ValidationError(f"required_sections contains duplicates: {duplicates}")
    if known_sections is not None:
        unknown = [section_id for section_id in sections if section_id not in set(known_sections)]
        if unknown:
            raise ValidationError(f"required_sections contains unknown sections: {unknown}")

    phases = list(dict.fromkeys(PhaseName(phase) for phase in required_phases))
    stamp = now or utc_now()
    update: dict[str, Any] = {
        "required_sections": sections,
        "required_phases": phases,
        "sections": {
            section_id: SectionRecord(id=section_id, status=PhaseStatus.QUEUED, last_updated=stamp)
            for section_id in sections
        },
        "created_at": stamp,
        "last_updated_at": stamp,
    }
    for phase in phases:
        update[phase.value] = {"status": PhaseStatus.QUEUED, "last_updated": stamp}
    if source_document is not None:
        update["source_document"] = source_document
    return apply_update(WorkflowState(), update)
