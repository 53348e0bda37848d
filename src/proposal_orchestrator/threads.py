"""Thread identifier grammar: ``proposal:<proposal_id>:user:<user_id>[:subgraph:<name>]``."""

from __future__ import annotations

import re
import uuid
from typing import TYPE_CHECKING

from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import ThreadIdFormat

if TYPE_CHECKING:
    from .checkpoint import WorkflowCheckpointStore

THREAD_ID_PATTERN = re.compile(r"^proposal:([^:]+):user:([^:]+)(?::subgraph:([^:]+))?$")
_CHANNEL_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def generate_proposal_id() -> str:
    return str(uuid.uuid4())


def generate_thread_id(
    proposal_id: str | ThreadIdFormat,
    user_id: str | None = None,
    subgraph: str | None = None,
) -> str:
    """Build a thread id from its components.

    Accepts either a ``ThreadIdFormat`` or the components as strings.

    Raises:
        ValidationError: If a component is empty or contains ``:``.
    """
    if isinstance(proposal_id, ThreadIdFormat):
        parts = proposal_id
    else:
        try:
            parts = ThreadIdFormat(proposal_id=proposal_id, user_id=user_id or "", subgraph=subgraph)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid thread id components: {exc}") from exc
    thread_id = f"proposal:{parts.proposal_id}:user:{parts.user_id}"
    if parts.subgraph is not None:
        thread_id += f":subgraph:{parts.subgraph}"
    return thread_id


def parse_thread_id(thread_id: str) -> ThreadIdFormat | None:
    """Split a thread id into components, or return None if it does not match."""
    if not isinstance(thread_id, str):
        return None
    match = THREAD_ID_PATTERN.match(thread_id)
    if match is None:
        return None
    proposal_id, user_id, subgraph = match.groups()
    return ThreadIdFormat(proposal_id=proposal_id, user_id=user_id, subgraph=subgraph)


def is_valid_thread_id(thread_id: str) -> bool:
    return parse_thread_id(thread_id) is not None


def require_thread_id(thread_id: str) -> ThreadIdFormat:
    """Parse a thread id at a system boundary.

    Raises:
        ValidationError: If the thread id does not match the grammar.
    """
    parsed = parse_thread_id(thread_id)
    if parsed is None:
        raise ValidationError(f"Malformed thread id: {thread_id!r}")
    return parsed


def namespace_for(thread_id: str, channel: str | None = None) -> str:
    """Checkpoint namespace for a thread, or for one of its named channels."""
    require_thread_id(thread_id)
    if channel is None:
        return thread_id
    if not _CHANNEL_PATTERN.match(channel):
        raise ValidationError(f"Invalid channel name: {channel!r}")
    return f"{thread_id}:channel:{channel}"


def get_proposal_thread_ids(store: WorkflowCheckpointStore, proposal_id: str) -> list[str]:
    """All stored thread ids (excluding channels) that belong to one proposal."""
    return [
        namespace
        for namespace in store.list_threads(f"proposal:{proposal_id}:")
        if ":channel:" not in namespace and is_valid_thread_id(namespace)
    ]
