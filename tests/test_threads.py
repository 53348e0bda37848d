from __future__ import annotations

import pytest
from langgraph.checkpoint.memory import InMemorySaver

from proposal_orchestrator.checkpoint import InMemoryRecordBackend, WorkflowCheckpointStore
from proposal_orchestrator.errors import ValidationError
from proposal_orchestrator.models import ThreadIdFormat
from proposal_orchestrator.reducers import create_workflow_state
from proposal_orchestrator.threads import (
    generate_proposal_id,
    generate_thread_id,
    get_proposal_thread_ids,
    is_valid_thread_id,
    namespace_for,
    parse_thread_id,
    require_thread_id,
)


def test_thread_id_round_trips() -> None:
    thread_id = generate_thread_id("grant-7", "u42")
    assert thread_id == "proposal:grant-7:user:u42"
    assert parse_thread_id(thread_id) == ThreadIdFormat(proposal_id="grant-7", user_id="u42")


def test_thread_id_with_subgraph_round_trips() -> None:
    parts = ThreadIdFormat(proposal_id="grant-7", user_id="u42", subgraph="budget-detail")
    thread_id = generate_thread_id(parts)
    assert thread_id == "proposal:grant-7:user:u42:subgraph:budget-detail"
    assert parse_thread_id(thread_id) == parts


@pytest.mark.parametrize(
    "thread_id",
    [
        "",
        "proposal:x",
        "proposal::user:u",
        "proposal:x:user:",
        "session:x:user:u",
        "proposal:x:user:u:extra",
        "proposal:x:user:u:subgraph:s:channel:c",
    ],
)
def test_malformed_thread_ids_do_not_parse(thread_id: str) -> None:
    assert parse_thread_id(thread_id) is None
    assert not is_valid_thread_id(thread_id)
    with pytest.raises(ValidationError):
        require_thread_id(thread_id)


@pytest.mark.parametrize(("proposal_id", "user_id"), [("", "u"), ("p", ""), ("a:b", "u"), ("p", "u:v")])
def test_generate_thread_id_rejects_bad_components(proposal_id: str, user_id: str) -> None:
    with pytest.raises(ValidationError):
        generate_thread_id(proposal_id, user_id)


def test_subgraph_cannot_alias_a_channel_namespace() -> None:
    with pytest.raises(ValidationError):
        generate_thread_id("p", "u", subgraph="s:channel:c")


def test_generated_proposal_ids_are_unique() -> None:
    assert generate_proposal_id() != generate_proposal_id()


def test_namespace_for_channels() -> None:
    thread_id = generate_thread_id("p", "u")
    assert namespace_for(thread_id) == thread_id
    assert namespace_for(thread_id, "drafts") == f"{thread_id}:channel:drafts"
    with pytest.raises(ValidationError):
        namespace_for(thread_id, "bad channel")


def test_get_proposal_thread_ids_excludes_channels_and_other_proposals() -> None:
    store = WorkflowCheckpointStore(InMemorySaver(), InMemoryRecordBackend())
    state = create_workflow_state(["P"])
    store.put(generate_thread_id("p1", "alice"), state)
    store.put(generate_thread_id("p1", "bob"), state)
    store.put(generate_thread_id("p1", "alice"), state, channel="drafts")
    store.put(generate_thread_id("p10", "alice"), state)

    assert get_proposal_thread_ids(store, "p1") == ["proposal:p1:user:alice", "proposal:p1:user:bob"]
