from __future__ import annotations

import json
from pathlib import Path

import pytest

from proposal_orchestrator.dependencies import DependencyGraph, StaleDecision, propagate_stale, resolve_stale
from proposal_orchestrator.errors import DependencyGraphError, InvalidStateError
from proposal_orchestrator.models import PhaseStatus, WorkflowState
from proposal_orchestrator.reducers import apply_update, create_workflow_state


def _with_statuses(state: WorkflowState, **statuses: PhaseStatus) -> WorkflowState:
    return apply_update(state, {"sections": {key: {"status": value} for key, value in statuses.items()}})


def test_default_dependency_map_loads_and_is_acyclic() -> None:
    graph = DependencyGraph.default()
    order = graph.topological_order()
    assert set(order) == graph.sections
    for section_id in order:
        for prerequisite in graph.prerequisites_of(section_id):
            assert order.index(prerequisite) < order.index(section_id)


def test_cycle_is_rejected() -> None:
    with pytest.raises(DependencyGraphError, match="cycle"):
        DependencyGraph({"a": ["c"], "b": ["a"], "c": ["b"]})


def test_self_dependency_is_rejected() -> None:
    with pytest.raises(DependencyGraphError, match="itself"):
        DependencyGraph({"a": ["a"]})


def test_from_json_file_rejects_malformed_maps(tmp_path: Path) -> None:
    missing = tmp_path / "missing.json"
    with pytest.raises(DependencyGraphError, match="not found"):
        DependencyGraph.from_json_file(missing)

    bad_json = tmp_path / "bad.json"
    bad_json.write_text("{not json", encoding="utf-8")
    with pytest.raises(DependencyGraphError, match="not valid JSON"):
        DependencyGraph.from_json_file(bad_json)

    wrong_shape = tmp_path / "shape.json"
    wrong_shape.write_text(json.dumps({"a": "b"}), encoding="utf-8")
    with pytest.raises(DependencyGraphError, match="must map"):
        DependencyGraph.from_json_file(wrong_shape)


def test_prerequisites_only_named_are_added_as_roots() -> None:
    graph = DependencyGraph({"M": ["P"]})
    assert "P" in graph
    assert graph.prerequisites_of("P") == frozenset()
    assert graph.prerequisites_of("unknown") == frozenset()


def test_get_all_dependents_is_transitive(chain_graph: DependencyGraph) -> None:
    assert chain_graph.get_all_dependents("P") == {"M", "B"}
    assert chain_graph.get_all_dependents("M") == {"B"}
    assert chain_graph.get_all_dependents("B") == set()
    assert chain_graph.is_dependency_of("P", "B")
    assert not chain_graph.is_dependency_of("B", "P")


def test_edit_marks_accepted_dependents_stale(chain_graph: DependencyGraph) -> None:
    state = _with_statuses(
        create_workflow_state(["P", "M", "B"]),
        P=PhaseStatus.EDITED,
        M=PhaseStatus.APPROVED,
        B=PhaseStatus.APPROVED,
    )

    updated, marked = propagate_stale(state, chain_graph, "P")

    assert marked == ["M", "B"]
    assert updated.sections["P"].status == PhaseStatus.EDITED
    for section_id in ("M", "B"):
        assert updated.sections[section_id].status == PhaseStatus.STALE
        assert updated.sections[section_id].previous_status == PhaseStatus.APPROVED


def test_propagate_stale_is_idempotent(chain_graph: DependencyGraph) -> None:
    state = _with_statuses(
        create_workflow_state(["P", "M", "B"]),
        P=PhaseStatus.EDITED,
        M=PhaseStatus.APPROVED,
        B=PhaseStatus.EDITED,
    )
    once, _ = propagate_stale(state, chain_graph, "P")
    twice, marked_again = propagate_stale(once, chain_graph, "P")
    assert marked_again == []
    assert twice == once
    assert twice.sections["B"].previous_status == PhaseStatus.EDITED


def test_propagate_stale_leaves_unaccepted_dependents_alone(chain_graph: DependencyGraph) -> None:
    state = _with_statuses(create_workflow_state(["P", "M", "B"]), P=PhaseStatus.EDITED, M=PhaseStatus.APPROVED)
    updated, marked = propagate_stale(state, chain_graph, "P")
    assert marked == ["M"]
    assert updated.sections["B"].status == PhaseStatus.QUEUED


def test_resolve_stale_keep_restores_previous_status(chain_graph: DependencyGraph) -> None:
    state = _with_statuses(create_workflow_state(["P", "M"]), P=PhaseStatus.EDITED, M=PhaseStatus.EDITED)
    state, _ = propagate_stale(state, chain_graph, "P")

    kept = resolve_stale(state, "M", StaleDecision.KEEP)

    assert kept.sections["M"].status == PhaseStatus.EDITED
    assert kept.sections["M"].previous_status is None


def test_resolve_stale_regenerate_requeues_with_guidance(chain_graph: DependencyGraph) -> None:
    state = _with_statuses(create_workflow_state(["P", "M"]), P=PhaseStatus.EDITED, M=PhaseStatus.APPROVED)
    state = apply_update(state, {"sections": {"M": {"attempts": 2}}})
    state, _ = propagate_stale(state, chain_graph, "P")

    requeued = resolve_stale(state, "M", "regenerate", guidance="use the new problem framing")

    record = requeued.sections["M"]
    assert record.status == PhaseStatus.QUEUED
    assert record.attempts == 0
    assert record.guidance == "use the new problem framing"


def test_resolve_stale_rejects_units_that_are_not_stale() -> None:
    state = create_workflow_state(["P"])
    with pytest.raises(InvalidStateError, match="expected stale"):
        resolve_stale(state, "P", StaleDecision.KEEP)
    with pytest.raises(InvalidStateError, match="not part of this job"):
        resolve_stale(state, "Z", StaleDecision.KEEP)


def test_restricted_graph_drops_edges_outside_the_job() -> None:
    graph = DependencyGraph.default().restricted_to(["solution", "budget"])
    assert graph.sections == frozenset({"solution", "budget"})
    assert graph.prerequisites_of("budget") == frozenset({"solution"})
    assert graph.prerequisites_of("solution") == frozenset()
    assert graph.topological_order() == ["solution", "budget"]
