from __future__ import annotations

import os
from typing import Any

import pytest
from langgraph.checkpoint.memory import InMemorySaver

from proposal_orchestrator.checkpoint import InMemoryRecordBackend, WorkflowCheckpointStore
from proposal_orchestrator.dependencies import DependencyGraph
from proposal_orchestrator.generation import GenerationTable, StaticEvaluator, template_generator
from proposal_orchestrator.interrupts import InterruptController
from proposal_orchestrator.settings import RuntimeSettings
from proposal_orchestrator.workflow import ProposalWorkflow


@pytest.fixture(autouse=True)
def _isolated_proposal_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer PROPOSAL_* overrides out of the test process."""
    for name in list(os.environ):
        if name.startswith("PROPOSAL_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def chain_graph() -> DependencyGraph:
    """P <- M <- B, the smallest chain with a transitive dependent."""
    return DependencyGraph({"P": [], "M": ["P"], "B": ["M"]})


@pytest.fixture
def store() -> WorkflowCheckpointStore:
    return WorkflowCheckpointStore(InMemorySaver(), InMemoryRecordBackend())


@pytest.fixture
def make_engine(store: WorkflowCheckpointStore, chain_graph: DependencyGraph):  # noqa: ANN201
    def _make(**overrides: Any) -> ProposalWorkflow:
        options: dict[str, Any] = {
            "store": store,
            "dependency_graph": chain_graph,
            "generators": GenerationTable({}, default=template_generator),
            "evaluator": StaticEvaluator(),
            "settings": RuntimeSettings(checkpoint_backend="memory"),
        }
        options.update(overrides)
        return ProposalWorkflow(**options)

    return _make


@pytest.fixture
def engine(make_engine) -> ProposalWorkflow:  # noqa: ANN001
    return make_engine()


@pytest.fixture
def controller(engine: ProposalWorkflow) -> InterruptController:
    return InterruptController(engine)
