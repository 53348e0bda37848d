from __future__ import annotations

import json
import logging
from collections import defaultdict, deque
from collections.abc import Iterable, Mapping
from datetime import datetime
from enum import Enum
from pathlib import Path

from .errors import DependencyGraphError, InvalidStateError
from .models import (
    READY_STATUSES,
    ContentReference,
    PhaseStatus,
    SectionRef,
    WorkflowState,
    utc_now,
)
from .reducers import apply_update, unit_update

logger = logging.getLogger(__name__)


def default_dependency_map_path() -> Path:
    """Return the package-relative path to the default section dependency map."""
    return Path(__file__).resolve().parent / "config" / "dependencies.json"


class DependencyGraph:
    """Static, acyclic map from section id to its prerequisite section ids.

    Built once at process start and never mutated; safe for concurrent reads.
    """

    __slots__ = ("_prerequisites", "_dependents", "_order")

    def __init__(self, prerequisites: Mapping[str, Iterable[str]]) -> None:
        nodes: dict[str, frozenset[str]] = {}
        for section_id, deps in prerequisites.items():
            nodes[section_id] = frozenset(deps)
        for deps in list(nodes.values()):
            for dep in deps:
                nodes.setdefault(dep, frozenset())

        dependents: dict[str, set[str]] = defaultdict(set)
        for section_id, deps in nodes.items():
            if section_id in deps:
                raise DependencyGraphError(f"Section {section_id} lists itself as a prerequisite")
            for dep in deps:
                dependents[dep].add(section_id)

        self._prerequisites = nodes
        self._dependents = {section_id: frozenset(dependents.get(section_id, ())) for section_id in nodes}
        self._order = self._topological_order()

    @classmethod
    def from_json_file(cls, path: Path) -> "DependencyGraph":
        """Load a dependency map of ``{"section": ["prerequisite", ...]}``.

        Raises:
            DependencyGraphError: If the file is missing, malformed or cyclic.
        """
        if not path.is_file():
            raise DependencyGraphError(f"dependency map not found: {path}")
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise DependencyGraphError(f"dependency map at {path} is not valid JSON") from exc
        if not isinstance(payload, dict) or not all(
            isinstance(deps, list) and all(isinstance(dep, str) for dep in deps) for deps in payload.values()
        ):
            raise DependencyGraphError(f"dependency map at {path} must map section ids to lists of section ids")
        graph = cls(payload)
        logger.info("Loaded dependency map with %d sections from %s", len(graph), path)
        return graph

    @classmethod
    def default(cls) -> "DependencyGraph":
        return cls.from_json_file(default_dependency_map_path())

    def __len__(self) -> int:
        return len(self._prerequisites)

    def __contains__(self, section_id: object) -> bool:
        return section_id in self._prerequisites

    @property
    def sections(self) -> frozenset[str]:
        return frozenset(self._prerequisites)

    def prerequisites_of(self, section_id: str) -> frozenset[str]:
        return self._prerequisites.get(section_id, frozenset())

    def dependents_of(self, section_id: str) -> frozenset[str]:
        return self._dependents.get(section_id, frozenset())

    def get_all_dependents(self, section_id: str) -> set[str]:
        """Transitive closure of sections that depend on ``section_id``, by reverse BFS."""
        queue: deque[str] = deque(self.dependents_of(section_id))
        visited: set[str] = set()
        while queue:
            current = queue.popleft()
            if current in visited or current == section_id:
                continue
            visited.add(current)
            queue.extend(self.dependents_of(current))
        return visited

    def is_dependency_of(self, prerequisite: str, section_id: str) -> bool:
        """True if ``section_id`` depends on ``prerequisite`` directly or transitively."""
        return section_id in self.get_all_dependents(prerequisite)

    def topological_order(self) -> list[str]:
        return list(self._order)

    def restricted_to(self, sections: Iterable[str]) -> "DependencyGraph":
        """Subgraph over ``sections``; edges to sections outside it are dropped."""
        keep = set(sections)
        return DependencyGraph(
            {section_id: self.prerequisites_of(section_id) & keep for section_id in keep}
        )

    def _topological_order(self) -> list[str]:
        indegree = {section_id: len(deps) for section_id, deps in self._prerequisites.items()}
        queue = deque(sorted(section_id for section_id, degree in indegree.items() if degree == 0))
        ordered: list[str] = []
        while queue:
            current = queue.popleft()
            ordered.append(current)
            for nxt in sorted(self._dependents[current]):
                indegree[nxt] -= 1
                if indegree[nxt] == 0:
                    queue.append(nxt)
        if len(ordered) != len(self._prerequisites):
            cyclic = sorted(section_id for section_id, degree in indegree.items() if degree > 0)
            raise DependencyGraphError(f"Section dependency graph contains a cycle through: {cyclic}")
        return ordered


# ---------------------------------------------------------------------------
# Stale propagation and resolution
# ---------------------------------------------------------------------------


class StaleDecision(str, Enum):
    KEEP = "keep"
    REGENERATE = "regenerate"


def propagate_stale(
    state: WorkflowState,
    graph: DependencyGraph,
    edited_section_id: str,
    *,
    now: datetime | None = None,
) -> tuple[WorkflowState, list[str]]:
    """Mark every accepted dependent of an edited section ``STALE``.

    Only ``APPROVED``/``EDITED`` dependents change; everything else, the
    edited section included, is left as is, so running this twice is the
    same as running it once.

    Returns:
        The new state and the ids that were marked stale, in required order.
    """
    dependents = graph.get_all_dependents(edited_section_id)
    stamp = now or utc_now()
    updates: dict[str, dict[str, object]] = {}
    for section_id in state.required_sections:
        if section_id not in dependents:
            continue
        record = state.sections.get(section_id)
        if record is None or record.status not in READY_STATUSES:
            continue
        updates[section_id] = {
            "status": PhaseStatus.STALE,
            "previous_status": record.status,
            "last_updated": stamp,
        }
    if not updates:
        return state, []
    logger.info("Edit of %s marked %d dependent section(s) stale: %s", edited_section_id, len(updates), list(updates))
    return apply_update(state, {"sections": updates, "last_updated_at": stamp}), list(updates)


def resolve_stale(
    state: WorkflowState,
    target: str | ContentReference,
    decision: StaleDecision,
    *,
    guidance: str | None = None,
    now: datetime | None = None,
) -> WorkflowState:
    """Apply a human keep/regenerate decision to a ``STALE`` unit.

    Raises:
        InvalidStateError: If the unit is not ``STALE``.
    """
    decision = StaleDecision(decision)
    reference = SectionRef(section_id=target) if isinstance(target, str) else target
    try:
        record = state.record_for(reference)
    except KeyError as exc:
        raise InvalidStateError(str(exc)) from exc
    if record.status != PhaseStatus.STALE:
        raise InvalidStateError(
            f"Cannot {decision.value} {reference.unit_id}: status is {record.status.value}, expected stale"
        )

    stamp = now or utc_now()
    if decision == StaleDecision.KEEP:
        restored = record.previous_status or PhaseStatus.APPROVED
        fields: dict[str, object] = {"status": restored, "previous_status": None, "last_updated": stamp}
    else:
        fields = {
            "status": PhaseStatus.QUEUED,
            "previous_status": None,
            "attempts": 0,
            "last_updated": stamp,
        }
        if guidance is not None:
            fields["guidance"] = guidance
    return apply_update(state, {**unit_update(reference, **fields), "last_updated_at": stamp})
