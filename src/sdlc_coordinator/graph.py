from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import GraphValidationError, IssueNotFoundError

logger = logging.getLogger(__name__)

CompletionSource = Union[Iterable[str], Callable[[str], bool], None]


class NodeStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED_BY_CYCLE = "blocked_by_cycle"


# ---------------------------------------------------------------------------
# Raw input
# ---------------------------------------------------------------------------

class RawDependencyNode(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    depends_on: tuple[str, ...] = Field(default=(), alias="dependsOn")
    priority_hint: int | None = Field(default=None, alias="priorityHint")


class RawDependencySpec(BaseModel):
    """Dependency spec as authored upstream: ``{"nodes": [{"id", "dependsOn", "priorityHint"}]}``."""

    model_config = ConfigDict(frozen=True)

    nodes: tuple[RawDependencyNode, ...] = ()

    @classmethod
    def parse(cls, data: "RawDependencySpec | Mapping[str, Any]") -> "RawDependencySpec":
        if isinstance(data, RawDependencySpec):
            return data
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise GraphValidationError(f"Malformed dependency spec: {exc}") from exc

    @classmethod
    def from_mapping(
        cls,
        dependencies: Mapping[str, Iterable[str]],
        priorities: Mapping[str, int] | None = None,
    ) -> "RawDependencySpec":
        """Build a spec from ``{id: [dependency ids]}``."""
        priorities = priorities or {}
        return cls(
            nodes=tuple(
                RawDependencyNode(id=node_id, depends_on=tuple(deps), priority_hint=priorities.get(node_id))
                for node_id, deps in dependencies.items()
            )
        )


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DependencyNode:
    id: str
    dependencies: tuple[str, ...]
    dependents: tuple[str, ...]
    priority_hint: int
    status: NodeStatus
    depth: int | None = None


def completion_predicate(completed: CompletionSource) -> Callable[[str], bool]:
    if completed is None:
        return lambda _node_id: False
    if callable(completed):
        return completed
    done = frozenset(completed)
    return done.__contains__


class DependencyGraph:
    """Nodes and edges built fresh from a raw spec plus completion flags.

    ``dependents`` is always the exact transpose of ``dependencies``. The graph
    is a throwaway view; the spec and the completion flags stay the source
    of truth.
    """

    def __init__(self, nodes: Mapping[str, DependencyNode]) -> None:
        self._nodes = dict(nodes)

    @classmethod
    def build(
        cls,
        spec: RawDependencySpec | Mapping[str, Any],
        completed: CompletionSource = None,
        in_progress: Iterable[str] = (),
    ) -> "DependencyGraph":
        """Validate a dependency spec and build the graph.

        Duplicate dependency entries on one node are collapsed; self-edges are
        kept and later reported as cycles.

        Raises:
            GraphValidationError: If an id is declared twice or a dependency
                references an id that is not declared. Every problem found is
                listed in ``issues``.
        """
        raw = RawDependencySpec.parse(spec)
        issues: list[str] = []
        declared: dict[str, RawDependencyNode] = {}
        for node in raw.nodes:
            if node.id in declared:
                issues.append(f"duplicate node id '{node.id}'")
                continue
            declared[node.id] = node
        for node in declared.values():
            for dep in node.depends_on:
                if dep not in declared:
                    issues.append(f"'{node.id}' depends on unknown node '{dep}'")
        if issues:
            raise GraphValidationError("Invalid dependency spec: " + "; ".join(issues), issues=issues)

        is_completed = completion_predicate(completed)
        running = frozenset(in_progress)
        dependencies: dict[str, tuple[str, ...]] = {
            node_id: tuple(dict.fromkeys(node.depends_on)) for node_id, node in declared.items()
        }
        dependents: dict[str, list[str]] = defaultdict(list)
        for node_id, deps in dependencies.items():
            for dep in deps:
                dependents[dep].append(node_id)

        nodes: dict[str, DependencyNode] = {}
        for node_id, node in declared.items():
            if is_completed(node_id):
                status = NodeStatus.COMPLETED
            elif node_id in running:
                status = NodeStatus.IN_PROGRESS
            else:
                status = NodeStatus.PENDING
            nodes[node_id] = DependencyNode(
                id=node_id,
                dependencies=dependencies[node_id],
                dependents=tuple(sorted(dependents.get(node_id, ()))),
                priority_hint=node.priority_hint or 0,
                status=status,
            )
        logger.debug("Built dependency graph with %d node(s)", len(nodes))
        return cls(nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[DependencyNode]:
        return iter(self._nodes[node_id] for node_id in self.ids)

    @property
    def ids(self) -> list[str]:
        return sorted(self._nodes)

    @property
    def edge_count(self) -> int:
        return sum(len(node.dependencies) for node in self._nodes.values())

    def node(self, node_id: str) -> DependencyNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise IssueNotFoundError(node_id) from None

    def dependencies(self, node_id: str) -> tuple[str, ...]:
        return self.node(node_id).dependencies

    def dependents(self, node_id: str) -> tuple[str, ...]:
        return self.node(node_id).dependents

    def is_completed(self, node_id: str) -> bool:
        return self.node(node_id).status is NodeStatus.COMPLETED

    def transitive_dependencies(self, node_id: str) -> set[str]:
        """Every node *node_id* depends on, directly or not.

        Visited nodes are tracked, so cycles (including ones through
        *node_id* itself) terminate the walk.
        """
        seen: set[str] = set()
        queue: deque[str] = deque(self.dependencies(node_id))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(dep for dep in self._nodes[current].dependencies if dep not in seen)
        return seen

    def with_nodes(self, updates: Mapping[str, DependencyNode]) -> "DependencyGraph":
        return DependencyGraph({**self._nodes, **updates})
