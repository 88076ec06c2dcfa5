from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Iterable, Mapping

from .cycles import CycleInfo, cyclic_nodes, detect_cycles, propagate_blocking
from .errors import EmptyGraphError
from .graph import CompletionSource, DependencyGraph, DependencyNode, NodeStatus, RawDependencySpec
from .priority import compute_depths, critical_path, execution_order, order_ready, parallel_groups

logger = logging.getLogger(__name__)

SpecInput = RawDependencySpec | Mapping[str, Any]


@dataclass(frozen=True)
class GraphStatistics:
    total_nodes: int
    total_edges: int
    max_depth: int
    root_nodes: tuple[str, ...]
    leaf_nodes: tuple[str, ...]
    cycle_count: int
    blocked_count: int
    completed_count: int
    executable_count: int


class GraphAnalysis:
    """Result of one :meth:`Scheduler.analyze` call.

    Cycles are data here, not errors: nodes on or downstream of a cycle are
    marked blocked and everything else is still scheduled.
    """

    def __init__(self, graph: DependencyGraph, cycles: list[CycleInfo], blocked: frozenset[str]) -> None:
        self.cycles = cycles
        self.blocked = blocked
        self.depths = compute_depths(graph, blocked)

        executable = [
            node.id
            for node in graph
            if node.status is NodeStatus.PENDING
            and node.id not in blocked
            and all(graph.is_completed(dep) for dep in node.dependencies)
        ]
        self._executable = order_ready(graph, executable, self.depths)
        ready = set(self._executable)

        updates: dict[str, DependencyNode] = {}
        for node in graph:
            status = node.status
            if node.id in blocked and status is not NodeStatus.COMPLETED:
                status = NodeStatus.BLOCKED_BY_CYCLE
            elif node.id in ready:
                status = NodeStatus.READY
            updates[node.id] = replace(node, status=status, depth=self.depths.get(node.id))
        self.graph = graph.with_nodes(updates)

        self.execution_order = execution_order(self.graph, self.depths)
        self.parallel_groups = parallel_groups(self.graph, self.depths)
        self.critical_path = critical_path(self.graph, self.depths)

    @property
    def nodes(self) -> dict[str, DependencyNode]:
        return {node.id: node for node in self.graph}

    # -- Readiness --

    def get_executable_issues(self) -> list[str]:
        """Ready work, best first: priority hint desc, depth asc, id asc."""
        return list(self._executable)

    def get_next_executable_issue(self) -> str | None:
        return self._executable[0] if self._executable else None

    # -- Structure --

    def get_dependencies(self, node_id: str) -> list[str]:
        return list(self.graph.dependencies(node_id))

    def get_dependents(self, node_id: str) -> list[str]:
        return list(self.graph.dependents(node_id))

    def get_transitive_dependencies(self, node_id: str) -> list[str]:
        return sorted(self.graph.transitive_dependencies(node_id))

    def depends_on(self, node_id: str, other_id: str) -> bool:
        """True if *node_id* depends on *other_id* directly or transitively."""
        self.graph.node(other_id)
        return other_id in self.graph.transitive_dependencies(node_id)

    # -- Cycles --

    def get_cycles(self) -> list[CycleInfo]:
        return list(self.cycles)

    def has_cycles(self) -> bool:
        return bool(self.cycles)

    def is_blocked_by_cycle(self, node_id: str) -> bool:
        self.graph.node(node_id)
        return node_id in self.blocked

    def get_blocked_by_cycle(self) -> list[str]:
        return sorted(self.blocked)

    def get_statistics(self) -> GraphStatistics:
        nodes = list(self.graph)
        return GraphStatistics(
            total_nodes=len(nodes),
            total_edges=self.graph.edge_count,
            max_depth=max(self.depths.values(), default=0),
            root_nodes=tuple(node.id for node in nodes if not node.dependencies),
            leaf_nodes=tuple(node.id for node in nodes if not node.dependents),
            cycle_count=len(self.cycles),
            blocked_count=len(self.blocked),
            completed_count=sum(1 for node in nodes if node.status is NodeStatus.COMPLETED),
            executable_count=len(self._executable),
        )


class Scheduler:
    """Decides what may run next from a dependency spec and completion flags.

    Every call rebuilds the graph from its inputs; nothing is cached between
    calls, so the persisted spec and the flags stay the only source of truth.
    The same inputs always produce the same ordering.
    """

    def analyze(
        self,
        spec: SpecInput,
        completed: CompletionSource = None,
        in_progress: Iterable[str] = (),
    ) -> GraphAnalysis:
        """Build, check and rank the graph.

        Raises:
            EmptyGraphError: If the spec declares no nodes.
            GraphValidationError: If the spec is malformed or has dangling edges.
        """
        raw = RawDependencySpec.parse(spec)
        if not raw.nodes:
            raise EmptyGraphError()
        graph = DependencyGraph.build(raw, completed, in_progress)
        cycles = detect_cycles(graph)
        blocked = propagate_blocking(graph, cyclic_nodes(cycles))
        analysis = GraphAnalysis(graph, cycles, blocked)
        logger.debug(
            "Analyzed %d node(s): %d executable, %d blocked by cycle",
            len(graph),
            len(analysis.get_executable_issues()),
            len(blocked),
        )
        return analysis

    def get_executable_issues(
        self, spec: SpecInput, completed: CompletionSource = None, in_progress: Iterable[str] = ()
    ) -> list[str]:
        return self.analyze(spec, completed, in_progress).get_executable_issues()

    def get_next_executable_issue(
        self, spec: SpecInput, completed: CompletionSource = None, in_progress: Iterable[str] = ()
    ) -> str | None:
        return self.analyze(spec, completed, in_progress).get_next_executable_issue()

    def get_dependencies(self, spec: SpecInput, node_id: str) -> list[str]:
        return self.analyze(spec).get_dependencies(node_id)

    def get_dependents(self, spec: SpecInput, node_id: str) -> list[str]:
        return self.analyze(spec).get_dependents(node_id)

    def get_transitive_dependencies(self, spec: SpecInput, node_id: str) -> list[str]:
        return self.analyze(spec).get_transitive_dependencies(node_id)

    def depends_on(self, spec: SpecInput, node_id: str, other_id: str) -> bool:
        return self.analyze(spec).depends_on(node_id, other_id)

    def get_statistics(self, spec: SpecInput, completed: CompletionSource = None) -> GraphStatistics:
        return self.analyze(spec, completed).get_statistics()
