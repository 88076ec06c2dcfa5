from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Iterable, Iterator

from .graph import DependencyGraph

logger = logging.getLogger(__name__)

_WHITE, _GRAY, _BLACK = 0, 1, 2


@dataclass(frozen=True)
class CycleInfo:
    """One cycle, as found from a DFS back-edge.

    ``nodes`` runs along dependency edges (each node depends on the next, the
    last on the first), rotated to start at the smallest id.
    """

    nodes: tuple[str, ...]
    detected_at: datetime
    status: str = "detected"


def _rotate(members: list[str]) -> tuple[str, ...]:
    start = members.index(min(members))
    return tuple(members[start:] + members[:start])


def detect_cycles(graph: DependencyGraph) -> list[CycleInfo]:
    """Three-color DFS over dependency edges; every back-edge yields a cycle.

    Roots and edges are visited in a fixed order so the same graph always
    reports the same cycles in the same order. The walk is iterative, so deep
    chains do not hit the recursion limit.
    """
    color = {node_id: _WHITE for node_id in graph.ids}
    found: dict[tuple[str, ...], CycleInfo] = {}
    detected_at = datetime.now(UTC)

    for root in graph.ids:
        if color[root] != _WHITE:
            continue
        color[root] = _GRAY
        path = [root]
        position = {root: 0}
        pending: list[Iterator[str]] = [iter(graph.dependencies(root))]
        while pending:
            dep = next(pending[-1], None)
            if dep is None:
                finished = path.pop()
                del position[finished]
                color[finished] = _BLACK
                pending.pop()
                continue
            if color[dep] == _WHITE:
                color[dep] = _GRAY
                position[dep] = len(path)
                path.append(dep)
                pending.append(iter(graph.dependencies(dep)))
            elif color[dep] == _GRAY:
                members = _rotate(path[position[dep]:])
                found.setdefault(members, CycleInfo(nodes=members, detected_at=detected_at))

    cycles = list(found.values())
    if cycles:
        logger.warning(
            "Dependency graph has %d cycle(s): %s",
            len(cycles),
            ["->".join(cycle.nodes) for cycle in cycles],
        )
    return cycles


def cyclic_nodes(cycles: Iterable[CycleInfo]) -> set[str]:
    return {node_id for cycle in cycles for node_id in cycle.nodes}


def propagate_blocking(graph: DependencyGraph, sources: Iterable[str]) -> frozenset[str]:
    """Return *sources* plus every node that depends on one of them, however indirectly."""
    blocked: set[str] = set()
    queue: deque[str] = deque(sources)
    while queue:
        node_id = queue.popleft()
        if node_id in blocked:
            continue
        blocked.add(node_id)
        queue.extend(dependent for dependent in graph.dependents(node_id) if dependent not in blocked)
    return frozenset(blocked)
