from __future__ import annotations

import heapq
from collections import defaultdict
from typing import Iterable

from .graph import DependencyGraph, DependencyNode

PriorityKey = tuple[int, int, str]


def compute_depths(graph: DependencyGraph, blocked: Iterable[str]) -> dict[str, int]:
    """Depth of every node outside *blocked*: 0 for roots, else 1 + deepest dependency.

    Dependencies of an unblocked node are never blocked themselves, so the
    unblocked part of the graph is acyclic and a Kahn pass visits all of it.
    """
    excluded = set(blocked)
    remaining = {
        node.id: len(node.dependencies) for node in graph if node.id not in excluded
    }
    ready = sorted(node_id for node_id, count in remaining.items() if count == 0)
    depths = {node_id: 0 for node_id in ready}
    while ready:
        current = ready.pop()
        for dependent in graph.dependents(current):
            if dependent not in remaining:
                continue
            depths[dependent] = max(depths.get(dependent, 0), depths[current] + 1)
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                ready.append(dependent)
    return depths


def priority_key(node: DependencyNode, depth: int) -> PriorityKey:
    """Sort key: higher priority hint first, then shallower nodes, then id."""
    return (-node.priority_hint, depth, node.id)


def order_ready(graph: DependencyGraph, node_ids: Iterable[str], depths: dict[str, int]) -> list[str]:
    return sorted(node_ids, key=lambda node_id: priority_key(graph.node(node_id), depths[node_id]))


def execution_order(graph: DependencyGraph, depths: dict[str, int]) -> list[str]:
    """Topological order of the nodes in *depths*, always taking the best-ranked ready node next."""
    remaining = {node_id: len(graph.dependencies(node_id)) for node_id in depths}
    heap = [priority_key(graph.node(node_id), depths[node_id]) for node_id, count in remaining.items() if count == 0]
    heapq.heapify(heap)
    order: list[str] = []
    while heap:
        _, _, node_id = heapq.heappop(heap)
        order.append(node_id)
        for dependent in graph.dependents(node_id):
            if dependent not in remaining:
                continue
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(heap, priority_key(graph.node(dependent), depths[dependent]))
    return order


def parallel_groups(graph: DependencyGraph, depths: dict[str, int]) -> list[list[str]]:
    """Nodes sharing a depth have no path between them and can run side by side."""
    by_depth: dict[int, list[str]] = defaultdict(list)
    for node_id, depth in depths.items():
        by_depth[depth].append(node_id)
    return [order_ready(graph, by_depth[depth], depths) for depth in sorted(by_depth)]


def critical_path(graph: DependencyGraph, depths: dict[str, int]) -> list[str]:
    """Longest dependency chain, root first. Ties go to the smallest id."""
    if not depths:
        return []
    tail = min(depths, key=lambda node_id: (-depths[node_id], node_id))
    path = [tail]
    while depths[path[-1]] > 0:
        current = path[-1]
        previous = min(dep for dep in graph.dependencies(current) if depths.get(dep) == depths[current] - 1)
        path.append(previous)
    path.reverse()
    return path
