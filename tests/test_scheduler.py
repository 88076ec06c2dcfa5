from __future__ import annotations

import random

import pytest

from sdlc_coordinator import (
    EmptyGraphError,
    GraphValidationError,
    IssueNotFoundError,
    NodeStatus,
    RawDependencySpec,
    Scheduler,
)


def _spec(dependencies: dict[str, list[str]], priorities: dict[str, int] | None = None) -> RawDependencySpec:
    return RawDependencySpec.from_mapping(dependencies, priorities)


DIAMOND = {"A": [], "B": ["A"], "C": ["A"], "D": ["B", "C"]}


def test_diamond_readiness_follows_completion() -> None:
    scheduler = Scheduler()
    spec = _spec(DIAMOND)
    assert scheduler.get_executable_issues(spec) == ["A"]
    assert scheduler.get_executable_issues(spec, completed={"A"}) == ["B", "C"]
    assert scheduler.get_executable_issues(spec, completed={"A", "B"}) == ["C"]
    assert scheduler.get_next_executable_issue(spec, completed={"A", "B", "C"}) == "D"
    assert scheduler.get_next_executable_issue(spec, completed=set(DIAMOND)) is None


def test_diamond_ordering_and_statistics() -> None:
    analysis = Scheduler().analyze(_spec(DIAMOND))
    assert analysis.execution_order == ["A", "B", "C", "D"]
    assert analysis.parallel_groups == [["A"], ["B", "C"], ["D"]]
    assert analysis.critical_path == ["A", "B", "D"]
    assert analysis.nodes["D"].depth == 2
    assert analysis.nodes["A"].status is NodeStatus.READY
    assert analysis.nodes["B"].status is NodeStatus.PENDING

    stats = analysis.get_statistics()
    assert (stats.total_nodes, stats.total_edges, stats.max_depth) == (4, 4, 2)
    assert stats.root_nodes == ("A",)
    assert stats.leaf_nodes == ("D",)
    assert (stats.cycle_count, stats.blocked_count, stats.executable_count) == (0, 0, 1)


def test_dependents_are_transpose_of_dependencies() -> None:
    analysis = Scheduler().analyze(_spec(DIAMOND))
    assert analysis.get_dependencies("D") == ["B", "C"]
    assert analysis.get_dependents("A") == ["B", "C"]
    assert analysis.get_transitive_dependencies("D") == ["A", "B", "C"]
    assert analysis.depends_on("D", "A")
    assert not analysis.depends_on("A", "D")


def test_two_cycle_blocks_members_and_downstream() -> None:
    analysis = Scheduler().analyze(_spec({"A": ["B"], "B": ["A"], "C": ["A"]}))
    assert [cycle.nodes for cycle in analysis.get_cycles()] == [("A", "B")]
    assert analysis.get_executable_issues() == []
    assert analysis.get_blocked_by_cycle() == ["A", "B", "C"]
    assert analysis.nodes["C"].status is NodeStatus.BLOCKED_BY_CYCLE
    assert analysis.nodes["C"].depth is None
    assert analysis.execution_order == []


def test_each_cycle_is_reported_once_and_blocking_is_exact() -> None:
    spec = _spec(
        {
            "A": ["B"],
            "B": ["A"],
            "C": ["D"],
            "D": ["C"],
            "E": ["E"],
            "F": ["A"],
            "G": [],
            "H": ["G"],
        }
    )
    analysis = Scheduler().analyze(spec, completed={"G"})
    assert [cycle.nodes for cycle in analysis.get_cycles()] == [("A", "B"), ("C", "D"), ("E",)]
    assert analysis.get_blocked_by_cycle() == ["A", "B", "C", "D", "E", "F"]
    assert analysis.get_executable_issues() == ["H"]
    assert not analysis.is_blocked_by_cycle("H")
    assert analysis.get_statistics().cycle_count == 3


def test_cycle_nodes_follow_dependency_direction() -> None:
    analysis = Scheduler().analyze(_spec({"A": ["C"], "B": ["A"], "C": ["B"]}))
    assert [cycle.nodes for cycle in analysis.get_cycles()] == [("A", "C", "B")]


def test_results_do_not_depend_on_input_order() -> None:
    dependencies = {
        "A": [],
        "B": ["A"],
        "C": ["A"],
        "D": ["B", "C"],
        "E": [],
        "X": ["Y"],
        "Y": ["X"],
        "Z": ["X"],
    }
    priorities = {"C": 3, "E": 1}
    baseline = Scheduler().analyze(_spec(dependencies, priorities))
    items = list(dependencies.items())
    for seed in range(5):
        random.Random(seed).shuffle(items)
        shuffled = Scheduler().analyze(_spec({key: list(reversed(deps)) for key, deps in items}, priorities))
        assert shuffled.execution_order == baseline.execution_order
        assert shuffled.get_executable_issues() == baseline.get_executable_issues()
        assert [c.nodes for c in shuffled.get_cycles()] == [c.nodes for c in baseline.get_cycles()]
        assert shuffled.parallel_groups == baseline.parallel_groups


def test_priority_hint_then_depth_then_id() -> None:
    scheduler = Scheduler()
    spec = _spec({"A": [], "B": ["A"], "C": [], "D": []})
    assert scheduler.get_executable_issues(spec, completed={"A"}) == ["C", "D", "B"]
    boosted = _spec({"A": [], "B": ["A"], "C": [], "D": []}, {"B": 2, "D": 1})
    assert scheduler.get_executable_issues(boosted, completed={"A"}) == ["B", "D", "C"]


def test_in_progress_nodes_are_not_offered_again() -> None:
    analysis = Scheduler().analyze(_spec({"A": [], "B": []}), in_progress=["A"])
    assert analysis.get_executable_issues() == ["B"]
    assert analysis.nodes["A"].status is NodeStatus.IN_PROGRESS


def test_completion_can_be_a_predicate() -> None:
    ready = Scheduler().get_executable_issues(_spec(DIAMOND), completed=lambda node_id: node_id == "A")
    assert ready == ["B", "C"]


def test_camel_case_spec_is_accepted() -> None:
    spec = {"nodes": [{"id": "A"}, {"id": "B", "dependsOn": ["A"], "priorityHint": 2}, {"id": "C"}]}
    scheduler = Scheduler()
    assert scheduler.get_executable_issues(spec) == ["A", "C"]
    assert scheduler.get_executable_issues(spec, completed={"A"}) == ["B", "C"]


def test_dangling_and_duplicate_ids_are_rejected() -> None:
    with pytest.raises(GraphValidationError) as excinfo:
        Scheduler().analyze(_spec({"A": ["Z"], "B": []}))
    assert excinfo.value.issues == ["'A' depends on unknown node 'Z'"]

    duplicated = {"nodes": [{"id": "A"}, {"id": "A", "dependsOn": []}]}
    with pytest.raises(GraphValidationError, match="duplicate node id 'A'"):
        Scheduler().analyze(duplicated)

    with pytest.raises(GraphValidationError):
        Scheduler().analyze({"nodes": [{"dependsOn": ["A"]}]})


def test_empty_graph_is_an_error() -> None:
    with pytest.raises(EmptyGraphError):
        Scheduler().analyze({"nodes": []})


def test_queries_outside_a_cycle_still_work() -> None:
    scheduler = Scheduler()
    spec = _spec({"A": [], "B": ["A"], "C": ["B"], "X": ["Y"], "Y": ["X"]})
    assert scheduler.get_transitive_dependencies(spec, "C") == ["A", "B"]
    assert scheduler.depends_on(spec, "C", "A")
    assert scheduler.get_transitive_dependencies(spec, "X") == ["X", "Y"]
    assert scheduler.get_dependents(spec, "B") == ["C"]


def test_unknown_issue_ids_raise_key_errors() -> None:
    scheduler = Scheduler()
    spec = _spec(DIAMOND)
    with pytest.raises(IssueNotFoundError):
        scheduler.get_dependencies(spec, "Q")
    with pytest.raises(KeyError, match="Q"):
        scheduler.depends_on(spec, "A", "Q")
