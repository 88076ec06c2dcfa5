from __future__ import annotations

from pathlib import Path

import pytest

from sdlc_coordinator import (
    ChangeType,
    HistoryKind,
    HistoryManager,
    InvalidTransitionError,
    LockContentionError,
    LockManager,
    LockOptions,
    ProjectExistsError,
    ProjectNotFoundError,
    RuleTable,
    RuntimeSettings,
    SectionNotFoundError,
    StateChangeEvent,
    StateManager,
    StateRule,
    StateRules,
)


def test_initialize_project_starts_in_initial_state(manager: StateManager, project: str) -> None:
    assert manager.project_exists(project)
    assert manager.get_current_state(project) == "collecting"
    meta = manager.get_meta(project)
    assert meta.name == "Demo project"
    assert meta.revision == 1
    history = manager.get_history(project)
    assert [(entry.kind, entry.previous, entry.new) for entry in history] == [(HistoryKind.INIT, None, "collecting")]
    with pytest.raises(ProjectExistsError):
        manager.initialize_project(project)
    assert manager.list_projects() == [project]


def test_unknown_project_is_reported(manager: StateManager) -> None:
    with pytest.raises(ProjectNotFoundError):
        manager.get_current_state("missing")
    with pytest.raises(ProjectNotFoundError):
        manager.transition_state("missing", "clarifying")
    with pytest.raises(ProjectNotFoundError):
        manager.set_state("missing", "design", {"a": 1})
    assert manager.list_projects() == []


def test_transition_follows_rule_table(manager: StateManager, project: str) -> None:
    result = manager.transition_state(project, "clarifying", actor="planner", reason="questions pending")
    assert (result.previous_state, result.new_state, result.revision) == ("collecting", "clarifying", 2)
    assert result.watcher_failures == []

    with pytest.raises(InvalidTransitionError) as excinfo:
        manager.transition_state(project, "merged")
    assert excinfo.value.valid_targets == ["collecting", "prd_drafting", "cancelled"]
    assert manager.get_current_state(project) == "clarifying"

    last = manager.get_history(project)[-1]
    assert (last.kind, last.actor, last.reason) == (HistoryKind.TRANSITION, "planner", "questions pending")


def test_denied_transition_lists_only_legal_targets(state_root: Path, settings: RuntimeSettings) -> None:
    rules = StateRules(
        RuleTable(
            initial_state="collecting",
            pipeline=("collecting", "clarifying", "srs_review"),
            states={
                "collecting": StateRule(normal_next=("clarifying",)),
                "clarifying": StateRule(normal_next=("srs_review",)),
                "srs_review": StateRule(),
            },
        )
    )
    manager = StateManager(state_root, settings=settings, rules=rules)
    manager.initialize_project("p1")
    with pytest.raises(InvalidTransitionError) as excinfo:
        manager.transition_state("p1", "srs_review")
    assert excinfo.value.valid_targets == ["clarifying"]
    assert "clarifying" in str(excinfo.value)
    assert manager.get_current_state("p1") == "collecting"
    assert len(manager.get_history("p1")) == 1


def test_lifecycle_replay_matches_state_at_every_revision(manager: StateManager, project: str) -> None:
    for target in ("clarifying", "prd_drafting", "prd_approved", "srs_drafting"):
        manager.transition_state(project, target)
        assert manager.replay_history(project) == manager.get_current_state(project)
    history = manager.get_history(project)
    assert [entry.revision for entry in history] == [1, 2, 3, 4, 5]
    for entry in history:
        assert manager.replay_history(project, upto_revision=entry.revision) == entry.new


def test_sections_set_update_and_replay(manager: StateManager, project: str) -> None:
    seen: list[tuple[int, dict]] = []
    first = manager.set_state(project, "progress", {"done": 1, "nested": {"x": 1}, "tags": ["a"]})
    seen.append((first.section.revision, first.section.payload))
    assert first.previous_payload is None

    second = manager.update_state(project, "progress", {"nested": {"y": 2}, "tags": ["b"], "extra": True})
    seen.append((second.section.revision, second.section.payload))
    # Shallow merge: nested values are replaced whole.
    assert second.section.payload == {"done": 1, "nested": {"y": 2}, "tags": ["b"], "extra": True}
    assert second.previous_payload == first.section.payload

    third = manager.set_state(project, "progress", {"done": 3}, schema_version=2)
    seen.append((third.section.revision, third.section.payload))
    assert manager.get_state(project, "progress").schema_version == 2

    assert [revision for revision, _ in seen] == [1, 2, 3]
    for revision, payload in seen:
        assert manager.replay_history(project, "progress", revision) == payload
    assert manager.replay_history(project, "progress") == manager.get_state(project, "progress").payload
    kinds = [entry.kind for entry in manager.get_history(project, "progress")]
    assert kinds == [HistoryKind.SET, HistoryKind.UPDATE, HistoryKind.SET]


def test_missing_and_deleted_sections(manager: StateManager, project: str) -> None:
    with pytest.raises(SectionNotFoundError):
        manager.get_state(project, "design")
    assert manager.find_state(project, "design") is None
    manager.set_state(project, "design", {"v": 1})
    manager.delete_state(project, "design")
    assert manager.find_state(project, "design") is None
    recreated = manager.set_state(project, "design", {"v": 2})
    assert recreated.section.revision == 3
    assert manager.replay_history(project, "design") == {"v": 2}
    with pytest.raises(ValueError):
        manager.set_state(project, "lifecycle", {"v": 1})


@pytest.mark.parametrize("section", ["my design", "my/design", "../design", "-design", "design.", "x" * 129, ""])
def test_section_names_are_validated_not_rewritten(manager: StateManager, project: str, section: str) -> None:
    manager.set_state(project, "my-design", {"owner": "a"})
    with pytest.raises(ValueError, match="section name"):
        manager.set_state(project, section, {"owner": "b"})
    assert manager.list_sections(project) == ["my-design"]
    assert manager.get_state(project, "my-design").payload == {"owner": "a"}


def test_section_lease_held_elsewhere_blocks_writers(state_root: Path, project: str, manager: StateManager) -> None:
    settings = RuntimeSettings(lock_max_retries=0).normalized()
    impatient = StateManager(state_root, settings=settings)
    section_path = manager.persistence.layout(project).section_path("design")
    other = LockManager(options=LockOptions(ttl_ms=60_000))
    other.acquire_lock(section_path, "another-process")
    with pytest.raises(LockContentionError):
        impatient.set_state(project, "design", {"v": 1})
    # Unrelated sections are unaffected.
    impatient.set_state(project, "notes", {"v": 1})
    other.release_lock(section_path, "another-process")
    impatient.set_state(project, "design", {"v": 1})


def test_watchers_see_committed_changes_and_failures_do_not_unwind(manager: StateManager, project: str) -> None:
    events: list[StateChangeEvent] = []
    handle = manager.watch_state(project, events.append)

    def _broken(event: StateChangeEvent) -> None:
        raise RuntimeError("watcher exploded")

    manager.watch_state(project, _broken)
    result = manager.transition_state(project, "clarifying")
    assert manager.get_current_state(project) == "clarifying"
    assert [(failure.error_type, failure.message) for failure in result.watcher_failures] == [
        ("RuntimeError", "watcher exploded")
    ]
    assert events[0].change_type is ChangeType.TRANSITIONED
    assert (events[0].previous, events[0].new) == ("collecting", "clarifying")

    write = manager.set_state(project, "design", {"v": 1})
    assert len(write.watcher_failures) == 1
    assert manager.get_state(project, "design").payload == {"v": 1}
    assert events[1].change_type is ChangeType.CREATED

    handle.close()
    assert not handle.active
    manager.transition_state(project, "prd_drafting")
    assert len(events) == 2


def test_section_watchers_and_instance_scoping(state_root: Path, settings: RuntimeSettings, manager: StateManager, project: str) -> None:
    design_events: list[StateChangeEvent] = []
    lifecycle_events: list[StateChangeEvent] = []
    manager.watch_state(project, design_events.append, section="design")
    manager.watch_state(project, lifecycle_events.append, section="lifecycle")

    manager.set_state(project, "notes", {"v": 1})
    manager.set_state(project, "design", {"v": 1})
    manager.update_state(project, "design", {"w": 2})
    manager.transition_state(project, "clarifying")
    assert [event.change_type for event in design_events] == [ChangeType.CREATED, ChangeType.UPDATED]
    assert [event.new for event in lifecycle_events] == ["clarifying"]

    # A second coordinator on the same root has its own registry.
    other = StateManager(state_root, settings=settings)
    other.set_state(project, "design", {"v": 9})
    assert len(design_events) == 2
    assert manager.watchers.active_count(project) == 2
    assert other.watchers.active_count() == 0


def test_interrupted_write_is_reconciled_into_history(
    manager: StateManager, project: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    manager.set_state(project, "notes", {"v": 1})

    def _crash(self: HistoryManager, *args: object, **kwargs: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(HistoryManager, "append", _crash)
    with pytest.raises(OSError, match="disk full"):
        manager.set_state(project, "notes", {"v": 2})
    monkeypatch.undo()

    assert manager.get_state(project, "notes").payload == {"v": 2}
    manager.set_state(project, "notes", {"v": 3})
    history = manager.get_history(project, "notes")
    assert [entry.kind for entry in history] == [HistoryKind.SET, HistoryKind.RECONCILE, HistoryKind.SET]
    assert [entry.revision for entry in history] == [1, 2, 3]
    assert manager.replay_history(project, "notes", 2) == {"v": 2}
    assert manager.replay_history(project, "notes") == {"v": 3}


def test_project_summary(manager: StateManager, project: str) -> None:
    manager.set_state(project, "design", {"v": 1})
    manager.create_checkpoint(project, reason="baseline")
    summary = manager.get_project_summary(project)
    assert summary.current_state == "collecting"
    assert summary.sections == ["design"]
    assert summary.checkpoint_count == 1
    assert summary.valid_transitions == ["clarifying", "prd_drafting", "cancelled"]
    assert summary.skip_options == ["prd_drafting"]
    assert not summary.is_terminal


def test_delete_project_is_retry_safe(manager: StateManager, project: str) -> None:
    manager.set_state(project, "design", {"v": 1})
    manager.watch_state(project, lambda event: None)
    assert manager.delete_project(project) is True
    assert not manager.project_exists(project)
    assert manager.watchers.active_count(project) == 0
    assert manager.list_projects() == []
    assert manager.delete_project(project, missing_ok=True) is False
    with pytest.raises(ProjectNotFoundError):
        manager.delete_project(project)
    manager.initialize_project(project)
    assert manager.get_current_state(project) == "collecting"
    assert len(manager.get_history(project)) == 1
