from __future__ import annotations

import logging
import os
import socket
from pathlib import Path
from typing import Any
from uuid import uuid4

from .checkpoints import Checkpointer
from .errors import InvalidTransitionError, ProjectNotFoundError
from .history import HistoryManager, RecoveryAuditLog
from .locking import LockManager
from .models import (
    LIFECYCLE_STREAM,
    AdminOverride,
    ChangeType,
    Checkpoint,
    CheckpointTrigger,
    HistoryKind,
    ProjectMeta,
    ProjectSummary,
    RecoveryAuditEntry,
    RestoreResult,
    SectionWriteResult,
    StateChangeEvent,
    StateHistoryEntry,
    StateSection,
    TransitionResult,
    WatcherFailure,
)
from .recovery import StateRecovery
from .settings import RuntimeSettings
from .state_rules import StateRules
from .state_store import StatePersistence
from .watchers import WatchCallback, WatcherRegistry, WatchHandle

logger = logging.getLogger(__name__)


def default_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class StateManager:
    """Facade over project state: lifecycle, sections, history, checkpoints, watchers.

    This is the only sanctioned way to change a project's lifecycle phase.
    Each instance has its own lease holder identity and its own watcher
    registry, so several managers can share one process (and one state root)
    exactly as separate processes would.

    Mutations return result objects carrying any watcher failures; a failing
    watcher never undoes a committed mutation.
    """

    def __init__(
        self,
        root: Path,
        *,
        settings: RuntimeSettings | None = None,
        rules: StateRules | None = None,
        locks: LockManager | None = None,
        holder_id: str | None = None,
    ) -> None:
        self.settings = settings or RuntimeSettings()
        if rules is None:
            rules_file = self.settings.rules_file()
            rules = StateRules.from_file(rules_file) if rules_file else StateRules()
        self.rules = rules
        self.holder_id = holder_id or default_holder_id()
        lock_options = self.settings.lock_options()
        self.locks = locks or LockManager(options=lock_options)
        self.history = HistoryManager(root)
        self.persistence = StatePersistence(
            root, self.locks, self.history, holder_id=self.holder_id, lock_options=lock_options
        )
        self.audit = RecoveryAuditLog(root, self.locks, holder_id=self.holder_id, lock_options=lock_options)
        self.checkpoints = Checkpointer(self.persistence, max_checkpoints=self.settings.max_checkpoints)
        self.recovery = StateRecovery(
            self.persistence,
            self.rules,
            self.checkpoints,
            self.audit,
            allow_terminal_override=self.settings.allow_terminal_override,
        )
        self.watchers = WatcherRegistry()

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, repo_root: Path | None = None) -> "StateManager":
        root = settings.state_store_path(repo_root or Path.cwd())
        return cls(root, settings=settings)

    def _actor(self, actor: str | None) -> str:
        return actor or self.settings.default_actor

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def initialize_project(
        self,
        project_id: str,
        *,
        name: str | None = None,
        initial_state: str | None = None,
        actor: str | None = None,
    ) -> ProjectMeta:
        state = initial_state or self.rules.initial_state
        if not self.rules.is_declared(state):
            raise ValueError(f"Initial state '{state}' is not a declared lifecycle state")
        return self.persistence.initialize_project(
            project_id, name=name or project_id, initial_state=state, actor=self._actor(actor)
        )

    def project_exists(self, project_id: str) -> bool:
        return self.persistence.project_exists(project_id)

    def delete_project(self, project_id: str, *, missing_ok: bool = False) -> bool:
        deleted = self.persistence.delete_project(project_id, missing_ok=missing_ok)
        if deleted:
            self.watchers.unwatch_project(project_id)
        return deleted

    def list_projects(self) -> list[str]:
        return self.persistence.list_projects()

    def get_meta(self, project_id: str) -> ProjectMeta:
        return self.persistence.read_meta(project_id)

    def get_current_state(self, project_id: str) -> str:
        return self.persistence.read_meta(project_id).current_state

    def get_project_summary(self, project_id: str) -> ProjectSummary:
        meta = self.persistence.read_meta(project_id)
        state = meta.current_state
        return ProjectSummary(
            project_id=meta.project_id,
            name=meta.name,
            current_state=state,
            revision=meta.revision,
            created_at=meta.created_at,
            updated_at=meta.updated_at,
            sections=self.persistence.list_sections(project_id),
            checkpoint_count=len(self.checkpoints.list(project_id)),
            is_terminal=self.rules.is_terminal(state),
            valid_transitions=list(self.rules.get_valid_transitions(state)),
            recovery_options=list(self.rules.get_recovery_options(state)),
            skip_options=list(self.rules.get_skip_options(state)),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def get_valid_transitions(self, project_id: str) -> list[str]:
        return list(self.rules.get_valid_transitions(self.get_current_state(project_id)))

    def transition_state(
        self,
        project_id: str,
        to_state: str,
        *,
        actor: str | None = None,
        reason: str | None = None,
    ) -> TransitionResult:
        """Move the project along a normal edge of the rule table.

        The current state is re-read under the lifecycle lease before the rule
        check, so a decision is never made on a stale phase.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            InvalidTransitionError: If (current, to_state) is not a normal
                transition; ``valid_targets`` lists the ones that are.
            LockContentionError: If the lifecycle lease stays busy.
        """
        if not self.persistence.project_exists(project_id):
            raise ProjectNotFoundError(project_id)
        with self.persistence.meta_lock(project_id):
            meta = self.persistence.read_meta(project_id)
            current = meta.current_state
            if not self.rules.can_transition(current, to_state):
                raise InvalidTransitionError(
                    current, to_state, self.rules.get_valid_transitions(current), project_id=project_id
                )
            previous, updated = self.persistence.commit_state(
                project_id, to_state, kind=HistoryKind.TRANSITION, actor=self._actor(actor), reason=reason
            )
        logger.info("Project %s: %s -> %s", project_id, previous.current_state, updated.current_state)
        result = TransitionResult(
            project_id=project_id,
            kind=HistoryKind.TRANSITION,
            previous_state=previous.current_state,
            new_state=updated.current_state,
            revision=updated.revision,
            timestamp=updated.updated_at,
        )
        return self._notify_transition(result)

    def recover_to(
        self,
        project_id: str,
        target: str,
        *,
        reason: str | None = None,
        actor: str | None = None,
    ) -> TransitionResult:
        result = self.recovery.recover_to(project_id, target, actor=self._actor(actor), reason=reason)
        return self._notify_transition(result)

    def skip_to(
        self,
        project_id: str,
        target: str,
        *,
        reason: str | None = None,
        approved_by: str | None = None,
        create_checkpoint: bool = True,
        actor: str | None = None,
    ) -> TransitionResult:
        result = self.recovery.skip_to(
            project_id,
            target,
            actor=self._actor(actor),
            reason=reason,
            approved_by=approved_by,
            create_checkpoint=create_checkpoint,
        )
        return self._notify_transition(result)

    def admin_override(self, project_id: str, override: AdminOverride) -> TransitionResult:
        result = self.recovery.admin_override(project_id, override)
        return self._notify_transition(result)

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def get_state(self, project_id: str, section: str) -> StateSection:
        """Read one section.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            SectionNotFoundError: If the section was never written or was deleted.
        """
        return self.persistence.read_section(project_id, section)

    def find_state(self, project_id: str, section: str) -> StateSection | None:
        if not self.persistence.project_exists(project_id):
            raise ProjectNotFoundError(project_id)
        return self.persistence.find_section(project_id, section)

    def list_sections(self, project_id: str) -> list[str]:
        return self.persistence.list_sections(project_id)

    def set_state(
        self,
        project_id: str,
        section: str,
        payload: dict[str, Any],
        *,
        actor: str | None = None,
        reason: str | None = None,
        schema_version: int | None = None,
    ) -> SectionWriteResult:
        previous, current = self.persistence.set_section(
            project_id, section, payload, actor=self._actor(actor), reason=reason, schema_version=schema_version
        )
        return self._notify_section(previous, current)

    def update_state(
        self,
        project_id: str,
        section: str,
        patch: dict[str, Any],
        *,
        actor: str | None = None,
        reason: str | None = None,
    ) -> SectionWriteResult:
        previous, current = self.persistence.update_section(
            project_id, section, patch, actor=self._actor(actor), reason=reason
        )
        return self._notify_section(previous, current)

    def delete_state(
        self,
        project_id: str,
        section: str,
        *,
        actor: str | None = None,
        reason: str | None = None,
    ) -> list[WatcherFailure]:
        previous = self.persistence.delete_section(project_id, section, actor=self._actor(actor), reason=reason)
        if previous is None:
            return []
        return self.watchers.notify(
            StateChangeEvent(
                project_id=project_id,
                section=previous.section,
                change_type=ChangeType.DELETED,
                previous=previous.payload,
                new=None,
                revision=previous.revision,
                timestamp=previous.last_modified_at,
            )
        )

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def create_checkpoint(
        self,
        project_id: str,
        trigger: CheckpointTrigger = CheckpointTrigger.MANUAL,
        reason: str | None = None,
        *,
        actor: str | None = None,
    ) -> Checkpoint:
        return self.checkpoints.create(project_id, trigger=trigger, created_by=self._actor(actor), reason=reason)

    def list_checkpoints(self, project_id: str) -> list[Checkpoint]:
        return self.checkpoints.list(project_id)

    def get_checkpoint(self, project_id: str, checkpoint_id: str) -> Checkpoint:
        return self.checkpoints.get(project_id, checkpoint_id)

    def restore_checkpoint(
        self,
        project_id: str,
        checkpoint_id: str,
        *,
        actor: str | None = None,
        reason: str | None = None,
    ) -> RestoreResult:
        result, events = self.recovery.restore_checkpoint(
            project_id, checkpoint_id, actor=self._actor(actor), reason=reason
        )
        failures = self.watchers.notify_all(events)
        return result.model_copy(update={"watcher_failures": failures})

    # ------------------------------------------------------------------
    # History and audit
    # ------------------------------------------------------------------

    def get_history(self, project_id: str, stream: str = LIFECYCLE_STREAM) -> list[StateHistoryEntry]:
        if not self.persistence.project_exists(project_id):
            raise ProjectNotFoundError(project_id)
        return self.history.entries(project_id, stream)

    def replay_history(self, project_id: str, stream: str = LIFECYCLE_STREAM, upto_revision: int | None = None) -> Any:
        return self.history.replay(project_id, stream, upto_revision)

    def get_recovery_audit_log(self, project_id: str) -> list[RecoveryAuditEntry]:
        if not self.persistence.project_exists(project_id):
            raise ProjectNotFoundError(project_id)
        return self.audit.entries(project_id)

    # ------------------------------------------------------------------
    # Watchers
    # ------------------------------------------------------------------

    def watch_state(self, project_id: str, callback: WatchCallback, section: str | None = None) -> WatchHandle:
        """Call *callback* after every committed change to the project.

        Args:
            section: Limit to one section; ``"lifecycle"`` watches phase changes.
        """
        return self.watchers.watch(project_id, callback, section)

    def _notify_transition(self, result: TransitionResult) -> TransitionResult:
        failures = self.watchers.notify(
            StateChangeEvent(
                project_id=result.project_id,
                section=LIFECYCLE_STREAM,
                change_type=ChangeType.TRANSITIONED,
                previous=result.previous_state,
                new=result.new_state,
                revision=result.revision,
                timestamp=result.timestamp,
            )
        )
        if not failures:
            return result
        return result.model_copy(update={"watcher_failures": failures})

    def _notify_section(self, previous: StateSection | None, current: StateSection) -> SectionWriteResult:
        failures = self.watchers.notify(
            StateChangeEvent(
                project_id=current.project_id,
                section=current.section,
                change_type=ChangeType.CREATED if previous is None else ChangeType.UPDATED,
                previous=previous.payload if previous else None,
                new=current.payload,
                revision=current.revision,
                timestamp=current.last_modified_at,
            )
        )
        return SectionWriteResult(
            section=current,
            previous_payload=previous.payload if previous else None,
            watcher_failures=failures,
        )
