from __future__ import annotations

import logging
from datetime import UTC, datetime

from .canonical import same_content
from .checkpoints import Checkpointer
from .errors import (
    AdminOverrideError,
    InvalidSkipError,
    InvalidTransitionError,
    RequiredStageSkipError,
)
from .history import RecoveryAuditLog
from .models import (
    LIFECYCLE_STREAM,
    AdminOverride,
    AuditKind,
    ChangeType,
    CheckpointTrigger,
    HistoryKind,
    ProjectMeta,
    RestoreResult,
    StateChangeEvent,
    TransitionResult,
)
from .state_rules import StateRules
from .state_store import StatePersistence

logger = logging.getLogger(__name__)


class StateRecovery:
    """Lifecycle moves outside the normal path: recovery, skip, override, restore.

    Every operation here holds all of the project's leases for its whole
    duration, because it snapshots or rewrites sections along with the phase.
    """

    def __init__(
        self,
        persistence: StatePersistence,
        rules: StateRules,
        checkpointer: Checkpointer,
        audit: RecoveryAuditLog,
        *,
        allow_terminal_override: bool = True,
    ) -> None:
        self._persistence = persistence
        self._rules = rules
        self._checkpointer = checkpointer
        self._audit = audit
        self._allow_terminal_override = allow_terminal_override

    def recover_to(self, project_id: str, target: str, *, actor: str, reason: str | None = None) -> TransitionResult:
        """Move back to one of the current state's recovery targets.

        A ``recovery`` checkpoint is taken first so the abandoned work can be
        restored.

        Raises:
            InvalidTransitionError: If *target* is not a recovery target; the
                error lists the ones that are.
        """
        with self._persistence.locked_project(project_id) as sections:
            meta = self._persistence.read_meta(project_id)
            current = meta.current_state
            if not self._rules.can_recover_to(current, target):
                raise InvalidTransitionError(
                    current, target, self._rules.get_recovery_options(current), project_id=project_id
                )
            checkpoint = self._checkpointer.create_locked(
                project_id, meta, sections, trigger=CheckpointTrigger.RECOVERY, created_by=actor, reason=reason
            )
            _, updated = self._persistence.commit_state(
                project_id, target, kind=HistoryKind.RECOVERY, actor=actor, reason=reason
            )
            self._audit.record(
                project_id,
                AuditKind.RECOVERY_TRANSITION,
                from_state=current,
                to_state=target,
                performed_by=actor,
                reason=reason,
                details={"checkpoint_id": checkpoint.checkpoint_id},
            )
        logger.info("Recovered %s: %s -> %s", project_id, current, target)
        return _transition_result(meta, updated, HistoryKind.RECOVERY, checkpoint_id=checkpoint.checkpoint_id)

    def skip_to(
        self,
        project_id: str,
        target: str,
        *,
        actor: str,
        reason: str | None = None,
        approved_by: str | None = None,
        create_checkpoint: bool = True,
    ) -> TransitionResult:
        """Jump forward over non-required stages.

        Raises:
            InvalidSkipError: If *target* is not a skip target of the current state.
            RequiredStageSkipError: If a required stage lies strictly between the
                current state and *target*; the error lists those stages.
        """
        with self._persistence.locked_project(project_id) as sections:
            meta = self._persistence.read_meta(project_id)
            current = meta.current_state
            if not self._rules.can_skip_to(current, target):
                raise InvalidSkipError(current, target, self._rules.get_skip_options(current), project_id=project_id)
            required = self._rules.required_stages_between(current, target)
            if required:
                raise RequiredStageSkipError(current, target, required, project_id=project_id)
            skipped = self._rules.stages_between(current, target)

            checkpoint_id: str | None = None
            if create_checkpoint:
                checkpoint = self._checkpointer.create_locked(
                    project_id, meta, sections, trigger=CheckpointTrigger.SKIP, created_by=actor, reason=reason
                )
                checkpoint_id = checkpoint.checkpoint_id
                self._audit.record(
                    project_id,
                    AuditKind.CHECKPOINT_CREATED,
                    from_state=current,
                    to_state=current,
                    performed_by=actor,
                    reason=reason,
                    details={"checkpoint_id": checkpoint_id, "trigger": CheckpointTrigger.SKIP.value},
                )
            _, updated = self._persistence.commit_state(
                project_id, target, kind=HistoryKind.SKIP, actor=actor, reason=reason
            )
            self._audit.record(
                project_id,
                AuditKind.SKIP_FORWARD,
                from_state=current,
                to_state=target,
                performed_by=approved_by or actor,
                reason=reason,
                details={"skipped_stages": skipped, "checkpoint_id": checkpoint_id, "approved_by": approved_by},
            )
        logger.info("Skipped %s: %s -> %s (bypassed %s)", project_id, current, target, skipped)
        return _transition_result(
            meta, updated, HistoryKind.SKIP, checkpoint_id=checkpoint_id, skipped_stages=skipped
        )

    def admin_override(self, project_id: str, override: AdminOverride) -> TransitionResult:
        """Force the project into any declared state, bypassing the rule table.

        The override is audited before it is applied and a checkpoint of the
        prior state is kept.

        Raises:
            InvalidTransitionError: If the target state is not declared at all.
            AdminOverrideError: If leaving a terminal state is disabled.
        """
        if not self._rules.is_declared(override.target_state):
            raise InvalidTransitionError(
                "<any>",
                override.target_state,
                self._rules.states,
                project_id=project_id,
                message=f"Admin override target '{override.target_state}' is not a declared state",
            )
        with self._persistence.locked_project(project_id) as sections:
            meta = self._persistence.read_meta(project_id)
            current = meta.current_state
            if not self._allow_terminal_override and self._rules.is_terminal(current):
                raise AdminOverrideError(
                    f"Admin override out of terminal state '{current}' is disabled", project_id=project_id
                )
            checkpoint = self._checkpointer.create_locked(
                project_id,
                meta,
                sections,
                trigger=CheckpointTrigger.ADMIN_OVERRIDE,
                created_by=override.authorized_by,
                reason=f"Admin override: {override.reason}",
            )
            self._audit.record(
                project_id,
                AuditKind.ADMIN_OVERRIDE,
                from_state=current,
                to_state=override.target_state,
                performed_by=override.authorized_by,
                reason=override.reason,
                details={
                    "action": override.action,
                    "checkpoint_id": checkpoint.checkpoint_id,
                    "rule_kind": self._rules.classify(current, override.target_state).value,
                },
            )
            _, updated = self._persistence.commit_state(
                project_id,
                override.target_state,
                kind=HistoryKind.ADMIN_OVERRIDE,
                actor=override.authorized_by,
                reason=override.reason,
            )
        logger.warning(
            "Admin override on %s by %s: %s -> %s (%s)",
            project_id,
            override.authorized_by,
            current,
            override.target_state,
            override.reason,
        )
        return _transition_result(
            meta, updated, HistoryKind.ADMIN_OVERRIDE, checkpoint_id=checkpoint.checkpoint_id
        )

    def restore_checkpoint(
        self,
        project_id: str,
        checkpoint_id: str,
        *,
        actor: str,
        reason: str | None = None,
    ) -> tuple[RestoreResult, list[StateChangeEvent]]:
        """Overwrite current state with a checkpoint's snapshot.

        Sections absent from the snapshot are removed. The restoration is
        appended to history (the lifecycle stream always, each changed section
        stream as needed); nothing already recorded is rewritten.

        Returns:
            The result plus the change events to hand to watchers.
        """
        checkpoint = self._checkpointer.get(project_id, checkpoint_id)
        restore_reason = reason or f"restored checkpoint {checkpoint_id}"
        events: list[StateChangeEvent] = []
        restored: list[str] = []
        removed: list[str] = []
        with self._persistence.locked_project(project_id, extra_sections=checkpoint.sections) as sections:
            meta = self._persistence.read_meta(project_id)
            for name in sections:
                snapshot = checkpoint.sections.get(name)
                current = self._persistence.find_section(project_id, name)
                if snapshot is None:
                    previous = self._persistence.remove_section(
                        project_id, name, kind=HistoryKind.RESTORE, actor=actor, reason=restore_reason
                    )
                    if previous is not None:
                        removed.append(name)
                        events.append(_section_event(project_id, name, ChangeType.DELETED, previous.payload, None, previous.revision))
                    continue
                if (
                    current is not None
                    and current.schema_version == snapshot.schema_version
                    and same_content(current.payload, snapshot.payload)
                ):
                    continue
                _, written = self._persistence.commit_section(
                    project_id,
                    name,
                    snapshot.payload,
                    kind=HistoryKind.RESTORE,
                    actor=actor,
                    reason=restore_reason,
                    schema_version=snapshot.schema_version,
                )
                restored.append(name)
                events.append(
                    _section_event(
                        project_id,
                        name,
                        ChangeType.RESTORED,
                        current.payload if current else None,
                        written.payload,
                        written.revision,
                    )
                )
            _, updated = self._persistence.commit_state(
                project_id, checkpoint.state, kind=HistoryKind.RESTORE, actor=actor, reason=restore_reason
            )
            self._audit.record(
                project_id,
                AuditKind.CHECKPOINT_RESTORED,
                from_state=meta.current_state,
                to_state=checkpoint.state,
                performed_by=actor,
                reason=restore_reason,
                details={"checkpoint_id": checkpoint_id, "restored_sections": restored, "removed_sections": removed},
            )
        events.append(
            StateChangeEvent(
                project_id=project_id,
                section=LIFECYCLE_STREAM,
                change_type=ChangeType.RESTORED,
                previous=meta.current_state,
                new=updated.current_state,
                revision=updated.revision,
                timestamp=updated.updated_at,
            )
        )
        logger.info(
            "Restored %s to checkpoint %s (state %s, %d section(s) rewritten, %d removed)",
            project_id,
            checkpoint_id,
            checkpoint.state,
            len(restored),
            len(removed),
        )
        result = RestoreResult(
            project_id=project_id,
            checkpoint_id=checkpoint_id,
            previous_state=meta.current_state,
            restored_state=updated.current_state,
            restored_sections=restored,
            removed_sections=removed,
        )
        return result, events


def _transition_result(
    previous: ProjectMeta,
    updated: ProjectMeta,
    kind: HistoryKind,
    *,
    checkpoint_id: str | None = None,
    skipped_stages: list[str] | None = None,
) -> TransitionResult:
    return TransitionResult(
        project_id=updated.project_id,
        kind=kind,
        previous_state=previous.current_state,
        new_state=updated.current_state,
        revision=updated.revision,
        timestamp=updated.updated_at,
        checkpoint_id=checkpoint_id,
        skipped_stages=skipped_stages or [],
    )


def _section_event(
    project_id: str,
    section: str,
    change_type: ChangeType,
    previous: dict | None,
    new: dict | None,
    revision: int,
) -> StateChangeEvent:
    return StateChangeEvent(
        project_id=project_id,
        section=section,
        change_type=change_type,
        previous=previous,
        new=new,
        revision=revision,
        timestamp=datetime.now(UTC),
    )
