from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

LIFECYCLE_STREAM = "lifecycle"
SCHEMA_VERSION = 1


class HistoryKind(str, Enum):
    INIT = "init"
    TRANSITION = "transition"
    RECOVERY = "recovery"
    SKIP = "skip"
    ADMIN_OVERRIDE = "admin_override"
    RESTORE = "restore"
    SET = "set"
    UPDATE = "update"
    DELETE = "delete"
    RECONCILE = "reconcile"


class CheckpointTrigger(str, Enum):
    MANUAL = "manual"
    SKIP = "skip"
    RECOVERY = "recovery"
    ADMIN_OVERRIDE = "admin_override"


class AuditKind(str, Enum):
    RECOVERY_TRANSITION = "recovery_transition"
    SKIP_FORWARD = "skip_forward"
    ADMIN_OVERRIDE = "admin_override"
    CHECKPOINT_CREATED = "checkpoint_created"
    CHECKPOINT_RESTORED = "checkpoint_restored"


class ChangeType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    TRANSITIONED = "transitioned"
    RESTORED = "restored"


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------

class ProjectMeta(BaseModel):
    """Lifecycle record of one project; ``meta.json``."""

    model_config = ConfigDict(frozen=True)

    project_id: str
    name: str
    current_state: str
    revision: int = Field(ge=1)
    schema_version: int = SCHEMA_VERSION
    created_at: datetime
    updated_at: datetime


class StateSection(BaseModel):
    """One named document of project state, stored in its own file."""

    model_config = ConfigDict(frozen=True)

    project_id: str
    section: str
    payload: dict[str, Any]
    schema_version: int = Field(default=SCHEMA_VERSION, ge=1)
    revision: int = Field(ge=1)
    last_modified_at: datetime


class StateHistoryEntry(BaseModel):
    """One immutable step of a history stream.

    ``previous``/``new`` hold the lifecycle state name for the lifecycle stream
    and the section payload (``None`` when absent) for section streams.
    """

    model_config = ConfigDict(frozen=True)

    revision: int = Field(ge=1)
    timestamp: datetime
    kind: HistoryKind
    previous: Any = None
    new: Any = None
    schema_version: int | None = None
    actor: str
    reason: str | None = None


class SectionSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    payload: dict[str, Any]
    schema_version: int = SCHEMA_VERSION


class Checkpoint(BaseModel):
    """Self-contained snapshot of a project: lifecycle state plus every section."""

    model_config = ConfigDict(frozen=True)

    checkpoint_id: str
    project_id: str
    created_at: datetime
    trigger: CheckpointTrigger
    reason: str | None = None
    created_by: str
    state: str
    meta_revision: int
    sections: dict[str, SectionSnapshot] = Field(default_factory=dict)
    digest: str

    def snapshot_content(self) -> dict[str, Any]:
        """The part of the checkpoint covered by ``digest``."""
        return {
            "project_id": self.project_id,
            "state": self.state,
            "meta_revision": self.meta_revision,
            "sections": {name: snap.model_dump(mode="json") for name, snap in self.sections.items()},
        }


class RecoveryAuditEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    audit_id: str
    project_id: str
    kind: AuditKind
    timestamp: datetime
    from_state: str
    to_state: str
    performed_by: str
    reason: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Requests and results
# ---------------------------------------------------------------------------

class AdminOverride(BaseModel):
    """Request to move a project to any declared state, bypassing the rule table."""

    model_config = ConfigDict(frozen=True)

    target_state: str
    reason: str
    authorized_by: str
    action: str = "force_transition"

    @field_validator("reason", "authorized_by", "target_state")
    @classmethod
    def _require_text(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("must be non-empty")
        return stripped


class WatcherFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    watcher_id: str
    error_type: str
    message: str


class StateChangeEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    project_id: str
    section: str
    change_type: ChangeType
    previous: Any = None
    new: Any = None
    revision: int
    timestamp: datetime


class TransitionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    project_id: str
    kind: HistoryKind
    previous_state: str
    new_state: str
    revision: int
    timestamp: datetime
    checkpoint_id: str | None = None
    skipped_stages: list[str] = Field(default_factory=list)
    watcher_failures: list[WatcherFailure] = Field(default_factory=list)


class SectionWriteResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    section: StateSection
    previous_payload: dict[str, Any] | None = None
    watcher_failures: list[WatcherFailure] = Field(default_factory=list)


class RestoreResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    project_id: str
    checkpoint_id: str
    previous_state: str
    restored_state: str
    restored_sections: list[str] = Field(default_factory=list)
    removed_sections: list[str] = Field(default_factory=list)
    watcher_failures: list[WatcherFailure] = Field(default_factory=list)


class ProjectSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    project_id: str
    name: str
    current_state: str
    revision: int
    created_at: datetime
    updated_at: datetime
    sections: list[str]
    checkpoint_count: int
    is_terminal: bool
    valid_transitions: list[str]
    recovery_options: list[str]
    skip_options: list[str]
