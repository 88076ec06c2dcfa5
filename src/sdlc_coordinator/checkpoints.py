from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterable
from uuid import uuid4

from .atomic_store import AtomicStore
from .canonical import content_digest
from .errors import CheckpointNotFoundError, CheckpointValidationError
from .layout import ProjectLayout
from .models import Checkpoint, CheckpointTrigger, ProjectMeta, SectionSnapshot
from .state_store import StatePersistence

logger = logging.getLogger(__name__)


def _new_checkpoint_id(created_at: datetime) -> str:
    return f"cp-{created_at:%Y%m%dT%H%M%S%f}-{uuid4().hex[:8]}"


class Checkpointer:
    """Self-contained snapshots of a project's lifecycle phase and sections.

    A checkpoint stores full section payloads, never a pointer into history,
    so restoring one needs no replay. Each file carries a sha256 digest of its
    canonical content that is checked before a restore.
    """

    def __init__(self, persistence: StatePersistence, *, max_checkpoints: int = 10, store: AtomicStore | None = None) -> None:
        self._persistence = persistence
        self._max_checkpoints = max_checkpoints
        self._store = store or AtomicStore()

    def _layout(self, project_id: str) -> ProjectLayout:
        return self._persistence.layout(project_id)

    def create_locked(
        self,
        project_id: str,
        meta: ProjectMeta,
        sections: Iterable[str],
        *,
        trigger: CheckpointTrigger,
        created_by: str,
        reason: str | None = None,
    ) -> Checkpoint:
        """Snapshot the project. Caller holds the lifecycle and section leases.

        Args:
            meta: Lifecycle record read under the held lease.
            sections: Section names covered by the held leases.
        """
        snapshots: dict[str, SectionSnapshot] = {}
        for name in sections:
            section = self._persistence.find_section(project_id, name)
            if section is not None:
                snapshots[name] = SectionSnapshot(payload=section.payload, schema_version=section.schema_version)
        created_at = datetime.now(UTC)
        draft = Checkpoint(
            checkpoint_id=_new_checkpoint_id(created_at),
            project_id=project_id,
            created_at=created_at,
            trigger=trigger,
            reason=reason,
            created_by=created_by,
            state=meta.current_state,
            meta_revision=meta.revision,
            sections=snapshots,
            digest="",
        )
        checkpoint = draft.model_copy(update={"digest": content_digest(draft.snapshot_content())})
        self._store.write_model(self._layout(project_id).checkpoint_path(checkpoint.checkpoint_id), checkpoint)
        logger.info(
            "Created %s checkpoint %s for %s at state %s",
            trigger.value,
            checkpoint.checkpoint_id,
            project_id,
            checkpoint.state,
        )
        self.prune(project_id)
        return checkpoint

    def create(
        self,
        project_id: str,
        *,
        trigger: CheckpointTrigger = CheckpointTrigger.MANUAL,
        created_by: str,
        reason: str | None = None,
    ) -> Checkpoint:
        """Snapshot the project while holding all of its leases."""
        with self._persistence.locked_project(project_id) as sections:
            meta = self._persistence.read_meta(project_id)
            return self.create_locked(
                project_id, meta, sections, trigger=trigger, created_by=created_by, reason=reason
            )

    def get(self, project_id: str, checkpoint_id: str) -> Checkpoint:
        """Load a checkpoint and verify its digest.

        Raises:
            CheckpointNotFoundError: If no such checkpoint exists.
            CheckpointValidationError: If the file is unreadable or its digest
                does not match its content.
        """
        path = self._layout(project_id).checkpoint_path(checkpoint_id)
        if not self._store.exists(path):
            raise CheckpointNotFoundError(project_id, checkpoint_id)
        try:
            checkpoint = self._store.read_model(path, Checkpoint)
        except ValueError as exc:
            raise CheckpointValidationError(str(exc), project_id=project_id) from exc
        self.verify(checkpoint)
        return checkpoint

    def verify(self, checkpoint: Checkpoint) -> None:
        expected = content_digest(checkpoint.snapshot_content())
        if expected != checkpoint.digest:
            raise CheckpointValidationError(
                f"Checkpoint {checkpoint.checkpoint_id} digest mismatch: stored {checkpoint.digest}, computed {expected}",
                project_id=checkpoint.project_id,
            )

    def list(self, project_id: str) -> list[Checkpoint]:
        """Checkpoints of a project, oldest first."""
        checkpoints_dir = self._layout(project_id).checkpoints_dir
        if not checkpoints_dir.is_dir():
            return []
        loaded: list[Checkpoint] = []
        for path in self._checkpoint_files(checkpoints_dir):
            try:
                loaded.append(self._store.read_model(path, Checkpoint))
            except FileNotFoundError:
                # Pruned by another process after the glob.
                continue
        return sorted(loaded, key=lambda cp: (cp.created_at, cp.checkpoint_id))

    def prune(self, project_id: str) -> list[str]:
        """Delete the oldest checkpoints beyond ``max_checkpoints`` (0 keeps all)."""
        if self._max_checkpoints <= 0:
            return []
        checkpoints = self.list(project_id)
        excess = len(checkpoints) - self._max_checkpoints
        if excess <= 0:
            return []
        removed: list[str] = []
        for checkpoint in checkpoints[:excess]:
            self._store.delete(self._layout(project_id).checkpoint_path(checkpoint.checkpoint_id))
            removed.append(checkpoint.checkpoint_id)
        logger.debug("Pruned %d checkpoint(s) for %s", len(removed), project_id)
        return removed

    @staticmethod
    def _checkpoint_files(checkpoints_dir: Path) -> list[Path]:
        return [path for path in checkpoints_dir.glob("*.json") if not path.name.startswith(".")]
