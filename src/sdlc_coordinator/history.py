from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from .atomic_store import AtomicStore
from .canonical import same_content
from .errors import HistoryError
from .layout import ProjectLayout
from .locking import LockManager, LockOptions
from .models import AuditKind, HistoryKind, RecoveryAuditEntry, StateHistoryEntry

logger = logging.getLogger(__name__)


class HistoryManager:
    """Append-only history, one JSON-lines stream per section plus ``lifecycle``.

    Appends must happen under the lease of the state the stream describes, in
    the same critical section as the state write, so entries and live state
    advance together. Entries are never rewritten or removed.
    """

    def __init__(self, state_root: Path, store: AtomicStore | None = None) -> None:
        self._state_root = state_root
        self._store = store or AtomicStore()

    def _path(self, project_id: str, stream: str) -> Path:
        return ProjectLayout.for_project(self._state_root, project_id).history_path(stream)

    def entries(self, project_id: str, stream: str) -> list[StateHistoryEntry]:
        path = self._path(project_id, stream)
        entries: list[StateHistoryEntry] = []
        for line_number, line in enumerate(self._store.read_lines(path), start=1):
            try:
                entries.append(StateHistoryEntry.model_validate_json(line))
            except ValidationError as exc:
                raise HistoryError(
                    f"Corrupt history entry at {path}:{line_number}: {exc}", project_id=project_id
                ) from exc
        return entries

    def tail(self, project_id: str, stream: str) -> StateHistoryEntry | None:
        entries = self.entries(project_id, stream)
        return entries[-1] if entries else None

    def append(
        self,
        project_id: str,
        stream: str,
        *,
        kind: HistoryKind,
        revision: int,
        previous: Any,
        new: Any,
        actor: str,
        reason: str | None = None,
        schema_version: int | None = None,
        timestamp: datetime | None = None,
    ) -> StateHistoryEntry:
        """Append one entry to *stream*.

        Raises:
            HistoryError: If *revision* does not move the stream forward.
        """
        tail = self.tail(project_id, stream)
        if tail is not None and revision <= tail.revision:
            raise HistoryError(
                f"History for {stream} is at revision {tail.revision}; refusing to append revision {revision}",
                project_id=project_id,
            )
        entry = StateHistoryEntry(
            revision=revision,
            timestamp=timestamp or datetime.now(UTC),
            kind=kind,
            previous=previous,
            new=new,
            schema_version=schema_version,
            actor=actor,
            reason=reason,
        )
        self._store.append_line(self._path(project_id, stream), entry.model_dump_json())
        return entry

    def reconcile(
        self,
        project_id: str,
        stream: str,
        *,
        live_value: Any,
        live_revision: int | None,
        actor: str,
        schema_version: int | None = None,
    ) -> StateHistoryEntry | None:
        """Bring the stream back in line with the live state after an interrupted write.

        State is written before its history entry, so a crash in between leaves
        the live revision ahead of the stream (or a deleted section still alive
        in history). Appending a ``reconcile`` entry restores the property that
        replay equals live state without touching earlier entries.

        Args:
            live_value: Current state name or section payload (None if absent).
            live_revision: Revision of the live record, None if there is none.
        """
        tail = self.tail(project_id, stream)
        tail_value = tail.new if tail is not None else None
        tail_revision = tail.revision if tail is not None else 0
        if live_revision is not None and live_revision > tail_revision:
            revision = live_revision
        elif live_revision is None and tail_value is not None:
            revision = tail_revision + 1
        else:
            return None
        logger.warning(
            "History for %s/%s behind live state (history r%d); appending reconcile entry",
            project_id,
            stream,
            tail_revision,
        )
        return self.append(
            project_id,
            stream,
            kind=HistoryKind.RECONCILE,
            revision=revision,
            previous=tail_value,
            new=live_value,
            actor=actor,
            reason="history reconciled after an interrupted write",
            schema_version=schema_version,
        )

    def replay(self, project_id: str, stream: str, upto_revision: int | None = None) -> Any:
        """Fold the stream from its first entry and return the resulting value.

        Every entry's ``previous`` must equal the value produced so far; a break
        in that chain means the stream was tampered with.

        Args:
            upto_revision: Stop after the last entry at or below this revision.

        Raises:
            HistoryError: If the chain of entries is broken.
        """
        value: Any = None
        for entry in self.entries(project_id, stream):
            if upto_revision is not None and entry.revision > upto_revision:
                break
            if not same_content(entry.previous, value):
                raise HistoryError(
                    f"History chain broken for {stream} at revision {entry.revision}",
                    project_id=project_id,
                )
            value = entry.new
        return value

    def next_revision(self, project_id: str, stream: str, live_revision: int | None) -> int:
        tail = self.tail(project_id, stream)
        return max(live_revision or 0, tail.revision if tail else 0) + 1


class RecoveryAuditLog:
    """Audit trail for recovery, skip, override and checkpoint operations.

    Kept apart from ordinary history so overrides are reviewable on their own.
    Each append takes the audit file's own lease.
    """

    def __init__(
        self,
        state_root: Path,
        locks: LockManager,
        *,
        holder_id: str,
        lock_options: LockOptions | None = None,
        store: AtomicStore | None = None,
    ) -> None:
        self._state_root = state_root
        self._locks = locks
        self._holder_id = holder_id
        self._lock_options = lock_options
        self._store = store or AtomicStore()

    def _path(self, project_id: str) -> Path:
        return ProjectLayout.for_project(self._state_root, project_id).audit_path

    def record(
        self,
        project_id: str,
        kind: AuditKind,
        *,
        from_state: str,
        to_state: str,
        performed_by: str,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> RecoveryAuditEntry:
        entry = RecoveryAuditEntry(
            audit_id=uuid4().hex,
            project_id=project_id,
            kind=kind,
            timestamp=datetime.now(UTC),
            from_state=from_state,
            to_state=to_state,
            performed_by=performed_by,
            reason=reason,
            details=details or {},
        )
        path = self._path(project_id)
        with self._locks.locked(path, self._holder_id, self._lock_options):
            self._store.append_line(path, entry.model_dump_json())
        return entry

    def entries(self, project_id: str) -> list[RecoveryAuditEntry]:
        path = self._path(project_id)
        try:
            return [RecoveryAuditEntry.model_validate_json(line) for line in self._store.read_lines(path)]
        except ValidationError as exc:
            raise HistoryError(f"Corrupt audit entry in {path}: {exc}", project_id=project_id) from exc
