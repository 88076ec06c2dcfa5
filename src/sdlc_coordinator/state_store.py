from __future__ import annotations

import logging
import os
from contextlib import ExitStack, contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterable, Iterator
from uuid import uuid4

from .atomic_store import AtomicStore
from .errors import ProjectExistsError, ProjectNotFoundError, SectionNotFoundError
from .history import HistoryManager
from .layout import ProjectLayout, sanitize_project_id, validate_section_name
from .locking import LockManager, LockOptions
from .models import LIFECYCLE_STREAM, SCHEMA_VERSION, HistoryKind, ProjectMeta, StateSection

logger = logging.getLogger(__name__)


class StatePersistence:
    """Typed per-project, per-section state on disk.

    Layout under ``<root>/projects/<project>/``: ``meta.json`` holds the
    lifecycle phase, ``sections/<name>.json`` holds one document per section,
    and ``history/`` holds the matching append-only streams. Each section is
    its own file with its own lease, so writers of unrelated sections never
    wait on each other.

    ``set_section``/``update_section``/``delete_section`` take the section lease
    themselves. The ``commit_*`` and ``remove_section`` methods are for callers
    that already hold the relevant leases (see :meth:`locked_project`).
    """

    def __init__(
        self,
        root: Path,
        locks: LockManager,
        history: HistoryManager,
        *,
        holder_id: str,
        lock_options: LockOptions | None = None,
        store: AtomicStore | None = None,
    ) -> None:
        self.root = root
        self._locks = locks
        self._history = history
        self._holder_id = holder_id
        self._lock_options = lock_options
        self._store = store or AtomicStore()

    # ------------------------------------------------------------------
    # Layout and leases
    # ------------------------------------------------------------------

    def layout(self, project_id: str) -> ProjectLayout:
        return ProjectLayout.for_project(self.root, project_id)

    @contextmanager
    def meta_lock(self, project_id: str) -> Iterator[None]:
        with self._locks.locked(self.layout(project_id).meta_path, self._holder_id, self._lock_options):
            yield

    @contextmanager
    def section_lock(self, project_id: str, section: str) -> Iterator[None]:
        with self._locks.locked(self.layout(project_id).section_path(section), self._holder_id, self._lock_options):
            yield

    @contextmanager
    def section_write_lock(self, project_id: str, section: str) -> Iterator[None]:
        """Hold a section lease for a write that may create the section.

        Creating a section file also takes the project's ``sections`` creation
        lease first, so no section can appear while :meth:`locked_project` is
        held. Writes to an existing section take only their own lease.
        """
        layout = self.layout(project_id)
        path = layout.section_path(section)
        while True:
            creating = not self._store.exists(path)
            with ExitStack() as stack:
                if creating:
                    stack.enter_context(self._locks.locked(layout.sections_dir, self._holder_id, self._lock_options))
                stack.enter_context(self._locks.locked(path, self._holder_id, self._lock_options))
                if creating or self._store.exists(path):
                    yield
                    return
            # Deleted between the check and the lease; retry as a creation.

    @contextmanager
    def locked_project(self, project_id: str, extra_sections: Iterable[str] = ()) -> Iterator[list[str]]:
        """Hold the creation lease, the lifecycle lease and every section lease of a project.

        Leases are taken in one fixed (lexicographic) order. Once the creation
        lease is held no new section can appear, so ``sections/`` is listed
        again and any section created before that point is locked as well.

        Yields:
            The names of the sections covered, sorted.
        """
        self._require_project(project_id)
        layout = self.layout(project_id)
        sections = set(self.list_sections(project_id)) | {validate_section_name(s) for s in extra_sections}
        paths = [layout.sections_dir, layout.meta_path, *(layout.section_path(name) for name in sections)]
        with ExitStack() as stack:
            stack.enter_context(self._locks.locked_many(paths, self._holder_id, self._lock_options))
            late = sorted(set(self.list_sections(project_id)) - sections)
            for name in late:
                stack.enter_context(self._locks.locked(layout.section_path(name), self._holder_id, self._lock_options))
            if late:
                logger.debug("Also locked sections created during listing for %s: %s", project_id, late)
            yield sorted(sections.union(late))

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def project_exists(self, project_id: str) -> bool:
        return self._store.exists(self.layout(project_id).meta_path)

    def initialize_project(self, project_id: str, *, name: str, initial_state: str, actor: str) -> ProjectMeta:
        """Create a project in *initial_state* and open its lifecycle history.

        Raises:
            ProjectExistsError: If the project already has a ``meta.json``.
        """
        layout = self.layout(project_id)
        layout.ensure_structure()
        with self.meta_lock(project_id):
            if self.project_exists(project_id):
                raise ProjectExistsError(project_id)
            now = datetime.now(UTC)
            meta = ProjectMeta(
                project_id=project_id,
                name=name,
                current_state=initial_state,
                revision=self._history.next_revision(project_id, LIFECYCLE_STREAM, None),
                created_at=now,
                updated_at=now,
            )
            self._store.write_model(layout.meta_path, meta)
            self._history.append(
                project_id,
                LIFECYCLE_STREAM,
                kind=HistoryKind.INIT,
                revision=meta.revision,
                previous=None,
                new=initial_state,
                actor=actor,
                reason="project initialized",
                timestamp=now,
            )
        logger.info("Initialized project %s in state %s", project_id, initial_state)
        return meta

    def delete_project(self, project_id: str, *, missing_ok: bool = False) -> bool:
        """Remove every file of a project.

        The project directory is first renamed aside under the lifecycle lease,
        so the project disappears for other processes in one step; the tree is
        then removed. A crash part-way leaves only the renamed tree behind, and
        calling delete again is safe.

        Raises:
            ProjectNotFoundError: If the project does not exist and ``missing_ok`` is false.
        """
        layout = self.layout(project_id)
        if not self.project_exists(project_id):
            if missing_ok:
                return False
            raise ProjectNotFoundError(project_id)
        lease = self._locks.acquire_lock(layout.meta_path, self._holder_id, self._lock_options)
        trash = layout.root.with_name(f".deleted-{layout.root.name}-{uuid4().hex[:8]}")
        try:
            os.rename(layout.root, trash)
        except BaseException:
            self._locks.release_lock(layout.meta_path, self._holder_id, token=lease.token)
            raise
        self._store.delete_tree(trash)
        logger.info("Deleted project %s", project_id)
        return True

    def list_projects(self) -> list[str]:
        projects_dir = self.root / "projects"
        if not projects_dir.is_dir():
            return []
        project_ids: list[str] = []
        for child in sorted(projects_dir.iterdir()):
            if child.name.startswith(".") or not (child / "meta.json").is_file():
                continue
            project_ids.append(self._store.read_model(child / "meta.json", ProjectMeta).project_id)
        return project_ids

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def read_meta(self, project_id: str) -> ProjectMeta:
        path = self.layout(project_id).meta_path
        if not self._store.exists(path):
            raise ProjectNotFoundError(project_id)
        return self._store.read_model(path, ProjectMeta)

    def commit_state(
        self,
        project_id: str,
        new_state: str,
        *,
        kind: HistoryKind,
        actor: str,
        reason: str | None = None,
    ) -> tuple[ProjectMeta, ProjectMeta]:
        """Persist a new lifecycle phase and its history entry. Caller holds the lifecycle lease.

        Returns:
            ``(previous_meta, new_meta)``.
        """
        previous = self.read_meta(project_id)
        self._history.reconcile(
            project_id,
            LIFECYCLE_STREAM,
            live_value=previous.current_state,
            live_revision=previous.revision,
            actor=actor,
        )
        now = datetime.now(UTC)
        updated = previous.model_copy(
            update={
                "current_state": new_state,
                "revision": self._history.next_revision(project_id, LIFECYCLE_STREAM, previous.revision),
                "updated_at": now,
            }
        )
        self._store.write_model(self.layout(project_id).meta_path, updated)
        self._history.append(
            project_id,
            LIFECYCLE_STREAM,
            kind=kind,
            revision=updated.revision,
            previous=previous.current_state,
            new=new_state,
            actor=actor,
            reason=reason,
            timestamp=now,
        )
        return previous, updated

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def list_sections(self, project_id: str) -> list[str]:
        sections_dir = self.layout(project_id).sections_dir
        if not sections_dir.is_dir():
            return []
        return sorted(path.stem for path in sections_dir.glob("*.json") if not path.name.startswith("."))

    def find_section(self, project_id: str, section: str) -> StateSection | None:
        path = self.layout(project_id).section_path(section)
        if not self._store.exists(path):
            return None
        return self._store.read_model(path, StateSection)

    def read_section(self, project_id: str, section: str) -> StateSection:
        if not self.project_exists(project_id):
            raise ProjectNotFoundError(project_id)
        found = self.find_section(project_id, section)
        if found is None:
            raise SectionNotFoundError(project_id, section)
        return found

    def set_section(
        self,
        project_id: str,
        section: str,
        payload: dict[str, Any],
        *,
        actor: str,
        reason: str | None = None,
        schema_version: int | None = None,
    ) -> tuple[StateSection | None, StateSection]:
        """Replace a section's payload under its lease.

        Returns:
            ``(previous, current)``; previous is None when the section is new.
        """
        self._require_project(project_id)
        with self.section_write_lock(project_id, section):
            return self.commit_section(
                project_id,
                section,
                payload,
                kind=HistoryKind.SET,
                actor=actor,
                reason=reason,
                schema_version=schema_version,
            )

    def update_section(
        self,
        project_id: str,
        section: str,
        patch: dict[str, Any],
        *,
        actor: str,
        reason: str | None = None,
    ) -> tuple[StateSection | None, StateSection]:
        """Shallow-merge *patch* into a section under its lease.

        Top-level keys of *patch* replace those of the stored payload; nested
        dicts and lists are replaced whole, never merged.
        """
        self._require_project(project_id)
        with self.section_write_lock(project_id, section):
            current = self.find_section(project_id, section)
            merged = {**(current.payload if current else {}), **patch}
            return self.commit_section(
                project_id,
                section,
                merged,
                kind=HistoryKind.UPDATE,
                actor=actor,
                reason=reason,
            )

    def delete_section(
        self,
        project_id: str,
        section: str,
        *,
        actor: str,
        reason: str | None = None,
    ) -> StateSection | None:
        self._require_project(project_id)
        with self.section_lock(project_id, section):
            return self.remove_section(project_id, section, kind=HistoryKind.DELETE, actor=actor, reason=reason)

    def commit_section(
        self,
        project_id: str,
        section: str,
        payload: dict[str, Any],
        *,
        kind: HistoryKind,
        actor: str,
        reason: str | None = None,
        schema_version: int | None = None,
    ) -> tuple[StateSection | None, StateSection]:
        """Write a section and its history entry. Caller holds the section lease."""
        name = validate_section_name(section)
        previous = self.find_section(project_id, name)
        self._reconcile_section(project_id, name, previous, actor)
        now = datetime.now(UTC)
        if schema_version is None:
            schema_version = previous.schema_version if previous else SCHEMA_VERSION
        current = StateSection(
            project_id=project_id,
            section=name,
            payload=dict(payload),
            schema_version=schema_version,
            revision=self._history.next_revision(project_id, name, previous.revision if previous else None),
            last_modified_at=now,
        )
        self._store.write_model(self.layout(project_id).section_path(name), current)
        self._history.append(
            project_id,
            name,
            kind=kind,
            revision=current.revision,
            previous=previous.payload if previous else None,
            new=current.payload,
            schema_version=current.schema_version,
            actor=actor,
            reason=reason,
            timestamp=now,
        )
        logger.debug("Wrote section %s/%s at revision %d", project_id, name, current.revision)
        return previous, current

    def remove_section(
        self,
        project_id: str,
        section: str,
        *,
        kind: HistoryKind,
        actor: str,
        reason: str | None = None,
    ) -> StateSection | None:
        """Delete a section file and record it. Caller holds the section lease."""
        name = validate_section_name(section)
        previous = self.find_section(project_id, name)
        if previous is None:
            return None
        self._reconcile_section(project_id, name, previous, actor)
        self._store.delete(self.layout(project_id).section_path(name))
        self._history.append(
            project_id,
            name,
            kind=kind,
            revision=self._history.next_revision(project_id, name, previous.revision),
            previous=previous.payload,
            new=None,
            actor=actor,
            reason=reason,
        )
        logger.debug("Removed section %s/%s", project_id, name)
        return previous

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_project(self, project_id: str) -> None:
        sanitize_project_id(project_id)
        if not self.project_exists(project_id):
            raise ProjectNotFoundError(project_id)

    def _reconcile_section(self, project_id: str, section: str, live: StateSection | None, actor: str) -> None:
        self._history.reconcile(
            project_id,
            section,
            live_value=live.payload if live else None,
            live_revision=live.revision if live else None,
            actor=actor,
            schema_version=live.schema_version if live else None,
        )
