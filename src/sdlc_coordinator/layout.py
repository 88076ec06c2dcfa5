from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from .models import LIFECYCLE_STREAM

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_MAX_COMPONENT_LENGTH = 128


def _safe_component(raw: str, label: str) -> str:
    value = raw.strip()
    if not value:
        raise ValueError(f"{label} must be non-empty")
    value = _UNSAFE_CHARS.sub("-", value).strip("-.")
    if not value:
        raise ValueError(f"{label} contains no filesystem-safe characters")
    return value[:_MAX_COMPONENT_LENGTH]


def sanitize_project_id(project_id: str) -> str:
    """Sanitize a project ID for use as a filesystem path component.

    Args:
        project_id: Raw project identifier.

    Returns:
        A filesystem-safe version of the project ID, truncated to 128 chars.

    Raises:
        ValueError: If the project ID is empty or contains no safe characters.
    """
    return _safe_component(project_id, "project_id")


def validate_section_name(section: str) -> str:
    """Check that a section name is usable as a file name exactly as given.

    Section names are never rewritten, so two different names can never share
    a file, lease or history stream. ``lifecycle`` is reserved for phase history.

    Raises:
        ValueError: If the name is empty, too long, reserved, or contains
            anything outside ``[A-Za-z0-9._-]`` or starts/ends with ``-``/``.``.
    """
    if not section or _UNSAFE_CHARS.search(section) or section.strip("-.") != section:
        raise ValueError(f"section name must use only [A-Za-z0-9._-], got: {section!r}")
    if len(section) > _MAX_COMPONENT_LENGTH:
        raise ValueError(f"section name must be at most {_MAX_COMPONENT_LENGTH} characters, got: {len(section)}")
    if section == LIFECYCLE_STREAM:
        raise ValueError(f"section name '{LIFECYCLE_STREAM}' is reserved")
    return section


def project_scoped_root(root: Path, project_id: str) -> Path:
    """Return ``root / "projects" / <sanitized id>``."""
    return root / "projects" / sanitize_project_id(project_id)


@dataclass(frozen=True)
class ProjectLayout:
    """Where each persisted piece of one project lives on disk."""

    root: Path

    @classmethod
    def for_project(cls, state_root: Path, project_id: str) -> "ProjectLayout":
        return cls(project_scoped_root(state_root, project_id))

    @property
    def meta_path(self) -> Path:
        return self.root / "meta.json"

    @property
    def sections_dir(self) -> Path:
        return self.root / "sections"

    @property
    def history_dir(self) -> Path:
        return self.root / "history"

    @property
    def checkpoints_dir(self) -> Path:
        return self.root / "checkpoints"

    @property
    def audit_path(self) -> Path:
        return self.root / "audit.jsonl"

    def section_path(self, section: str) -> Path:
        return self.sections_dir / f"{validate_section_name(section)}.json"

    def history_path(self, stream: str) -> Path:
        name = LIFECYCLE_STREAM if stream == LIFECYCLE_STREAM else validate_section_name(stream)
        return self.history_dir / f"{name}.jsonl"

    def checkpoint_path(self, checkpoint_id: str) -> Path:
        return self.checkpoints_dir / f"{_safe_component(checkpoint_id, 'checkpoint_id')}.json"

    def ensure_structure(self) -> None:
        for directory in (self.root, self.sections_dir, self.history_dir, self.checkpoints_dir):
            directory.mkdir(parents=True, exist_ok=True)
