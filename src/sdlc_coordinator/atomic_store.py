from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def write_temp_sibling(path: Path, content: str) -> Path:
    """Write *content* to a fsynced temporary file next to *path*.

    The temp file lives in the same directory so a later ``os.replace`` or
    ``os.link`` stays on one filesystem.

    Returns:
        Path of the temp file. The caller owns it and must place or remove it.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
    except BaseException:
        _unlink_quietly(Path(tmp_path))
        raise
    return Path(tmp_path)


def _unlink_quietly(path: Path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


class AtomicStore:
    """Durable atomic writes and plain reads.

    Every write goes to a temp sibling that is then renamed into place with
    ``os.replace``, so a concurrent reader sees either the old file or the new
    one and never a truncated write. Reads take no locks; callers that act on
    what they read must hold the relevant lease.
    """

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write_text(self, path: Path, content: str) -> None:
        tmp_path = write_temp_sibling(path, content)
        try:
            os.replace(tmp_path, path)
        except BaseException:
            _unlink_quietly(tmp_path)
            raise

    def write_json(self, path: Path, value: Any) -> None:
        self.write_text(path, json.dumps(value, indent=2, sort_keys=True))

    def write_model(self, path: Path, model: BaseModel) -> None:
        self.write_text(path, model.model_dump_json(indent=2))

    def append_line(self, path: Path, line: str) -> None:
        """Append one line by atomically rewriting the whole file.

        Appending in place could leave a torn final line after a crash; the
        rewrite keeps the file whole at every instant.
        """
        if "\n" in line:
            raise ValueError("append_line expects a single line without newlines")
        existing = path.read_text(encoding="utf-8") if path.is_file() else ""
        if existing and not existing.endswith("\n"):
            existing += "\n"
        self.write_text(path, f"{existing}{line}\n")

    def delete(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def delete_tree(self, path: Path) -> bool:
        if not path.exists():
            return False
        shutil.rmtree(path)
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def exists(self, path: Path) -> bool:
        return path.is_file()

    def read_text(self, path: Path, label: str = "file") -> str:
        """Read a file and raise a clear error if missing or unreadable.

        Args:
            path: Filesystem path to read.
            label: Human-readable label used in error messages.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the file is empty or contains non-UTF-8 data.
        """
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise FileNotFoundError(f"{label} not found: {path}") from None
        except UnicodeDecodeError as exc:
            raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
        if not text.strip():
            raise ValueError(f"{label} at {path} is empty")
        return text

    def read_json(self, path: Path, label: str = "file") -> Any:
        text = self.read_text(path, label)
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"{label} at {path} is not valid JSON: {exc}") from exc

    def read_model(self, path: Path, model_type: type[ModelT]) -> ModelT:
        label = model_type.__name__
        text = self.read_text(path, label)
        try:
            return model_type.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"{label} at {path} failed validation: {exc}") from exc

    def read_lines(self, path: Path) -> list[str]:
        """Return the non-blank lines of *path*, or an empty list if it is absent."""
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        return [line for line in text.splitlines() if line.strip()]
