from __future__ import annotations

import threading
from pathlib import Path

import pytest
from pydantic import BaseModel

from sdlc_coordinator import AtomicStore
from sdlc_coordinator import atomic_store as atomic_store_module


class _Record(BaseModel):
    name: str
    count: int


def test_write_and_read_round_trip(tmp_path: Path) -> None:
    store = AtomicStore()
    target = tmp_path / "nested" / "record.json"
    store.write_model(target, _Record(name="alpha", count=3))
    assert store.read_model(target, _Record) == _Record(name="alpha", count=3)
    store.write_json(target, {"name": "beta", "count": 4})
    assert store.read_json(target) == {"count": 4, "name": "beta"}


def test_failed_write_keeps_old_content_and_removes_temp_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = AtomicStore()
    target = tmp_path / "state.json"
    store.write_text(target, "old")

    def _fail_replace(src: str, dst: str) -> None:
        raise OSError("simulated rename failure")

    monkeypatch.setattr(atomic_store_module.os, "replace", _fail_replace)
    with pytest.raises(OSError, match="simulated"):
        store.write_text(target, "new")
    monkeypatch.undo()

    assert target.read_text(encoding="utf-8") == "old"
    assert list(tmp_path.glob(".state.json.*.tmp")) == []


def test_reader_never_sees_partial_write(tmp_path: Path) -> None:
    store = AtomicStore()
    target = tmp_path / "big.txt"
    old_content = "A" * 400_000
    new_content = "B" * 400_000
    store.write_text(target, old_content)
    done = threading.Event()
    observed: set[str] = set()

    def _writer() -> None:
        for index in range(40):
            store.write_text(target, new_content if index % 2 == 0 else old_content)
        done.set()

    writer = threading.Thread(target=_writer)
    writer.start()
    while not done.is_set():
        content = target.read_text(encoding="utf-8")
        observed.add("old" if content == old_content else "new" if content == new_content else "torn")
    writer.join()
    assert "torn" not in observed


def test_read_errors_are_explicit(tmp_path: Path) -> None:
    store = AtomicStore()
    with pytest.raises(FileNotFoundError):
        store.read_text(tmp_path / "missing.json", "ProjectMeta")
    empty = tmp_path / "empty.json"
    empty.write_text("   ", encoding="utf-8")
    with pytest.raises(ValueError, match="is empty"):
        store.read_text(empty)
    bad = tmp_path / "bad.json"
    bad.write_text('{"name": "x"}', encoding="utf-8")
    with pytest.raises(ValueError, match="failed validation"):
        store.read_model(bad, _Record)


def test_append_line_keeps_every_line(tmp_path: Path) -> None:
    store = AtomicStore()
    log = tmp_path / "events.jsonl"
    assert store.read_lines(log) == []
    store.append_line(log, '{"n": 1}')
    store.append_line(log, '{"n": 2}')
    assert store.read_lines(log) == ['{"n": 1}', '{"n": 2}']
    with pytest.raises(ValueError):
        store.append_line(log, "two\nlines")
