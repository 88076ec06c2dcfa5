from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable
from uuid import uuid4

from .models import StateChangeEvent, WatcherFailure

logger = logging.getLogger(__name__)

WatchCallback = Callable[[StateChangeEvent], None]


@dataclass(frozen=True)
class _Watcher:
    watcher_id: str
    project_id: str
    section: str | None
    callback: WatchCallback

    def matches(self, event: StateChangeEvent) -> bool:
        return self.project_id == event.project_id and (self.section is None or self.section == event.section)


class WatchHandle:
    """Returned by :meth:`WatcherRegistry.watch`; closing it stops notifications."""

    __slots__ = ("watcher_id", "_registry")

    def __init__(self, watcher_id: str, registry: "WatcherRegistry") -> None:
        self.watcher_id = watcher_id
        self._registry = registry

    @property
    def active(self) -> bool:
        return self._registry.is_active(self.watcher_id)

    def close(self) -> bool:
        return self._registry.unwatch(self.watcher_id)

    def __enter__(self) -> "WatchHandle":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class WatcherRegistry:
    """Post-commit change callbacks, scoped to one coordinator instance.

    Callbacks run after the mutation is on disk. A callback that raises is
    logged and reported as a :class:`WatcherFailure`; the remaining callbacks
    still run and the committed mutation stands.
    """

    def __init__(self) -> None:
        self._watchers: dict[str, _Watcher] = {}

    def watch(self, project_id: str, callback: WatchCallback, section: str | None = None) -> WatchHandle:
        watcher_id = uuid4().hex
        self._watchers[watcher_id] = _Watcher(watcher_id, project_id, section, callback)
        logger.debug("Registered watcher %s on %s (section=%s)", watcher_id, project_id, section or "*")
        return WatchHandle(watcher_id, self)

    def unwatch(self, watcher_id: str) -> bool:
        return self._watchers.pop(watcher_id, None) is not None

    def unwatch_project(self, project_id: str) -> int:
        doomed = [wid for wid, watcher in self._watchers.items() if watcher.project_id == project_id]
        for watcher_id in doomed:
            del self._watchers[watcher_id]
        return len(doomed)

    def clear(self) -> None:
        self._watchers.clear()

    def is_active(self, watcher_id: str) -> bool:
        return watcher_id in self._watchers

    def active_count(self, project_id: str | None = None) -> int:
        if project_id is None:
            return len(self._watchers)
        return sum(1 for watcher in self._watchers.values() if watcher.project_id == project_id)

    def notify(self, event: StateChangeEvent) -> list[WatcherFailure]:
        failures: list[WatcherFailure] = []
        # Snapshot: callbacks may register or close watchers.
        for watcher in [w for w in self._watchers.values() if w.matches(event)]:
            try:
                watcher.callback(event)
            except Exception as exc:
                logger.warning(
                    "Watcher %s failed on %s/%s %s: %s",
                    watcher.watcher_id,
                    event.project_id,
                    event.section,
                    event.change_type.value,
                    exc,
                    exc_info=True,
                )
                failures.append(
                    WatcherFailure(watcher_id=watcher.watcher_id, error_type=type(exc).__name__, message=str(exc))
                )
        return failures

    def notify_all(self, events: list[StateChangeEvent]) -> list[WatcherFailure]:
        failures: list[WatcherFailure] = []
        for event in events:
            failures.extend(self.notify(event))
        return failures
