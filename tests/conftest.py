from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from sdlc_coordinator import RuntimeSettings, StateManager


class FakeClock:
    """Manually advanced UTC clock for lease-expiry tests."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, milliseconds: int) -> None:
        self.now += timedelta(milliseconds=milliseconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings(
        lock_ttl_ms=5_000,
        lock_max_retries=50,
        lock_retry_delay_ms=2,
        lock_max_retry_delay_ms=20,
    ).normalized()


@pytest.fixture
def state_root(tmp_path: Path) -> Path:
    return tmp_path / "state_store"


@pytest.fixture
def manager(state_root: Path, settings: RuntimeSettings) -> StateManager:
    return StateManager(state_root, settings=settings)


@pytest.fixture
def project(manager: StateManager) -> str:
    manager.initialize_project("PROJECT-001", name="Demo project")
    return "PROJECT-001"
