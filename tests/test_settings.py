from __future__ import annotations

import json
from pathlib import Path

import pytest

from sdlc_coordinator import RuntimeSettings, StateManager

_ENV_NAMES = (
    "COORDINATOR_STATE_ROOT",
    "COORDINATOR_LOCK_TTL_MS",
    "COORDINATOR_LOCK_MAX_RETRIES",
    "COORDINATOR_LOCK_RETRY_DELAY_MS",
    "COORDINATOR_LOCK_MAX_RETRY_DELAY_MS",
    "COORDINATOR_LOCK_JITTER_PERCENT",
    "COORDINATOR_MAX_CHECKPOINTS",
    "COORDINATOR_DEFAULT_ACTOR",
    "COORDINATOR_RULES_PATH",
    "COORDINATOR_ALLOW_TERMINAL_OVERRIDE",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_environment() -> None:
    settings = RuntimeSettings.from_env()
    assert settings == RuntimeSettings()
    options = settings.lock_options()
    assert (options.ttl_ms, options.max_retries, options.retry_delay_ms) == (5_000, 10, 100)
    assert options.jitter_ratio == pytest.approx(0.1)
    assert settings.rules_file() is None


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("COORDINATOR_STATE_ROOT", str(tmp_path / "store"))
    monkeypatch.setenv("COORDINATOR_LOCK_TTL_MS", "2500")
    monkeypatch.setenv("COORDINATOR_LOCK_MAX_RETRIES", "0")
    monkeypatch.setenv("COORDINATOR_LOCK_JITTER_PERCENT", "0")
    monkeypatch.setenv("COORDINATOR_MAX_CHECKPOINTS", "3")
    monkeypatch.setenv("COORDINATOR_DEFAULT_ACTOR", "  release-bot ")
    monkeypatch.setenv("COORDINATOR_ALLOW_TERMINAL_OVERRIDE", "off")
    settings = RuntimeSettings.from_env()
    assert settings.lock_ttl_ms == 2_500
    assert settings.lock_max_retries == 0
    assert settings.max_checkpoints == 3
    assert settings.default_actor == "release-bot"
    assert settings.allow_terminal_override is False
    assert settings.state_store_path(Path("/ignored")) == tmp_path / "store"


def test_relative_state_root_resolves_against_repo_root() -> None:
    assert RuntimeSettings().state_store_path(Path("/repo")) == Path("/repo/state_store")


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("COORDINATOR_LOCK_TTL_MS", "soon", "must be an integer"),
        ("COORDINATOR_LOCK_TTL_MS", "10", "must be >= 50"),
        ("COORDINATOR_LOCK_JITTER_PERCENT", "101", "must be <= 100"),
        ("COORDINATOR_LOCK_MAX_RETRY_DELAY_MS", "50", "MAX_RETRY_DELAY_MS must be >="),
        ("COORDINATOR_ALLOW_TERMINAL_OVERRIDE", "maybe", "must be a boolean"),
        ("COORDINATOR_DEFAULT_ACTOR", "   ", "DEFAULT_ACTOR must be non-empty"),
        ("COORDINATOR_RULES_PATH", "/definitely/not/here.json", "does not point at a file"),
    ],
)
def test_invalid_environment_fails_fast(monkeypatch: pytest.MonkeyPatch, name: str, value: str, message: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=message):
        RuntimeSettings.from_env()


def test_dotenv_file_fills_unset_variables(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    # Registered with monkeypatch so values loaded from the file are removed afterwards.
    monkeypatch.setenv("COORDINATOR_MAX_CHECKPOINTS", "0")
    monkeypatch.delenv("COORDINATOR_MAX_CHECKPOINTS")
    monkeypatch.setenv("COORDINATOR_DEFAULT_ACTOR", "from-shell")
    env_file = tmp_path / ".env"
    env_file.write_text("COORDINATOR_MAX_CHECKPOINTS=4\nCOORDINATOR_DEFAULT_ACTOR=from-file\n", encoding="utf-8")

    settings = RuntimeSettings.from_env(env_file)
    assert settings.max_checkpoints == 4
    assert settings.default_actor == "from-shell"


def test_missing_dotenv_file_is_ignored(tmp_path: Path) -> None:
    assert RuntimeSettings.from_env(tmp_path / "absent.env") == RuntimeSettings()


def test_manager_loads_rule_table_from_settings(tmp_path: Path) -> None:
    rules_path = tmp_path / "rules.json"
    rules_path.write_text(
        json.dumps(
            {
                "initial_state": "open",
                "pipeline": ["open", "closed"],
                "states": {"open": {"normal_next": ["closed"]}, "closed": {}},
            }
        ),
        encoding="utf-8",
    )
    settings = RuntimeSettings(state_store_root="store", rules_path=str(rules_path)).normalized()
    manager = StateManager.from_settings(settings, repo_root=tmp_path)
    manager.initialize_project("ticket-1")
    assert manager.get_current_state("ticket-1") == "open"
    assert manager.get_valid_transitions("ticket-1") == ["closed"]
    assert (tmp_path / "store").is_dir()
