from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .locking import LockOptions

_ENV_PREFIX = "COORDINATOR_"
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    lock_ttl_ms: int = 5_000
    lock_max_retries: int = 10
    lock_retry_delay_ms: int = 100
    lock_max_retry_delay_ms: int = 5_000
    lock_jitter_percent: int = 10
    max_checkpoints: int = 10
    default_actor: str = "system"
    rules_path: str = ""
    allow_terminal_override: bool = True

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> "RuntimeSettings":
        """Build settings from ``COORDINATOR_*`` variables.

        Args:
            env_file: Optional ``.env`` file loaded first. Variables already
                present in the environment win over the file.
        """
        if env_file is not None and env_file.is_file():
            load_dotenv(env_file, override=False)
        return cls(
            state_store_root=os.getenv(f"{_ENV_PREFIX}STATE_ROOT", "state_store"),
            lock_ttl_ms=_get_env_int(f"{_ENV_PREFIX}LOCK_TTL_MS", default=5_000, minimum=50, maximum=3_600_000),
            lock_max_retries=_get_env_int(f"{_ENV_PREFIX}LOCK_MAX_RETRIES", default=10, minimum=0, maximum=10_000),
            lock_retry_delay_ms=_get_env_int(f"{_ENV_PREFIX}LOCK_RETRY_DELAY_MS", default=100, minimum=1, maximum=60_000),
            lock_max_retry_delay_ms=_get_env_int(
                f"{_ENV_PREFIX}LOCK_MAX_RETRY_DELAY_MS", default=5_000, minimum=1, maximum=3_600_000
            ),
            lock_jitter_percent=_get_env_int(f"{_ENV_PREFIX}LOCK_JITTER_PERCENT", default=10, minimum=0, maximum=100),
            max_checkpoints=_get_env_int(f"{_ENV_PREFIX}MAX_CHECKPOINTS", default=10, minimum=0, maximum=10_000),
            default_actor=os.getenv(f"{_ENV_PREFIX}DEFAULT_ACTOR", "system"),
            rules_path=os.getenv(f"{_ENV_PREFIX}RULES_PATH", ""),
            allow_terminal_override=_get_env_bool(f"{_ENV_PREFIX}ALLOW_TERMINAL_OVERRIDE", default=True),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.state_store_root.strip():
            raise ValueError("COORDINATOR_STATE_ROOT must be non-empty")
        default_actor = self.default_actor.strip()
        if not default_actor:
            raise ValueError("COORDINATOR_DEFAULT_ACTOR must be non-empty")

        # -- Lock timing --
        if self.lock_ttl_ms <= 0:
            raise ValueError(f"COORDINATOR_LOCK_TTL_MS must be > 0, got: {self.lock_ttl_ms}")
        if self.lock_max_retries < 0:
            raise ValueError(f"COORDINATOR_LOCK_MAX_RETRIES must be >= 0, got: {self.lock_max_retries}")
        if self.lock_retry_delay_ms <= 0:
            raise ValueError(f"COORDINATOR_LOCK_RETRY_DELAY_MS must be > 0, got: {self.lock_retry_delay_ms}")
        if self.lock_max_retry_delay_ms < self.lock_retry_delay_ms:
            raise ValueError(
                "COORDINATOR_LOCK_MAX_RETRY_DELAY_MS must be >= COORDINATOR_LOCK_RETRY_DELAY_MS, "
                f"got: {self.lock_max_retry_delay_ms} < {self.lock_retry_delay_ms}"
            )
        if not 0 <= self.lock_jitter_percent <= 100:
            raise ValueError(f"COORDINATOR_LOCK_JITTER_PERCENT must be within 0..100, got: {self.lock_jitter_percent}")
        if self.max_checkpoints < 0:
            raise ValueError(f"COORDINATOR_MAX_CHECKPOINTS must be >= 0, got: {self.max_checkpoints}")

        rules_path = self.rules_path.strip()
        if rules_path and not Path(rules_path).is_file():
            raise ValueError(f"COORDINATOR_RULES_PATH does not point at a file: {rules_path}")

        return RuntimeSettings(
            state_store_root=self.state_store_root,
            lock_ttl_ms=self.lock_ttl_ms,
            lock_max_retries=self.lock_max_retries,
            lock_retry_delay_ms=self.lock_retry_delay_ms,
            lock_max_retry_delay_ms=self.lock_max_retry_delay_ms,
            lock_jitter_percent=self.lock_jitter_percent,
            max_checkpoints=self.max_checkpoints,
            default_actor=default_actor,
            rules_path=rules_path,
            allow_terminal_override=self.allow_terminal_override,
        )

    def lock_options(self) -> LockOptions:
        return LockOptions(
            ttl_ms=self.lock_ttl_ms,
            max_retries=self.lock_max_retries,
            retry_delay_ms=self.lock_retry_delay_ms,
            max_retry_delay_ms=self.lock_max_retry_delay_ms,
            jitter_ratio=self.lock_jitter_percent / 100.0,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path

    def rules_file(self) -> Path | None:
        return Path(self.rules_path) if self.rules_path else None


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")
