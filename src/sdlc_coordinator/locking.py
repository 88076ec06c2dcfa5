from __future__ import annotations

import fcntl
import logging
import os
import random
import time
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, Iterator, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .atomic_store import AtomicStore, write_temp_sibling
from .errors import LockContentionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCK_SUFFIX = ".lock"
_GUARD_SUFFIX = ".guard"
_RELEASE_SUFFIX = ".release"


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Lease records
# ---------------------------------------------------------------------------

class Lock(BaseModel):
    """A lease on one resource.

    ``token`` identifies a single acquisition so a stale reader can tell a
    re-acquired lease apart from the one it saw. ``generation`` grows by one on
    every steal. ``release_requested`` is not persisted; it is filled in from the
    separate marker file when the lease is read back.
    """

    model_config = ConfigDict(frozen=True)

    resource_path: str
    holder_id: str
    token: str
    generation: int = Field(ge=1)
    acquired_at: datetime
    expires_at: datetime
    release_requested: bool = False

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def remaining_ms(self, now: datetime) -> int:
        return max(0, int((self.expires_at - now).total_seconds() * 1000))


class LockReleaseRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource_path: str
    requester_id: str
    holder_id: str
    token: str
    requested_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class LockOptions:
    """Lease lifetime and retry budget for one acquisition."""

    ttl_ms: int = 5_000
    max_retries: int = 10
    retry_delay_ms: int = 100
    max_retry_delay_ms: int = 5_000
    jitter_ratio: float = 0.1

    def __post_init__(self) -> None:
        if self.ttl_ms <= 0:
            raise ValueError(f"ttl_ms must be > 0, got: {self.ttl_ms}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got: {self.max_retries}")
        if self.retry_delay_ms <= 0:
            raise ValueError(f"retry_delay_ms must be > 0, got: {self.retry_delay_ms}")
        if self.max_retry_delay_ms < self.retry_delay_ms:
            raise ValueError("max_retry_delay_ms must be >= retry_delay_ms")
        if not 0.0 <= self.jitter_ratio <= 1.0:
            raise ValueError(f"jitter_ratio must be within [0, 1], got: {self.jitter_ratio}")

    def backoff_seconds(self, attempt: int, rng: random.Random) -> float:
        """Exponential backoff for the given zero-based retry attempt, plus jitter."""
        delay_ms = min(self.retry_delay_ms * (2 ** attempt), self.max_retry_delay_ms)
        jitter_ms = rng.uniform(0.0, delay_ms * self.jitter_ratio) if self.jitter_ratio else 0.0
        return (delay_ms + jitter_ms) / 1000.0


# ---------------------------------------------------------------------------
# LockManager
# ---------------------------------------------------------------------------

class LockManager:
    """Lease locks on filesystem resources, shared safely between processes.

    The lease for ``<resource>`` lives at ``<resource>.lock``. A fresh lease is
    placed with ``os.link`` from a fully written temp file, which fails with
    ``FileExistsError`` when any lease is already present, so the first writer
    wins. An expired lease is stolen by replacing it under a short ``flock`` on
    ``<resource>.lock.guard``; releases take the same guard, so a steal can
    never overwrite a lease that was released and re-created in between.

    A crashed holder's lease stays on disk until it expires. There is no
    liveness probe, so ``ttl_ms`` must exceed the longest critical section.
    """

    def __init__(
        self,
        store: AtomicStore | None = None,
        options: LockOptions | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store or AtomicStore()
        self.options = options or LockOptions()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

    # -- Paths --

    @staticmethod
    def lock_path(resource_path: Path) -> Path:
        return resource_path.with_name(resource_path.name + LOCK_SUFFIX)

    @classmethod
    def _guard_path(cls, resource_path: Path) -> Path:
        lock_path = cls.lock_path(resource_path)
        return lock_path.with_name(lock_path.name + _GUARD_SUFFIX)

    @classmethod
    def _release_path(cls, resource_path: Path) -> Path:
        lock_path = cls.lock_path(resource_path)
        return lock_path.with_name(lock_path.name + _RELEASE_SUFFIX)

    # -- Acquire / release --

    def acquire_lock(
        self,
        resource_path: Path,
        holder_id: str,
        options: LockOptions | None = None,
    ) -> Lock:
        """Acquire the lease on *resource_path* for *holder_id*.

        Args:
            resource_path: The file being protected. It need not exist.
            holder_id: Identity of the caller; compared on release.
            options: Overrides the manager's default ttl and retry budget.

        Returns:
            The lease now held by the caller.

        Raises:
            LockContentionError: If another holder kept a live lease for the
                whole retry budget.
        """
        if not holder_id:
            raise ValueError("holder_id must be non-empty")
        opts = options or self.options
        attempts = opts.max_retries + 1
        current_holder: str | None = None
        for attempt in range(attempts):
            lease, current_holder = self._try_acquire(resource_path, holder_id, opts)
            if lease is not None:
                return lease
            if attempt < attempts - 1:
                self._sleep(opts.backoff_seconds(attempt, self._rng))
        raise LockContentionError(str(resource_path), attempts=attempts, current_holder=current_holder)

    def release_lock(
        self,
        resource_path: Path,
        holder_id: str | None = None,
        *,
        token: str | None = None,
    ) -> bool:
        """Remove the lease if the caller still owns it.

        With ``holder_id`` (and optionally ``token``) omitted the lease is removed
        unconditionally.

        Returns:
            True if a lease was removed. False if there was none, or it now
            belongs to someone else (for example after it expired and was stolen).
        """
        lock_path = self.lock_path(resource_path)
        with self._guard(resource_path):
            loaded = self._load(lock_path)
            if loaded is None:
                return False
            _, current = loaded
            if holder_id is not None and (current is None or current.holder_id != holder_id):
                logger.warning(
                    "Not releasing lock on %s for %s: held by %s",
                    resource_path,
                    holder_id,
                    current.holder_id if current else "<unreadable lease>",
                )
                return False
            if token is not None and (current is None or current.token != token):
                logger.warning("Not releasing lock on %s: lease was re-acquired since token %s", resource_path, token)
                return False
            self._store.delete(lock_path)
            self._store.delete(self._release_path(resource_path))
        logger.debug("Released lock on %s (holder=%s)", resource_path, holder_id)
        return True

    @contextmanager
    def locked(
        self,
        resource_path: Path,
        holder_id: str,
        options: LockOptions | None = None,
    ) -> Iterator[Lock]:
        """Hold the lease for the duration of the context, releasing on every exit path."""
        lease = self.acquire_lock(resource_path, holder_id, options)
        try:
            yield lease
        finally:
            self.release_lock(resource_path, holder_id, token=lease.token)

    def with_lock(
        self,
        resource_path: Path,
        holder_id: str,
        fn: Callable[[], T],
        options: LockOptions | None = None,
    ) -> T:
        with self.locked(resource_path, holder_id, options):
            return fn()

    @contextmanager
    def locked_many(
        self,
        resource_paths: Iterable[Path],
        holder_id: str,
        options: LockOptions | None = None,
    ) -> Iterator[list[Lock]]:
        """Hold several leases at once.

        Leases are taken in lexicographic path order so two callers asking for
        overlapping sets cannot deadlock, and released in reverse order.
        """
        ordered = sorted({Path(path) for path in resource_paths}, key=str)
        with ExitStack() as stack:
            leases = [stack.enter_context(self.locked(path, holder_id, options)) for path in ordered]
            yield leases

    # -- Inspection --

    def read_lock(self, resource_path: Path) -> Lock | None:
        """Return the lease on disk (expired or not), or None when there is none."""
        loaded = self._load(self.lock_path(resource_path))
        if loaded is None or loaded[1] is None:
            return None
        lease = loaded[1]
        requested = self._matching_release_request(resource_path, lease) is not None
        return lease.model_copy(update={"release_requested": requested})

    def is_locked(self, resource_path: Path) -> bool:
        lease = self.read_lock(resource_path)
        return lease is not None and not lease.is_expired(self._clock())

    # -- Cooperative release --

    def request_release(self, resource_path: Path, requester_id: str) -> bool:
        """Ask the current holder to let go instead of waiting for expiry.

        Returns:
            True if a live lease exists and the request was recorded for it.
        """
        with self._guard(resource_path):
            lease = self.read_lock(resource_path)
            now = self._clock()
            if lease is None or lease.is_expired(now):
                return False
            request = LockReleaseRequest(
                resource_path=str(resource_path),
                requester_id=requester_id,
                holder_id=lease.holder_id,
                token=lease.token,
                requested_at=now,
                expires_at=lease.expires_at,
            )
            self._store.write_model(self._release_path(resource_path), request)
        logger.info("%s requested release of lock on %s from %s", requester_id, resource_path, lease.holder_id)
        return True

    def is_release_requested(self, resource_path: Path, holder_id: str | None = None) -> bool:
        """Return True if someone asked the live holder to release.

        Holders should poll this between discrete sub-steps of a long critical
        section, never in the middle of a single write.
        """
        loaded = self._load(self.lock_path(resource_path))
        if loaded is None or loaded[1] is None:
            return False
        lease = loaded[1]
        if holder_id is not None and lease.holder_id != holder_id:
            return False
        return self._matching_release_request(resource_path, lease) is not None

    def clear_release_request(self, resource_path: Path) -> bool:
        return self._store.delete(self._release_path(resource_path))

    # -- Internals --

    def _try_acquire(
        self,
        resource_path: Path,
        holder_id: str,
        opts: LockOptions,
    ) -> tuple[Lock | None, str | None]:
        lock_path = self.lock_path(resource_path)
        lease = self._new_lease(resource_path, holder_id, opts, generation=1)
        tmp_path = write_temp_sibling(lock_path, self._serialize(lease))
        try:
            os.link(tmp_path, lock_path)
        except FileExistsError:
            pass
        else:
            self._clear_stale_release_request(resource_path, lease)
            logger.debug("Acquired lock on %s (holder=%s)", resource_path, holder_id)
            return lease, None
        finally:
            self._store.delete(tmp_path)

        loaded = self._load(lock_path)
        if loaded is None:
            # Released between our link attempt and the read.
            return None, None
        raw, current = loaded
        if current is not None and not current.is_expired(self._clock()):
            return None, current.holder_id
        stolen = self._steal(resource_path, holder_id, opts, raw, current)
        return stolen, (current.holder_id if current else None)

    def _steal(
        self,
        resource_path: Path,
        holder_id: str,
        opts: LockOptions,
        seen_raw: str,
        seen: Lock | None,
    ) -> Lock | None:
        lock_path = self.lock_path(resource_path)
        with self._guard(resource_path):
            loaded = self._load(lock_path)
            if loaded is None or loaded[0] != seen_raw:
                # Someone else stole or released it first.
                return None
            generation = seen.generation + 1 if seen is not None else 1
            lease = self._new_lease(resource_path, holder_id, opts, generation=generation)
            tmp_path = write_temp_sibling(lock_path, self._serialize(lease))
            try:
                os.replace(tmp_path, lock_path)
            except BaseException:
                self._store.delete(tmp_path)
                raise
            self._store.delete(self._release_path(resource_path))
        logger.warning(
            "Stole expired lock on %s from %s (generation %d)",
            resource_path,
            seen.holder_id if seen else "<unreadable lease>",
            generation,
        )
        return lease

    def _new_lease(self, resource_path: Path, holder_id: str, opts: LockOptions, *, generation: int) -> Lock:
        now = self._clock()
        return Lock(
            resource_path=str(resource_path),
            holder_id=holder_id,
            token=uuid4().hex,
            generation=generation,
            acquired_at=now,
            expires_at=now + timedelta(milliseconds=opts.ttl_ms),
        )

    @staticmethod
    def _serialize(lease: Lock) -> str:
        return lease.model_dump_json(indent=2, exclude={"release_requested"})

    def _load(self, lock_path: Path) -> tuple[str, Lock | None] | None:
        """Read a lease file as (raw text, parsed lease).

        A lease that cannot be parsed is returned as ``(raw, None)`` and treated
        as expired, so a damaged file cannot wedge the resource forever.
        """
        try:
            raw = lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return raw, Lock.model_validate_json(raw)
        except ValidationError:
            logger.warning("Unreadable lease at %s; treating it as expired", lock_path)
            return raw, None

    def _clear_stale_release_request(self, resource_path: Path, lease: Lock) -> None:
        """Drop a marker left for an earlier lease, such as one whose holder crashed."""
        release_path = self._release_path(resource_path)
        if not release_path.is_file():
            return
        with self._guard(resource_path):
            try:
                request = self._store.read_model(release_path, LockReleaseRequest)
            except FileNotFoundError:
                return
            except ValueError:
                request = None
            if request is None or request.token != lease.token:
                self._store.delete(release_path)

    def _matching_release_request(self, resource_path: Path, lease: Lock) -> LockReleaseRequest | None:
        release_path = self._release_path(resource_path)
        if not release_path.is_file():
            return None
        try:
            request = self._store.read_model(release_path, LockReleaseRequest)
        except (FileNotFoundError, ValueError):
            return None
        if request.token != lease.token:
            return None
        return request

    @contextmanager
    def _guard(self, resource_path: Path) -> Iterator[None]:
        """Briefly serialize steal and release on one resource.

        ``flock`` is released by the OS if the process dies, so a crash here
        never leaves the guard stuck the way it can leave a lease behind.
        """
        guard_path = self._guard_path(resource_path)
        guard_path.parent.mkdir(parents=True, exist_ok=True)
        with guard_path.open("a+", encoding="utf-8") as guard_handle:
            fcntl.flock(guard_handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(guard_handle.fileno(), fcntl.LOCK_UN)
