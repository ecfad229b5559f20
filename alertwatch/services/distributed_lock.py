"""Cross-instance mutual exclusion for periodic jobs.

A lock is a cache entry ``job:<name>`` holding an owner token with an expiry.
Acquisition is a single set-if-absent; release deletes the entry only while it
still holds our token.

The TTL bounds how long exclusivity lasts. If a job runs longer than its TTL
the entry expires and a second instance may acquire the lock and run the job
concurrently. That trade-off favours liveness (a crashed holder never blocks
the job forever) over strict exclusivity, so TTLs must be sized well above
the expected job duration.
"""
from __future__ import annotations

import enum
import logging
import os
import socket
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from alertwatch.core.settings import settings
from alertwatch.services.cache import SharedCache

logger = logging.getLogger(__name__)


def job_lock_key(job_name: str) -> str:
    return f"job:{job_name}"


def _owner_token() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex}"


class DistributedLock:
    """Single-use owner of one cache-backed lock.

    Use as an async context manager to guarantee release::

        lock = DistributedLock(cache)
        if await lock.try_acquire("job:alert-monitor", 300):
            async with lock:
                ...
    """

    def __init__(self, cache: SharedCache) -> None:
        self._cache = cache
        self._key: Optional[str] = None
        self._token: Optional[str] = None

    @property
    def held(self) -> bool:
        return self._token is not None

    @property
    def key(self) -> Optional[str]:
        return self._key

    async def try_acquire(self, key: str, ttl: float) -> bool:
        """Return True iff this call created the lock entry. Never waits.

        Cache errors propagate; callers decide whether that means "skip".
        """
        if self.held:
            raise RuntimeError("Lock is already acquired. Release before acquiring a new one.")
        token = _owner_token()
        acquired = await self._cache.set_if_absent(key, token, ttl)
        if acquired:
            self._key, self._token = key, token
            logger.debug("acquired lock %s (ttl %.0fs)", key, ttl)
        return acquired

    async def release(self) -> None:
        if not self.held:
            return
        key, token = self._key, self._token
        self._key = self._token = None
        try:
            deleted = await self._cache.compare_and_delete(key, token)
        except Exception:
            # the TTL will free the key; nothing else to do
            logger.exception("failed to release lock %s", key)
            return
        if deleted:
            logger.debug("released lock %s", key)
        else:
            logger.warning("lock %s expired before release (job overran its ttl)", key)

    async def __aenter__(self) -> "DistributedLock":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()


class JobLockOutcome(str, enum.Enum):
    ACQUIRED = "acquired"
    HELD = "held"  # another instance holds it
    ERROR = "error"  # cache unreachable
    DISABLED = "disabled"  # locking switched off; run unguarded


@dataclass
class JobLockHandle:
    job_name: str
    outcome: JobLockOutcome
    lock: Optional[DistributedLock] = None

    @property
    def should_run(self) -> bool:
        return self.outcome in (JobLockOutcome.ACQUIRED, JobLockOutcome.DISABLED)


@asynccontextmanager
async def job_lock(
    cache: SharedCache,
    job_name: str,
    ttl: float,
    *,
    enabled: Optional[bool] = None,
) -> AsyncIterator[JobLockHandle]:
    """Try to take the lock for ``job_name`` for the duration of the block.

    Never blocks waiting for the lock. Both "held elsewhere" and "cache
    unavailable" yield a handle whose ``should_run`` is False; the lock, when
    taken, is released on every exit path including cancellation.
    """
    if enabled is None:
        enabled = settings.BACKGROUND_JOBS_LOCK_ENABLED
    if not enabled:
        logger.debug("distributed lock disabled for job %s", job_name)
        yield JobLockHandle(job_name, JobLockOutcome.DISABLED)
        return

    lock = DistributedLock(cache)
    try:
        acquired = await lock.try_acquire(job_lock_key(job_name), ttl)
    except Exception as e:
        logger.warning("failed to acquire distributed lock for job %s: %s", job_name, e.__class__.__name__)
        yield JobLockHandle(job_name, JobLockOutcome.ERROR)
        return

    if not acquired:
        logger.info("%s skipped - already running on another instance", job_name)
        yield JobLockHandle(job_name, JobLockOutcome.HELD)
        return

    async with lock:
        yield JobLockHandle(job_name, JobLockOutcome.ACQUIRED, lock)
