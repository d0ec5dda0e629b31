"""
locks.py — Exclusive-create lock files with staleness eviction.

The lock for a resource path ``R`` is the file ``R.lock``. Whoever creates it
(O_CREAT | O_EXCL) holds the lock until it is removed. A lock older than
``stale_after`` seconds is assumed abandoned by a crashed holder and evicted
before the next retry.

Cooperative and single-node only: it is not a fencing token, and two hosts
sharing storage can both evict the same stale lock.
"""

from __future__ import annotations

import logging
import os
import random
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from mediavault.errors import AlreadyLocked, LockTimeout
from mediavault.logger import trace

log = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"


def lock_path(resource: str) -> str:
    return resource + LOCK_SUFFIX


class LockManager:
    """Acquire/release lock files around a named resource path."""

    def __init__(
        self,
        stale_after: float = 5.0,
        max_attempts: int = 20,
        base_delay: float = 0.05,
        jitter: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.stale_after = stale_after
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.jitter = jitter
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_config(cls, config) -> LockManager:
        return cls(
            stale_after=config.lock_stale_seconds,
            max_attempts=config.lock_max_attempts,
            base_delay=config.lock_retry_delay,
            jitter=config.lock_retry_jitter,
        )

    def try_acquire(self, resource: str) -> str:
        """Single attempt. Returns the token written into the lock file."""
        path = lock_path(resource)
        token = f"{os.getpid()}-{self._clock():.6f}"
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise AlreadyLocked(f"{path} is held") from None
        try:
            os.write(fd, token.encode())
        finally:
            os.close(fd)
        return token

    def lock_age(self, resource: str) -> Optional[float]:
        try:
            mtime = os.path.getmtime(lock_path(resource))
        except FileNotFoundError:
            return None
        return self._clock() - mtime

    def evict_if_stale(self, resource: str) -> bool:
        age = self.lock_age(resource)
        if age is None or age <= self.stale_after:
            return False
        try:
            os.remove(lock_path(resource))
        except FileNotFoundError:
            # Another waiter evicted it first
            return False
        log.warning("[lock] event=stale_lock_evicted resource=%s age=%.2f", resource, age)
        return True

    def acquire(self, resource: str) -> str:
        """Retry try_acquire() with jittered sleeps; LockTimeout when exhausted."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self.try_acquire(resource)
            except AlreadyLocked:
                if attempt == self.max_attempts:
                    break
                if self.evict_if_stale(resource):
                    continue
                delay = self.base_delay + random.uniform(0, self.jitter)
                trace(log, "[lock] event=lock_contended resource=%s attempt=%d delay=%.3f",
                      resource, attempt, delay)
                self._sleep(delay)

        log.error("[lock] event=lock_timeout resource=%s attempts=%d", resource, self.max_attempts)
        raise LockTimeout(f"could not lock {resource} after {self.max_attempts} attempts")

    def release(self, resource: str) -> None:
        try:
            os.remove(lock_path(resource))
        except FileNotFoundError:
            pass

    @contextmanager
    def held(self, resource: str) -> Iterator[str]:
        token = self.acquire(resource)
        try:
            yield token
        finally:
            self.release(resource)
