"""Tests for locks.py — exclusive lock files, retries and stale eviction."""

import os
import tempfile
import time

import pytest

from mediavault.errors import AlreadyLocked, LockTimeout
from mediavault.locks import LockManager, lock_path


def _no_sleep(_seconds):
    return None


def test_try_acquire_creates_lock_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        resource = os.path.join(tmpdir, "abc_meta.json")
        locks = LockManager()
        token = locks.try_acquire(resource)
        assert os.path.exists(lock_path(resource))
        with open(lock_path(resource)) as f:
            assert f.read() == token


def test_second_acquire_is_rejected():
    with tempfile.TemporaryDirectory() as tmpdir:
        resource = os.path.join(tmpdir, "abc_meta.json")
        locks = LockManager()
        locks.try_acquire(resource)
        with pytest.raises(AlreadyLocked):
            locks.try_acquire(resource)


def test_release_allows_reacquire():
    with tempfile.TemporaryDirectory() as tmpdir:
        resource = os.path.join(tmpdir, "abc_meta.json")
        locks = LockManager()
        locks.acquire(resource)
        locks.release(resource)
        assert not os.path.exists(lock_path(resource))
        locks.acquire(resource)


def test_release_without_lock_is_harmless():
    with tempfile.TemporaryDirectory() as tmpdir:
        LockManager().release(os.path.join(tmpdir, "nothing"))


def test_stale_lock_is_evicted():
    with tempfile.TemporaryDirectory() as tmpdir:
        resource = os.path.join(tmpdir, "abc_meta.json")
        with open(lock_path(resource), "w") as f:
            f.write("crashed-holder")
        old = time.time() - 60
        os.utime(lock_path(resource), (old, old))

        locks = LockManager(stale_after=5.0, max_attempts=3, sleep=_no_sleep)
        token = locks.acquire(resource)
        with open(lock_path(resource)) as f:
            assert f.read() == token


def test_fresh_lock_times_out():
    with tempfile.TemporaryDirectory() as tmpdir:
        resource = os.path.join(tmpdir, "abc_meta.json")
        holder = LockManager()
        holder.try_acquire(resource)

        sleeps = []
        waiter = LockManager(stale_after=5.0, max_attempts=4, sleep=sleeps.append)
        with pytest.raises(LockTimeout):
            waiter.acquire(resource)
        # One sleep between each pair of attempts
        assert len(sleeps) == 3
        # The holder's lock is untouched
        assert os.path.exists(lock_path(resource))


def test_retry_delay_has_jitter_bounds():
    with tempfile.TemporaryDirectory() as tmpdir:
        resource = os.path.join(tmpdir, "abc_meta.json")
        LockManager().try_acquire(resource)
        sleeps = []
        waiter = LockManager(max_attempts=10, base_delay=0.05, jitter=0.1, sleep=sleeps.append)
        with pytest.raises(LockTimeout):
            waiter.acquire(resource)
        assert all(0.05 <= s <= 0.15 for s in sleeps)


def test_held_releases_on_error():
    with tempfile.TemporaryDirectory() as tmpdir:
        resource = os.path.join(tmpdir, "abc_meta.json")
        locks = LockManager()
        with pytest.raises(RuntimeError):
            with locks.held(resource):
                assert os.path.exists(lock_path(resource))
                raise RuntimeError("boom")
        assert not os.path.exists(lock_path(resource))
