"""
sessions.py — Upload session persistence.

SessionStore is the single interface every backend implements in full:
get / put / delete / locked. FileSessionStore keeps one JSON record per
upload next to its chunks (<id>_meta.json) and serialises read-modify-write
through a LockManager lock file; MemorySessionStore is the in-process
equivalent used by tests and single-process deployments.
"""

from __future__ import annotations

import json
import logging
import os
import random
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

from mediavault.errors import InvalidChunk, SessionNotFound
from mediavault.locks import LockManager
from mediavault.models import UploadSession

log = logging.getLogger(__name__)

META_SUFFIX = "_meta.json"


class SessionStore(ABC):

    @abstractmethod
    def get(self, session_id: str) -> Optional[UploadSession]:
        """Current record, or None when missing or unreadable."""

    @abstractmethod
    def put(self, session: UploadSession) -> None:
        """Replace the record atomically."""

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        """Remove the record. True if something was removed."""

    @abstractmethod
    def locked(self, session_id: str):
        """Context manager giving exclusive access to the record."""


class FileSessionStore(SessionStore):

    def __init__(self, chunks_dir: str, locks: Optional[LockManager] = None) -> None:
        self.chunks_dir = chunks_dir
        self.locks = locks or LockManager()
        os.makedirs(chunks_dir, exist_ok=True)

    def meta_path(self, session_id: str) -> str:
        return os.path.join(self.chunks_dir, f"{session_id}{META_SUFFIX}")

    def get(self, session_id: str) -> Optional[UploadSession]:
        path = self.meta_path(session_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return UploadSession.from_dict(data)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as exc:
            log.warning("[session] event=session_unreadable session=%s error=%s", session_id, exc)
            return None

    def put(self, session: UploadSession) -> None:
        path = self.meta_path(session.session_id)
        tmp = f"{path}.{os.getpid()}.{threading.get_ident()}.tmp"
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(session.to_dict(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            try:
                os.remove(tmp)
            except FileNotFoundError:
                pass
            raise

    def delete(self, session_id: str) -> bool:
        try:
            os.remove(self.meta_path(session_id))
        except FileNotFoundError:
            return False
        return True

    def locked(self, session_id: str):
        return self.locks.held(self.meta_path(session_id))


class MemorySessionStore(SessionStore):

    def __init__(self) -> None:
        self._records: Dict[str, dict] = {}
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def get(self, session_id: str) -> Optional[UploadSession]:
        with self._guard:
            data = self._records.get(session_id)
        return UploadSession.from_dict(data) if data is not None else None

    def put(self, session: UploadSession) -> None:
        with self._guard:
            self._records[session.session_id] = session.to_dict()

    def delete(self, session_id: str) -> bool:
        with self._guard:
            return self._records.pop(session_id, None) is not None

    @contextmanager
    def locked(self, session_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(session_id, threading.Lock())
        with lock:
            yield


# ── Operations ───────────────────────────────────────────────────────────────

def init_session(
    store: SessionStore,
    session_id: str,
    filename: str,
    file_size: int,
    total_chunks: int,
    owner_id: str,
) -> UploadSession:
    session = UploadSession(
        session_id=session_id,
        filename=filename,
        file_size=file_size,
        total_chunks=total_chunks,
        owner_id=owner_id,
    )
    store.put(session)
    log.info(
        "[upload_flow] event=session_created session=%s owner=%s total_chunks=%d size=%d",
        session_id, owner_id, total_chunks, file_size,
    )
    return session


def load_session(
    store: SessionStore,
    session_id: str,
    retries: int = 5,
    backoff: float = 0.1,
    sleep: Callable[[float], None] = time.sleep,
) -> UploadSession:
    """
    Read a session, retrying with exponential backoff while it is absent.

    Covers the window between session creation and the first chunk arriving
    on another worker. Raises SessionNotFound once retries are exhausted.
    """
    for attempt in range(retries + 1):
        session = store.get(session_id)
        if session is not None:
            return session
        if attempt < retries and backoff > 0:
            sleep(backoff * (2 ** attempt) + random.uniform(0, backoff / 2))
    raise SessionNotFound(f"upload session {session_id} not found")


def record_chunk(
    store: SessionStore,
    session_id: str,
    index: int,
    retries: int = 5,
    backoff: float = 0.1,
) -> int:
    """
    Mark chunk ``index`` as received. Returns the received-chunk count.

    Repeated delivery of the same index is a no-op success.
    """
    with store.locked(session_id):
        # Re-read under the lock; never trust a copy taken before it.
        session = load_session(store, session_id, retries=retries, backoff=backoff)
        if index < 0 or index >= session.total_chunks:
            raise InvalidChunk(f"chunk index {index} outside [0, {session.total_chunks})")
        if index in session.received_chunks:
            log.info("[upload_flow] event=chunk_duplicate session=%s index=%d", session_id, index)
            return len(session.received_chunks)
        session.received_chunks = sorted(set(session.received_chunks) | {index})
        store.put(session)

    log.info(
        "[upload_flow] event=chunk_recorded session=%s index=%d received=%d total=%d",
        session_id, index, len(session.received_chunks), session.total_chunks,
    )
    return len(session.received_chunks)
