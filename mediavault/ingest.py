"""
ingest.py — Chunk ingestion: the client-facing side of a resumable upload.

Flow:
  1. init_upload   — validate the declared file, create the session record
  2. ingest_chunk  — verify owner, persist the chunk, record it (any order, repeats ok)
  3. upload_status — received / missing indices so a client can resume
  4. cancel_upload — discard chunks and the session
Completion lives in assembly.py.
"""

from __future__ import annotations

import logging
import math
import os
import secrets
from typing import Optional

from mediavault import chunks
from mediavault.config import Config, cfg
from mediavault.errors import Forbidden, InvalidChunk, InvalidUpload, PayloadTooLarge
from mediavault.fingerprint import VIDEO_EXTENSIONS
from mediavault.models import Caller, ChunkProgress, UploadSession
from mediavault.sessions import SessionStore, init_session, load_session, record_chunk

log = logging.getLogger(__name__)


def new_session_id() -> str:
    return secrets.token_hex(16)


def _check_owner(session: UploadSession, caller: Caller) -> None:
    if session.owner_id != caller.user_id:
        log.warning(
            "[upload_flow] event=owner_mismatch session=%s owner=%s caller=%s",
            session.session_id, session.owner_id, caller.user_id,
        )
        raise Forbidden("upload session belongs to another user")


def init_upload(
    store: SessionStore,
    caller: Caller,
    filename: str,
    file_size: int,
    total_chunks: Optional[int] = None,
    config: Config = cfg,
) -> dict:
    """Validate the declared upload and open a session for it."""
    filename = os.path.basename(filename or "")
    ext = os.path.splitext(filename)[1].lower()
    if not filename or ext not in VIDEO_EXTENSIONS:
        raise InvalidUpload(f"unsupported file type: {ext or filename!r}")
    try:
        file_size = int(file_size)
    except (TypeError, ValueError):
        raise InvalidUpload("file size must be an integer") from None
    if file_size <= 0:
        raise InvalidUpload("file size must be positive")
    if file_size > config.max_file_size:
        raise PayloadTooLarge(f"file exceeds {config.max_file_size} bytes")

    chunk_size = config.max_chunk_size
    expected = max(1, math.ceil(file_size / chunk_size))
    if total_chunks is None:
        total_chunks = expected
    try:
        total_chunks = int(total_chunks)
    except (TypeError, ValueError):
        raise InvalidUpload("total chunks must be an integer") from None
    if total_chunks < expected:
        raise InvalidUpload(f"{total_chunks} chunk(s) cannot carry {file_size} bytes")
    # Every chunk carries at least one byte
    if total_chunks > file_size:
        raise InvalidUpload(f"{total_chunks} chunk(s) exceed {file_size} bytes")

    session = init_session(
        store,
        session_id=new_session_id(),
        filename=filename,
        file_size=file_size,
        total_chunks=total_chunks,
        owner_id=caller.user_id,
    )
    return {
        "upload_id": session.session_id,
        "chunk_size": chunk_size,
        "total_chunks": session.total_chunks,
    }


def ingest_chunk(
    store: SessionStore,
    session_id: str,
    index: int,
    payload,
    caller: Caller,
    config: Config = cfg,
) -> ChunkProgress:
    """
    Accept one chunk of an upload.

    The chunk is written before the session lock is taken; only the
    read-modify-write of the received set is serialised. If recording fails
    the written chunk is removed again and the error propagates.
    """
    session = load_session(
        store, session_id,
        retries=config.session_read_retries,
        backoff=config.session_read_backoff,
    )
    _check_owner(session, caller)

    try:
        index = int(index)
    except (TypeError, ValueError):
        raise InvalidChunk(f"invalid chunk index {index!r}") from None
    if index < 0 or index >= session.total_chunks:
        raise InvalidChunk(f"chunk index {index} outside [0, {session.total_chunks})")

    written = chunks.write_chunk(
        config.chunks_dir, session_id, index, payload, config.max_chunk_size,
    )

    try:
        received = record_chunk(
            store, session_id, index,
            retries=config.session_read_retries,
            backoff=config.session_read_backoff,
        )
    except Exception:
        chunks.remove_chunk(config.chunks_dir, session_id, index)
        log.warning("[upload_flow] event=chunk_rolled_back session=%s index=%d", session_id, index)
        raise

    progress = ChunkProgress(session_id=session_id, index=index,
                             received=received, total=session.total_chunks)
    log.info(
        "[upload_flow] event=chunk_ingested session=%s index=%d bytes=%d progress=%.2f",
        session_id, index, written, progress.percent,
    )
    return progress


def upload_status(store: SessionStore, session_id: str, caller: Caller,
                  config: Config = cfg) -> dict:
    session = load_session(store, session_id, retries=0)
    _check_owner(session, caller)
    return {
        "upload_id": session.session_id,
        "filename": session.filename,
        "total_chunks": session.total_chunks,
        "uploaded": list(session.received_chunks),
        "missing": session.missing(),
        "complete": session.is_complete,
    }


def cancel_upload(store: SessionStore, session_id: str, caller: Caller,
                  config: Config = cfg) -> int:
    """Drop every chunk and the session record. Returns chunks removed."""
    session = load_session(store, session_id, retries=0)
    _check_owner(session, caller)

    removed = 0
    with store.locked(session_id):
        for index in range(session.total_chunks):
            if chunks.remove_chunk(config.chunks_dir, session_id, index):
                removed += 1
        store.delete(session_id)

    log.info("[upload_flow] event=upload_cancelled session=%s chunks_removed=%d", session_id, removed)
    return removed
