"""
assembly.py — Turn a complete upload session into a catalogued media file.

Flow of complete_upload():
  1. Under the session lock: verify owner, every index received, every
     chunk file present; then remove the session record (claim)
  2. Stream chunks in index order into temp_dir/<stem>-<ms>-<hex><ext>.part,
     deleting each chunk once it has been copied
  3. Hash + probe + classify the assembled file, move it into media_dir,
     insert the MediaRecord

If any step after the claim fails, the assembled file is removed and the
session record is restored, so the next attempt reports exactly which chunks
are gone.
"""

from __future__ import annotations

import logging
import os
import re
import secrets
import shutil
import sqlite3
import time
from typing import Callable, Optional

from mediavault import chunks, db
from mediavault.classifier import Classification, classify
from mediavault.config import Config, cfg
from mediavault.errors import ChunkMissing, Forbidden, IncompleteUpload, SessionNotFound
from mediavault.fingerprint import compute_hash, normalize
from mediavault.models import Caller, Category, MediaRecord, UploadSession
from mediavault.prober import ProbeResult, probe_media
from mediavault.sessions import SessionStore

log = logging.getLogger(__name__)

_UNSAFE_CHARS_RE = re.compile(r"[^\w.\- ]+")


def unique_filename(original: str) -> str:
    """'My Movie.mkv' -> 'My Movie-1700000000000-0123456789abcdef.mkv'."""
    stem, ext = os.path.splitext(os.path.basename(original))
    stem = _UNSAFE_CHARS_RE.sub("_", stem).strip(" ._") or "upload"
    return f"{stem}-{int(time.time() * 1000)}-{secrets.token_hex(8)}{ext.lower()}"


def _category(value) -> Optional[Category]:
    if not value:
        return None
    value = str(value).lower()
    if value in ("show", "tv", "tv-show", "tv_show", "series"):
        return Category.SHOW
    return Category.MOVIE


def _concatenate(config: Config, session_id: str, total: int, target: str) -> int:
    """Copy chunks 0..total-1 into ``target``; returns bytes written."""
    written = 0
    try:
        with open(target, "wb") as out:
            for index in range(total):
                path = chunks.chunk_path(config.chunks_dir, session_id, index)
                try:
                    with open(path, "rb") as src:
                        shutil.copyfileobj(src, out, chunks.COPY_BLOCK)
                except FileNotFoundError:
                    raise ChunkMissing([index]) from None
                written = out.tell()
                os.remove(path)
    except BaseException:
        try:
            os.remove(target)
        except FileNotFoundError:
            pass
        raise
    return written


def _claim(store: SessionStore, session_id: str, caller: Caller, config: Config) -> UploadSession:
    """
    Validate the session and remove its record under the session lock.

    Once claimed, a concurrent or repeated completion sees SessionNotFound.
    """
    with store.locked(session_id):
        session = store.get(session_id)
        if session is None:
            raise SessionNotFound(f"upload session {session_id} not found")
        if session.owner_id != caller.user_id:
            raise Forbidden("upload session belongs to another user")

        missing = session.missing()
        if missing:
            log.info("[assembly_flow] event=complete_rejected session=%s missing=%s",
                     session_id, missing)
            raise IncompleteUpload(missing, session.received_chunks)

        absent = [
            i for i in range(session.total_chunks)
            if not os.path.isfile(chunks.chunk_path(config.chunks_dir, session_id, i))
        ]
        if absent:
            log.error("[assembly_flow] event=chunk_files_missing session=%s indices=%s",
                      session_id, absent)
            raise ChunkMissing(absent)

        store.delete(session_id)
    return session


def complete_upload(
    conn: sqlite3.Connection,
    store: SessionStore,
    session_id: str,
    caller: Caller,
    metadata: Optional[dict] = None,
    config: Config = cfg,
    probe_fn: Callable[[str], ProbeResult] = probe_media,
    hasher: Callable[[str], Optional[str]] = compute_hash,
    classify_fn: Callable[[str], Classification] = classify,
) -> MediaRecord:
    metadata = metadata or {}

    # <telemetry>: complete_requested(session=<id>)
    log.info("[assembly_flow] event=complete_requested session=%s", session_id)

    session = _claim(store, session_id, caller, config)

    filename = unique_filename(session.filename)
    staging = os.path.join(config.temp_dir, filename + ".part")
    target = os.path.join(config.media_dir, filename)
    try:
        os.makedirs(config.temp_dir, exist_ok=True)
        os.makedirs(config.media_dir, exist_ok=True)
        size = _concatenate(config, session_id, session.total_chunks, staging)
        record = _register(conn, session, caller, metadata, staging, target, size,
                           probe_fn, hasher, classify_fn)
    except BaseException as exc:
        for path in (staging, target):
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
        # Restore the record; a retry reports the chunks now gone
        store.put(session)
        log.error("[assembly_flow] event=complete_failed session=%s error=%s", session_id, exc)
        raise

    # <telemetry>: upload_completed(media=<id>, size=N)
    log.info(
        "[assembly_flow] event=upload_completed session=%s media=%s path=%s size=%d resolution=%s",
        session_id, record.id, target, size, record.resolution,
    )
    return record


def _register(
    conn: sqlite3.Connection,
    session: UploadSession,
    caller: Caller,
    metadata: dict,
    staging: str,
    target: str,
    size: int,
    probe_fn: Callable[[str], ProbeResult],
    hasher: Callable[[str], Optional[str]],
    classify_fn: Callable[[str], Classification],
) -> MediaRecord:
    """Fingerprint the staged file, move it into media_dir and catalogue it."""
    file_hash = hasher(staging)
    probe = probe_fn(staging)
    declared = classify_fn(session.filename)

    category = _category(metadata.get("category")) or declared.category
    record = MediaRecord.new(
        title=metadata.get("title") or declared.title,
        title_key=normalize(session.filename),
        original_filename=session.filename,
        filename=os.path.basename(target),
        storage_path=target,
        size=size,
        hash=file_hash,
        resolution=probe.resolution,
        duration=probe.duration,
        category=category,
        season=metadata.get("season", declared.season),
        episode=metadata.get("episode", declared.episode),
        description=metadata.get("description"),
        published=bool(metadata.get("published", False)),
        owner_id=caller.user_id,
    )
    os.replace(staging, target)
    db.insert_media(conn, record)
    return record
