"""
controllers.py — Pure request handlers for mediavault.

Each function takes its collaborators (catalog connection, session store,
caller) plus request values and returns (response_dict, http_status_code).
No Flask imports, so they are testable without a running app. VaultError subclasses are
translated into their status codes by the `handled` decorator.
"""

from __future__ import annotations

import functools
import logging
import pathlib
import sqlite3
from typing import Optional, Tuple

from mediavault import assembly, catalog, ingest, reconcile, resolver
from mediavault.config import Config, cfg
from mediavault.errors import InvalidUpload, VaultError
from mediavault.models import Caller
from mediavault.sessions import SessionStore

log = logging.getLogger(__name__)

_VERSION_FILE = pathlib.Path(__file__).parent.parent / "version.txt"

Response = Tuple[dict, int]


def _read_version() -> str:
    try:
        return _VERSION_FILE.read_text().strip()
    except OSError:
        return "unknown"


def handled(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs) -> Response:
        try:
            return fn(*args, **kwargs)
        except VaultError as exc:
            log.info("[controllers] event=request_failed handler=%s status=%d error=%s",
                     fn.__name__, exc.status, exc.code)
            return exc.to_dict(), exc.status
    return wrapper


# ── GET /version ─────────────────────────────────────────────────────────────

def get_version() -> Response:
    return {"version": _read_version()}, 200


# ── Upload lifecycle ─────────────────────────────────────────────────────────

@handled
def init_upload(store: SessionStore, caller: Caller, body: dict,
                config: Config = cfg) -> Response:
    if not body.get("filename") or body.get("file_size") is None:
        raise InvalidUpload("filename and file_size are required")
    result = ingest.init_upload(
        store, caller,
        filename=body["filename"],
        file_size=body["file_size"],
        total_chunks=body.get("total_chunks"),
        config=config,
    )
    return result, 201


@handled
def upload_chunk(store: SessionStore, caller: Caller, upload_id: Optional[str],
                 chunk_index, payload, config: Config = cfg) -> Response:
    if not upload_id or chunk_index is None or payload is None:
        raise InvalidUpload("upload_id, chunk_index and chunk are required")
    progress = ingest.ingest_chunk(store, upload_id, chunk_index, payload, caller, config=config)
    return progress.to_dict(), 200


@handled
def upload_status(store: SessionStore, caller: Caller, upload_id: str,
                  config: Config = cfg) -> Response:
    return ingest.upload_status(store, upload_id, caller, config=config), 200


@handled
def complete_upload(conn: sqlite3.Connection, store: SessionStore, caller: Caller,
                    body: dict, config: Config = cfg) -> Response:
    upload_id = body.get("upload_id")
    if not upload_id:
        raise InvalidUpload("upload_id is required")
    metadata = {k: body[k] for k in ("title", "category", "season", "episode",
                                     "description", "published") if k in body}
    record = assembly.complete_upload(conn, store, upload_id, caller, metadata, config=config)
    return {"media": record.to_dict()}, 201


@handled
def cancel_upload(store: SessionStore, caller: Caller, upload_id: str,
                  config: Config = cfg) -> Response:
    removed = ingest.cancel_upload(store, upload_id, caller, config=config)
    return {"upload_id": upload_id, "chunks_removed": removed}, 200


# ── Storage reconciliation ───────────────────────────────────────────────────

@handled
def analyze_storage(conn: sqlite3.Connection, caller: Caller,
                    config: Config = cfg) -> Response:
    return reconcile.analyze(conn, caller, config=config).to_dict(), 200


@handled
def fix_storage(conn: sqlite3.Connection, caller: Caller, body: dict,
                config: Config = cfg) -> Response:
    result = reconcile.fix(conn, caller, config=config,
                           drop_missing=bool(body.get("drop_missing", False)))
    return result, 200


@handled
def cleanup_storage(conn: sqlite3.Connection, caller: Caller, body: dict,
                    config: Config = cfg) -> Response:
    result = reconcile.cleanup(
        conn, caller,
        confirmed=body.get("confirmed") is True,
        config=config,
        remove_database_duplicates=bool(body.get("remove_database_duplicates", False)),
    )
    return result, 200


# ── Media ────────────────────────────────────────────────────────────────────

@handled
def resolve_media(conn: sqlite3.Connection, caller: Caller, media_id: str,
                  ceiling: Optional[str] = None, config: Config = cfg) -> Response:
    chosen = resolver.resolve(conn, media_id, caller, ceiling=ceiling, config=config)
    return chosen.to_dict(), 200


@handled
def delete_media(conn: sqlite3.Connection, caller: Caller, media_id: str) -> Response:
    result = catalog.purge_media(conn, media_id, caller)
    return result.to_dict(), 200 if result.ok else 500
