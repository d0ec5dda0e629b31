"""
app.py — Flask application and HTTP API entry point for mediavault.

Startup: create managed directories → open/validate catalog → open session store.

Endpoints (identity comes from the upstream auth proxy via X-User-Id / X-User-Role):
  GET    /version                  — image version string
  POST   /upload/init              — open an upload session
  POST   /upload/chunk             — multipart: upload_id, chunk_index, chunk
  GET    /upload/<id>/status       — received / missing chunk indices
  POST   /upload/complete          — assemble and catalogue
  DELETE /upload/<id>              — cancel an upload
  GET    /storage/analyze          — reconciliation dry run (admin)
  POST   /storage/fix              — repair mismatched catalog rows (admin)
  POST   /storage/cleanup          — delete orphans/duplicates, needs confirmed=true (admin)
  GET    /media/<id>/resolve       — file to stream, optional ?ceiling=720p
  DELETE /media/<id>               — ordered purge of a media record
"""

from __future__ import annotations

import logging
import os
import threading

from flask import Flask, jsonify, request

from mediavault import controllers, db
from mediavault.config import cfg
from mediavault.locks import LockManager
from mediavault.logger import configure_logging
from mediavault.models import Caller, Role
from mediavault.sessions import FileSessionStore

log = logging.getLogger(__name__)

app = Flask(__name__)

_started = False
_startup_lock = threading.Lock()
_conn = None  # module-level catalog connection, set during startup
_store = None  # module-level session store, set during startup
_config = cfg


def _ensure_started() -> None:
    global _started, _conn, _store  # noqa: PLW0603
    if not _started:
        with _startup_lock:
            if not _started:
                configure_logging()
                _config.ensure_dirs()
                _conn = db.init_db(_config.database_path)
                _store = FileSessionStore(_config.chunks_dir, LockManager.from_config(_config))
                _started = True
                # <telemetry>: service_start
                log.info("[startup_flow] event=service_started root=%s", _config.upload_root)


@app.before_request
def _startup():
    _ensure_started()


def _caller():
    user_id = request.headers.get("X-User-Id")
    if not user_id:
        return None
    try:
        role = Role(request.headers.get("X-User-Role", Role.USER.value).lower())
    except ValueError:
        role = Role.USER
    return Caller(user_id=user_id, role=role)


def _respond(result):
    body, status = result
    return jsonify(body), status


def _unauthenticated():
    return jsonify({"error": "unauthenticated", "message": "missing X-User-Id"}), 401


# ─── /version ───────────────────────────────────────────────────────────────

@app.get("/version")
def version():
    return _respond(controllers.get_version())


# ─── /upload ────────────────────────────────────────────────────────────────

@app.post("/upload/init")
def upload_init():
    caller = _caller()
    if caller is None:
        return _unauthenticated()
    return _respond(controllers.init_upload(_store, caller, request.get_json(silent=True) or {},
                                               config=_config))


@app.post("/upload/chunk")
def upload_chunk():
    caller = _caller()
    if caller is None:
        return _unauthenticated()
    chunk = request.files.get("chunk")
    return _respond(controllers.upload_chunk(
        _store, caller,
        upload_id=request.form.get("upload_id"),
        chunk_index=request.form.get("chunk_index"),
        payload=chunk.stream if chunk is not None else None,
        config=_config,
    ))


@app.get("/upload/<upload_id>/status")
def upload_status(upload_id: str):
    caller = _caller()
    if caller is None:
        return _unauthenticated()
    return _respond(controllers.upload_status(_store, caller, upload_id, config=_config))


@app.post("/upload/complete")
def upload_complete():
    caller = _caller()
    if caller is None:
        return _unauthenticated()
    body = request.get_json(silent=True) or {}
    return _respond(controllers.complete_upload(_conn, _store, caller, body, config=_config))


@app.delete("/upload/<upload_id>")
def upload_cancel(upload_id: str):
    caller = _caller()
    if caller is None:
        return _unauthenticated()
    return _respond(controllers.cancel_upload(_store, caller, upload_id, config=_config))


# ─── /storage ───────────────────────────────────────────────────────────────

@app.get("/storage/analyze")
def storage_analyze():
    caller = _caller()
    if caller is None:
        return _unauthenticated()
    return _respond(controllers.analyze_storage(_conn, caller, config=_config))


@app.post("/storage/fix")
def storage_fix():
    caller = _caller()
    if caller is None:
        return _unauthenticated()
    return _respond(controllers.fix_storage(_conn, caller, request.get_json(silent=True) or {},
                                               config=_config))


@app.post("/storage/cleanup")
def storage_cleanup():
    caller = _caller()
    if caller is None:
        return _unauthenticated()
    return _respond(controllers.cleanup_storage(_conn, caller, request.get_json(silent=True) or {},
                                                   config=_config))


# ─── /media ─────────────────────────────────────────────────────────────────

@app.get("/media/<media_id>/resolve")
def media_resolve(media_id: str):
    caller = _caller()
    if caller is None:
        return _unauthenticated()
    return _respond(controllers.resolve_media(_conn, caller, media_id,
                                              ceiling=request.args.get("ceiling"), config=_config))


@app.delete("/media/<media_id>")
def media_delete(media_id: str):
    caller = _caller()
    if caller is None:
        return _unauthenticated()
    return _respond(controllers.delete_media(_conn, caller, media_id))


# ─── Entrypoint ─────────────────────────────────────────────────────────────

if __name__ == "__main__":
    port = int(os.environ.get("PORT", "8000"))
    app.run(host="0.0.0.0", port=port, threaded=True)
