"""
db.py — SQLite catalog for mediavault.

Database location: <upload_root>/.vault/catalog.db (see Config.database_path)
Schema: media (catalogued originals), variants (transcoded outputs).
Schema validation on startup: create if absent, refuse to start on mismatch.
All operations are thread-safe via a module-level lock.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from typing import List, Optional

from mediavault.models import Category, MediaRecord, TranscodedVariant, utc_now

log = logging.getLogger(__name__)

_lock = threading.Lock()


class SchemaMismatch(RuntimeError):
    """The catalog on disk was created by an incompatible schema."""


# ── Expected schema SQL ──────────────────────────────────────────────────────

_SCHEMA_SQL = """\
CREATE TABLE media (id TEXT PRIMARY KEY, title TEXT NOT NULL, title_key TEXT NOT NULL, original_filename TEXT NOT NULL, filename TEXT NOT NULL, storage_path TEXT NOT NULL, size INTEGER NOT NULL, hash TEXT, resolution TEXT, duration REAL, category TEXT NOT NULL DEFAULT 'movie', season INTEGER, episode INTEGER, description TEXT, published INTEGER NOT NULL DEFAULT 0, owner_id TEXT, thumbnail_path TEXT, created_at TEXT NOT NULL, deleted_at TEXT);
CREATE TABLE variants (id TEXT PRIMARY KEY, original_path TEXT NOT NULL, quality TEXT NOT NULL, transcoded_path TEXT NOT NULL, original_size INTEGER, transcoded_size INTEGER, created_at TEXT NOT NULL);
CREATE INDEX idx_media_storage_path ON media(storage_path);
CREATE INDEX idx_media_hash ON media(hash);
CREATE INDEX idx_media_dedup ON media(title_key, resolution, hash);
CREATE INDEX idx_variants_original ON variants(original_path);
"""

# Normalised representation used for schema comparison
_EXPECTED_TABLES = {
    "media": (
        "CREATE TABLE media ("
        "id TEXT PRIMARY KEY, "
        "title TEXT NOT NULL, "
        "title_key TEXT NOT NULL, "
        "original_filename TEXT NOT NULL, "
        "filename TEXT NOT NULL, "
        "storage_path TEXT NOT NULL, "
        "size INTEGER NOT NULL, "
        "hash TEXT, "
        "resolution TEXT, "
        "duration REAL, "
        "category TEXT NOT NULL DEFAULT 'movie', "
        "season INTEGER, "
        "episode INTEGER, "
        "description TEXT, "
        "published INTEGER NOT NULL DEFAULT 0, "
        "owner_id TEXT, "
        "thumbnail_path TEXT, "
        "created_at TEXT NOT NULL, "
        "deleted_at TEXT)"
    ),
    "variants": (
        "CREATE TABLE variants ("
        "id TEXT PRIMARY KEY, "
        "original_path TEXT NOT NULL, "
        "quality TEXT NOT NULL, "
        "transcoded_path TEXT NOT NULL, "
        "original_size INTEGER, "
        "transcoded_size INTEGER, "
        "created_at TEXT NOT NULL)"
    ),
}

_MEDIA_COLUMNS = (
    "id", "title", "title_key", "original_filename", "filename", "storage_path",
    "size", "hash", "resolution", "duration", "category", "season", "episode",
    "description", "published", "owner_id", "thumbnail_path", "created_at",
    "deleted_at",
)

_UPDATABLE_MEDIA_FIELDS = {
    "title", "title_key", "filename", "storage_path", "size", "hash",
    "resolution", "duration", "category", "season", "episode", "description",
    "published", "thumbnail_path",
}


def _connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def _normalise_sql(sql: str) -> str:
    """Collapse whitespace for schema comparison."""
    return " ".join(sql.split())


# ── Schema validation ────────────────────────────────────────────────────────

def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Compare the current DB schema against the expected definition.

    Returns True if the schema was already valid, False if it was created.
    A catalog holding tables with a different definition raises SchemaMismatch;
    media rows are never dropped to make a schema fit.
    """
    cur = conn.execute(
        "SELECT name, sql FROM sqlite_master WHERE type='table' AND name IN (?, ?)",
        ("media", "variants"),
    )
    existing = {row["name"]: _normalise_sql(row["sql"]) for row in cur.fetchall()}

    if not existing:
        conn.executescript(_SCHEMA_SQL)
        conn.commit()
        log.info("[startup_flow] event=db_schema_created")
        return False

    mismatched = [
        name for name, expected in _EXPECTED_TABLES.items()
        if existing.get(name) != _normalise_sql(expected)
    ]
    if mismatched:
        log.error("[startup_flow] event=db_schema_mismatch tables=%s", mismatched)
        raise SchemaMismatch(f"catalog tables do not match expected schema: {mismatched}")

    log.info("[startup_flow] event=db_schema_validated")
    return True


# ── Initialisation ───────────────────────────────────────────────────────────

def init_db(db_path: str) -> sqlite3.Connection:
    """Create database directory, connect, and validate/create schema."""
    db_dir = os.path.dirname(db_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    with _lock:
        conn = _connect(db_path)
        validate_schema(conn)
    log.info("Catalog initialised at %s", db_path)
    return conn


# ── Row mapping ──────────────────────────────────────────────────────────────

def _row_to_media(row: sqlite3.Row) -> MediaRecord:
    return MediaRecord(
        id=row["id"],
        title=row["title"],
        title_key=row["title_key"],
        original_filename=row["original_filename"],
        filename=row["filename"],
        storage_path=row["storage_path"],
        size=row["size"],
        hash=row["hash"],
        resolution=row["resolution"],
        duration=row["duration"],
        category=Category(row["category"]),
        season=row["season"],
        episode=row["episode"],
        description=row["description"],
        published=bool(row["published"]),
        owner_id=row["owner_id"],
        thumbnail_path=row["thumbnail_path"],
        created_at=row["created_at"],
        deleted_at=row["deleted_at"],
    )


def _row_to_variant(row: sqlite3.Row) -> TranscodedVariant:
    return TranscodedVariant(
        id=row["id"],
        original_path=row["original_path"],
        quality=row["quality"],
        transcoded_path=row["transcoded_path"],
        original_size=row["original_size"],
        transcoded_size=row["transcoded_size"],
        created_at=row["created_at"],
    )


# ── Media operations ─────────────────────────────────────────────────────────

def insert_media(conn: sqlite3.Connection, record: MediaRecord) -> None:
    values = record.to_dict()
    values["published"] = 1 if record.published else 0
    placeholders = ", ".join("?" for _ in _MEDIA_COLUMNS)
    with _lock:
        conn.execute(
            f"INSERT INTO media ({', '.join(_MEDIA_COLUMNS)}) VALUES ({placeholders})",  # noqa: S608
            [values[c] for c in _MEDIA_COLUMNS],
        )
        conn.commit()


def get_media(conn: sqlite3.Connection, media_id: str,
              include_deleted: bool = False) -> Optional[MediaRecord]:
    with _lock:
        cur = conn.execute("SELECT * FROM media WHERE id = ?", (media_id,))
        row = cur.fetchone()
    if row is None:
        return None
    record = _row_to_media(row)
    if record.deleted_at is not None and not include_deleted:
        return None
    return record


def list_media(conn: sqlite3.Connection, include_deleted: bool = False) -> List[MediaRecord]:
    sql = "SELECT * FROM media"
    if not include_deleted:
        sql += " WHERE deleted_at IS NULL"
    sql += " ORDER BY created_at ASC, rowid ASC"
    with _lock:
        rows = conn.execute(sql).fetchall()
    return [_row_to_media(r) for r in rows]


def update_media(conn: sqlite3.Connection, media_id: str, **fields) -> None:
    """Update one or more fields on a media row."""
    updates = {k: v for k, v in fields.items() if k in _UPDATABLE_MEDIA_FIELDS}
    if not updates:
        return
    if "category" in updates and isinstance(updates["category"], Category):
        updates["category"] = updates["category"].value
    if "published" in updates:
        updates["published"] = 1 if updates["published"] else 0
    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [media_id]
    with _lock:
        conn.execute(
            f"UPDATE media SET {set_clause} WHERE id = ?",  # noqa: S608
            values,
        )
        conn.commit()


def soft_delete_media(conn: sqlite3.Connection, media_id: str) -> None:
    with _lock:
        conn.execute(
            "UPDATE media SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
            (utc_now(), media_id),
        )
        conn.commit()


def delete_media_row(conn: sqlite3.Connection, media_id: str) -> bool:
    with _lock:
        cur = conn.execute("DELETE FROM media WHERE id = ?", (media_id,))
        conn.commit()
    return cur.rowcount > 0


# ── Variant operations ───────────────────────────────────────────────────────

def insert_variant(conn: sqlite3.Connection, variant: TranscodedVariant) -> None:
    """Register a transcoded output. Called by the external transcoder."""
    with _lock:
        conn.execute(
            """INSERT INTO variants
               (id, original_path, quality, transcoded_path, original_size, transcoded_size, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (variant.id, variant.original_path, variant.quality, variant.transcoded_path,
             variant.original_size, variant.transcoded_size, variant.created_at),
        )
        conn.commit()


def list_variants(conn: sqlite3.Connection) -> List[TranscodedVariant]:
    with _lock:
        rows = conn.execute("SELECT * FROM variants ORDER BY rowid ASC").fetchall()
    return [_row_to_variant(r) for r in rows]


def variants_for(conn: sqlite3.Connection, original_path: str) -> List[TranscodedVariant]:
    with _lock:
        rows = conn.execute(
            "SELECT * FROM variants WHERE original_path = ? ORDER BY rowid ASC",
            (original_path,),
        ).fetchall()
    return [_row_to_variant(r) for r in rows]


def repoint_variants(conn: sqlite3.Connection, old_path: str, new_path: str) -> int:
    """Move variant rows to a relinked original. Returns rows updated."""
    with _lock:
        cur = conn.execute(
            "UPDATE variants SET original_path = ? WHERE original_path = ?",
            (new_path, old_path),
        )
        conn.commit()
    return cur.rowcount


def delete_variant(conn: sqlite3.Connection, variant_id: str) -> bool:
    with _lock:
        cur = conn.execute("DELETE FROM variants WHERE id = ?", (variant_id,))
        conn.commit()
    return cur.rowcount > 0
