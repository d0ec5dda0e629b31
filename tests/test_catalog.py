"""Tests for catalog.py — lazy variant invalidation and the ordered purge."""

import os
import sqlite3
import tempfile

import pytest

from mediavault import catalog, db
from mediavault.errors import Forbidden, MediaNotFound
from mediavault.models import Caller, MediaRecord, Role, TranscodedVariant

OWNER = Caller(user_id="alice")


def _in_memory_db() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.executescript(db._SCHEMA_SQL)
    return conn


def _touch(path, size=10):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(b"x" * size)
    return path


def _setup(tmpdir, conn):
    original = _touch(os.path.join(tmpdir, "media", "a.mp4"))
    thumb = _touch(os.path.join(tmpdir, "thumbnails", "a.jpg"))
    rec = MediaRecord.new(
        title="A", title_key="a", original_filename="a.mp4", filename="a.mp4",
        storage_path=original, size=10, owner_id="alice", thumbnail_path=thumb,
    )
    db.insert_media(conn, rec)
    variant = TranscodedVariant.new(original, "720p",
                                    _touch(os.path.join(tmpdir, "transcoded", "a_720p_h265.mp4")))
    db.insert_variant(conn, variant)
    return rec, variant


def test_live_variants_drops_rows_without_files():
    with tempfile.TemporaryDirectory() as tmpdir:
        conn = _in_memory_db()
        rec, variant = _setup(tmpdir, conn)
        stale = TranscodedVariant.new(rec.storage_path, "1080p", os.path.join(tmpdir, "gone.mp4"))
        db.insert_variant(conn, stale)

        live = catalog.live_variants(conn, rec.storage_path)

        assert [v.id for v in live] == [variant.id]
        assert [v.id for v in db.variants_for(conn, rec.storage_path)] == [variant.id]


def test_purge_runs_steps_in_order():
    with tempfile.TemporaryDirectory() as tmpdir:
        conn = _in_memory_db()
        rec, variant = _setup(tmpdir, conn)

        result = catalog.purge_media(conn, rec.id, OWNER)

        assert [s.step for s in result.steps] == ["variant", "thumbnail", "original", "row"]
        assert all(s.outcome == "removed" for s in result.steps)
        assert result.ok and result.row_removed
        assert not os.path.exists(variant.transcoded_path)
        assert not os.path.exists(rec.thumbnail_path)
        assert not os.path.exists(rec.storage_path)
        assert db.get_media(conn, rec.id, include_deleted=True) is None
        assert db.list_variants(conn) == []


def test_purge_tolerates_already_missing_files():
    with tempfile.TemporaryDirectory() as tmpdir:
        conn = _in_memory_db()
        rec, _variant = _setup(tmpdir, conn)
        os.remove(rec.thumbnail_path)

        result = catalog.purge_media(conn, rec.id, OWNER)

        thumb_step = [s for s in result.steps if s.step == "thumbnail"][0]
        assert thumb_step.outcome == "absent"
        assert result.row_removed


def test_purge_stops_before_row_when_original_cannot_be_removed():
    with tempfile.TemporaryDirectory() as tmpdir:
        conn = _in_memory_db()
        # A directory where the original should be: os.remove fails
        blocked = os.path.join(tmpdir, "media", "blocked.mp4")
        os.makedirs(blocked)
        rec = MediaRecord.new(title="B", title_key="b", original_filename="b.mp4",
                              filename="blocked.mp4", storage_path=blocked, size=1,
                              owner_id="alice")
        db.insert_media(conn, rec)

        result = catalog.purge_media(conn, rec.id, OWNER)

        assert not result.ok
        assert result.steps[-1].step == "original"
        assert result.steps[-1].outcome == "failed"
        assert not result.row_removed
        assert db.get_media(conn, rec.id) is not None


def test_purge_requires_owner_or_privileged():
    with tempfile.TemporaryDirectory() as tmpdir:
        conn = _in_memory_db()
        rec, _variant = _setup(tmpdir, conn)
        with pytest.raises(Forbidden):
            catalog.purge_media(conn, rec.id, Caller(user_id="bob"))
        result = catalog.purge_media(conn, rec.id, Caller(user_id="carol", role=Role.MANAGER))
        assert result.row_removed


def test_purge_unknown_media():
    conn = _in_memory_db()
    with pytest.raises(MediaNotFound):
        catalog.purge_media(conn, "nope", OWNER)


def test_purge_result_serialises():
    with tempfile.TemporaryDirectory() as tmpdir:
        conn = _in_memory_db()
        rec, _variant = _setup(tmpdir, conn)
        data = catalog.purge_media(conn, rec.id, OWNER).to_dict()
        assert data["media_id"] == rec.id
        assert data["ok"] is True
        assert len(data["steps"]) == 4
