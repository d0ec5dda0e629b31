"""Tests for assembly.py — ordered concatenation and catalog registration."""

import os
import re
import shutil
import sqlite3
import tempfile

import pytest

from mediavault import assembly, chunks, db, ingest, reconcile
from mediavault.config import Config
from mediavault.errors import ChunkMissing, Forbidden, IncompleteUpload, SessionNotFound
from mediavault.models import Caller, Category
from mediavault.prober import ProbeResult
from mediavault.sessions import FileSessionStore, MemorySessionStore

ALICE = Caller(user_id="alice")


def _in_memory_db() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.executescript(db._SCHEMA_SQL)
    return conn


def _config(tmpdir):
    config = Config()
    config.update({"upload_root": tmpdir, "session_read_retries": 0, "session_read_backoff": 0})
    return config


def _probe(path):
    return ProbeResult(resolution="1920x1080", duration=42.0)


def _upload(store, config, parts, filename="movieA.mp4", order=None):
    upload_id = ingest.init_upload(store, ALICE, filename, sum(len(p) for p in parts),
                                   len(parts), config=config)["upload_id"]
    for index in (order if order is not None else range(len(parts))):
        ingest.ingest_chunk(store, upload_id, index, parts[index], ALICE, config=config)
    return upload_id


def _complete(conn, store, upload_id, config, **kwargs):
    return assembly.complete_upload(conn, store, upload_id, ALICE, config=config,
                                    probe_fn=_probe, **kwargs)


def test_unique_filename_shape():
    name = assembly.unique_filename("My Movie.MKV")
    assert re.fullmatch(r"My Movie-\d{13}-[0-9a-f]{16}\.mkv", name)
    assert assembly.unique_filename("My Movie.MKV") != name


def test_unique_filename_sanitises():
    name = assembly.unique_filename("we?ird*name.mp4")
    assert "?" not in name and "*" not in name


def test_out_of_order_chunks_assemble_in_index_order():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(tmpdir)
        conn = _in_memory_db()
        store = MemorySessionStore()
        upload_id = _upload(store, config, [b"AA", b"BB", b"CC"], order=[2, 0, 1])

        record = _complete(conn, store, upload_id, config)

        with open(record.storage_path, "rb") as f:
            assert f.read() == b"AABBCC"
        assert record.size == 6
        assert os.path.dirname(record.storage_path) == config.media_dir
        assert record.original_filename == "movieA.mp4"
        assert record.title_key == "moviea"
        assert record.resolution == "1920x1080"
        assert record.duration == 42.0
        assert record.hash is not None
        assert db.get_media(conn, record.id) == record
        # Chunks consumed, session released
        assert os.listdir(config.chunks_dir) == []
        assert store.get(upload_id) is None
        assert os.listdir(config.temp_dir) == []


def test_same_content_in_any_delivery_order():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(tmpdir)
        conn = _in_memory_db()
        store = MemorySessionStore()
        parts = [b"one-", b"two-", b"three"]
        first = _complete(conn, store, _upload(store, config, parts, order=[0, 1, 2]), config)
        second = _complete(conn, store, _upload(store, config, parts, order=[1, 2, 0]), config)
        assert first.hash == second.hash


def test_incomplete_upload_reports_missing():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(tmpdir)
        conn = _in_memory_db()
        store = MemorySessionStore()
        upload_id = _upload(store, config, [b"a", b"b", b"c"], order=[0, 1])

        with pytest.raises(IncompleteUpload) as exc_info:
            _complete(conn, store, upload_id, config)

        assert exc_info.value.missing == [2]
        assert exc_info.value.to_dict()["uploaded"] == [0, 1]
        assert store.get(upload_id) is not None
        assert db.list_media(conn) == []


def test_second_completion_fails_with_session_not_found():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(tmpdir)
        conn = _in_memory_db()
        store = MemorySessionStore()
        upload_id = _upload(store, config, [b"a", b"b"])
        _complete(conn, store, upload_id, config)
        with pytest.raises(SessionNotFound):
            _complete(conn, store, upload_id, config)
        assert len(db.list_media(conn)) == 1


def test_missing_chunk_file_is_detected_before_consuming():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(tmpdir)
        conn = _in_memory_db()
        store = MemorySessionStore()
        upload_id = _upload(store, config, [b"a", b"b", b"c"])
        os.remove(chunks.chunk_path(config.chunks_dir, upload_id, 1))

        with pytest.raises(ChunkMissing) as exc_info:
            _complete(conn, store, upload_id, config)

        assert exc_info.value.indices == [1]
        # Nothing consumed, session intact
        assert os.path.exists(chunks.chunk_path(config.chunks_dir, upload_id, 0))
        assert store.get(upload_id) is not None
        assert not os.path.isdir(config.media_dir) or os.listdir(config.media_dir) == []


def test_complete_by_other_user_is_forbidden():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(tmpdir)
        conn = _in_memory_db()
        store = MemorySessionStore()
        upload_id = _upload(store, config, [b"a"])
        with pytest.raises(Forbidden):
            assembly.complete_upload(conn, store, upload_id, Caller(user_id="bob"),
                                     config=config, probe_fn=_probe)


def test_episode_classification_and_metadata_overrides():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(tmpdir)
        conn = _in_memory_db()
        store = MemorySessionStore()
        upload_id = _upload(store, config, [b"a"], filename="Show.Name.S02E05.mkv")
        record = _complete(conn, store, upload_id, config,
                           metadata={"title": "Custom", "published": True})
        assert record.category == Category.SHOW
        assert (record.season, record.episode) == (2, 5)
        assert record.title == "Custom"
        assert record.published is True
        assert record.owner_id == "alice"


def test_tv_show_category_alias():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(tmpdir)
        conn = _in_memory_db()
        store = MemorySessionStore()
        upload_id = _upload(store, config, [b"a"], filename="Documentary.mp4")
        record = _complete(conn, store, upload_id, config, metadata={"category": "tv-show"})
        assert record.category == Category.SHOW


def test_file_store_end_to_end():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(tmpdir)
        conn = _in_memory_db()
        store = FileSessionStore(config.chunks_dir)
        upload_id = _upload(store, config, [b"xx", b"yy"], order=[1, 0])
        record = _complete(conn, store, upload_id, config)
        with open(record.storage_path, "rb") as f:
            assert f.read() == b"xxyy"
        assert os.listdir(config.chunks_dir) == []


def test_chunk_vanishing_mid_stream_restores_session(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(tmpdir)
        conn = _in_memory_db()
        store = MemorySessionStore()
        upload_id = _upload(store, config, [b"a", b"b", b"c"])
        real_copy = shutil.copyfileobj

        def _copy_then_lose_next(src, dst, length=0):
            real_copy(src, dst, length)
            if src.name.endswith("_chunk_0"):
                os.remove(chunks.chunk_path(config.chunks_dir, upload_id, 1))

        monkeypatch.setattr(shutil, "copyfileobj", _copy_then_lose_next)

        with pytest.raises(ChunkMissing) as exc_info:
            _complete(conn, store, upload_id, config)

        assert exc_info.value.indices == [1]
        assert os.listdir(config.media_dir) == []
        assert os.listdir(config.temp_dir) == []
        assert store.get(upload_id) is not None
        assert db.list_media(conn) == []

        monkeypatch.setattr(shutil, "copyfileobj", real_copy)
        with pytest.raises(ChunkMissing) as exc_info:
            _complete(conn, store, upload_id, config)
        assert exc_info.value.indices == [0, 1]


def test_failed_catalog_insert_restores_session_and_removes_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(tmpdir)
        store = MemorySessionStore()
        upload_id = _upload(store, config, [b"ab", b"cd"])
        # No schema: insert_media raises
        broken = sqlite3.connect(":memory:", check_same_thread=False)

        with pytest.raises(sqlite3.OperationalError):
            _complete(broken, store, upload_id, config)

        assert store.get(upload_id) is not None
        assert os.listdir(config.media_dir) == []
        assert os.listdir(config.temp_dir) == []

        conn = _in_memory_db()
        with pytest.raises(ChunkMissing) as exc_info:
            _complete(conn, store, upload_id, config)
        assert exc_info.value.indices == [0, 1]

        # Re-sending the consumed chunks makes the upload completable again
        for index, part in enumerate([b"ab", b"cd"]):
            ingest.ingest_chunk(store, upload_id, index, part, ALICE, config=config)
        record = _complete(conn, store, upload_id, config)
        with open(record.storage_path, "rb") as f:
            assert f.read() == b"abcd"


def test_failed_hash_leaves_no_unregistered_file():
    def _hasher(path):
        raise PermissionError(13, "Permission denied", path)

    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(tmpdir)
        conn = _in_memory_db()
        store = MemorySessionStore()
        upload_id = _upload(store, config, [b"a"])

        with pytest.raises(PermissionError):
            _complete(conn, store, upload_id, config, hasher=_hasher)

        assert store.get(upload_id) is not None
        assert os.listdir(config.media_dir) == []
        assert db.list_media(conn) == []


def test_partial_assembly_is_invisible_to_reconciliation(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(tmpdir)
        conn = _in_memory_db()
        store = MemorySessionStore()
        upload_id = _upload(store, config, [b"a", b"b"])
        real_copy = shutil.copyfileobj
        reports = []

        def _copy_and_audit(src, dst, length=0):
            real_copy(src, dst, length)
            reports.append(reconcile.build_report(conn, config, hasher=lambda p: "H",
                                                  probe_fn=lambda p: None))

        monkeypatch.setattr(shutil, "copyfileobj", _copy_and_audit)
        record = _complete(conn, store, upload_id, config)

        assert len(reports) == 2
        assert all(r.files == {} and r.findings == [] for r in reports)
        assert os.path.dirname(record.storage_path) == config.media_dir
