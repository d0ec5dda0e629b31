"""
reconcile.py — Audit the catalog against the managed directories.

One pass:
  1. Load live media records and variant rows; walk media_dir and transcoded_dir
  2. Fingerprint every video file: (normalized key, resolution, hash)
  3. Match records to files:
       file at storage_path agrees          -> PROTECTED
       file at storage_path disagrees       -> MISMATCH
       path gone, same hash / key+res found -> MISMATCH (relink target)
       nothing found                        -> MISSING
     Variant outputs of live records, and transcoded files carrying a live
     record's unique id, are protected too.
  4. Group the remaining files by (key, resolution):
       shares a protected file's key        -> FILESYSTEM_DUPLICATE (keep protected)
       several members                      -> FILESYSTEM_DUPLICATE (keep newest mtime)
       singleton                            -> ORPHAN
     Records sharing a normalized title     -> DATABASE_DUPLICATE (keep newest)
     Variant rows whose original is gone    -> ORPHANED_VARIANT
  5. analyze() reports, fix() repairs mismatched rows, cleanup() deletes.

A file that cannot be read is recorded in `errors` and the pass continues.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from mediavault import db
from mediavault.config import Config, cfg
from mediavault.errors import ConfirmationRequired, Forbidden
from mediavault.fingerprint import (
    compute_hash,
    is_video,
    normalize,
    normalize_transcoded,
    quality_from_filename,
    resolution_for_quality,
    unique_id,
)
from mediavault.models import Caller, FileEntry, Finding, FindingKind, MediaRecord
from mediavault.prober import probe_resolution

log = logging.getLogger(__name__)

Hasher = Callable[[str], Optional[str]]
Prober = Callable[[str], Optional[str]]

_RECLAIMABLE = (FindingKind.ORPHAN, FindingKind.FILESYSTEM_DUPLICATE, FindingKind.ORPHANED_VARIANT)


@dataclass
class ReconciliationReport:
    findings: List[Finding] = field(default_factory=list)
    errors: List[dict] = field(default_factory=list)
    summary: dict = field(default_factory=dict)
    files: Dict[str, FileEntry] = field(default_factory=dict)

    def of_kind(self, kind: FindingKind) -> List[Finding]:
        return [f for f in self.findings if f.kind == kind]

    def to_dict(self) -> dict:
        return {
            "summary": self.summary,
            "findings": [f.to_dict() for f in self.findings],
            "errors": self.errors,
        }


def _require_admin(caller: Caller) -> None:
    if not caller.is_admin:
        raise Forbidden("storage reconciliation requires an admin")


# ── Scan ─────────────────────────────────────────────────────────────────────

def _fingerprint(path: str, transcoded: bool, hasher: Hasher, probe_fn: Prober) -> FileEntry:
    st = os.stat(path)
    name = os.path.basename(path)
    resolution = probe_fn(path)
    if transcoded:
        key = normalize_transcoded(name)
        if resolution is None:
            resolution = resolution_for_quality(quality_from_filename(name))
    else:
        key = normalize(name)
    return FileEntry(
        path=path,
        size=st.st_size,
        mtime=st.st_mtime,
        key=key,
        hash=hasher(path),
        resolution=resolution,
        transcoded=transcoded,
    )


def scan_files(
    config: Config,
    errors: List[dict],
    hasher: Hasher = compute_hash,
    probe_fn: Prober = probe_resolution,
) -> List[FileEntry]:
    """Fingerprint every video file under media_dir and transcoded_dir."""
    entries: List[FileEntry] = []

    def _walk_error(exc: OSError) -> None:
        errors.append({"path": exc.filename, "error": str(exc)})

    for root_dir, transcoded in ((config.media_dir, False), (config.transcoded_dir, True)):
        if not os.path.isdir(root_dir):
            log.warning("[reconcile_flow] event=scan_dir_missing dir=%s", root_dir)
            continue
        for root, _dirs, files in os.walk(root_dir, onerror=_walk_error):
            for fname in sorted(files):
                if not is_video(fname):
                    continue
                path = os.path.join(root, fname)
                try:
                    entry = _fingerprint(path, transcoded, hasher, probe_fn)
                except OSError as exc:
                    log.warning("[reconcile_flow] event=scan_file_error path=%s error=%s", path, exc)
                    errors.append({"path": path, "error": str(exc)})
                    continue
                if entry.hash is None:
                    errors.append({"path": path, "error": "unable to hash file"})
                entries.append(entry)
    return entries


# ── Classification ───────────────────────────────────────────────────────────

def _differences(record: MediaRecord, entry: FileEntry) -> List[str]:
    diffs = []
    if record.size != entry.size:
        diffs.append("size")
    if record.hash and entry.hash and record.hash != entry.hash:
        diffs.append("hash")
    if record.resolution and entry.resolution and record.resolution != entry.resolution:
        diffs.append("resolution")
    return diffs


def _actual(entry: FileEntry) -> dict:
    return {
        "path": entry.path,
        "filename": entry.filename,
        "size": entry.size,
        "hash": entry.hash,
        "resolution": entry.resolution,
    }


def _find_candidate(record: MediaRecord, pool: Iterable[FileEntry]) -> Optional[FileEntry]:
    pool = list(pool)
    if record.hash:
        for entry in pool:
            if entry.hash == record.hash:
                return entry
    for entry in pool:
        if entry.key == record.title_key and entry.resolution == record.resolution:
            return entry
    return None


def build_report(
    conn: sqlite3.Connection,
    config: Config = cfg,
    hasher: Hasher = compute_hash,
    probe_fn: Prober = probe_resolution,
) -> ReconciliationReport:
    """Run one reconciliation pass without any access check or side effect."""
    # <telemetry>: reconcile_started
    log.info("[reconcile_flow] event=reconcile_started media_dir=%s transcoded_dir=%s",
             config.media_dir, config.transcoded_dir)

    report = ReconciliationReport()
    records = db.list_media(conn)
    variants = db.list_variants(conn)
    entries = scan_files(config, report.errors, hasher=hasher, probe_fn=probe_fn)
    report.files = {e.path: e for e in entries}

    record_paths = {r.storage_path for r in records}
    live_ids = {uid for uid in (unique_id(r.filename) for r in records) if uid}
    claimed: Set[str] = set()
    protected: Dict[Tuple[str, Optional[str]], str] = {}

    def _protect(entry: FileEntry, media_id: Optional[str], **detail) -> None:
        claimed.add(entry.path)
        protected.setdefault((entry.key, entry.resolution), entry.path)
        report.findings.append(Finding(
            kind=FindingKind.PROTECTED, path=entry.path, media_id=media_id,
            size=entry.size, detail=detail,
        ))

    # Records whose file is exactly where the catalog says
    unresolved: List[MediaRecord] = []
    for record in records:
        entry = report.files.get(record.storage_path)
        if entry is None:
            unresolved.append(record)
            continue
        diffs = _differences(record, entry)
        if not diffs:
            _protect(entry, record.id, fingerprint=[entry.key, entry.resolution, entry.hash])
            protected.setdefault((record.title_key, record.resolution), entry.path)
            continue
        claimed.add(entry.path)
        report.findings.append(Finding(
            kind=FindingKind.MISMATCH, path=entry.path, media_id=record.id,
            size=entry.size, detail={"differences": diffs, "actual": _actual(entry)},
        ))

    # Variant outputs
    for variant in variants:
        entry = report.files.get(variant.transcoded_path)
        if variant.original_path in record_paths:
            if entry is not None:
                _protect(entry, None, variant_id=variant.id, quality=variant.quality)
            continue
        size = entry.size if entry is not None else 0
        if entry is not None:
            claimed.add(entry.path)
        report.findings.append(Finding(
            kind=FindingKind.ORPHANED_VARIANT, path=variant.transcoded_path, size=size,
            detail={"variant_id": variant.id, "original_path": variant.original_path,
                    "quality": variant.quality, "exists": entry is not None},
        ))

    # Unregistered transcodes the resolver can still serve
    for entry in entries:
        if entry.transcoded and entry.path not in claimed and unique_id(entry.filename) in live_ids:
            _protect(entry, None, fallback_variant=True)

    # Records whose file moved or vanished
    for record in unresolved:
        pool = (e for e in entries if e.path not in claimed and not e.transcoded)
        candidate = _find_candidate(record, pool)
        if candidate is None:
            report.findings.append(Finding(
                kind=FindingKind.MISSING, path=record.storage_path, media_id=record.id,
                size=record.size,
            ))
            continue
        claimed.add(candidate.path)
        report.findings.append(Finding(
            kind=FindingKind.MISMATCH, path=record.storage_path, media_id=record.id,
            size=candidate.size,
            detail={"differences": ["path"] + _differences(record, candidate),
                    "relink_to": candidate.path, "actual": _actual(candidate)},
        ))

    # Unclaimed files
    groups: Dict[Tuple[str, Optional[str]], List[FileEntry]] = defaultdict(list)
    for entry in entries:
        if entry.path not in claimed:
            groups[(entry.key, entry.resolution)].append(entry)

    for group_key, members in groups.items():
        keep = protected.get(group_key)
        if keep is None and len(members) == 1:
            only = members[0]
            report.findings.append(Finding(
                kind=FindingKind.ORPHAN, path=only.path, size=only.size,
                detail={"key": only.key, "resolution": only.resolution},
            ))
            continue
        flagged = members
        if keep is None:
            newest = max(members, key=lambda e: (e.mtime, e.path))
            keep = newest.path
            flagged = [e for e in members if e is not newest]
        for entry in flagged:
            report.findings.append(Finding(
                kind=FindingKind.FILESYSTEM_DUPLICATE, path=entry.path, size=entry.size,
                keep=keep, detail={"key": entry.key, "resolution": entry.resolution},
            ))

    # Catalog rows sharing a title
    by_title: Dict[str, List[MediaRecord]] = defaultdict(list)
    for record in records:
        by_title[record.title_key].append(record)
    for title_key, rows in by_title.items():
        if len(rows) < 2:
            continue
        newest = max(rows, key=lambda r: (r.created_at, r.id))
        for record in rows:
            if record is newest:
                continue
            report.findings.append(Finding(
                kind=FindingKind.DATABASE_DUPLICATE, path=record.storage_path,
                media_id=record.id, size=record.size, keep=newest.id,
                detail={"title_key": title_key},
            ))

    report.summary = _summarise(report, records_scanned=len(records), variants_scanned=len(variants))

    # <telemetry>: reconcile_completed(findings=N, errors=N)
    log.info(
        "[reconcile_flow] event=reconcile_completed files=%d records=%d findings=%d errors=%d",
        len(entries), len(records), len(report.findings), len(report.errors),
    )
    return report


def _summarise(report: ReconciliationReport, records_scanned: int, variants_scanned: int) -> dict:
    counts = {kind.value: 0 for kind in FindingKind}
    for finding in report.findings:
        counts[finding.kind.value] += 1
    return {
        "counts": counts,
        "files_scanned": len(report.files),
        "records_scanned": records_scanned,
        "variants_scanned": variants_scanned,
        "errors": len(report.errors),
        "reclaimable_bytes": sum(f.size for f in report.findings if f.kind in _RECLAIMABLE),
    }


# ── Public operations ────────────────────────────────────────────────────────

def analyze(
    conn: sqlite3.Connection,
    caller: Caller,
    config: Config = cfg,
    hasher: Hasher = compute_hash,
    probe_fn: Prober = probe_resolution,
) -> ReconciliationReport:
    """Dry run: classify everything, change nothing."""
    _require_admin(caller)
    return build_report(conn, config, hasher=hasher, probe_fn=probe_fn)


def fix(
    conn: sqlite3.Connection,
    caller: Caller,
    config: Config = cfg,
    hasher: Hasher = compute_hash,
    probe_fn: Prober = probe_resolution,
    drop_missing: bool = False,
) -> dict:
    """
    Point mismatched records at the file actually on disk.

    Variant rows follow a relinked original. With ``drop_missing`` records
    whose file cannot be found anywhere are soft-deleted.
    """
    _require_admin(caller)
    report = build_report(conn, config, hasher=hasher, probe_fn=probe_fn)
    fixed, dropped, errors = [], [], []

    for finding in report.of_kind(FindingKind.MISMATCH):
        target = finding.detail.get("relink_to") or finding.path
        entry = report.files.get(target)
        record = db.get_media(conn, finding.media_id)
        if entry is None or record is None:
            continue
        try:
            db.update_media(
                conn, record.id,
                storage_path=entry.path,
                filename=entry.filename,
                size=entry.size,
                hash=entry.hash or record.hash,
                resolution=entry.resolution or record.resolution,
            )
            if entry.path != record.storage_path:
                db.repoint_variants(conn, record.storage_path, entry.path)
        except sqlite3.Error as exc:
            log.error("[reconcile_flow] event=fix_failed media=%s error=%s", record.id, exc)
            errors.append({"media_id": record.id, "error": str(exc)})
            continue
        fixed.append({"media_id": record.id, "path": entry.path,
                      "changed": finding.detail.get("differences", [])})
        log.info("[reconcile_flow] event=record_fixed media=%s path=%s", record.id, entry.path)

    if drop_missing:
        for finding in report.of_kind(FindingKind.MISSING):
            db.soft_delete_media(conn, finding.media_id)
            dropped.append(finding.media_id)
            log.info("[reconcile_flow] event=missing_record_dropped media=%s", finding.media_id)

    return {"fixed": fixed, "soft_deleted": dropped, "errors": errors}


def _within(path: str, roots: Iterable[str]) -> bool:
    return any(path == r or path.startswith(r + os.sep) for r in roots)


def prune_empty_dirs(start_dirs: Iterable[str], protected_roots: Iterable[str]) -> List[str]:
    """Remove directories left empty, walking upward until a protected root."""
    roots = {os.path.abspath(r) for r in protected_roots}
    removed: List[str] = []
    for start in sorted(set(start_dirs), key=len, reverse=True):
        current = os.path.abspath(start)
        while current not in roots and _within(current, roots):
            try:
                os.rmdir(current)
            except OSError:
                # Not empty or not ours
                break
            removed.append(current)
            current = os.path.dirname(current)
    return removed


def cleanup(
    conn: sqlite3.Connection,
    caller: Caller,
    confirmed: bool = False,
    config: Config = cfg,
    hasher: Hasher = compute_hash,
    probe_fn: Prober = probe_resolution,
    remove_database_duplicates: bool = False,
) -> dict:
    """
    Delete orphans, filesystem duplicates and orphaned variants.

    Protected and claimed files are never touched. Requires ``confirmed``.
    """
    _require_admin(caller)
    if not confirmed:
        raise ConfirmationRequired("cleanup deletes files; pass confirmed=true")

    report = build_report(conn, config, hasher=hasher, probe_fn=probe_fn)
    keep = {f.path for f in report.of_kind(FindingKind.PROTECTED)}
    keep.update(f.keep for f in report.of_kind(FindingKind.FILESYSTEM_DUPLICATE) if f.keep)

    removed, errors = [], []
    freed = 0
    touched: Set[str] = set()

    def _delete(finding: Finding) -> bool:
        nonlocal freed
        if finding.path in keep:
            log.warning("[cleanup_flow] event=protected_skip path=%s", finding.path)
            return False
        try:
            os.remove(finding.path)
        except FileNotFoundError:
            return True
        except OSError as exc:
            log.error("[cleanup_flow] event=remove_failed path=%s error=%s", finding.path, exc)
            errors.append({"path": finding.path, "error": str(exc)})
            return False
        removed.append(finding.path)
        freed += finding.size
        touched.add(os.path.dirname(finding.path))
        return True

    for kind in (FindingKind.ORPHAN, FindingKind.FILESYSTEM_DUPLICATE):
        for finding in report.of_kind(kind):
            _delete(finding)

    variants_removed = 0
    for finding in report.of_kind(FindingKind.ORPHANED_VARIANT):
        if _delete(finding):
            db.delete_variant(conn, finding.detail["variant_id"])
            variants_removed += 1

    soft_deleted = []
    if remove_database_duplicates:
        for finding in report.of_kind(FindingKind.DATABASE_DUPLICATE):
            db.soft_delete_media(conn, finding.media_id)
            soft_deleted.append(finding.media_id)

    pruned = prune_empty_dirs(touched, config.protected_dirs)

    # <telemetry>: cleanup_completed(removed=N, freed=N)
    log.info(
        "[cleanup_flow] event=cleanup_completed removed=%d freed_bytes=%d variants=%d dirs=%d errors=%d",
        len(removed), freed, variants_removed, len(pruned), len(errors),
    )
    return {
        "removed": removed,
        "freed_bytes": freed,
        "variants_removed": variants_removed,
        "records_soft_deleted": soft_deleted,
        "directories_removed": pruned,
        "errors": errors,
    }
