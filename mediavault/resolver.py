"""
resolver.py — Pick the physical file to stream for a media record.

Order of preference:
  1. Registered variants (stale rows dropped on read), best quality first
  2. Transcoded files carrying the original's unique id (unregistered outputs)
  3. The original upload
A variant above the playback ceiling triggers a second selection restricted to
qualities at or below it; when nothing qualifies the request is refused.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from typing import Iterable, List, Optional, Set

from mediavault import catalog, db
from mediavault.config import Config, cfg
from mediavault.errors import FileNotFound, Forbidden, MediaNotFound, QualityUnavailable
from mediavault.fingerprint import quality_from_filename, unique_id
from mediavault.models import Caller, MediaRecord, StreamableFile

log = logging.getLogger(__name__)

QUALITY_PREFERENCE = [
    "2160p", "1080p", "720p", "480p",
    "1080p_opus", "720p_opus", "480p_opus",
]

_STREAMABLE_EXTENSIONS = {".mp4", ".webm"}


def quality_rank(quality: Optional[str]) -> int:
    """Vertical resolution of a quality label: '720p_opus' -> 720, unknown -> 0."""
    if not quality:
        return 0
    base = quality.split("_", 1)[0].lower()
    if base.endswith("p") and base[:-1].isdigit():
        return int(base[:-1])
    return 0


def _preference(quality: str) -> int:
    try:
        return QUALITY_PREFERENCE.index(quality)
    except ValueError:
        return len(QUALITY_PREFERENCE)


def allowed_qualities(ceiling: Optional[str]) -> Optional[Set[str]]:
    if not ceiling:
        return None
    limit = quality_rank(ceiling)
    return {q for q in QUALITY_PREFERENCE if quality_rank(q) <= limit}


def _usable(path: str, min_size: int) -> Optional[int]:
    try:
        size = os.path.getsize(path)
    except OSError:
        return None
    return size if size > min_size else None


def _pick_registered(record: MediaRecord, variants, allowed: Optional[Set[str]],
                     min_size: int) -> Optional[StreamableFile]:
    for variant in sorted(variants, key=lambda v: _preference(v.quality)):
        if allowed is not None and variant.quality not in allowed:
            continue
        size = _usable(variant.transcoded_path, min_size)
        if size is None:
            log.debug("[resolve_flow] event=variant_rejected path=%s", variant.transcoded_path)
            continue
        return StreamableFile(
            path=variant.transcoded_path,
            size=size,
            is_transcoded=True,
            quality=variant.quality,
            original_size=variant.original_size or record.size,
        )
    return None


def _transcoded_candidates(record: MediaRecord, transcoded_dir: str) -> Iterable[str]:
    uid = unique_id(record.filename)
    if not uid or not os.path.isdir(transcoded_dir):
        return []
    found: List[str] = []
    for root, _dirs, files in os.walk(transcoded_dir):
        for fname in files:
            if uid in fname and os.path.splitext(fname)[1].lower() in _STREAMABLE_EXTENSIONS:
                found.append(os.path.join(root, fname))
    return found


def _pick_filesystem(record: MediaRecord, config: Config,
                     allowed: Optional[Set[str]]) -> Optional[StreamableFile]:
    ranked = []
    for path in _transcoded_candidates(record, config.transcoded_dir):
        quality = quality_from_filename(os.path.basename(path))
        if quality is None or (allowed is not None and quality not in allowed):
            continue
        ranked.append((_preference(quality), path, quality))
    for _pref, path, quality in sorted(ranked):
        size = _usable(path, config.min_variant_size)
        if size is None:
            continue
        log.info("[resolve_flow] event=filesystem_fallback media=%s path=%s quality=%s",
                 record.id, path, quality)
        return StreamableFile(path=path, size=size, is_transcoded=True,
                              quality=quality, original_size=record.size)
    return None


def _select(record: MediaRecord, variants, config: Config,
            allowed: Optional[Set[str]]) -> Optional[StreamableFile]:
    return (
        _pick_registered(record, variants, allowed, config.min_variant_size)
        or _pick_filesystem(record, config, allowed)
    )


def can_view(record: MediaRecord, caller: Caller) -> bool:
    return record.published or caller.is_privileged or record.owner_id == caller.user_id


def resolve(
    conn: sqlite3.Connection,
    media_id: str,
    caller: Caller,
    ceiling: Optional[str] = None,
    config: Config = cfg,
) -> StreamableFile:
    """
    Choose the file to stream for ``media_id``.

    ``ceiling`` defaults to the configured max_quality; pass an empty string
    for no limit.
    """
    record = db.get_media(conn, media_id)
    if record is None:
        raise MediaNotFound(f"media {media_id} not found")
    if not can_view(record, caller):
        raise Forbidden("media is not published")

    if ceiling is None:
        ceiling = config.max_quality

    variants = catalog.live_variants(conn, record.storage_path)
    best = _select(record, variants, config, allowed=None)

    if best is None:
        size = _usable(record.storage_path, -1)
        if size is None:
            log.error("[resolve_flow] event=original_missing media=%s path=%s",
                      media_id, record.storage_path)
            raise FileNotFound(f"no playable file for media {media_id}")
        log.info("[resolve_flow] event=resolved media=%s source=original", media_id)
        return StreamableFile(path=record.storage_path, size=size, is_transcoded=False,
                              original_size=record.size)

    if ceiling and quality_rank(best.quality) > quality_rank(ceiling):
        best = _select(record, variants, config, allowed=allowed_qualities(ceiling))
        if best is None:
            log.info("[resolve_flow] event=quality_unavailable media=%s ceiling=%s",
                     media_id, ceiling)
            raise QualityUnavailable(f"no variant at or below {ceiling}")

    log.info("[resolve_flow] event=resolved media=%s quality=%s path=%s",
             media_id, best.quality, best.path)
    return best
