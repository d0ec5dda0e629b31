"""
catalog.py — Catalog procedures that span rows and files.

  - live_variants(): variant rows for an original, dropping rows whose output
    file has vanished (lazy invalidation on read)
  - purge_media():   hard delete in the fixed order
                     variants -> thumbnail -> original file -> catalog row
"""

from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass, field
from typing import List, Optional

from mediavault import db
from mediavault.errors import Forbidden, MediaNotFound
from mediavault.models import Caller, MediaRecord, TranscodedVariant

log = logging.getLogger(__name__)


def live_variants(conn: sqlite3.Connection, original_path: str) -> List[TranscodedVariant]:
    live = []
    for variant in db.variants_for(conn, original_path):
        if os.path.isfile(variant.transcoded_path):
            live.append(variant)
            continue
        db.delete_variant(conn, variant.id)
        log.info(
            "[catalog] event=stale_variant_dropped variant=%s quality=%s path=%s",
            variant.id, variant.quality, variant.transcoded_path,
        )
    return live


# ── Purge ────────────────────────────────────────────────────────────────────

@dataclass
class PurgeStep:
    step: str
    target: Optional[str]
    outcome: str  # removed | absent | skipped | failed
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"step": self.step, "target": self.target,
                "outcome": self.outcome, "error": self.error}


@dataclass
class PurgeResult:
    media_id: str
    steps: List[PurgeStep] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not any(s.outcome == "failed" for s in self.steps)

    @property
    def row_removed(self) -> bool:
        return any(s.step == "row" and s.outcome == "removed" for s in self.steps)

    def to_dict(self) -> dict:
        return {
            "media_id": self.media_id,
            "ok": self.ok,
            "row_removed": self.row_removed,
            "steps": [s.to_dict() for s in self.steps],
        }


def _remove_file(step: str, path: Optional[str]) -> PurgeStep:
    if not path:
        return PurgeStep(step=step, target=None, outcome="skipped")
    try:
        os.remove(path)
    except FileNotFoundError:
        return PurgeStep(step=step, target=path, outcome="absent")
    except OSError as exc:
        log.error("[purge_flow] event=file_remove_failed step=%s path=%s error=%s", step, path, exc)
        return PurgeStep(step=step, target=path, outcome="failed", error=str(exc))
    return PurgeStep(step=step, target=path, outcome="removed")


def purge_media(conn: sqlite3.Connection, media_id: str, caller: Caller) -> PurgeResult:
    """
    Hard-delete a media record and everything derived from it.

    Each step is recorded in the result. A failed file step stops the
    procedure before the catalog row is removed, so the row stays and the
    purge can be retried; files already gone count as done.
    """
    record: Optional[MediaRecord] = db.get_media(conn, media_id, include_deleted=True)
    if record is None:
        raise MediaNotFound(f"media {media_id} not found")
    if not (caller.is_privileged or record.owner_id == caller.user_id):
        raise Forbidden("not allowed to delete this media")

    # <telemetry>: purge_started(media=<id>)
    log.info("[purge_flow] event=purge_started media=%s path=%s", media_id, record.storage_path)

    result = PurgeResult(media_id=media_id)

    for variant in db.variants_for(conn, record.storage_path):
        step = _remove_file("variant", variant.transcoded_path)
        result.steps.append(step)
        if step.outcome == "failed":
            return result
        db.delete_variant(conn, variant.id)

    for name, path in (("thumbnail", record.thumbnail_path), ("original", record.storage_path)):
        step = _remove_file(name, path)
        result.steps.append(step)
        if step.outcome == "failed":
            log.warning("[purge_flow] event=purge_halted media=%s step=%s", media_id, name)
            return result

    removed = db.delete_media_row(conn, media_id)
    result.steps.append(PurgeStep(step="row", target=media_id,
                                  outcome="removed" if removed else "absent"))

    log.info("[purge_flow] event=purge_completed media=%s steps=%d", media_id, len(result.steps))
    return result
