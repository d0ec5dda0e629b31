"""
models.py — Dataclasses and enums for mediavault.

Persisted: UploadSession (JSON record), MediaRecord and TranscodedVariant
(catalog rows). Derived: Finding, FileEntry, StreamableFile, ChunkProgress.
"""

from __future__ import annotations

import os
import uuid as _uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Enums ────────────────────────────────────────────────────────────────────

class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"


class Category(str, Enum):
    MOVIE = "movie"
    SHOW = "show"


class FindingKind(str, Enum):
    PROTECTED = "protected"
    ORPHAN = "orphan"
    DATABASE_DUPLICATE = "database_duplicate"
    FILESYSTEM_DUPLICATE = "filesystem_duplicate"
    MISMATCH = "mismatch"
    MISSING = "missing"
    ORPHANED_VARIANT = "orphaned_variant"


# ── Caller ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Caller:
    """Authenticated identity handed in by the auth layer."""
    user_id: str
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_privileged(self) -> bool:
        return self.role in (Role.ADMIN, Role.MANAGER)


# ── Upload session ───────────────────────────────────────────────────────────

@dataclass
class UploadSession:
    session_id: str
    filename: str
    file_size: int
    total_chunks: int
    owner_id: str
    received_chunks: List[int] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)

    @property
    def is_complete(self) -> bool:
        return len(self.received_chunks) == self.total_chunks

    def missing(self) -> List[int]:
        have = set(self.received_chunks)
        return [i for i in range(self.total_chunks) if i not in have]

    def to_dict(self) -> dict:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> UploadSession:
        return UploadSession(
            session_id=data["session_id"],
            filename=data["filename"],
            file_size=int(data["file_size"]),
            total_chunks=int(data["total_chunks"]),
            owner_id=str(data["owner_id"]),
            received_chunks=sorted(int(i) for i in data.get("received_chunks", [])),
            created_at=data.get("created_at") or utc_now(),
        )


@dataclass
class ChunkProgress:
    session_id: str
    index: int
    received: int
    total: int

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 0.0
        return round(self.received * 100.0 / self.total, 2)

    def to_dict(self) -> dict:
        return {
            "upload_id": self.session_id,
            "chunk_index": self.index,
            "received": self.received,
            "total": self.total,
            "progress": self.percent,
        }


# ── Catalog rows ─────────────────────────────────────────────────────────────

@dataclass
class MediaRecord:
    """One catalogued original in the `media` table."""
    id: str
    title: str
    title_key: str
    original_filename: str
    filename: str
    storage_path: str
    size: int
    hash: Optional[str] = None
    resolution: Optional[str] = None
    duration: Optional[float] = None
    category: Category = Category.MOVIE
    season: Optional[int] = None
    episode: Optional[int] = None
    description: Optional[str] = None
    published: bool = False
    owner_id: Optional[str] = None
    thumbnail_path: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    deleted_at: Optional[str] = None

    @staticmethod
    def new(**kwargs) -> MediaRecord:
        return MediaRecord(id=str(_uuid.uuid4()), **kwargs)

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["category"] = self.category.value
        return d


@dataclass
class TranscodedVariant:
    """One quality variant registered by the transcoder in `variants`."""
    id: str
    original_path: str
    quality: str
    transcoded_path: str
    original_size: Optional[int] = None
    transcoded_size: Optional[int] = None
    created_at: str = field(default_factory=utc_now)

    @staticmethod
    def new(original_path: str, quality: str, transcoded_path: str,
            original_size: Optional[int] = None,
            transcoded_size: Optional[int] = None) -> TranscodedVariant:
        return TranscodedVariant(
            id=str(_uuid.uuid4()),
            original_path=original_path,
            quality=quality,
            transcoded_path=transcoded_path,
            original_size=original_size,
            transcoded_size=transcoded_size,
        )

    def to_dict(self) -> dict:
        return asdict(self)


# ── Reconciliation ───────────────────────────────────────────────────────────

@dataclass
class FileEntry:
    """A video file observed on disk during a reconciliation pass."""
    path: str
    size: int
    mtime: float
    key: str
    hash: Optional[str] = None
    resolution: Optional[str] = None
    transcoded: bool = False

    @property
    def filename(self) -> str:
        return os.path.basename(self.path)


@dataclass
class Finding:
    kind: FindingKind
    path: Optional[str] = None
    media_id: Optional[str] = None
    size: int = 0
    keep: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "path": self.path,
            "media_id": self.media_id,
            "size": self.size,
            "keep": self.keep,
            "detail": self.detail,
        }


# ── Playback ─────────────────────────────────────────────────────────────────

@dataclass
class StreamableFile:
    path: str
    size: int
    is_transcoded: bool
    quality: Optional[str] = None
    original_size: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)
