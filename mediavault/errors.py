"""
errors.py — Exception taxonomy for mediavault.

Every error a caller can act on derives from VaultError and carries the HTTP
status the controllers translate it into.
"""

from __future__ import annotations

from typing import List, Optional


class VaultError(Exception):
    status = 500
    code = "internal_error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.code.replace("_", " "))
        self.message = message or self.code.replace("_", " ")

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class Forbidden(VaultError):
    status = 403
    code = "forbidden"


class SessionNotFound(VaultError):
    status = 404
    code = "session_not_found"


class MediaNotFound(VaultError):
    status = 404
    code = "media_not_found"


class FileNotFound(VaultError):
    status = 404
    code = "file_not_found"


class PayloadTooLarge(VaultError):
    status = 413
    code = "payload_too_large"


class InvalidUpload(VaultError):
    status = 400
    code = "invalid_upload"


class InvalidChunk(VaultError):
    status = 400
    code = "invalid_chunk"


class ConfirmationRequired(VaultError):
    status = 400
    code = "confirmation_required"


class IncompleteUpload(VaultError):
    status = 400
    code = "incomplete_upload"

    def __init__(self, missing: List[int], uploaded: Optional[List[int]] = None) -> None:
        super().__init__(f"missing {len(missing)} chunk(s)")
        self.missing = sorted(missing)
        self.uploaded = sorted(uploaded or [])

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["missing"] = self.missing
        d["uploaded"] = self.uploaded
        return d


class ChunkMissing(VaultError):
    """A chunk recorded as received has no file on disk."""

    status = 409
    code = "chunk_missing"

    def __init__(self, indices: List[int]) -> None:
        super().__init__(f"chunk file(s) missing: {sorted(indices)}")
        self.indices = sorted(indices)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["indices"] = self.indices
        return d


class QualityUnavailable(VaultError):
    status = 403
    code = "quality_unavailable"


class LockTimeout(VaultError):
    status = 503
    code = "lock_timeout"


class AlreadyLocked(VaultError):
    """Raised by a single non-blocking lock attempt; retried internally."""

    status = 409
    code = "already_locked"
