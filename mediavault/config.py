"""
config.py — Global, live-mutable configuration loaded from environment variables.

Directory layout is derived from UPLOAD_ROOT:
  <root>/chunks       in-flight chunk files and session records
  <root>/media        assembled originals
  <root>/transcoded   quality variants written by the transcoder
  <root>/thumbnails   poster frames
  <root>/temp         scratch space
"""

import os
import threading

GIB = 1024 ** 3


class Config:
    """Mutable configuration object. Thread-safe via a read/write lock."""

    _lock = threading.RLock()

    def __init__(self) -> None:
        self._upload_root: str = os.environ.get("UPLOAD_ROOT", "/data/uploads")
        self._database_path: str = os.environ.get("DATABASE_PATH", "")
        self._max_chunk_size: int = int(os.environ.get("MAX_CHUNK_SIZE", str(GIB)))
        self._max_file_size: int = int(os.environ.get("MAX_FILE_SIZE", str(75 * GIB)))
        self._lock_stale_seconds: float = float(os.environ.get("LOCK_STALE_SECONDS", "5"))
        self._lock_max_attempts: int = int(os.environ.get("LOCK_MAX_ATTEMPTS", "20"))
        self._lock_retry_delay: float = float(os.environ.get("LOCK_RETRY_DELAY", "0.05"))
        self._lock_retry_jitter: float = float(os.environ.get("LOCK_RETRY_JITTER", "0.1"))
        self._session_read_retries: int = int(os.environ.get("SESSION_READ_RETRIES", "5"))
        self._session_read_backoff: float = float(os.environ.get("SESSION_READ_BACKOFF", "0.1"))
        self._min_variant_size: int = int(os.environ.get("MIN_VARIANT_SIZE", "1024"))
        self._max_quality: str = os.environ.get("MAX_QUALITY", "1080p")

    # --- Directories ---

    @property
    def upload_root(self) -> str:
        with self._lock:
            return self._upload_root

    @property
    def chunks_dir(self) -> str:
        return os.path.join(self.upload_root, "chunks")

    @property
    def media_dir(self) -> str:
        return os.path.join(self.upload_root, "media")

    @property
    def transcoded_dir(self) -> str:
        return os.path.join(self.upload_root, "transcoded")

    @property
    def thumbnails_dir(self) -> str:
        return os.path.join(self.upload_root, "thumbnails")

    @property
    def temp_dir(self) -> str:
        return os.path.join(self.upload_root, "temp")

    @property
    def protected_dirs(self) -> list:
        """Directories that empty-directory pruning must never remove."""
        return [
            self.upload_root,
            self.chunks_dir,
            self.media_dir,
            self.transcoded_dir,
            self.thumbnails_dir,
            self.temp_dir,
        ]

    @property
    def database_path(self) -> str:
        with self._lock:
            if self._database_path:
                return self._database_path
            return os.path.join(self._upload_root, ".vault", "catalog.db")

    # --- Limits ---

    @property
    def max_chunk_size(self) -> int:
        with self._lock:
            return self._max_chunk_size

    @property
    def max_file_size(self) -> int:
        with self._lock:
            return self._max_file_size

    # --- Locking / retries ---

    @property
    def lock_stale_seconds(self) -> float:
        with self._lock:
            return self._lock_stale_seconds

    @property
    def lock_max_attempts(self) -> int:
        with self._lock:
            return self._lock_max_attempts

    @property
    def lock_retry_delay(self) -> float:
        with self._lock:
            return self._lock_retry_delay

    @property
    def lock_retry_jitter(self) -> float:
        with self._lock:
            return self._lock_retry_jitter

    @property
    def session_read_retries(self) -> int:
        with self._lock:
            return self._session_read_retries

    @property
    def session_read_backoff(self) -> float:
        with self._lock:
            return self._session_read_backoff

    # --- Playback ---

    @property
    def min_variant_size(self) -> int:
        with self._lock:
            return self._min_variant_size

    @property
    def max_quality(self) -> str:
        with self._lock:
            return self._max_quality

    # --- Setters (for live update via API) ---

    def update(self, data: dict) -> None:
        with self._lock:
            if "upload_root" in data:
                self._upload_root = str(data["upload_root"])
            if "database_path" in data:
                self._database_path = str(data["database_path"])
            if "max_chunk_size" in data:
                self._max_chunk_size = int(data["max_chunk_size"])
            if "max_file_size" in data:
                self._max_file_size = int(data["max_file_size"])
            if "lock_stale_seconds" in data:
                self._lock_stale_seconds = float(data["lock_stale_seconds"])
            if "lock_max_attempts" in data:
                self._lock_max_attempts = int(data["lock_max_attempts"])
            if "lock_retry_delay" in data:
                self._lock_retry_delay = float(data["lock_retry_delay"])
            if "lock_retry_jitter" in data:
                self._lock_retry_jitter = float(data["lock_retry_jitter"])
            if "session_read_retries" in data:
                self._session_read_retries = int(data["session_read_retries"])
            if "session_read_backoff" in data:
                self._session_read_backoff = float(data["session_read_backoff"])
            if "min_variant_size" in data:
                self._min_variant_size = int(data["min_variant_size"])
            if "max_quality" in data:
                self._max_quality = str(data["max_quality"])

    def ensure_dirs(self) -> None:
        for path in self.protected_dirs:
            os.makedirs(path, exist_ok=True)

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "upload_root": self._upload_root,
                "database_path": self.database_path,
                "max_chunk_size": self._max_chunk_size,
                "max_file_size": self._max_file_size,
                "lock_stale_seconds": self._lock_stale_seconds,
                "lock_max_attempts": self._lock_max_attempts,
                "lock_retry_delay": self._lock_retry_delay,
                "lock_retry_jitter": self._lock_retry_jitter,
                "session_read_retries": self._session_read_retries,
                "session_read_backoff": self._session_read_backoff,
                "min_variant_size": self._min_variant_size,
                "max_quality": self._max_quality,
            }


# Singleton used across all modules
cfg = Config()
