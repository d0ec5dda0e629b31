"""
fingerprint.py — File identity for matching across renames and re-encodes.

A file's fingerprint is the triple (normalized title key, resolution, hash).

  - normalize():            pure, driven by the ordered _BASE_STEPS table
  - normalize_transcoded(): strips pipeline suffixes first, then normalize()
  - compute_hash():         streaming SHA-256, None on any I/O failure
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from typing import List, Optional, Pattern, Tuple

log = logging.getLogger(__name__)

BLOCK_SIZE = 1024 * 1024  # 1 MiB

VIDEO_EXTENSIONS = {
    ".mp4", ".mkv", ".avi", ".mov", ".wmv", ".flv", ".webm",
    ".m4v", ".3gp", ".ogv", ".ts", ".mts", ".m2ts",
}

_STRIPPED_EXTENSIONS = VIDEO_EXTENSIONS | {
    ".srt", ".sub", ".nfo", ".txt", ".jpg", ".png", ".part", ".tmp", ".json",
}

# ── Normalization tables ─────────────────────────────────────────────────────
# Applied in order to the lowercased stem. Each step is (name, pattern, repl).

_Step = Tuple[str, Pattern, str]

_BASE_STEPS: List[_Step] = [
    ("copy_counter", re.compile(r"\(\d{1,3}\)"), " "),
    ("brackets", re.compile(r"[\[\]\(\)\{\}]"), " "),
    ("separators", re.compile(r"[._\-\s]+"), " "),
    ("year", re.compile(r"\b(?:19|20)\d{2}\b"), " "),
    ("quality_tags", re.compile(
        r"\b(?:2160p|1440p|1080p|1080i|720p|576p|480p|360p|4k|uhd|hdr10|hdr|sdr"
        r"|x264|x265|h264|h265|hevc|avc|av1|vp9|xvid|divx|10bit|8bit)\b"
    ), " "),
    ("release_tags", re.compile(
        r"\b(?:bluray|blu ray|brrip|bdrip|web dl|webdl|webrip|hdtv|hdrip|dvdrip"
        r"|remux|aac|ac3|eac3|dts|ddp?5 1|5 1|atmos|opus"
        r"|proper|repack|extended|unrated|remastered|internal|limited"
        r"|yify|yts|rarbg|ettv|eztv)\b"
    ), " "),
    ("hex_ids", re.compile(r"\b(?=[a-f]*\d)[a-f0-9]{8,}\b"), " "),
    ("digit_runs", re.compile(r"\b\d{5,}\b"), " "),
    ("copy_marker", re.compile(r"\bcopy(?:\s+(?:of|\d{1,3}))?\b"), " "),
    ("whitespace", re.compile(r"\s+"), " "),
]

_TRANSCODED_STEPS: List[_Step] = [
    ("quality_suffix", re.compile(
        r"_\d{3,4}p(?:_(?:h264|h265|hevc|vp9|av1))?(?:_opus)?$"
    ), ""),
    ("unique_suffix", re.compile(r"-\d{13}-[a-f0-9]{16}$"), ""),
    ("fix_indicators", re.compile(
        r"[\s._\-]*\b(?:audio[\s._\-]?fixed|repack|proper|internal|limited)\b"
    ), " "),
]

# ── Quality labels ───────────────────────────────────────────────────────────

QUALITY_RESOLUTIONS = {
    "2160p": "3840x2160",
    "1440p": "2560x1440",
    "1080p": "1920x1080",
    "720p": "1280x720",
    "480p": "854x480",
}

_QUALITY_IN_NAME_RE = re.compile(r"_(\d{3,4}p)(_opus)?(?=[_.]|$)")
_UNIQUE_ID_RE = re.compile(r"-(\d{13}-[a-f0-9]{16})(?=_|$)")


def _stem(filename: str) -> str:
    name = os.path.basename(filename or "")
    root, ext = os.path.splitext(name)
    if ext.lower() in _STRIPPED_EXTENSIONS:
        return root
    return name


def _apply(steps: List[_Step], text: str) -> str:
    for _name, pattern, repl in steps:
        text = pattern.sub(repl, text)
    return text


def normalize(filename: str) -> str:
    """
    Reduce a filename to its semantic title key.

    'The.Movie.2019.1080p.BluRay.x264.mkv' -> 'the movie'
    'movieA_copy.mp4'                       -> 'moviea'

    Deterministic and total: any string (no extension, empty, only tags) is
    accepted. When every token is stripped the lowercased stem is used.
    """
    stem = _stem(filename).lower()
    key = _apply(_BASE_STEPS, stem).strip()
    if not key:
        key = " ".join(stem.split())
    return key


def normalize_transcoded(filename: str) -> str:
    """Like normalize(), after removing suffixes the transcoding pipeline adds."""
    stem = _stem(filename).lower()
    stem = _apply(_TRANSCODED_STEPS, stem)
    key = _apply(_BASE_STEPS, stem).strip()
    if not key:
        key = " ".join(stem.split())
    return key


def compute_hash(path: str) -> Optional[str]:
    """Return the hex SHA-256 of the whole file, or None if it cannot be read."""
    h = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for block in iter(lambda: f.read(BLOCK_SIZE), b""):
                h.update(block)
    except OSError as exc:
        log.warning("[fingerprint] event=hash_failed path=%s error=%s", path, exc)
        return None
    return h.hexdigest()


def is_video(filename: str) -> bool:
    return os.path.splitext(filename)[1].lower() in VIDEO_EXTENSIONS


def quality_from_filename(filename: str) -> Optional[str]:
    """'x_720p_h265.mp4' -> '720p', 'x_720p_opus.mp4' -> '720p_opus'."""
    m = _QUALITY_IN_NAME_RE.search(_stem(filename).lower())
    if not m:
        return None
    return m.group(1) + (m.group(2) or "")


def resolution_for_quality(quality: Optional[str]) -> Optional[str]:
    if not quality:
        return None
    return QUALITY_RESOLUTIONS.get(quality.split("_", 1)[0])


def unique_id(filename: str) -> Optional[str]:
    """The '<13 digit ms>-<16 hex>' id assembly embeds in stored (and transcoded) names."""
    m = _UNIQUE_ID_RE.search(_stem(filename))
    return m.group(1) if m else None
