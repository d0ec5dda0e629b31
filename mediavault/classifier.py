"""
classifier.py — Derive display metadata from an uploaded filename.

  - Input:  raw filename string
  - Output: Classification dataclass, never None
  - Episodic markers (S01E02, 1x02, Season 1, Episode 2) mark the file as a show
  - No exceptions escape; no filesystem access
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Optional

from mediavault.models import Category

log = logging.getLogger(__name__)

# ── Patterns ─────────────────────────────────────────────────────────────────

_SXXEXX_RE = re.compile(r"\bs(\d{1,2})[\s._-]*e(\d{1,3})\b", re.IGNORECASE)
_NXNN_RE = re.compile(r"\b(\d{1,2})x(\d{2,3})\b", re.IGNORECASE)
_SEASON_RE = re.compile(r"\bseason[\s._-]*(\d{1,2})\b", re.IGNORECASE)
_EPISODE_RE = re.compile(r"\bepisode[\s._-]*(\d{1,3})\b", re.IGNORECASE)

_YEAR_RE = re.compile(r"\b(19|20)\d{2}\b")

# Stored filenames carry '-<ms timestamp>-<16 hex>' from assembly
_UNIQUE_SUFFIX_RE = re.compile(r"-\d{13}-[a-f0-9]{16}$")

_JUNK_TOKENS = re.compile(
    r"\b("
    r"2160p|1080p|1080i|720p|576p|480p|4k|uhd|hdr|hdr10"
    r"|bluray|blu[\s]?ray|bdrip|brrip|web[\s]?dl|webrip|hdtv|dvdrip|remux"
    r"|hevc|x265|x264|h264|h265|avc|xvid|av1|vp9|10bit"
    r"|aac|ac3|dts|atmos|opus"
    r"|repack|proper|extended|unrated|internal|limited"
    r"|yts|yify|rarbg|eztv|ettv"
    r")\b",
    re.IGNORECASE,
)

_PUNCT_RE = re.compile(r"[\.\-_]+")
_MULTI_SPACE_RE = re.compile(r"\s{2,}")
_BRACKETS_RE = re.compile(r"[\[\](){}<>]")


@dataclass
class Classification:
    title: str
    category: Category = Category.MOVIE
    season: Optional[int] = None
    episode: Optional[int] = None


# ── Pure functions ───────────────────────────────────────────────────────────

def clean_title(raw: str) -> str:
    """
    Clean a raw filename into a human-readable title.

    Everything from the first year or episode marker onwards is dropped.
    """
    name = os.path.splitext(os.path.basename(raw or ""))[0]
    name = _UNIQUE_SUFFIX_RE.sub("", name)

    name = _PUNCT_RE.sub(" ", name)
    name = _BRACKETS_RE.sub(" ", name)

    cut = len(name)
    for pattern in (_YEAR_RE, _SXXEXX_RE, _NXNN_RE, _SEASON_RE, _EPISODE_RE):
        m = pattern.search(name)
        if m and m.start() > 0:
            cut = min(cut, m.start())
    name = name[:cut]
    name = _JUNK_TOKENS.sub("", name)

    name = _MULTI_SPACE_RE.sub(" ", name).strip(" -_.")

    result = name.title() if name else (raw or "").strip()

    if len(result) > 120:
        result = result[:120].rsplit(" ", 1)[0]

    return result


def _episode_markers(name: str):
    m = _SXXEXX_RE.search(name)
    if m:
        return int(m.group(1)), int(m.group(2))
    m = _NXNN_RE.search(name)
    if m:
        return int(m.group(1)), int(m.group(2))
    season = _SEASON_RE.search(name)
    episode = _EPISODE_RE.search(name)
    if season or episode:
        return (
            int(season.group(1)) if season else None,
            int(episode.group(1)) if episode else None,
        )
    return None


def classify(filename: str) -> Classification:
    """Title, category and episode numbering for ``filename``."""
    markers = _episode_markers(filename or "")
    title = clean_title(filename)
    if markers is None:
        return Classification(title=title, category=Category.MOVIE)
    season, episode = markers
    log.debug("[classifier] show detected filename=%s season=%s episode=%s",
              filename, season, episode)
    return Classification(title=title, category=Category.SHOW, season=season, episode=episode)
