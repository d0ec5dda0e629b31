"""
prober.py — Media probing utility for mediavault.

Uses ffprobe (via ffmpeg-python) to read the real resolution and duration of
a file. Probing never raises: an unreadable or non-media file yields None.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import ffmpeg

log = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    resolution: Optional[str] = None
    duration: Optional[float] = None


def probe_media(path: str) -> ProbeResult:
    """Probe ``path`` and return its first video stream's geometry and duration."""
    result = ProbeResult()

    try:
        probe = ffmpeg.probe(path)
    except ffmpeg.Error as exc:
        log.warning("[prober] ffprobe failed for %s: %s", path, exc)
        return result
    except OSError as exc:
        # ffprobe binary missing or file unreadable
        log.warning("[prober] unable to run ffprobe on %s: %s", path, exc)
        return result

    streams = probe.get("streams", [])
    video_streams = [s for s in streams if s.get("codec_type") == "video"]
    if video_streams:
        vs = video_streams[0]
        width = vs.get("width")
        height = vs.get("height")
        if width and height:
            result.resolution = f"{width}x{height}"
    else:
        log.debug("[prober] no video streams found for %s", path)

    fmt_info = probe.get("format", {})
    try:
        duration = float(fmt_info.get("duration", 0))
    except (TypeError, ValueError):
        duration = 0.0
    if duration > 0:
        result.duration = duration

    return result


def probe_resolution(path: str) -> Optional[str]:
    """'WIDTHxHEIGHT' for ``path``, or None when it cannot be determined."""
    return probe_media(path).resolution
