"""chunks.py — On-disk chunk files: <chunks_dir>/<session_id>_chunk_<index>."""

from __future__ import annotations

import io
import logging
import os
import threading
from typing import BinaryIO, Union

from mediavault.errors import PayloadTooLarge

log = logging.getLogger(__name__)

COPY_BLOCK = 1024 * 1024

Payload = Union[bytes, bytearray, BinaryIO]


def chunk_path(chunks_dir: str, session_id: str, index: int) -> str:
    return os.path.join(chunks_dir, f"{session_id}_chunk_{index}")


def write_chunk(chunks_dir: str, session_id: str, index: int, payload: Payload,
                max_size: int) -> int:
    """
    Persist one chunk and return its size in bytes.

    The payload is streamed into a temp file and renamed into place only once
    it is complete and within ``max_size``, so a partial chunk is never visible
    under its final name.
    """
    if isinstance(payload, (bytes, bytearray)):
        payload = io.BytesIO(payload)

    os.makedirs(chunks_dir, exist_ok=True)
    final = chunk_path(chunks_dir, session_id, index)
    tmp = f"{final}.{os.getpid()}.{threading.get_ident()}.part"
    written = 0
    try:
        with open(tmp, "wb") as out:
            for block in iter(lambda: payload.read(COPY_BLOCK), b""):
                written += len(block)
                if written > max_size:
                    raise PayloadTooLarge(f"chunk {index} exceeds {max_size} bytes")
                out.write(block)
        os.replace(tmp, final)
    except BaseException:
        try:
            os.remove(tmp)
        except FileNotFoundError:
            pass
        raise

    log.debug("[upload_flow] event=chunk_written session=%s index=%d bytes=%d",
              session_id, index, written)
    return written


def remove_chunk(chunks_dir: str, session_id: str, index: int) -> bool:
    try:
        os.remove(chunk_path(chunks_dir, session_id, index))
    except FileNotFoundError:
        return False
    return True
