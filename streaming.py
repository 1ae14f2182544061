"""Byte-range streaming of source videos.

Only the single-range form ``bytes=<start>-<end>`` is understood; ``<end>``
may be omitted to mean end of file. Multi-range and suffix (``bytes=-N``)
requests are rejected as malformed.
"""
from __future__ import annotations

import logging
import mimetypes
import re
from pathlib import Path
from typing import Iterator, Optional, Tuple

from starlette.requests import ClientDisconnect
from starlette.responses import Response, StreamingResponse

from errors import NotFound, StreamletError
from logutil import log

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
_DIGITS = re.compile(r"[0-9]+")


class MalformedRange(StreamletError):
    status_code = 400


class RangeNotSatisfiable(StreamletError):
    status_code = 416


def parse_range(header: Optional[str], file_size: int) -> Optional[Tuple[int, int]]:
    """
    Parse a Range header against ``file_size``.

    Returns None when no header was sent, ``(start, end)`` inclusive otherwise.
    Raises MalformedRange for syntax errors and RangeNotSatisfiable when the
    bounds fall outside ``0 <= start <= end < file_size``.
    """
    if header is None or not header.strip():
        return None
    raw = header.strip()
    if not raw.lower().startswith("bytes="):
        raise MalformedRange("Invalid range")
    parts = raw[len("bytes="):].split("-")
    if len(parts) != 2:
        raise MalformedRange("Invalid range")
    start_s, end_s = parts[0].strip(), parts[1].strip()
    if not _DIGITS.fullmatch(start_s) or (end_s and not _DIGITS.fullmatch(end_s)):
        raise MalformedRange("Invalid range")
    start = int(start_s)
    end = int(end_s) if end_s else file_size - 1
    if start >= file_size or end >= file_size or start > end:
        raise RangeNotSatisfiable("Range not satisfiable")
    return start, end


def iter_file(file_path: Path, start: int, length: int, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield exactly ``length`` bytes of ``file_path`` starting at ``start``."""
    with open(file_path, "rb") as f:
        f.seek(start)
        remaining = length
        while remaining > 0:
            data = f.read(min(chunk_size, remaining))
            if not data:
                logger.warning("short read on %s: %d byte(s) missing", file_path, remaining)
                break
            remaining -= len(data)
            yield data


class RangeStreamingResponse(StreamingResponse):
    """
    StreamingResponse that treats a vanished client as a normal end of stream.

    The source iterator is closed once the response is done, so an aborted
    transfer releases its file handle right away.
    """

    def __init__(self, content, *args, **kwargs) -> None:
        super().__init__(content, *args, **kwargs)
        self._source = content

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except (BrokenPipeError, ConnectionResetError, ClientDisconnect) as e:
            log("stream", f"client disconnected reason={e.__class__.__name__}")
        finally:
            close = getattr(self._source, "close", None)
            if callable(close):
                close()


def media_type_for(file_path: Path) -> str:
    return mimetypes.guess_type(str(file_path))[0] or "video/mp4"


def serve_range(file_path: Path, range_header: Optional[str], media_type: Optional[str] = None) -> Response:
    """Build the 200/206/416 response for ``file_path``; MalformedRange propagates."""
    if not file_path.is_file():
        raise NotFound("Video not found")
    media_type = media_type or media_type_for(file_path)
    file_size = file_path.stat().st_size
    try:
        rng = parse_range(range_header, file_size)
    except RangeNotSatisfiable:
        log("stream", f"416 path={file_path.name} range={range_header} size={file_size}")
        return Response(status_code=416, headers={"Content-Range": f"bytes */{file_size}"})
    if rng is None:
        headers = {
            "Accept-Ranges": "bytes",
            "Content-Length": str(file_size),
        }
        log("stream", f"200 path={file_path.name} size={file_size}")
        return RangeStreamingResponse(
            iter_file(file_path, 0, file_size),
            status_code=200,
            headers=headers,
            media_type=media_type,
        )
    start, end = rng
    length = end - start + 1
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Length": str(length),
        "Content-Range": f"bytes {start}-{end}/{file_size}",
    }
    log("stream", f"206 path={file_path.name} {start}-{end}/{file_size}")
    return RangeStreamingResponse(
        iter_file(file_path, start, length),
        status_code=206,
        headers=headers,
        media_type=media_type,
    )


__all__ = [
    "MalformedRange",
    "RangeNotSatisfiable",
    "RangeStreamingResponse",
    "parse_range",
    "iter_file",
    "serve_range",
]
