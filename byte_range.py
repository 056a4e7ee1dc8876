"""Direct file delivery with single byte-range support."""

from __future__ import annotations

from collections.abc import Iterator

import logging
import mimetypes
import pathlib
import re

from fastapi.responses import StreamingResponse

from errors import MediaNotFound, RangeUnsatisfiable


log = logging.getLogger(__name__)

_CHUNK_SIZE = 1 << 16
_RANGE_RE = re.compile(r"bytes=(\d+)-(\d*)")

# Containers mimetypes doesn't know on every platform
_EXTRA_MEDIA_TYPES = {
    ".mkv": "video/x-matroska",
    ".m4v": "video/mp4",
    ".webm": "video/webm",
    ".ogv": "video/ogg",
    ".ts": "video/mp2t",
    ".m3u8": "application/vnd.apple.mpegurl",
    ".vtt": "text/vtt",
    ".webp": "image/webp",
}
DEFAULT_MEDIA_TYPE = "application/octet-stream"


def guess_media_type(path: pathlib.Path) -> str:
    suffix = path.suffix.lower()
    if suffix in _EXTRA_MEDIA_TYPES:
        return _EXTRA_MEDIA_TYPES[suffix]
    return mimetypes.guess_type(path.name)[0] or DEFAULT_MEDIA_TYPE


def parse_range(range_header: str | None, file_size: int) -> tuple[int, int] | None:
    """Parse a Range header into an inclusive (start, end) window.

    Returns None when the whole file should be served: no header, a
    multi-range request, or anything other than a single ``bytes=start-end``
    form. Multi-range is deliberately unsupported; simple clients get the full
    body instead of an error. Raises RangeUnsatisfiable when the window
    starts past the end of the file or is inverted.
    """
    if not range_header:
        return None
    header = range_header.strip()
    if "," in header:
        log.debug("Multi-range request ignored: %s", header)
        return None
    match = _RANGE_RE.fullmatch(header)
    if not match:
        log.debug("Unsupported range form ignored: %s", header)
        return None
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else file_size - 1
    end = min(end, file_size - 1)
    if start > end or start >= file_size:
        raise RangeUnsatisfiable(file_size)
    return start, end


def iter_file_range(path: pathlib.Path, start: int, end: int) -> Iterator[bytes]:
    """Yield chunks of path from start to end inclusive."""
    remaining = end - start + 1
    with path.open("rb") as f:
        f.seek(start)
        while remaining > 0:
            chunk = f.read(min(_CHUNK_SIZE, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


def serve_file(path: pathlib.Path, range_header: str | None = None) -> StreamingResponse:
    """Serve a file, honoring a single byte range when one is requested."""
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise MediaNotFound(f"File not found: {path.name}") from e

    media_type = guess_media_type(path)
    window = parse_range(range_header, file_size)
    if window is None:
        return StreamingResponse(
            iter_file_range(path, 0, file_size - 1),
            status_code=200,
            media_type=media_type,
            headers={"Content-Length": str(file_size), "Accept-Ranges": "bytes"},
        )

    start, end = window
    return StreamingResponse(
        iter_file_range(path, start, end),
        status_code=206,
        media_type=media_type,
        headers={
            "Content-Range": f"bytes {start}-{end}/{file_size}",
            "Accept-Ranges": "bytes",
            "Content-Length": str(end - start + 1),
        },
    )
