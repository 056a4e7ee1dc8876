"""Playback routing: direct byte-range delivery or segmented transcode."""

from __future__ import annotations

from typing import Any

import logging
import pathlib
import urllib.parse

from ffmpeg_session import SessionManager
from util import normalize_item_id, require_media_file


log = logging.getLogger(__name__)

# Containers browsers play natively. Decided by extension alone: anything
# else is transcoded even if its codecs would play.
DIRECT_EXTENSIONS = {".mp4", ".m4v", ".webm", ".ogv"}

DIRECT_URL = "/playback/direct"


def is_direct_playable(path: str | pathlib.Path) -> bool:
    return pathlib.PurePosixPath(str(path)).suffix.lower() in DIRECT_EXTENSIONS


def direct_url(item_id: str) -> str:
    return f"{DIRECT_URL}?{urllib.parse.urlencode({'id': item_id})}"


async def resolve_playback(
    media_root: str | pathlib.Path,
    item_id: str,
    sessions: SessionManager,
    audio_index: int | None = None,
    subtitle_index: int | None = None,
) -> dict[str, Any]:
    """Decide how an item is delivered and return ``{"type", "url"}``.

    Track selection only applies to segmented delivery; native containers are
    always served as-is.
    """
    normalized = normalize_item_id(item_id)
    source = require_media_file(media_root, normalized)

    if is_direct_playable(normalized):
        log.debug("Direct playback for %s", normalized)
        return {"type": "direct", "url": direct_url(normalized)}

    log.info(
        "Segmented playback for %s (audio=%s, subtitle=%s)",
        normalized,
        audio_index,
        subtitle_index,
    )
    url = await sessions.request_session(normalized, source, audio_index, subtitle_index)
    return {"type": "segmented", "url": url}
