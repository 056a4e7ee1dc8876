"""HTTP server: media library, track info, playback and watched status."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from typing import Any

import argparse
import asyncio
import logging
import pathlib

from fastapi import FastAPI, Header, Query, Request
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel

import byte_range
import catalog
import config
import delivery
import ffmpeg_command
import watched
from errors import StreamingError
from ffmpeg_session import SessionManager
from util import require_media_file


log = logging.getLogger(__name__)

_REAPER_INTERVAL_SEC = 15.0

_ARTIFACT_MEDIA_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".vtt": "text/vtt",
}


class WatchedUpdate(BaseModel):
    id: str
    status: bool | None = None
    currentTime: float | None = None


def _settings() -> dict[str, Any]:
    return ffmpeg_command.get_settings()


def _media_root() -> pathlib.Path:
    return pathlib.Path(_settings()["media_root"])


def _sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


async def _reap_idle_loop(sessions: SessionManager) -> None:
    while True:
        await asyncio.sleep(_REAPER_INTERVAL_SEC)
        try:
            await sessions.reap_idle_sessions()
        except Exception:
            log.exception("Idle session reaper failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    ffmpeg_command.init(config.load_server_settings)
    settings = _settings()
    sessions = SessionManager(
        ffmpeg_command.get_transcode_dir(),
        start_timeout_sec=float(settings.get("start_timeout_secs", 30)),
        idle_timeout_sec=float(settings.get("idle_session_timeout_secs", 0)),
    )
    # Nothing on disk survives a restart: the registry that maps keys to
    # directories doesn't either
    sessions.reset_output_root()
    app.state.sessions = sessions
    log.info(
        "Serving media from %s, transcoding into %s",
        settings["media_root"],
        sessions.output_root,
    )

    reaper = None
    if sessions.idle_timeout_sec > 0:
        reaper = asyncio.create_task(_reap_idle_loop(sessions))
    try:
        yield
    finally:
        if reaper:
            reaper.cancel()
            with suppress(asyncio.CancelledError):
                await reaper
        await sessions.shutdown()


app = FastAPI(lifespan=lifespan)


@app.exception_handler(StreamingError)
async def streaming_error_handler(request: Request, exc: StreamingError) -> JSONResponse:
    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    log.log(
        level,
        "%s %s -> %d %s: %s",
        request.method,
        request.url.path,
        exc.status_code,
        type(exc).__name__,
        exc.detail,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": type(exc).__name__, "detail": exc.detail},
        headers=exc.headers,
    )


# ===========================================================================
# Library
# ===========================================================================


@app.get("/media-list")
async def media_list() -> dict[str, Any]:
    return await asyncio.to_thread(catalog.get_media_list, _media_root())


@app.get("/media/{item_path:path}")
async def media_file(
    item_path: str, range_header: str | None = Header(None, alias="Range")
) -> StreamingResponse:
    """Files under the media root (cover images), confined to the root."""
    return byte_range.serve_file(require_media_file(_media_root(), item_path), range_header)


@app.get("/track-info")
async def track_info(item_id: str = Query(..., alias="id")) -> dict[str, Any]:
    source = require_media_file(_media_root(), item_id)
    info = await asyncio.to_thread(ffmpeg_command.probe_tracks, source)
    return info.to_dict()


# ===========================================================================
# Playback
# ===========================================================================


@app.get("/playback")
async def playback(
    request: Request,
    item_id: str = Query(..., alias="id"),
    audio_track: int | None = Query(None, alias="audioTrack", ge=0),
    subtitle_track: int | None = Query(None, alias="subtitleTrack", ge=0),
) -> dict[str, Any]:
    return await delivery.resolve_playback(
        _media_root(),
        item_id,
        _sessions(request),
        audio_index=audio_track,
        subtitle_index=subtitle_track,
    )


@app.get("/playback/direct")
async def playback_direct(
    item_id: str = Query(..., alias="id"),
    range_header: str | None = Header(None, alias="Range"),
) -> StreamingResponse:
    return byte_range.serve_file(require_media_file(_media_root(), item_id), range_header)


@app.get("/playback/segmented/{session_key}/{filename}")
async def playback_segmented(request: Request, session_key: str, filename: str) -> FileResponse:
    path = _sessions(request).serve_artifact(session_key, filename)
    headers = {"Cache-Control": "no-cache"} if path.suffix == ".m3u8" else {}
    return FileResponse(
        path,
        media_type=_ARTIFACT_MEDIA_TYPES.get(path.suffix, byte_range.DEFAULT_MEDIA_TYPE),
        headers=headers,
    )


@app.get("/sessions")
async def list_sessions(request: Request) -> list[dict[str, Any]]:
    return _sessions(request).list_sessions()


# ===========================================================================
# Watched Status
# ===========================================================================


@app.get("/watched")
async def get_watched() -> dict[str, Any]:
    return watched.load_watched(_settings()["watched_file"])


@app.post("/watched")
async def post_watched(update: WatchedUpdate) -> dict[str, Any]:
    entry = watched.update_watched(
        _settings()["watched_file"],
        update.id,
        status=update.status,
        current_time=update.currentTime,
    )
    return {"success": True, "entry": entry}


def main() -> None:
    import uvicorn

    parser = argparse.ArgumentParser(description="Serve a personal video library over HTTP.")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=3000)
    parser.add_argument("--debug", action="store_true", help="Log ffmpeg output")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=args.host, port=args.port, log_level="debug" if args.debug else "info")


if __name__ == "__main__":
    main()
