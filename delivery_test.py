"""Tests for delivery.py."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock

import asyncio

import pytest

from delivery import direct_url, is_direct_playable, resolve_playback
from errors import MediaNotFound, PathTraversalRejected


@pytest.fixture
def media_root(tmp_path: Path) -> Path:
    root = tmp_path / "media"
    (root / "movies").mkdir(parents=True)
    (root / "movies" / "Clip One.mp4").write_bytes(b"mp4")
    (root / "movies" / "Film.mkv").write_bytes(b"mkv")
    (root / "movies" / "Old.avi").write_bytes(b"avi")
    return root


@pytest.fixture
def sessions() -> AsyncMock:
    manager = AsyncMock()
    manager.request_session.return_value = "/playback/segmented/abc/stream.m3u8"
    return manager


class TestIsDirectPlayable:
    @pytest.mark.parametrize("name", ["a.mp4", "a.M4V", "dir/a.webm", "a.ogv"])
    def test_native(self, name: str):
        assert is_direct_playable(name)

    @pytest.mark.parametrize("name", ["a.mkv", "a.avi", "a.mov", "a.ts", "mp4", "a.mp4.part"])
    def test_transcoded(self, name: str):
        assert not is_direct_playable(name)


class TestDirectUrl:
    def test_quotes_id(self):
        assert direct_url("movies/Clip One.mp4") == "/playback/direct?id=movies%2FClip+One.mp4"


class TestResolvePlayback:
    def test_native_container_is_direct(self, media_root: Path, sessions: AsyncMock):
        result = asyncio.run(resolve_playback(media_root, "movies/Clip One.mp4", sessions))
        assert result == {"type": "direct", "url": direct_url("movies/Clip One.mp4")}
        sessions.request_session.assert_not_called()

    def test_track_selection_ignored_for_direct(self, media_root: Path, sessions: AsyncMock):
        result = asyncio.run(resolve_playback(media_root, "movies/Clip One.mp4", sessions, 1, 2))
        assert result["type"] == "direct"
        sessions.request_session.assert_not_called()

    def test_other_container_is_segmented(self, media_root: Path, sessions: AsyncMock):
        result = asyncio.run(resolve_playback(media_root, "movies/Film.mkv", sessions, 2, 5))
        assert result == {"type": "segmented", "url": "/playback/segmented/abc/stream.m3u8"}
        sessions.request_session.assert_awaited_once_with(
            "movies/Film.mkv", media_root / "movies" / "Film.mkv", 2, 5
        )

    def test_id_normalized_before_keying(self, media_root: Path, sessions: AsyncMock):
        asyncio.run(resolve_playback(media_root, "movies/./sub/../Old.avi", sessions))
        assert sessions.request_session.await_args.args[0] == "movies/Old.avi"

    def test_traversal_rejected(self, media_root: Path, sessions: AsyncMock):
        with pytest.raises(PathTraversalRejected):
            asyncio.run(resolve_playback(media_root, "../../etc/passwd", sessions))
        sessions.request_session.assert_not_called()

    def test_missing_file(self, media_root: Path, sessions: AsyncMock):
        with pytest.raises(MediaNotFound):
            asyncio.run(resolve_playback(media_root, "movies/Nope.mkv", sessions))


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
