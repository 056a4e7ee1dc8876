"""Tests for byte_range.py."""

from __future__ import annotations

from pathlib import Path

import asyncio

import pytest

from byte_range import guess_media_type, iter_file_range, parse_range, serve_file
from errors import MediaNotFound, RangeUnsatisfiable


@pytest.fixture
def video_file(tmp_path: Path) -> Path:
    path = tmp_path / "clip.mp4"
    path.write_bytes(bytes(i % 256 for i in range(1000)))
    return path


def _body(response) -> bytes:
    async def collect() -> bytes:
        return b"".join([chunk async for chunk in response.body_iterator])

    return asyncio.run(collect())


class TestParseRange:
    def test_no_header(self):
        assert parse_range(None, 1000) is None
        assert parse_range("", 1000) is None

    def test_simple_range(self):
        assert parse_range("bytes=0-99", 1000) == (0, 99)

    def test_open_ended(self):
        assert parse_range("bytes=500-", 1000) == (500, 999)

    def test_end_clamped(self):
        assert parse_range("bytes=900-2000", 1000) == (900, 999)

    def test_start_past_end_of_file(self):
        with pytest.raises(RangeUnsatisfiable) as exc:
            parse_range("bytes=1000-1005", 1000)
        assert exc.value.headers["Content-Range"] == "bytes */1000"

    def test_inverted_range(self):
        with pytest.raises(RangeUnsatisfiable):
            parse_range("bytes=50-10", 1000)

    def test_empty_file(self):
        with pytest.raises(RangeUnsatisfiable):
            parse_range("bytes=0-", 0)

    def test_multi_range_ignored(self):
        assert parse_range("bytes=0-10,20-30", 1000) is None

    @pytest.mark.parametrize("header", ["bytes=-100", "items=0-10", "bytes=abc-", "0-10"])
    def test_unsupported_forms_ignored(self, header: str):
        assert parse_range(header, 1000) is None


class TestIterFileRange:
    def test_reads_exact_window(self, video_file: Path):
        data = b"".join(iter_file_range(video_file, 10, 19))
        assert data == bytes(range(10, 20))

    def test_large_window_chunks(self, tmp_path: Path):
        path = tmp_path / "big.bin"
        path.write_bytes(b"a" * 200_000)
        chunks = list(iter_file_range(path, 0, 199_999))
        assert len(chunks) > 1
        assert sum(len(c) for c in chunks) == 200_000


class TestServeFile:
    def test_full_content(self, video_file: Path):
        resp = serve_file(video_file)
        assert resp.status_code == 200
        assert resp.headers["content-length"] == "1000"
        assert resp.headers["accept-ranges"] == "bytes"
        assert resp.media_type == "video/mp4"
        assert len(_body(resp)) == 1000

    def test_partial_content(self, video_file: Path):
        resp = serve_file(video_file, "bytes=0-99")
        assert resp.status_code == 206
        assert resp.headers["content-range"] == "bytes 0-99/1000"
        assert resp.headers["content-length"] == "100"
        assert resp.headers["accept-ranges"] == "bytes"
        assert _body(resp) == bytes(range(100))

    def test_clamped_tail(self, video_file: Path):
        resp = serve_file(video_file, "bytes=900-2000")
        assert resp.status_code == 206
        assert resp.headers["content-range"] == "bytes 900-999/1000"
        body = _body(resp)
        assert len(body) == 100
        assert body == bytes(i % 256 for i in range(900, 1000))

    def test_unsatisfiable(self, video_file: Path):
        with pytest.raises(RangeUnsatisfiable):
            serve_file(video_file, "bytes=1000-1005")

    def test_multi_range_serves_full(self, video_file: Path):
        resp = serve_file(video_file, "bytes=0-1,5-6")
        assert resp.status_code == 200
        assert len(_body(resp)) == 1000

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(MediaNotFound):
            serve_file(tmp_path / "gone.mp4")


class TestGuessMediaType:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("a.mp4", "video/mp4"),
            ("a.MKV", "video/x-matroska"),
            ("a.webm", "video/webm"),
            ("cover.jpg", "image/jpeg"),
            ("cover.webp", "image/webp"),
            ("a.unknownext", "application/octet-stream"),
        ],
    )
    def test_types(self, name: str, expected: str):
        assert guess_media_type(Path(name)) == expected


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
