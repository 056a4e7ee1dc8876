"""Media library scanning: group video files into collections with cover art."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

import logging
import os
import pathlib
import re


log = logging.getLogger(__name__)

VIDEO_EXTENSIONS = {".mp4", ".mkv", ".avi", ".mov", ".webm", ".m4v", ".ts", ".wmv", ".flv", ".ogv"}

# Top-level folders that hold shows/movies rather than naming a collection
GENERIC_CATEGORIES = {"series", "peliculas", "movies", "animation", "anime"}

_COVER_NAMES = ("cover", "poster", "folder", "image", "default")
_COVER_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp")


@dataclass(slots=True, frozen=True)
class MediaItem:
    id: str  # slash-normalized path relative to the media root
    name: str
    group: str
    size: int
    image: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if data["image"] is None:
            del data["image"]
        return data


def natural_key(name: str) -> list[Any]:
    """Sort key that orders "Episode 2" before "Episode 10", ignoring case."""
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name)]


def group_for(relative: pathlib.PurePosixPath) -> str:
    """Collection name for a file, from its position under the root."""
    parts = relative.parts
    if len(parts) == 1:
        return relative.stem
    if parts[0].lower() in GENERIC_CATEGORIES:
        # Category/Show/[Season/]Episode -> Show, Category/Movie.ext -> Movie
        return parts[1] if len(parts) >= 3 else relative.stem
    return parts[-2]


def find_cover(directory: pathlib.Path, media_root: pathlib.Path) -> str | None:
    for name in _COVER_NAMES:
        for ext in _COVER_EXTENSIONS:
            candidate = directory / f"{name}{ext}"
            if candidate.is_file():
                return candidate.relative_to(media_root).as_posix()
    return None


def scan_media(media_root: str | pathlib.Path) -> list[MediaItem]:
    root = pathlib.Path(media_root)
    if not root.is_dir():
        log.warning("Media root not found: %s", root)
        return []

    covers: dict[pathlib.Path, str | None] = {}
    items = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        directory = pathlib.Path(dirpath)
        for filename in filenames:
            path = directory / filename
            if path.suffix.lower() not in VIDEO_EXTENSIONS:
                continue
            try:
                size = path.stat().st_size
            except OSError as e:
                log.warning("Skipping unreadable file %s: %s", path, e)
                continue
            if directory not in covers:
                covers[directory] = find_cover(directory, root)
            relative = pathlib.PurePosixPath(path.relative_to(root).as_posix())
            items.append(
                MediaItem(
                    id=str(relative),
                    name=filename,
                    group=group_for(relative),
                    size=size,
                    image=covers[directory],
                )
            )
    return items


def get_media_list(media_root: str | pathlib.Path) -> dict[str, list[dict[str, Any]]]:
    """Scan the library and return {group: [item, ...]} with items naturally sorted."""
    grouped: dict[str, list[MediaItem]] = {}
    for item in scan_media(media_root):
        grouped.setdefault(item.group, []).append(item)
    log.info(
        "Scanned %s: %d items in %d groups",
        media_root,
        sum(len(v) for v in grouped.values()),
        len(grouped),
    )
    return {
        group: [i.to_dict() for i in sorted(items, key=lambda i: natural_key(i.name))]
        for group, items in grouped.items()
    }
