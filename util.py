"""Shared utilities: media path confinement and session key derivation."""

from __future__ import annotations

import hashlib
import pathlib
import posixpath
import re

from errors import MediaNotFound, PathTraversalRejected


SESSION_KEY_RE = re.compile(r"[A-Za-z0-9_-]{1,64}")


def normalize_item_id(item_id: str) -> str:
    """Normalize a client-supplied item id to a root-relative posix path.

    Raises PathTraversalRejected if the id escapes the media root. Pure string
    manipulation: nothing here touches the filesystem.
    """
    if not item_id or "\x00" in item_id:
        raise PathTraversalRejected("Invalid media id")
    candidate = item_id.replace("\\", "/")
    # Drive letters and absolute paths are never relative to the root
    if candidate.startswith("/") or re.match(r"^[A-Za-z]:", candidate):
        raise PathTraversalRejected(f"Absolute path not allowed: {item_id}")
    normalized = posixpath.normpath(candidate)
    if normalized in (".", "..") or normalized.startswith("../"):
        raise PathTraversalRejected(f"Path escapes media root: {item_id}")
    return normalized


def resolve_media_path(media_root: str | pathlib.Path, item_id: str) -> pathlib.Path:
    """Join a normalized item id onto the media root (no filesystem access)."""
    return pathlib.Path(media_root) / normalize_item_id(item_id)


def require_media_file(media_root: str | pathlib.Path, item_id: str) -> pathlib.Path:
    """Resolve an item id and check it names an existing file under the root."""
    path = resolve_media_path(media_root, item_id)
    root = pathlib.Path(media_root).resolve()
    # Symlinks inside the library may point anywhere; the resolved target must not
    real = path.resolve()
    if not real.is_relative_to(root):
        raise PathTraversalRejected(f"Path escapes media root: {item_id}")
    if not real.is_file():
        raise MediaNotFound(f"File not found: {item_id}")
    return path


def derive_session_key(
    path: str,
    audio_index: int | None = None,
    subtitle_index: int | None = None,
) -> str:
    """Map (item path, audio selection, subtitle selection) to a stable key.

    The key is a hex digest, so it is safe as a directory name and matches
    SESSION_KEY_RE. "default"/"none" stand in for unspecified selections.
    """
    audio = "default" if audio_index is None else str(int(audio_index))
    subtitle = "none" if subtitle_index is None else str(int(subtitle_index))
    canonical = "\n".join((path.replace("\\", "/"), f"audio={audio}", f"subtitle={subtitle}"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]


def is_valid_session_key(key: str) -> bool:
    return SESSION_KEY_RE.fullmatch(key) is not None
