"""Watched status and resume position, persisted as a JSON file."""

from __future__ import annotations

from typing import Any

import json
import logging
import pathlib
import threading
import time


log = logging.getLogger(__name__)

_lock = threading.Lock()


def _read(path: pathlib.Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        log.error("Error reading watched file %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def load_watched(path: str | pathlib.Path) -> dict[str, Any]:
    """Get all watched entries keyed by item id."""
    with _lock:
        return _read(pathlib.Path(path))


def update_watched(
    path: str | pathlib.Path,
    item_id: str,
    status: bool | None = None,
    current_time: float | None = None,
) -> dict[str, Any]:
    """Merge an update into an item's entry and persist it. Returns the entry.

    Fields left as None keep their previous value.
    """
    path = pathlib.Path(path)
    with _lock:
        watched = _read(path)
        previous = watched.get(item_id)
        if not isinstance(previous, dict):
            previous = {}
        entry = {
            "status": status if status is not None else previous.get("status", False),
            "lastWatched": int(time.time() * 1000),
            "currentTime": (
                current_time if current_time is not None else previous.get("currentTime", 0)
            ),
        }
        watched[item_id] = entry
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(watched, indent=2))
        tmp.replace(path)
    return entry
