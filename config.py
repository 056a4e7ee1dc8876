"""Server settings: defaults, settings file, environment overrides."""

from __future__ import annotations

from typing import Any

import json
import logging
import os
import pathlib
import tempfile


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
CACHE_DIR = APP_DIR / ".cache"
SERVER_SETTINGS_FILE = CACHE_DIR / "server_settings.json"

# Environment variable -> settings key
_ENV_OVERRIDES = {
    "VIDVAULT_MEDIA_ROOT": "media_root",
    "VIDVAULT_TRANSCODE_DIR": "transcode_dir",
}


def default_settings() -> dict[str, Any]:
    return {
        "media_root": str(APP_DIR / "media"),
        # Wiped on every startup, so never point this at a shared directory
        "transcode_dir": str(pathlib.Path(tempfile.gettempdir()) / "vidvault_transcode"),
        "watched_file": str(CACHE_DIR / "watched.json"),
        "segment_duration_secs": 4,
        "start_timeout_secs": 30,
        "idle_session_timeout_secs": 0,  # 0 = sessions run to completion
        "max_resolution": "1080p",
        "quality": "high",
        "probe_timeout_secs": 30,
    }


def load_server_settings() -> dict[str, Any]:
    """Load settings, layering file and environment over the defaults."""
    settings = default_settings()
    if SERVER_SETTINGS_FILE.exists():
        try:
            settings.update(json.loads(SERVER_SETTINGS_FILE.read_text()))
        except (OSError, ValueError) as e:
            log.warning("Ignoring unreadable settings file %s: %s", SERVER_SETTINGS_FILE, e)
    for env_name, key in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            settings[key] = value
    return settings


def save_server_settings(settings: dict[str, Any]) -> None:
    """Persist settings (only keys that differ from the defaults)."""
    defaults = default_settings()
    changed = {k: v for k, v in settings.items() if defaults.get(k) != v}
    SERVER_SETTINGS_FILE.parent.mkdir(parents=True, exist_ok=True)
    SERVER_SETTINGS_FILE.write_text(json.dumps(changed, indent=2))
