"""Tests for config.py."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import json

import pytest

import config


@pytest.fixture
def settings_file(tmp_path: Path):
    path = tmp_path / "server_settings.json"
    with patch.object(config, "SERVER_SETTINGS_FILE", path):
        yield path


class TestLoadServerSettings:
    def test_defaults_without_file(self, settings_file: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("VIDVAULT_MEDIA_ROOT", raising=False)
        monkeypatch.delenv("VIDVAULT_TRANSCODE_DIR", raising=False)
        assert config.load_server_settings() == config.default_settings()

    def test_file_overrides_defaults(self, settings_file: Path):
        settings_file.write_text(json.dumps({"quality": "low", "segment_duration_secs": 6}))
        settings = config.load_server_settings()
        assert settings["quality"] == "low"
        assert settings["segment_duration_secs"] == 6
        assert settings["max_resolution"] == "1080p"

    def test_env_overrides_file(self, settings_file: Path, monkeypatch: pytest.MonkeyPatch):
        settings_file.write_text(json.dumps({"media_root": "/from/file"}))
        monkeypatch.setenv("VIDVAULT_MEDIA_ROOT", "/from/env")
        monkeypatch.setenv("VIDVAULT_TRANSCODE_DIR", "/tmp/elsewhere")
        settings = config.load_server_settings()
        assert settings["media_root"] == "/from/env"
        assert settings["transcode_dir"] == "/tmp/elsewhere"

    def test_corrupt_file_ignored(self, settings_file: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("VIDVAULT_MEDIA_ROOT", raising=False)
        settings_file.write_text("{broken")
        assert config.load_server_settings()["media_root"] == config.default_settings()["media_root"]


class TestSaveServerSettings:
    def test_only_changed_keys_written(self, settings_file: Path):
        settings = config.default_settings()
        settings["quality"] = "medium"
        config.save_server_settings(settings)
        assert json.loads(settings_file.read_text()) == {"quality": "medium"}

    def test_round_trip(self, settings_file: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("VIDVAULT_MEDIA_ROOT", raising=False)
        settings = config.default_settings()
        settings["media_root"] = "/srv/videos"
        config.save_server_settings(settings)
        assert config.load_server_settings()["media_root"] == "/srv/videos"


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
