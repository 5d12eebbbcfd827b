"""Tests for xsense_cloud.config."""

from __future__ import annotations

import json
import stat
from pathlib import Path

import pytest

from xsense_cloud._constants import API_HOST, MQTT_HOST
from xsense_cloud.config import Settings, load_settings, save_settings


class TestLoadSettings:
    def test_file_only(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"username": "a@example.com", "password": "pw", "polling_interval": 30}))

        settings = load_settings(path, environ={})

        assert settings.username == "a@example.com"
        assert settings.password == "pw"
        assert settings.polling_interval == 30
        assert settings.protocol == "cognito"
        assert settings.api_host == API_HOST
        assert settings.broker_host == MQTT_HOST
        assert settings.single_flight_refresh is False

    def test_environment_overrides_file(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"username": "file@example.com", "password": "file-pw"}))
        env = {"XSENSE_USERNAME": "env@example.com", "XSENSE_PROTOCOL": "bearer"}

        settings = load_settings(path, environ=env)

        assert settings.username == "env@example.com"
        assert settings.password == "file-pw"
        assert settings.protocol == "bearer"

    def test_environment_only(self, tmp_path: Path) -> None:
        env = {"XSENSE_USERNAME": "u", "XSENSE_PASSWORD": "p"}
        settings = load_settings(tmp_path / "missing.json", environ=env)
        assert (settings.username, settings.password) == ("u", "p")
        assert settings.polling_interval == 15

    def test_reads_process_environment(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("XSENSE_USERNAME", "u")
        monkeypatch.setenv("XSENSE_PASSWORD", "p")
        assert load_settings(tmp_path / "missing.json").username == "u"

    def test_empty_env_value_ignored(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"username": "u", "password": "p"}))
        assert load_settings(path, environ={"XSENSE_USERNAME": ""}).username == "u"

    def test_missing_credentials(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="username, password"):
            load_settings(tmp_path / "missing.json", environ={})

    def test_missing_password(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="password"):
            load_settings(tmp_path / "missing.json", environ={"XSENSE_USERNAME": "u"})

    def test_unknown_keys_ignored(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"username": "u", "password": "p", "platform": "XSense"}))
        assert load_settings(path, environ={}).username == "u"

    def test_not_an_object(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text("[]")
        with pytest.raises(ValueError, match="JSON object"):
            load_settings(path, environ={})


class TestSaveSettings:
    def test_round_trip_and_permissions(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "config.json"
        settings = Settings(username="u", password="p", protocol="bearer", request_timeout=5)

        assert save_settings(settings, path) == path
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert load_settings(path, environ={}) == settings
