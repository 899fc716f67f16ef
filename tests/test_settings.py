"""Tests for settings loading and the settings model."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from nbgate.errors import SettingsError
from nbgate.models import AppSettings
from nbgate.settings import load_settings


class TestAppSettings:
    """Tests for AppSettings."""

    def test_defaults(self) -> None:
        settings = AppSettings()
        assert settings.jupyter_port == 9000
        assert settings.jupyter_executable == "jupyter"
        assert settings.jupyter_args == []
        assert settings.allow_origin_overrides == []
        assert settings.ready_poll_interval_ms == 100
        assert settings.ready_timeout_ms == 15000

    def test_frozen(self) -> None:
        settings = AppSettings()
        with pytest.raises(ValidationError):
            settings.jupyter_port = 1  # type: ignore[misc]

    def test_proxy_target(self) -> None:
        assert AppSettings().proxy_target("10.0.0.5", 9000) == ("10.0.0.5", 9000)
        assert AppSettings(kernel_manager_proxy_host="km").proxy_target(
            "localhost", 9000
        ) == ("km", 9000)
        assert AppSettings(
            kernel_manager_proxy_host="km", kernel_manager_proxy_port=8888
        ).proxy_target("localhost", 9000) == ("km", 8888)


class TestLoadSettings:
    """Tests for load_settings."""

    def test_no_file_gives_defaults(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("NBGATE_CONFIG", raising=False)
        assert load_settings() == AppSettings()

    def test_from_file(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.json"
        path.write_text(
            json.dumps(
                {
                    "jupyter_port": 9500,
                    "jupyter_args": ['--ip="0.0.0.0"'],
                    "datalab_root": "/datalab",
                    "content_dir": "/content",
                    "allow_origin_overrides": ["https://a.example"],
                }
            )
        )
        settings = load_settings(path)
        assert settings.jupyter_port == 9500
        assert settings.jupyter_args == ['--ip="0.0.0.0"']
        assert settings.allow_origin_overrides == ["https://a.example"]

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"jupyter_port": 9600}))
        monkeypatch.setenv("NBGATE_CONFIG", str(path))
        assert load_settings().jupyter_port == 9600

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(SettingsError):
            load_settings(tmp_path / "missing.json")

    def test_invalid_file(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"jupyter_port": "not a port"}))
        with pytest.raises(SettingsError) as exc_info:
            load_settings(path)
        assert exc_info.value.details == {"errors": 1}

    def test_malformed_json(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.json"
        path.write_text("{not json")
        with pytest.raises(SettingsError):
            load_settings(path)
