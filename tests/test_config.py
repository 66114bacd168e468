"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from sbc_imagegen.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Settings should have sensible defaults."""
        for key in list(os.environ):
            if key.startswith("SBC_IMG_"):
                monkeypatch.delenv(key)
        settings = Settings(_env_file=None)

        assert (
            settings.log_dir
            == Path.home() / ".local" / "share" / "sbc-imagegen" / "logs"
        )
        assert settings.db_url.startswith("sqlite:///")
        assert settings.db_url.endswith("db.sqlite")
        assert settings.tmp_dir is None
        assert settings.mirror == "http://deb.debian.org/debian"
        assert settings.record_history is True
        assert settings.log_level == "INFO"
        assert settings.command_timeout is None

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "SBC_IMG_MIRROR": "http://mirror.example.org/debian",
                "SBC_IMG_LOG_LEVEL": "DEBUG",
                "SBC_IMG_RECORD_HISTORY": "false",
                "SBC_IMG_COMMAND_TIMEOUT": "3600",
            },
        ):
            settings = Settings()
            assert settings.mirror == "http://mirror.example.org/debian"
            assert settings.log_level == "DEBUG"
            assert settings.record_history is False
            assert settings.command_timeout == 3600

    def test_settings_log_dir_from_env(self) -> None:
        """Log dir should be configurable via env."""
        with patch.dict(os.environ, {"SBC_IMG_LOG_DIR": "/tmp/test-logs"}):
            settings = Settings()
            assert settings.log_dir == Path("/tmp/test-logs")

    def test_invalid_log_level_rejected(self) -> None:
        """Unknown log levels should fail validation."""
        with patch.dict(os.environ, {"SBC_IMG_LOG_LEVEL": "CHATTY"}):
            with pytest.raises(ValidationError):
                Settings()

    def test_short_command_timeout_rejected(self) -> None:
        """Command timeouts under a minute should fail validation."""
        with patch.dict(os.environ, {"SBC_IMG_COMMAND_TIMEOUT": "5"}):
            with pytest.raises(ValidationError):
                Settings()


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        settings = get_settings()
        assert isinstance(settings, Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        settings = Settings()
        parsed = json.loads(print_settings_json(settings))

        for key in (
            "log_dir",
            "db_url",
            "tmp_dir",
            "mirror",
            "record_history",
            "log_level",
            "command_timeout",
        ):
            assert key in parsed

    def test_print_settings_json_default(self) -> None:
        """print_settings_json should work without arguments."""
        parsed = json.loads(print_settings_json())
        assert "mirror" in parsed
