"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from fleetpack.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings(_env_file=None)

        assert settings.download_dir == (
            Path.home() / ".cache" / "fleetpack" / "downloads"
        )
        assert settings.output_dir == Path("out")
        assert "sqlite" in settings.db_url
        assert settings.offline is False
        assert settings.fail_fast is False
        assert settings.log_level == "INFO"
        assert settings.max_concurrent_builds >= 1
        assert settings.fetch_max_attempts == 3
        assert settings.cargo_target_dir is None

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "FLEETPACK_OFFLINE": "true",
                "FLEETPACK_LOG_LEVEL": "DEBUG",
                "FLEETPACK_MAX_CONCURRENT_BUILDS": "8",
                "FLEETPACK_FETCH_MAX_ATTEMPTS": "5",
            },
        ):
            settings = Settings()
            assert settings.offline is True
            assert settings.log_level == "DEBUG"
            assert settings.max_concurrent_builds == 8
            assert settings.fetch_max_attempts == 5

    def test_manual_dir_defaults_to_output_dir(self) -> None:
        """Manual artifacts are looked up in the output directory by default."""
        settings = Settings(output_dir=Path("/tmp/out"), manual_dir=None)
        assert settings.effective_manual_dir == Path("/tmp/out")

        settings = Settings(output_dir=Path("/tmp/out"), manual_dir=Path("/srv/manual"))
        assert settings.effective_manual_dir == Path("/srv/manual")

    def test_attempts_bounded(self) -> None:
        """Fetch attempts must be finite and positive."""
        with pytest.raises(ValidationError):
            Settings(fetch_max_attempts=0)
        with pytest.raises(ValidationError):
            Settings(fetch_max_attempts=1000)


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

        assert "output_dir" in parsed
        assert "download_dir" in parsed
        assert "db_url" in parsed
        assert "artifact_store_url" in parsed

    def test_print_settings_json_default(self) -> None:
        """print_settings_json without args should use default settings."""
        parsed = json.loads(print_settings_json())
        assert "manifest_path" in parsed
