"""
Tests for configuration module.
"""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from dealbot.config import Settings, clear_settings_cache, get_settings


class TestSettingsValidation:
    """Tests for Settings validation."""

    def test_settings_loads_from_env(self, mock_env_vars: dict[str, str]) -> None:
        """Test that settings correctly loads from environment variables."""
        settings = get_settings()

        assert settings.SHORT_TIMEOUT_S == 0.5
        assert settings.LONG_TIMEOUT_S == 2.0
        assert settings.PROVIDER_CONCURRENCY == 2
        assert settings.DEFAULT_ANALYSTS == ["market", "competition"]
        assert settings.LOG_LEVEL == "DEBUG"
        assert settings.REASONING_API_KEY == "rk-test-fake-reasoning-key"

    def test_empty_default_analysts_rejected(self) -> None:
        """Test that at least one analyst specialization is required."""
        with patch.dict(os.environ, {"DEFAULT_ANALYSTS": '["", "  "]'}, clear=True):
            with pytest.raises(ValidationError) as exc_info:
                Settings(_env_file=None)

        assert "DEFAULT_ANALYSTS" in str(exc_info.value)

    def test_default_analysts_stripped(self) -> None:
        with patch.dict(os.environ, {"DEFAULT_ANALYSTS": '[" market ", "team"]'}, clear=True):
            settings = Settings(_env_file=None)
        assert settings.DEFAULT_ANALYSTS == ["market", "team"]

    @pytest.mark.parametrize(
        "name,value",
        [
            ("SHORT_TIMEOUT_S", "0"),
            ("LONG_TIMEOUT_S", "-1"),
            ("PROVIDER_CONCURRENCY", "0"),
            ("VALIDATION_MAX_RETRIES", "9"),
            ("STALL_AFTER_SECONDS", "-5"),
            ("LOG_LEVEL", "CHATTY"),
        ],
    )
    def test_out_of_range_values_rejected(self, name: str, value: str) -> None:
        with patch.dict(os.environ, {name: value}, clear=True):
            with pytest.raises(ValidationError):
                Settings(_env_file=None)


class TestSettingsDefaults:
    """Tests for Settings default values."""

    def test_bare_environment(self) -> None:
        """Test that every field has a usable default."""
        with patch.dict(os.environ, {}, clear=True):
            clear_settings_cache()
            settings = Settings(_env_file=None)

        assert settings.DATA_DIR == Path("data")
        assert settings.INDEX_ENABLED is True
        assert settings.SHORT_TIMEOUT_S == 12.0
        assert settings.LONG_TIMEOUT_S == 40.0
        assert settings.PROVIDER_CONCURRENCY == 2
        assert settings.VALIDATION_MAX_RETRIES == 1
        assert settings.DEFAULT_ANALYSTS == ["market", "competition", "traction"]
        assert settings.STALL_AFTER_SECONDS == 0.0
        assert settings.REASONING_BASE_URL is None

    def test_index_path_defaults_under_data_dir(self, temp_dir: Path) -> None:
        with patch.dict(os.environ, {"DATA_DIR": str(temp_dir)}, clear=True):
            settings = Settings(_env_file=None)
        assert settings.index_path == temp_dir / "index.db"

    def test_index_path_override(self, temp_dir: Path) -> None:
        custom = temp_dir / "elsewhere" / "deals.db"
        with patch.dict(os.environ, {"INDEX_PATH": str(custom)}, clear=True):
            settings = Settings(_env_file=None)
        assert settings.index_path == custom

    def test_ensure_directories(self, temp_dir: Path) -> None:
        data_dir = temp_dir / "nested" / "data"
        with patch.dict(os.environ, {"DATA_DIR": str(data_dir)}, clear=True):
            Settings(_env_file=None).ensure_directories()
        assert data_dir.is_dir()


class TestSettingsCache:
    """Tests for the cached settings singleton."""

    def test_get_settings_is_cached(self, mock_env_vars: dict[str, str]) -> None:
        assert get_settings() is get_settings()

    def test_clear_settings_cache(self, mock_env_vars: dict[str, str]) -> None:
        first = get_settings()
        with patch.dict(os.environ, {"PROVIDER_CONCURRENCY": "7"}):
            clear_settings_cache()
            second = get_settings()

        assert first is not second
        assert second.PROVIDER_CONCURRENCY == 7


class TestRedactedDisplay:
    """Tests for settings display."""

    def test_api_keys_redacted(self, mock_env_vars: dict[str, str]) -> None:
        display = get_settings().redacted_display()

        assert display["REASONING_API_KEY"] == "rk-test-...-key"
        assert "fake-reasoning" not in str(display)
        assert display["SEARCH_API_KEY"] is None

    def test_short_keys_fully_hidden(self) -> None:
        with patch.dict(os.environ, {"SEARCH_API_KEY": "short"}, clear=True):
            display = Settings(_env_file=None).redacted_display()
        assert display["SEARCH_API_KEY"] == "***"

    def test_display_covers_index_path(self, mock_settings: Settings) -> None:
        display = mock_settings.redacted_display()
        assert display["INDEX_PATH"] == str(mock_settings.DATA_DIR / "index.db")
