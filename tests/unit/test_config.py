"""Tests for comfychat.core.config — configuration management.

Tests cover:
- Default values for all configuration fields.
- Environment variable overrides via the COMFYCHAT_ prefix.
- Automatic data directory creation on initialisation.
- Pydantic validation constraints (port range, timeouts, log level).
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from comfychat.core.config import ComfyChatConfig


class TestConfigDefaults:
    """Verify that ComfyChatConfig provides sensible defaults."""

    def test_timeouts(self, test_config: ComfyChatConfig):
        assert test_config.request_timeout == 30.0
        assert test_config.retrieval_timeout == 60.0
        assert test_config.health_timeout == 10.0
        assert test_config.ws_heartbeat == 30.0

    def test_insecure_origin_by_default(self, monkeypatch, temp_dir):
        monkeypatch.delenv("COMFYCHAT_SECURE_ORIGIN", raising=False)
        cfg = ComfyChatConfig(data_dir=str(temp_dir), _env_file=None)
        assert cfg.secure_origin is False

    def test_default_server(self, monkeypatch, temp_dir):
        monkeypatch.delenv("COMFYCHAT_SERVER_PORT", raising=False)
        monkeypatch.delenv("COMFYCHAT_SERVER_HOST", raising=False)
        cfg = ComfyChatConfig(data_dir=str(temp_dir), _env_file=None)
        assert cfg.server_host == "127.0.0.1"
        assert cfg.server_port == 7870
        assert cfg.log_level == "INFO"


class TestEnvironmentOverrides:
    """Verify that COMFYCHAT_* variables are picked up."""

    def test_env_overrides(self, monkeypatch, temp_dir):
        monkeypatch.setenv("COMFYCHAT_SECURE_ORIGIN", "true")
        monkeypatch.setenv("COMFYCHAT_HEALTH_TIMEOUT", "2.5")
        monkeypatch.setenv("COMFYCHAT_DATA_DIR", str(temp_dir / "from-env"))

        cfg = ComfyChatConfig(_env_file=None)

        assert cfg.secure_origin is True
        assert cfg.health_timeout == 2.5
        assert cfg.data_dir == temp_dir / "from-env"


class TestPaths:
    """Verify directory creation and derived paths."""

    def test_data_dir_created(self, temp_dir):
        target = temp_dir / "a" / "b"
        ComfyChatConfig(data_dir=str(target), _env_file=None)
        assert target.is_dir()

    def test_database_path(self, temp_dir):
        cfg = ComfyChatConfig(data_dir=str(temp_dir), database_name="chat.db", _env_file=None)
        assert cfg.database_path == Path(temp_dir) / "chat.db"


class TestValidation:
    """Verify Pydantic constraints."""

    @pytest.mark.parametrize("port", [80, 70000])
    def test_port_out_of_range(self, temp_dir, port):
        with pytest.raises(ValidationError):
            ComfyChatConfig(data_dir=str(temp_dir), server_port=port, _env_file=None)

    def test_timeout_must_be_positive(self, temp_dir):
        with pytest.raises(ValidationError):
            ComfyChatConfig(data_dir=str(temp_dir), request_timeout=0, _env_file=None)

    def test_unknown_log_level(self, temp_dir):
        with pytest.raises(ValidationError):
            ComfyChatConfig(data_dir=str(temp_dir), log_level="TRACE", _env_file=None)
