"""
Unit tests for environment configuration.
"""

import pytest

from dbaas.gridsync_server.config import HttpConfig, ServerConfig


class TestServerConfig:
    """Tests for ServerConfig."""

    def test_defaults(self, monkeypatch):
        for name in ("PORT", "DB_PATH", "API_KEY", "LONG_POLL_MAX_MS", "LOG_FORMAT"):
            monkeypatch.delenv(name, raising=False)

        config = ServerConfig.from_env()

        assert config.http.port == 4000
        assert config.http.api_key is None
        assert config.http.long_poll_max_ms == 30000
        assert config.sync.default_key_column == "id"
        assert config.collab.presence_ttl_seconds == 10
        assert config.storage.db_path == "./data/gridsync.db"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("PORT", "8080")
        monkeypatch.setenv("CORS_ORIGINS", "http://a.test, http://b.test")
        monkeypatch.setenv("API_KEY", "secret")
        monkeypatch.setenv("LOCK_TTL_SECONDS", "30")

        config = ServerConfig.from_env()

        assert config.http.port == 8080
        assert config.http.cors_origins == ("http://a.test", "http://b.test")
        assert config.http.api_key == "secret"
        assert config.collab.lock_ttl_seconds == 30

    def test_invalid_log_format(self, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "xml")
        with pytest.raises(ValueError):
            ServerConfig.from_env()

    def test_invalid_long_poll(self):
        config = ServerConfig(http=HttpConfig(long_poll_max_ms=0))
        with pytest.raises(ValueError):
            config.validate()
