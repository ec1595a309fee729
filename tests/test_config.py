"""Tests for configuration loading."""

import os

import pytest

from tillsync.config import Config, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep host TILLSYNC_* variables out of these tests."""
    for key in list(os.environ):
        if key.startswith("TILLSYNC_"):
            monkeypatch.delenv(key)


class TestLoadConfig:
    def test_defaults_without_file(self):
        config = load_config()

        assert isinstance(config, Config)
        assert config.terminal.terminal_id == "terminal-1"
        assert config.sync.sync_interval_seconds == 30
        assert config.sync.batch_size == 50
        assert config.server.port == 8000
        assert config.relay.jwt_algorithm == "HS256"

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "nope.yaml")
        assert config.sync.enabled is True

    def test_yaml_sections(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            """
terminal:
  terminal_id: till-2
  store_id: store-1
sync:
  server_url: http://gateway:8000
  sync_interval_seconds: 15
server:
  port: 9000
relay:
  jwt_secret: s3cret
"""
        )

        config = load_config(path)

        assert config.terminal.terminal_id == "till-2"
        assert config.terminal.store_id == "store-1"
        assert config.sync.server_url == "http://gateway:8000"
        assert config.sync.sync_interval_seconds == 15
        # Keys absent from the file keep their defaults
        assert config.sync.batch_size == 50
        assert config.server.port == 9000
        assert config.relay.jwt_secret == "s3cret"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        config = load_config(path)

        assert config.server.host == "0.0.0.0"

    def test_env_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("sync:\n  sync_interval_seconds: 15\n")
        monkeypatch.setenv("TILLSYNC_SYNC_INTERVAL", "45")
        monkeypatch.setenv("TILLSYNC_SYNC_ENABLED", "no")
        monkeypatch.setenv("TILLSYNC_STORE_ID", "store-9")
        monkeypatch.setenv("TILLSYNC_SERVER_PORT", "8100")
        monkeypatch.setenv("TILLSYNC_RELAY_JWT_SECRET", "from-env")

        config = load_config(path)

        assert config.sync.sync_interval_seconds == 45
        assert config.sync.enabled is False
        assert config.terminal.store_id == "store-9"
        assert config.server.port == 8100
        assert config.relay.jwt_secret == "from-env"

    def test_sync_key_falls_back_to_server_key(self, monkeypatch):
        monkeypatch.setenv("TILLSYNC_SERVER_API_KEY", "shared")

        config = load_config()

        assert config.sync.api_key == "shared"

    def test_explicit_sync_key_kept(self, monkeypatch):
        monkeypatch.setenv("TILLSYNC_SERVER_API_KEY", "shared")
        monkeypatch.setenv("TILLSYNC_SYNC_API_KEY", "terminal-key")

        config = load_config()

        assert config.sync.api_key == "terminal-key"
