"""Tests for configuration loading."""

import os

import pytest

from crdtrelay.config import Config, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Drop any CRDTRELAY_ variables from the environment."""
    for key in list(os.environ):
        if key.startswith("CRDTRELAY_"):
            monkeypatch.delenv(key)


class TestDefaults:
    """Tests for built-in defaults."""

    def test_defaults(self):
        """Test defaults when no file is given."""
        config = load_config(None)

        assert config.server.host == "0.0.0.0"
        assert config.server.port == 8006
        assert config.server.cors_origins == ["*"]
        assert config.server.max_body_bytes == 20 * 1024 * 1024
        assert config.storage.busy_timeout_seconds == 5.0
        assert config.clock.max_drift_ms == 60000
        assert config.client.retry_max_attempts == 3

    def test_missing_file_uses_defaults(self, tmp_path):
        """Test a nonexistent path falls back to defaults."""
        config = load_config(tmp_path / "missing.yaml")

        assert config == Config()


class TestYaml:
    """Tests for YAML config files."""

    def test_load_sections(self, tmp_path):
        """Test each section is read from the file."""
        path = tmp_path / "config.yaml"
        path.write_text(
            """
server:
  port: 9000
  cors_origins:
    - https://app.example.com
storage:
  db_path: /var/lib/crdtrelay/db.sqlite
clock:
  max_drift_ms: 5000
client:
  server_url: http://relay:9000
  group_id: household
"""
        )

        config = load_config(path)

        assert config.server.port == 9000
        assert config.server.host == "0.0.0.0"
        assert config.server.cors_origins == ["https://app.example.com"]
        assert config.storage.db_path == "/var/lib/crdtrelay/db.sqlite"
        assert config.storage.busy_timeout_seconds == 5.0
        assert config.clock.max_drift_ms == 5000
        assert config.client.server_url == "http://relay:9000"
        assert config.client.group_id == "household"

    def test_empty_file(self, tmp_path):
        """Test an empty file gives defaults."""
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(path) == Config()


class TestEnvOverrides:
    """Tests for CRDTRELAY_ environment variables."""

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        """Test environment variables win over the file."""
        path = tmp_path / "config.yaml"
        path.write_text("server:\n  port: 9000\n")
        monkeypatch.setenv("CRDTRELAY_PORT", "9100")
        monkeypatch.setenv("CRDTRELAY_DB_PATH", "/tmp/relay.db")
        monkeypatch.setenv("CRDTRELAY_CORS_ORIGINS", "https://a.example, https://b.example")
        monkeypatch.setenv("CRDTRELAY_MAX_DRIFT_MS", "1000")
        monkeypatch.setenv("CRDTRELAY_BUSY_TIMEOUT", "2.5")

        config = load_config(path)

        assert config.server.port == 9100
        assert config.storage.db_path == "/tmp/relay.db"
        assert config.server.cors_origins == ["https://a.example", "https://b.example"]
        assert config.clock.max_drift_ms == 1000
        assert config.storage.busy_timeout_seconds == 2.5

    def test_client_env(self, monkeypatch):
        """Test client settings can come from the environment."""
        monkeypatch.setenv("CRDTRELAY_SERVER_URL", "http://relay:1234")
        monkeypatch.setenv("CRDTRELAY_GROUP_ID", "g1")
        monkeypatch.setenv("CRDTRELAY_REPLICA_ID", "phone")

        config = load_config()

        assert config.client.server_url == "http://relay:1234"
        assert config.client.group_id == "g1"
        assert config.client.replica_id == "phone"

    def test_index_keep(self, tmp_path, monkeypatch):
        """Test index pruning can be set in the file and overridden by env."""
        path = tmp_path / "config.yaml"
        path.write_text("client:\n  index_keep: 4\n")

        assert Config().client.index_keep == 2
        assert load_config(path).client.index_keep == 4

        monkeypatch.setenv("CRDTRELAY_INDEX_KEEP", "0")
        assert load_config(path).client.index_keep == 0
