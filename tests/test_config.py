"""Tests for configuration loading."""

import os

import pytest

from tidesync.config import Config, SyncConfig, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove any TIDESYNC_ variables from the environment."""
    for key in list(os.environ):
        if key.startswith("TIDESYNC_"):
            monkeypatch.delenv(key)


class TestDefaults:
    """Tests for built-in defaults."""

    def test_defaults(self):
        config = load_config()

        assert isinstance(config, Config)
        assert config.sync.max_retries == 5
        assert config.sync.base_delay_ms == 2000
        assert config.sync.batch_size == 10
        assert config.sync.scope_id is None
        assert config.sync.lease_enabled is False
        assert config.scheduler.minimum_interval_minutes == 15
        assert config.store.log_retention_days == 7

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.yaml")

        assert config.remote.base_url == "http://localhost:8787"


class TestYamlLoading:
    """Tests for YAML config files."""

    def test_load_sections(self, tmp_path):
        """Test every section is read from YAML."""
        path = tmp_path / "config.yaml"
        path.write_text(
            """
node:
  name: laptop
store:
  db_path: /tmp/tide.db
  log_retention_days: 3
remote:
  base_url: https://sync.example.com
  auth_token: abc
  request_timeout_seconds: 10
sync:
  max_retries: 3
  base_delay_ms: 500
  batch_size: 25
  scope_id: proj-1
  lease_enabled: true
scheduler:
  enabled: false
  minimum_interval_minutes: 30
"""
        )

        config = load_config(path)

        assert config.node.name == "laptop"
        assert config.store.db_path == "/tmp/tide.db"
        assert config.store.log_retention_days == 3
        assert config.store.purge_done_after_days == 30
        assert config.remote.base_url == "https://sync.example.com"
        assert config.remote.auth_token == "abc"
        assert config.remote.request_timeout_seconds == 10
        assert config.sync.max_retries == 3
        assert config.sync.base_delay_ms == 500
        assert config.sync.batch_size == 25
        assert config.sync.scope_id == "proj-1"
        assert config.sync.lease_enabled is True
        assert config.scheduler.enabled is False
        assert config.scheduler.minimum_interval_minutes == 30

    def test_partial_sections_keep_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("sync:\n  batch_size: 2\n")

        config = load_config(path)

        assert config.sync.batch_size == 2
        assert config.sync.max_retries == 5

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(path).sync.batch_size == 10

    def test_invalid_values_rejected(self, tmp_path):
        """Test that invalid sync settings fail validation."""
        path = tmp_path / "config.yaml"
        path.write_text("sync:\n  max_retries: 0\n")

        with pytest.raises(ValueError, match="max_retries"):
            load_config(path)


class TestEnvOverrides:
    """Tests for TIDESYNC_ environment overrides."""

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        """Test environment variables win over the YAML file."""
        path = tmp_path / "config.yaml"
        path.write_text("sync:\n  batch_size: 2\nremote:\n  base_url: http://file\n")
        monkeypatch.setenv("TIDESYNC_BATCH_SIZE", "7")
        monkeypatch.setenv("TIDESYNC_REMOTE_URL", "http://env")
        monkeypatch.setenv("TIDESYNC_LEASE_ENABLED", "yes")
        monkeypatch.setenv("TIDESYNC_SCOPE_ID", "proj-9")
        monkeypatch.setenv("TIDESYNC_REQUEST_TIMEOUT", "2.5")

        config = load_config(path)

        assert config.sync.batch_size == 7
        assert config.remote.base_url == "http://env"
        assert config.sync.lease_enabled is True
        assert config.sync.scope_id == "proj-9"
        assert config.remote.request_timeout_seconds == 2.5

    def test_env_validation(self, monkeypatch):
        monkeypatch.setenv("TIDESYNC_BATCH_SIZE", "0")

        with pytest.raises(ValueError, match="batch_size"):
            load_config()


class TestSyncConfig:
    def test_negative_delay_rejected(self):
        with pytest.raises(ValueError):
            SyncConfig(base_delay_ms=-1)
