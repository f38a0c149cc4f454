"""Tests for configuration loading."""

import pytest

from offsync.config import Config, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep OFFSYNC_ variables from the host out of the tests."""
    import os

    for key in list(os.environ):
        if key.startswith("OFFSYNC_"):
            monkeypatch.delenv(key)


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults(self):
        """Test defaults when no file is given."""
        config = load_config()

        assert config.store.db_path == "~/.offsync/offsync.db"
        assert config.transport.base_url == ""
        assert config.connectivity.guard_interval_seconds == 2.0
        assert config.queue.max_retries == 3
        assert config.queue.max_size == 100
        assert config.sync.auto_sync is True
        assert config.probe_url == ""

    def test_missing_file_uses_defaults(self, tmp_path):
        """Test a missing config file is not an error."""
        config = load_config(tmp_path / "nope.yaml")

        assert config.queue.max_retries == 3

    def test_yaml_file(self, tmp_path):
        """Test values are read from YAML sections."""
        path = tmp_path / "config.yaml"
        path.write_text(
            """
store:
  db_path: /var/lib/offsync.db
transport:
  base_url: https://api.example.com
  timeout_seconds: 10
  headers:
    Authorization: Bearer abc
connectivity:
  probe_url: https://api.example.com/health
  guard_interval_seconds: 5
queue:
  max_retries: 4
sync:
  auto_sync: false
  backoff_max_seconds: 120
"""
        )

        config = load_config(path)

        assert config.store.db_path == "/var/lib/offsync.db"
        assert config.transport.base_url == "https://api.example.com"
        assert config.transport.timeout_seconds == 10
        assert config.transport.headers == {"Authorization": "Bearer abc"}
        assert config.probe_url == "https://api.example.com/health"
        assert config.connectivity.guard_interval_seconds == 5
        assert config.connectivity.probe_interval_seconds == 15.0
        assert config.queue.max_retries == 4
        assert config.queue.max_size == 100
        assert config.sync.auto_sync is False
        assert config.sync.backoff_max_seconds == 120
        assert config.sync.backoff_base_seconds == 2.0

    def test_empty_file(self, tmp_path):
        """Test an empty YAML file yields defaults."""
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(path).sync.backoff_base_seconds == 2.0

    def test_env_overrides(self, tmp_path, monkeypatch):
        """Test OFFSYNC_ environment variables win over the file."""
        path = tmp_path / "config.yaml"
        path.write_text("queue:\n  max_retries: 4\n")
        monkeypatch.setenv("OFFSYNC_MAX_RETRIES", "9")
        monkeypatch.setenv("OFFSYNC_BASE_URL", "http://localhost:8000")
        monkeypatch.setenv("OFFSYNC_GUARD_INTERVAL", "0.5")
        monkeypatch.setenv("OFFSYNC_AUTO_SYNC", "no")
        monkeypatch.setenv("OFFSYNC_QUEUE_MAX_SIZE", "25")

        config = load_config(path)

        assert config.queue.max_retries == 9
        assert config.queue.max_size == 25
        assert config.transport.base_url == "http://localhost:8000"
        assert config.probe_url == "http://localhost:8000"
        assert config.connectivity.guard_interval_seconds == 0.5
        assert config.sync.auto_sync is False

    def test_probe_url_falls_back_to_base_url(self):
        """Test the probe targets the backend unless configured otherwise."""
        config = Config()
        config.transport.base_url = "https://api.example.com"

        assert config.probe_url == "https://api.example.com"

        config.connectivity.probe_url = "https://status.example.com"
        assert config.probe_url == "https://status.example.com"
