"""Tests for configuration loading."""

from hrsync.config import Config, RemoteConfig, load_config


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults(self):
        """Test default configuration without a file."""
        config = load_config()

        assert config.service.name == "hrsync"
        assert config.remote.base_url == ""
        assert config.sync.batch_size == 50
        assert config.sync.auto_sync is False
        assert config.dashboard.port == 8080

    def test_missing_file_uses_defaults(self, tmp_path):
        """Test a missing config file is not an error."""
        config = load_config(tmp_path / "missing.yaml")

        assert isinstance(config, Config)
        assert config.sync.max_retries == 3

    def test_yaml_file(self, tmp_path):
        """Test values from a YAML file."""
        path = tmp_path / "config.yaml"
        path.write_text(
            """
service:
  name: hr-office
remote:
  base_url: http://hr.local/api
  max_retries: 5
  entity_paths:
    leave: /leave-requests
sync:
  db_path: /tmp/hrsync-test.db
  batch_size: 10
  auto_sync: true
  auto_sync_interval_seconds: 15
dashboard:
  port: 9000
"""
        )

        config = load_config(path)

        assert config.service.name == "hr-office"
        assert config.remote.base_url == "http://hr.local/api"
        assert config.remote.max_retries == 5
        assert config.remote.path_for("leave") == "/leave-requests"
        assert config.remote.path_for("employee") == "/employees"
        assert config.sync.batch_size == 10
        assert config.sync.auto_sync is True
        assert config.sync.auto_sync_interval_seconds == 15
        assert config.dashboard.port == 9000
        assert config.dashboard.host == "127.0.0.1"

    def test_env_overrides(self, tmp_path, monkeypatch):
        """Test HRSYNC_ environment variables override the file."""
        path = tmp_path / "config.yaml"
        path.write_text("sync:\n  batch_size: 10\n")
        monkeypatch.setenv("HRSYNC_SYNC_BATCH_SIZE", "25")
        monkeypatch.setenv("HRSYNC_SYNC_AUTO", "yes")
        monkeypatch.setenv("HRSYNC_REMOTE_URL", "http://override:3000/api")
        monkeypatch.setenv("HRSYNC_REMOTE_API_TOKEN", "token-1")

        config = load_config(path)

        assert config.sync.batch_size == 25
        assert config.sync.auto_sync is True
        assert config.remote.base_url == "http://override:3000/api"
        assert config.remote.api_token == "token-1"


class TestRemoteConfig:
    """Tests for RemoteConfig."""

    def test_unknown_entity_path(self):
        """Test unknown entity types get a plural collection path."""
        assert RemoteConfig().path_for("badge") == "/badges"

    def test_natural_key_default(self):
        """Test employees are matched by email by default."""
        assert RemoteConfig().natural_keys == {"employee": "email"}
