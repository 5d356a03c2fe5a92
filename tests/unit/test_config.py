"""Tests for configuration loading."""

from flowrelay.config import load_config
from flowrelay.persistence import InMemoryRepository, SQLiteRepository, get_repository


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
runner:
  lease_seconds: 60
  lease_wait_attempts: 2
local_flow:
  base_url: http://flows.internal/api/v1
logging:
  level: debug
"""
    )
    monkeypatch.setenv("FLOWRELAY_CONFIG", str(config_path))

    config = load_config()
    assert config.runner.lease_seconds == 60
    assert config.runner.lease_wait_attempts == 2
    assert config.runner.http_timeout == 30000
    assert config.local_flow.base_url == "http://flows.internal/api/v1"
    assert config.logging.level == "debug"


def test_missing_config_file_uses_defaults(tmp_path):
    config = load_config(str(tmp_path / "absent.yaml"))
    assert config.database_url is None
    assert config.runner.lease_seconds == 300


def test_database_url_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite:///from-file.db\n")
    monkeypatch.setenv("FLOWRELAY_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")

    config = load_config(str(config_path))
    assert config.database_url == f"sqlite://{tmp_path / 'env.db'}"


def test_get_repository_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(f"database_url: sqlite://{tmp_path / 'runs.db'}\n")
    monkeypatch.setenv("FLOWRELAY_CONFIG", str(config_path))

    repo = get_repository()
    assert isinstance(repo, SQLiteRepository)
    assert repo.db_path == str(tmp_path / "runs.db")
    assert get_repository() is repo


def test_get_repository_defaults_to_memory():
    assert isinstance(get_repository(), InMemoryRepository)
