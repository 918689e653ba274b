"""Tests for configuration loading."""

from datetime import timedelta

from procflow.cache import InMemoryInstanceCache, NullCache, RedisInstanceCache, get_cache
from procflow.config import load_config


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
database_url: sqlite:///tmp/procflow.db
cache:
  backend: redis
  ttl: 5
  redis:
    host: testhost
    port: 1234
retry:
  max_attempts: 4
  backoff: fixed
  delay: 0.5
engine:
  max_concurrent_instances: 2
"""
    )
    monkeypatch.setenv("PROCFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("PROCFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.database_url == "sqlite:///tmp/procflow.db"
    assert config.cache.backend == "redis"
    assert config.cache.redis.host == "testhost"
    assert config.cache.redis.port == 1234
    assert config.retry.max_attempts == 4
    assert config.retry.backoff == "fixed"
    assert config.engine.max_concurrent_instances == 2


def test_missing_file_gives_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("PROCFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.delenv("PROCFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.database_url is None
    assert config.cache.backend == "none"
    assert config.retry.max_attempts == 1


def test_database_url_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite:///from-file.db\n")
    monkeypatch.setenv("PROCFLOW_CONFIG", str(config_path))
    monkeypatch.setenv("PROCFLOW_DATABASE_URL", "sqlite:///from-env.db")

    assert load_config().database_url == "sqlite:///from-env.db"


def test_get_cache_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
cache:
  backend: redis
  ttl: 12
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("PROCFLOW_CONFIG", str(config_path))

    cache = get_cache()
    assert isinstance(cache, RedisInstanceCache)
    assert cache.host == "confighost"
    assert cache.port == 6380
    assert cache.ttl == 12

    assert isinstance(get_cache("memory"), InMemoryInstanceCache)
    assert isinstance(get_cache("none"), NullCache)


def test_engine_retention_accepts_seconds(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("engine:\n  retention: 86400\n")
    monkeypatch.setenv("PROCFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.engine.retention == timedelta(days=1)


def test_engine_retention_unset_by_default(tmp_path, monkeypatch):
    monkeypatch.setenv("PROCFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    assert load_config().engine.retention is None
