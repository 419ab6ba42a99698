"""Tests for configuration loading."""

from dealflow.config import load_config
from dealflow.transports import get_transport
from dealflow.transports.inmemory import InMemoryTransport
from dealflow.transports.redis import RedisTransport


def test_defaults_without_config_file():
    config = load_config()
    assert config.transport.backend == "inmemory"
    assert config.database_url is None
    assert config.retry.max_attempts == 3
    assert config.retry.base == 2.0
    assert config.webhook.timeout == 10.0
    assert config.scheduler.interval == 300.0
    assert config.templates.undefined == "empty"


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "dealflow.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
retry:
  max_attempts: 5
templates:
  undefined: strict
"""
    )
    monkeypatch.setenv("DEALFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.retry.max_attempts == 5
    assert config.templates.undefined == "strict"


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///tmp/other.db")
    monkeypatch.setenv("DEALFLOW_DATABASE_URL", "sqlite:///tmp/dealflow.db")
    monkeypatch.setenv("DEALFLOW_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("DEALFLOW_TRANSPORT", "redis")

    config = load_config()
    assert config.database_url == "sqlite:///tmp/dealflow.db"
    assert config.log_level == "DEBUG"
    assert config.transport.backend == "redis"


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("DEALFLOW_CONFIG", str(config_path))

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380


def test_get_transport_defaults_to_inmemory():
    assert isinstance(get_transport(), InMemoryTransport)
