"""Tests for configuration loading."""

from datetime import timedelta

from ratify.clock import FixedClock, ensure_utc
from ratify.config import load_config
from ratify.engine import WorkflowEngine
from ratify.notifications import TransportNotificationSink, WebhookNotificationSink
from ratify.persistence import InMemoryWorkflowRepository
from ratify.roster import CachedRoster, InMemoryRoster
from ratify.transports import InMemoryTransport, get_transport
from ratify.transports.redis import RedisTransport
from ratify.utils.retry import compute_backoff

from conftest import T0


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
engine:
  admin_role: controller
notifications:
  max_attempts: 5
  webhook_url: https://mail.example.com/hooks/approvals
roster:
  acme:
    manager: [u1, u4]
roster_cache_ttl: 30
log_level: DEBUG
"""
    )
    monkeypatch.setenv("RATIFY_CONFIG", str(config_path))
    monkeypatch.delenv("RATIFY_DATABASE_URL", raising=False)
    monkeypatch.setenv("DATABASE_URL", "sqlite:///tmp/ratify.db")

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.engine.admin_role == "controller"
    assert config.notifications.max_attempts == 5
    assert config.roster == {"acme": {"manager": ["u1", "u4"]}}
    assert config.database_url == "sqlite:///tmp/ratify.db"
    assert config.log_level == "DEBUG"


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("RATIFY_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("RATIFY_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.transport.backend == "inmemory"
    assert config.transport.max_subscribers == 64
    assert config.database_url is None
    assert config.engine.system_actor == "system"


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
    monkeypatch.setenv("RATIFY_CONFIG", str(config_path))
    monkeypatch.delenv("RATIFY_TRANSPORT", raising=False)

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380

    assert isinstance(get_transport("inmemory"), InMemoryTransport)
    # every call builds a separate channel
    assert get_transport("inmemory") is not get_transport("inmemory")


def test_engine_from_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
engine:
  admin_role: controller
notifications:
  webhook_url: https://mail.example.com/hooks/approvals
roster_cache_ttl: 30
"""
    )
    monkeypatch.setenv("RATIFY_CONFIG", str(config_path))
    config = load_config()

    engine = WorkflowEngine.from_config(
        config,
        repository=InMemoryWorkflowRepository(),
        roster=InMemoryRoster(),
        transport=InMemoryTransport(),
    )

    assert engine.router.admin_role == "controller"
    assert isinstance(engine.router.roster, CachedRoster)
    sink_types = {type(s) for s in engine.dispatcher.sinks}
    assert TransportNotificationSink in sink_types
    assert WebhookNotificationSink in sink_types


def test_compute_backoff_grows_with_attempts():
    assert 1.5 <= compute_backoff(1, jitter=0.5) <= 2.0
    assert compute_backoff(3, base=2, jitter=0) == 8
    assert compute_backoff(20, base=2, jitter=0) == 30.0


def test_fixed_clock():
    clock = FixedClock(T0.replace(tzinfo=None))
    assert clock.now() == T0
    assert clock.advance(timedelta(hours=2)) == T0 + timedelta(hours=2)
    assert ensure_utc(T0.replace(tzinfo=None)) == T0
