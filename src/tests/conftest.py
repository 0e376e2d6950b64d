"""Pytest configuration and fixtures."""

import pytest
from fastapi.testclient import TestClient

from abuseguard.clock import ManualClock
from abuseguard.config import Settings

START = 1_700_000_000.0


@pytest.fixture
def clock():
    """A clock that only moves when the test advances it."""
    return ManualClock(START)


@pytest.fixture
def settings():
    """Default settings, isolated from the environment and any .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def aggregator(settings, clock):
    from abuseguard.monitor import AlertAggregator

    return AlertAggregator(
        settings.monitoring.alert_thresholds,
        settings.monitoring.alert_cooldown_ms / 1000,
        clock,
    )


@pytest.fixture
def bus(aggregator, clock):
    """Security event bus wired to the aggregator fixture."""
    from abuseguard.monitor import SecurityEventBus

    return SecurityEventBus(aggregator, clock)


@pytest.fixture
def registry(settings, clock, bus):
    """Limiter registry built from the default scope table."""
    from abuseguard.limiter import LimiterRegistry

    return LimiterRegistry.from_settings(settings, clock, bus)


@pytest.fixture
def context():
    """A plain anonymous request."""
    from abuseguard.models import RequestContext

    return RequestContext(ip="203.0.113.7", userAgent="pytest", path="/api/tracks")


@pytest.fixture
def app(settings, clock):
    """A fresh application with its own registries and a manual clock."""
    from abuseguard.app import create_app

    return create_app(settings, clock)


@pytest.fixture
def client(app):
    """Test client that returns 500 responses instead of raising."""
    return TestClient(app, raise_server_exceptions=False)
