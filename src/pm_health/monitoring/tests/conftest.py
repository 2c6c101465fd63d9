"""
Monitoring layer test fixtures.

Tests alert delivery, snapshots, admin actions and the admin HTTP API.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from pm_health.config.settings import HealthConfig
from pm_health.config.store import ConfigStore
from pm_health.core.scheduler import Scheduler
from pm_health.manager.bus import EventBus
from pm_health.monitoring.dashboard import Dashboard
from pm_health.monitoring.notifier import Notifier


class FakeTransport:
    """Transport double that records delivered alerts."""

    def __init__(self):
        self.delivered = []
        self.error = None

    async def deliver(self, alert):
        if self.error is not None:
            raise self.error
        self.delivered.append(alert)


# =============================================================================
# Config Fixtures
# =============================================================================

@pytest.fixture
def make_store():
    def _make(**data):
        return ConfigStore(HealthConfig.from_dict(data))
    return _make


@pytest.fixture
def store(make_store):
    return make_store(telegramBotToken="123:abc", chatIds=["42"])


# =============================================================================
# Notifier Fixtures
# =============================================================================

@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
async def scheduler():
    scheduler = Scheduler()
    yield scheduler
    await scheduler.close()


@pytest.fixture
def notifier(store, transport, scheduler):
    return Notifier(store, transport=transport, scheduler=scheduler)


# =============================================================================
# Mock Component Fixtures
# =============================================================================

@pytest.fixture
def mock_manager():
    """Mock process manager."""
    manager = MagicMock()
    manager.list_processes = AsyncMock(return_value=[{"name": "api", "pm_id": 0}])
    return manager


@pytest.fixture
def mock_snapshot():
    snapshot = MagicMock()
    snapshot.dump = AsyncMock(return_value="pm-health-snapshot.json")
    return snapshot


# =============================================================================
# Admin API Fixtures
# =============================================================================

@pytest.fixture
def mock_actions():
    actions = MagicMock()
    actions.run = AsyncMock(return_value="notifications unheld")
    return actions


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def make_app(mock_actions, bus):
    """Factory for the Flask test app; no event loop, coroutines run inline."""
    def _make(api_key=""):
        dashboard = Dashboard(mock_actions, bus=bus, api_key=api_key)
        return dashboard.create_app(testing=True)
    return _make


@pytest.fixture
def client(make_app):
    """Flask test client."""
    return make_app().test_client()
