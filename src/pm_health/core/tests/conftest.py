"""
Core layer test fixtures.

Provides a config store, recording notifier and mock process manager for
testing the decision engine without PM2 or Telegram.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from pm_health.config.settings import HealthConfig
from pm_health.config.store import ConfigStore
from pm_health.core.scheduler import Scheduler


class RecordingNotifier:
    """Notifier double that keeps every alert it is asked to send."""

    def __init__(self):
        self.sent = []

    async def send(self, alert):
        self.sent.append(alert)


# =============================================================================
# Config Fixtures
# =============================================================================

@pytest.fixture
def make_store():
    """Factory for a ConfigStore built from camelCase config keys."""
    def _make(**data):
        data.setdefault("appsExcluded", [])
        return ConfigStore(HealthConfig.from_dict(data))
    return _make


@pytest.fixture
def store(make_store):
    """Store monitoring every process, with exceptions and messages enabled."""
    return make_store(exceptions=True, messages=True)


# =============================================================================
# Collaborator Fixtures
# =============================================================================

@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def scheduler():
    scheduler = Scheduler()
    yield scheduler
    await scheduler.close()


@pytest.fixture
def mock_manager():
    """Mock process manager with an empty process list."""
    manager = MagicMock()
    manager.list_processes = AsyncMock(return_value=[])
    return manager


@pytest.fixture
def mock_snapshot():
    """Mock snapshot store with no recorded values."""
    snapshot = MagicMock()
    snapshot.last = MagicMock(return_value=None)
    snapshot.send = AsyncMock(return_value=False)
    return snapshot
