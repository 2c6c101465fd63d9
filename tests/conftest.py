"""
Shared test fixtures for integration tests.

This file provides fixtures that span multiple components,
unlike component-specific fixtures in src/pm_health/{component}/tests/conftest.py
"""
import json

import pytest

from pm_health.config.settings import HealthConfig
from pm_health.core.scheduler import Scheduler


# =============================================================================
# Process Manager Fixtures
# =============================================================================

class ScriptedPm2:
    """Stands in for the pm2 CLI; ``processes`` is what jlist returns."""

    def __init__(self):
        self.processes = []
        self.fail_jlist = False

    async def __call__(self, args):
        if args[1] == "ping":
            return 0, "pong", ""
        if args[1] == "jlist":
            if self.fail_jlist:
                return 1, "", "connect ECONNREFUSED"
            return 0, json.dumps(self.processes), ""
        return 1, "", f"unknown command {args[1]}"


def jlist_app(name, pm_id, status="online", restart_time=0, monitor=None):
    return {
        "name": name,
        "pm_id": pm_id,
        "pm2_env": {
            "status": status,
            "restart_time": restart_time,
            "axm_monitor": {key: {"value": value} for key, value in (monitor or {}).items()},
        },
    }


@pytest.fixture
def pm2():
    return ScriptedPm2()


@pytest.fixture
def jlist():
    """Factory for pm2 jlist entries."""
    return jlist_app


# =============================================================================
# Alert Fixtures
# =============================================================================

class RecordingTransport:
    """Alert transport that keeps delivered alerts instead of calling Telegram."""

    def __init__(self):
        self.delivered = []

    async def deliver(self, alert):
        self.delivered.append(alert)

    def subjects(self):
        return [alert.subject for alert in self.delivered]


@pytest.fixture
def transport():
    return RecordingTransport()


# =============================================================================
# Engine Fixtures
# =============================================================================

@pytest.fixture
def make_config():
    """Engine config for tests: admin API off, fast pm2 watch."""
    def _make(**data):
        data.setdefault("appsExcluded", [])
        data.setdefault("dashboardEnabled", False)
        data.setdefault("pm2WatchIntervalS", 0.02)
        return HealthConfig.from_dict(data)
    return _make


@pytest.fixture
async def scheduler():
    scheduler = Scheduler()
    yield scheduler
    await scheduler.close()
