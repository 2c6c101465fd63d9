"""
Configuration layer test fixtures.
"""
import pytest

from pm_health.config.settings import HealthConfig
from pm_health.config.store import ConfigStore


@pytest.fixture
def base_config():
    """Config with an exclusion list and one probe rule."""
    return HealthConfig.from_dict({
        "appsExcluded": ["worker"],
        "metricIntervalS": 120,
        "metric": {"cpu": {"op": ">", "target": 90}},
    })


@pytest.fixture
def store(base_config):
    return ConfigStore(base_config)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove environment overrides that would leak into load_config()."""
    for name in (
        "PM_HEALTH_CONFIG",
        "TELEGRAM_BOT_TOKEN",
        "TELEGRAM_CHAT_ID",
        "PM_HEALTH_DEBUG",
        "DASHBOARD_ENABLED",
        "DASHBOARD_HOST",
        "DASHBOARD_PORT",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
