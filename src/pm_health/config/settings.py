"""
Configuration models and loading.

The engine reads its configuration from:
    1. A JSON file (``--config``, ``PM_HEALTH_CONFIG`` or ./pm-health.json)
    2. Environment variables for secrets and the admin HTTP server

JSON keys are camelCase (``metricIntervalS``, ``appsExcluded``...), the
same names the remote configuration endpoint serves.
"""
from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pm_health.core.probes import MetricProbeRule

logger = logging.getLogger(__name__)

# Minimum seconds between two poll cycles
METRIC_INTERVAL_S = 60
DEFAULT_ALIVE_TIMEOUT_S = 600
DEFAULT_BATCH_MAX_MESSAGES = 20
SELF_NAME = "pm-health"
DEFAULT_CONFIG_FILE = "pm-health.json"


class BasicAuth(BaseModel):
    """HTTP basic auth credentials."""

    user: Optional[str] = None
    password: Optional[str] = None


class WebConfig(BaseModel):
    """Remote configuration source."""

    model_config = ConfigDict(populate_by_name=True)

    url: Optional[str] = None
    auth: Optional[BasicAuth] = None
    fetch_interval_m: float = Field(default=0, alias="fetchIntervalM")


class SnapshotConfig(BaseModel):
    """Where and how often the metric digest is sent."""

    model_config = ConfigDict(populate_by_name=True)

    url: Optional[str] = None
    auth: Optional[BasicAuth] = None
    token: Optional[str] = None
    send_interval_m: float = Field(default=60, alias="sendIntervalM")
    disabled: bool = False


# remote / file key -> HealthConfig field
FIELD_NAMES: Dict[str, str] = {
    "events": "events",
    "metric": "metric",
    "exceptions": "exceptions",
    "messages": "messages",
    "messageExcludeExps": "message_exclude_exps",
    "appsIncluded": "apps_included",
    "appsExcluded": "apps_excluded",
    "metricIntervalS": "metric_interval_s",
    "addLogs": "add_logs",
    "aliveTimeoutS": "alive_timeout_s",
    "batchPeriodM": "batch_period_m",
    "batchMaxMessages": "batch_max_messages",
    "chatIds": "chat_ids",
    "telegramBotToken": "telegram_bot_token",
    "selfName": "self_name",
    "debugLogEnabled": "debug_log_enabled",
    "dashboardEnabled": "dashboard_enabled",
    "dashboardHost": "dashboard_host",
    "dashboardPort": "dashboard_port",
    "pm2WatchIntervalS": "pm2_watch_interval_s",
}


@dataclass(frozen=True)
class HealthConfig:
    """Complete engine configuration. Replaced as a whole, never edited in place."""

    # Event routing
    events: Optional[List[str]] = None
    exceptions: bool = False
    messages: bool = False
    message_exclude_exps: Optional[List[str]] = None
    add_logs: bool = False

    # Process selection
    apps_included: Optional[List[str]] = None
    apps_excluded: Optional[List[str]] = None
    self_name: str = SELF_NAME

    # Metric probes
    metric: Dict[str, MetricProbeRule] = field(default_factory=dict)
    metric_interval_s: Optional[float] = None

    # Liveness
    alive_timeout_s: float = DEFAULT_ALIVE_TIMEOUT_S

    # Notification
    batch_period_m: float = 0
    batch_max_messages: int = DEFAULT_BATCH_MAX_MESSAGES
    chat_ids: List[str] = field(default_factory=list)
    telegram_bot_token: Optional[str] = None

    # Collaborators
    web_config: Optional[WebConfig] = None
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    pm2_watch_interval_s: float = 5

    # Admin HTTP server
    dashboard_enabled: bool = True
    dashboard_host: str = "127.0.0.1"
    dashboard_port: int = 9060

    debug_log_enabled: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HealthConfig":
        """Build a config from camelCase JSON keys. Unknown keys are ignored."""
        values: Dict[str, Any] = {}

        for key, name in FIELD_NAMES.items():
            if data.get(key) is not None:
                values[name] = coerce_field(name, data[key])

        if data.get("webConfig") is not None:
            values["web_config"] = WebConfig.model_validate(data["webConfig"])
        if data.get("snapshot") is not None:
            values["snapshot"] = SnapshotConfig.model_validate(data["snapshot"])

        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        """JSON friendly view, secrets masked."""
        data = asdict(self)
        data["metric"] = {
            key: rule.model_dump(by_alias=True, exclude_defaults=True)
            for key, rule in self.metric.items()
        }
        data["web_config"] = (
            self.web_config.model_dump(by_alias=True, exclude={"auth"}) if self.web_config else None
        )
        data["snapshot"] = self.snapshot.model_dump(by_alias=True, exclude={"auth", "token"})
        if self.telegram_bot_token:
            data["telegram_bot_token"] = "***"
        return data


def parse_rules(raw: Any) -> Dict[str, MetricProbeRule]:
    """
    Parse the ``metric`` map into rules.

    An invalid rule is logged and dropped; the others are kept.
    """
    if not isinstance(raw, Mapping):
        logger.error(f"metric config must be an object, got {type(raw).__name__}")
        return {}

    rules: Dict[str, MetricProbeRule] = {}
    for key, value in raw.items():
        try:
            rules[str(key)] = MetricProbeRule.model_validate(value or {})
        except ValidationError as e:
            logger.error(f"Invalid probe rule [{key}]: {e.errors()[0].get('msg', e)}")
    return rules


# numeric fields; values that are not finite numbers are rejected
NUMERIC_FIELDS = (
    "metric_interval_s",
    "alive_timeout_s",
    "batch_period_m",
    "batch_max_messages",
    "pm2_watch_interval_s",
)


def coerce_field(name: str, value: Any) -> Any:
    """
    Convert a raw JSON value for a HealthConfig field.

    Raises:
        ValueError: A numeric field got something other than a finite number
    """
    if name == "metric":
        return parse_rules(value)
    if name == "chat_ids":
        values = value if isinstance(value, list) else [value]
        return [str(v) for v in values]
    if name in NUMERIC_FIELDS:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise ValueError(f"{name} must be a number, got {value!r}")
        if name == "batch_max_messages":
            return int(value)
    return value


def load_env_file(path: str = ".env") -> None:
    """Load environment variables from .env file if it exists."""
    env_path = Path(path)
    if env_path.exists():
        logger.info(f"Loading environment from {env_path}")
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    value = value.strip().strip('"').strip("'")
                    os.environ.setdefault(key.strip(), value)


def load_config(path: Optional[str] = None) -> HealthConfig:
    """
    Load configuration from a JSON file and environment variables.

    Environment Variables:
        PM_HEALTH_CONFIG     Path of the JSON configuration file
        TELEGRAM_BOT_TOKEN   Bot token for alert delivery
        TELEGRAM_CHAT_ID     Comma separated chat ids, added to chatIds
        PM_HEALTH_DEBUG      "true" enables debug logging
        DASHBOARD_ENABLED    "false" disables the admin HTTP server
        DASHBOARD_HOST       Admin HTTP bind address
        DASHBOARD_PORT       Admin HTTP port
    """
    config_path = Path(path or os.environ.get("PM_HEALTH_CONFIG", DEFAULT_CONFIG_FILE))

    data: Dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{config_path} must contain a JSON object")
        logger.info(f"Loaded configuration from {config_path}")
    elif path:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    else:
        logger.warning(f"No configuration file at {config_path}, using defaults")

    if os.environ.get("TELEGRAM_BOT_TOKEN"):
        data["telegramBotToken"] = os.environ["TELEGRAM_BOT_TOKEN"]

    if os.environ.get("TELEGRAM_CHAT_ID"):
        chat_ids = list(data.get("chatIds") or [])
        for chat_id in os.environ["TELEGRAM_CHAT_ID"].split(","):
            if chat_id.strip() and chat_id.strip() not in chat_ids:
                chat_ids.append(chat_id.strip())
        data["chatIds"] = chat_ids

    if os.environ.get("PM_HEALTH_DEBUG"):
        data["debugLogEnabled"] = os.environ["PM_HEALTH_DEBUG"].lower() == "true"

    if os.environ.get("DASHBOARD_ENABLED"):
        data["dashboardEnabled"] = os.environ["DASHBOARD_ENABLED"].lower() == "true"
    if os.environ.get("DASHBOARD_HOST"):
        data["dashboardHost"] = os.environ["DASHBOARD_HOST"]
    if os.environ.get("DASHBOARD_PORT"):
        data["dashboardPort"] = int(os.environ["DASHBOARD_PORT"])

    return HealthConfig.from_dict(data)
