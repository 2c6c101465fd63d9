"""
ConfigStore - Owner of the live configuration.

All readers go through ``store.current``. The only mutation entry point is
``apply_remote()``, which builds a new HealthConfig and swaps it in with a
single assignment; a poll cycle in progress keeps the snapshot it started
with and never sees a half-merged config.
"""
from __future__ import annotations

import dataclasses
import logging
import re
from typing import Any, Callable, Dict, List, Mapping, Optional, Pattern, Tuple

from pm_health.core.probes import MetricProbeRule

from .settings import FIELD_NAMES, METRIC_INTERVAL_S, HealthConfig, coerce_field

logger = logging.getLogger(__name__)

# keys that can be updated by the remote configuration
REMOTE_KEYS: Tuple[str, ...] = (
    "events",
    "metric",
    "exceptions",
    "messages",
    "messageExcludeExps",
    "appsExcluded",
    "metricIntervalS",
    "addLogs",
    "aliveTimeoutS",
    "batchPeriodM",
    "batchMaxMessages",
    "chatIds",
)

ChangeListener = Callable[[HealthConfig], Any]


class ConfigStore:
    """
    Holds the configuration and its derived state.

    Usage:
        store = ConfigStore(load_config())
        store.subscribe(notifier.config_changed)
        store.changed()

        if store.is_included("api"):
            rule = store.rule_for("cpu")
    """

    def __init__(self, config: Optional[HealthConfig] = None) -> None:
        config = config or HealthConfig()

        if config.metric_interval_s is None or config.metric_interval_s < METRIC_INTERVAL_S:
            logger.info(f"Setting default metric check interval {METRIC_INTERVAL_S} s.")
            config = dataclasses.replace(config, metric_interval_s=METRIC_INTERVAL_S)

        self._config = config
        self._exclusions: Tuple[Pattern[str], ...] = ()
        self._listeners: List[ChangeListener] = []

    @property
    def current(self) -> HealthConfig:
        """The live configuration snapshot."""
        return self._config

    @property
    def message_exclusions(self) -> Tuple[Pattern[str], ...]:
        return self._exclusions

    def subscribe(self, listener: ChangeListener) -> None:
        """Register a callback invoked with the new config after every change."""
        self._listeners.append(listener)

    def apply_remote(self, partial: Mapping[str, Any]) -> List[str]:
        """
        Merge a remote configuration payload.

        Only whitelisted keys with a non-null value are applied; anything
        else in the payload is ignored. A value of the wrong type is logged
        and skipped, keeping the current setting.

        Returns:
            The applied remote keys
        """
        changes: Dict[str, Any] = {}
        applied: List[str] = []

        for key in REMOTE_KEYS:
            if partial.get(key) is None:
                continue
            try:
                changes[FIELD_NAMES[key]] = coerce_field(FIELD_NAMES[key], partial[key])
            except ValueError as e:
                logger.error(f"Ignoring remote [{key}]: {e}")
                continue
            applied.append(key)
            logger.info(f"Applying [{key}] = {partial[key]}")

        if changes:
            self._config = dataclasses.replace(self._config, **changes)

        self.changed()
        return applied

    def changed(self) -> None:
        """Rebuild derived state and notify listeners."""
        self._exclusions = compile_exclusions(self._config.message_exclude_exps)

        for listener in list(self._listeners):
            try:
                listener(self._config)
            except Exception as e:
                logger.error(f"Config change listener failed: {e}")

    def is_included(self, name: str) -> bool:
        """
        Whether a process is monitored.

        Without an inclusion or an exclusion list nothing is monitored.
        """
        config = self._config

        if name == config.self_name:
            return False

        if isinstance(config.apps_included, list):
            return name in config.apps_included

        if isinstance(config.apps_excluded, list):
            return name not in config.apps_excluded

        return False

    def rule_for(self, key: str) -> Optional[MetricProbeRule]:
        return self._config.metric.get(key)

    def is_message_excluded(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self._exclusions)

    def to_dict(self) -> Dict[str, Any]:
        return self._config.to_dict()


def compile_exclusions(expressions: Any) -> Tuple[Pattern[str], ...]:
    """Compile exclusion expressions, skipping the ones that are invalid."""
    if expressions is None:
        return ()

    if not isinstance(expressions, list):
        logger.warning(
            f"messageExcludeExps must be a list, got {type(expressions).__name__}; ignored"
        )
        return ()

    patterns = []
    for expression in expressions:
        try:
            patterns.append(re.compile(str(expression)))
        except re.error as e:
            logger.error(f"Invalid message exclude expression [{expression}]: {e}")
    return tuple(patterns)
