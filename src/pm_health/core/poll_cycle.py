"""
PollCycle - Periodic metric sweep over all monitored processes.

Each cycle:
1. Lists processes through the process manager
2. Gathers memory/cpu, custom exported metrics and version metadata
3. Evaluates every metric against its probe rule and records it
4. Sends one combined alert for all bad metrics of the cycle

A failure to list processes is not handled here: ManagerError propagates
and stops the engine.
"""
from __future__ import annotations

import html
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from .models import AlertPriority, AlertRecord, AlertRow, MetricSample, MonitoredProcess
from .probes import (
    MetricParseError,
    MetricProbeRule,
    evaluate,
    history_data,
    should_alert,
)

if TYPE_CHECKING:
    from pm_health.config.store import ConfigStore
    from pm_health.manager.pm2 import ProcessManager
    from pm_health.monitoring.notifier import Notifier
    from pm_health.monitoring.snapshot import SnapshotStore

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1048576


def collect_samples(app: Mapping[str, Any]) -> List[MetricSample]:
    """
    Build the metric samples of one process list entry.

    Custom metrics come from ``pm2_env.axm_monitor``; memory (MB) and cpu (%)
    from ``monit``; manager and runtime versions are direct metrics.
    """
    pm_id = app.get("pm_id")
    name = app.get("name", "")
    env = app.get("pm2_env") or {}

    metrics: Dict[str, Dict[str, Any]] = {}
    for key, metric in (env.get("axm_monitor") or {}).items():
        value = metric.get("value") if isinstance(metric, Mapping) else metric
        metrics[key] = {"value": value, "direct": False}

    monit = app.get("monit")
    if monit:
        memory = monit.get("memory")
        if isinstance(memory, (int, float)) and not isinstance(memory, bool):
            memory = memory / BYTES_PER_MB
        # anything else is left for parse_value to reject
        metrics["memory"] = {"value": memory, "direct": False}
        metrics["cpu"] = {"value": monit.get("cpu"), "direct": False}

    if env.get("_pm2_version"):
        metrics["pm2"] = {"value": env["_pm2_version"], "direct": True}
    if env.get("node_version"):
        metrics["node"] = {"value": env["node_version"], "direct": True}

    return [
        MetricSample(
            pm_id=pm_id,
            process_name=name,
            key=key,
            raw_value=metric["value"],
            is_direct=metric["direct"],
        )
        for key, metric in metrics.items()
    ]


class PollCycle:
    """
    Runs metric probes over all included processes.

    Usage:
        cycle = PollCycle(store, manager, snapshot, notifier)
        rows = await cycle.run_once()

        # or recurring, with the interval re-read after every cycle
        scheduler.every("poll", cycle.interval_s, cycle.run_once, fatal=(ManagerError,))
    """

    def __init__(
        self,
        store: "ConfigStore",
        manager: "ProcessManager",
        snapshot: "SnapshotStore",
        notifier: "Notifier",
    ) -> None:
        self._store = store
        self._manager = manager
        self._snapshot = snapshot
        self._notifier = notifier

    def interval_s(self) -> float:
        return float(self._store.current.metric_interval_s)

    async def run_once(self) -> List[AlertRow]:
        """Run one cycle and return the alert rows it produced."""
        logger.debug("testing probes")

        processes = await self._manager.list_processes()
        rows: List[AlertRow] = []

        for app in processes:
            if not self._store.is_included(app.get("name", "")):
                continue

            for sample in collect_samples(app):
                try:
                    row = self._probe(sample)
                except Exception as e:
                    logger.error(f"Probe [{sample.process_name}.{sample.key}] failed: {e}")
                    continue
                if row is not None:
                    rows.append(row)

        self._snapshot.inactivate()
        try:
            await self._snapshot.send()
        except Exception as e:
            logger.error(f"Failed to send snapshot digest: {e}")

        if rows:
            await self._notifier.send(build_alert(rows))

        return rows

    def _probe(self, sample: MetricSample) -> Optional[AlertRow]:
        rule = self._store.rule_for(sample.key) or MetricProbeRule.default_for(sample)

        if rule.exclude:
            return None

        try:
            result = evaluate(sample, rule)
        except MetricParseError as e:
            logger.error(str(e))
            return None

        last = self._snapshot.last(sample.pm_id, sample.key)
        row = None
        if should_alert(rule, result, last):
            row = AlertRow(
                process=MonitoredProcess(sample.process_name, sample.pm_id),
                key=sample.key,
                value=result.value,
                previous=last,
                target=rule.target,
            )

        self._snapshot.push(
            sample.pm_id,
            sample.process_name,
            sample.key,
            not rule.no_history,
            history_data(result),
        )
        return row


def build_alert(rows: List[AlertRow]) -> AlertRecord:
    """Combine the rows of one cycle into a single high-priority alert."""
    header = ("App", "Metric", "Value", "Prev. Value", "Target")
    table = [header] + [
        (row.process.label, row.key, _fmt(row.value), _fmt(row.previous), _fmt(row.target))
        for row in rows
    ]
    widths = [max(len(line[i]) for line in table) for i in range(len(header))]
    text = "\n".join(
        "  ".join(cell.ljust(widths[i]) for i, cell in enumerate(line)).rstrip()
        for line in table
    )

    return AlertRecord(
        subject=f"{len(rows)} alert(s)",
        body=f"<pre>{html.escape(text)}</pre>",
        priority=AlertPriority.HIGH,
    )


def _fmt(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)
