"""
SnapshotStore - Last known metric values and the periodic digest.

Keeps, per process and metric key, the last recorded value (used by
``ifChanged`` rules) and the history collected since the last digest was
sent. Processes that stop appearing in poll cycles are marked inactive and
dropped after a few cycles.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx

from pm_health.config.settings import SnapshotConfig

logger = logging.getLogger(__name__)

SNAPSHOT_INACTIVE_CYCLES = 3
MAX_HISTORY = 1440
DEFAULT_DUMP_PATH = "pm-health-snapshot.json"


@dataclass
class MetricState:
    """Last value and pending history of one metric."""

    last: Any = None
    history: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ProcessSnapshot:
    """Metrics recorded for one process."""

    pm_id: Any
    name: str
    metrics: Dict[str, MetricState] = field(default_factory=dict)
    active: bool = True
    seen: bool = False
    missed: int = 0


class SnapshotStore:
    """
    In-memory metric snapshot.

    Usage:
        snapshot = SnapshotStore(config.snapshot)
        snapshot.push(0, "api", "cpu", True, {"v": 12.5})
        snapshot.last(0, "cpu")  # 12.5
        snapshot.inactivate()
        await snapshot.send()
    """

    def __init__(
        self,
        config: Optional[SnapshotConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        dump_path: str = DEFAULT_DUMP_PATH,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or SnapshotConfig()
        self._client = client
        self._dump_path = dump_path
        self._clock = clock

        self._processes: Dict[Any, ProcessSnapshot] = {}
        self._last_sent = clock()

    def last(self, pm_id: Any, key: str) -> Any:
        """Last recorded value of a metric, None when never recorded."""
        process = self._processes.get(pm_id)
        if process is None:
            return None
        state = process.metrics.get(key)
        return state.last if state else None

    def push(
        self,
        pm_id: Any,
        name: str,
        key: str,
        keep_history: bool,
        data: Dict[str, Any],
    ) -> None:
        """Record a metric value."""
        process = self._processes.get(pm_id)
        if process is None or process.name != name:
            process = ProcessSnapshot(pm_id=pm_id, name=name)
            self._processes[pm_id] = process

        process.seen = True
        process.active = True
        process.missed = 0

        state = process.metrics.setdefault(key, MetricState())
        state.last = data.get("v")

        if keep_history:
            state.history.append({"t": int(self._clock()), **data})
            if len(state.history) > MAX_HISTORY:
                del state.history[: len(state.history) - MAX_HISTORY]

    def inactivate(self) -> None:
        """Mark processes not pushed since the previous call inactive."""
        for pm_id in list(self._processes):
            process = self._processes[pm_id]
            if process.seen:
                process.seen = False
                continue

            process.active = False
            process.missed += 1
            if process.missed > SNAPSHOT_INACTIVE_CYCLES:
                logger.info(f"Dropping snapshot of {process.name}:{pm_id}")
                del self._processes[pm_id]

    def is_active(self, pm_id: Any) -> bool:
        process = self._processes.get(pm_id)
        return bool(process and process.active)

    def digest(self) -> Dict[str, Any]:
        """Current state as a JSON friendly document."""
        return {
            "at": datetime.now(timezone.utc).isoformat(),
            "apps": [
                {
                    "pm_id": process.pm_id,
                    "name": process.name,
                    "active": process.active,
                    "metrics": {
                        key: {"last": state.last, "history": list(state.history)}
                        for key, state in process.metrics.items()
                    },
                }
                for process in self._processes.values()
            ],
        }

    async def send(self) -> bool:
        """
        Send the digest when the send interval has elapsed.

        Returns:
            True if a digest was sent
        """
        if self._config.disabled or not self._config.url:
            return False

        now = self._clock()
        if now - self._last_sent < self._config.send_interval_m * 60:
            return False

        headers = {}
        if self._config.token:
            headers["Authorization"] = f"Bearer {self._config.token}"
        auth = None
        if self._config.auth and self._config.auth.user:
            auth = (self._config.auth.user, self._config.auth.password or "")

        try:
            if self._client is not None:
                resp = await self._client.post(
                    self._config.url, json=self.digest(), headers=headers, auth=auth
                )
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    resp = await client.post(
                        self._config.url, json=self.digest(), headers=headers, auth=auth
                    )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send snapshot: {e}")
            return False

        self._last_sent = now
        for process in self._processes.values():
            for state in process.metrics.values():
                state.history.clear()

        logger.info(f"Snapshot sent to {self._config.url}")
        return True

    async def dump(self) -> str:
        """Write the current state to the dump file. Returns its path."""
        document = self.digest()
        await asyncio.to_thread(_write_json, self._dump_path, document)
        logger.info(f"Snapshot dumped to {self._dump_path}")
        return self._dump_path


def _write_json(path: str, document: Any) -> None:
    with open(path, "w") as f:
        json.dump(document, f, indent=2, default=str)
