"""
AliveWatchdog - Liveness escalation for processes sending "alive".

A process that sends "alive" arms a timer. If the next "alive" does not
arrive before the timer fires, a high-priority "is dead" alert goes out and
the timer is re-armed with the fixed escalation interval, up to
ALIVE_MAX_CONSECUTIVE_TESTS alerts. A new "alive" restarts from count 1.

State per process name:
    Idle (no entry) -> Armed(1) -> Escalated(2..max) -> Idle
"""
from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Optional

from .models import AlertPriority, AlertRecord, MonitoredProcess
from .scheduler import Scheduler

if TYPE_CHECKING:
    from pm_health.monitoring.notifier import Notifier

logger = logging.getLogger(__name__)

ALIVE_MAX_CONSECUTIVE_TESTS = 6
ALIVE_CONSECUTIVE_TIMEOUT_S = 600


@dataclass
class AliveEntry:
    """Armed timer state for one process name."""

    process: MonitoredProcess
    count: int = 1


class AliveWatchdog:
    """
    Per-process liveness timers.

    Usage:
        watchdog = AliveWatchdog(notifier, scheduler)
        watchdog.on_alive(MonitoredProcess("api", 0), timeout_s=300)
    """

    def __init__(
        self,
        notifier: "Notifier",
        scheduler: Optional[Scheduler] = None,
        max_consecutive: int = ALIVE_MAX_CONSECUTIVE_TESTS,
        escalation_interval_s: float = ALIVE_CONSECUTIVE_TIMEOUT_S,
    ) -> None:
        self._notifier = notifier
        self._scheduler = scheduler or Scheduler()
        self._max_consecutive = max_consecutive
        self._escalation_interval_s = escalation_interval_s
        self._entries: Dict[str, AliveEntry] = {}

    @property
    def max_consecutive(self) -> int:
        return self._max_consecutive

    def on_alive(self, process: MonitoredProcess, timeout_s: float) -> None:
        """Cancel the pending timer for the process and arm a new one."""
        logger.debug(f"alive {process.label}, next check in {timeout_s} s")
        self._arm(process, timeout_s, count=1)

    def count(self, name: str) -> Optional[int]:
        """Escalation count of the armed timer, None when idle."""
        entry = self._entries.get(name)
        return entry.count if entry else None

    def is_armed(self, name: str) -> bool:
        return self._scheduler.is_pending(_key(name))

    def armed(self) -> Dict[str, int]:
        return {name: entry.count for name, entry in self._entries.items()}

    def close(self) -> None:
        """Cancel every pending timer."""
        for name in list(self._entries):
            self._scheduler.cancel(_key(name))
        self._entries.clear()

    def _arm(self, process: MonitoredProcess, timeout_s: float, count: int) -> None:
        self._entries[process.name] = AliveEntry(process=process, count=count)
        self._scheduler.schedule(
            _key(process.name),
            timeout_s,
            lambda: self._on_timeout(process.name),
        )

    async def _on_timeout(self, name: str) -> None:
        entry = self._entries.get(name)
        if entry is None:
            return

        process, count = entry.process, entry.count
        logger.info(f"death {process.label}, count {count}")

        if count < self._max_consecutive:
            self._arm(process, self._escalation_interval_s, count + 1)
        else:
            del self._entries[name]

        alert = AlertRecord(
            subject=f"{process.label} - is dead!",
            body=(
                f"App: <b>{html.escape(process.label)}</b>\n"
                f"This is <b>{count}/{self._max_consecutive}</b> consecutive notice."
            ),
            priority=AlertPriority.HIGH,
        )

        try:
            await self._notifier.send(alert)
        except Exception as e:
            logger.error(f"Failed to send death notice for {process.label}: {e}")


def _key(name: str) -> str:
    return f"alive:{name}"
