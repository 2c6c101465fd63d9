"""
Administrative actions.

Request/reply operations exposed to operators through the admin HTTP API.
Every action returns its reply text; failures are turned into reply text
at this boundary and never propagate into the engine.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional, Set

from pm_health.core.models import AlertPriority, AlertRecord
from pm_health.manager.pm2 import ManagerError

if TYPE_CHECKING:
    from pm_health.config.store import ConfigStore
    from pm_health.manager.pm2 import ProcessManager
    from pm_health.monitoring.notifier import Notifier
    from pm_health.monitoring.snapshot import SnapshotStore

logger = logging.getLogger(__name__)

HOLD_PERIOD_M = 30
DEBUG_PROCESSES_FILE = "pm-health-debug.json"
DEBUG_CONFIG_FILE = "pm-health-config.json"

ACTIONS = ("hold", "unheld", "mail", "dump", "debug")


class ActionHandlerError(Exception):
    """An administrative action failed."""
    pass


class AdminActions:
    """
    Operator actions.

    Usage:
        actions = AdminActions(notifier, snapshot, manager, store)
        reply = await actions.run("hold", minutes="15")
    """

    def __init__(
        self,
        notifier: "Notifier",
        snapshot: "SnapshotStore",
        manager: "ProcessManager",
        store: "ConfigStore",
        debug_dir: str = ".",
        on_fatal: Optional[Callable[[BaseException], Any]] = None,
    ) -> None:
        self._notifier = notifier
        self._snapshot = snapshot
        self._manager = manager
        self._store = store
        self._debug_dir = debug_dir
        self._on_fatal = on_fatal
        self._background: Set[asyncio.Task] = set()

    async def run(self, name: str, **kwargs: Any) -> str:
        """Run an action by name and return its reply."""
        if name not in ACTIONS:
            raise ActionHandlerError(f"unknown action [{name}]")

        try:
            return await getattr(self, name)(**kwargs)
        except ManagerError as e:
            logger.error(f"{name} failed: {e}")
            if self._on_fatal:
                self._on_fatal(e)
            return f"{name} failed: {e}"
        except Exception as e:
            logger.error(f"{name} failed: {e}")
            return f"{name} failed: {e}"

    async def hold(self, minutes: Any = None) -> str:
        period = HOLD_PERIOD_M
        if minutes is not None:
            try:
                period = int(str(minutes).strip())
            except ValueError:
                pass

        hold_till = datetime.now(timezone.utc) + timedelta(minutes=period)
        self._notifier.hold(hold_till)

        msg = f"notifications held for {period} minutes, till {hold_till.isoformat()}"
        logger.info(msg)
        return msg

    async def unheld(self) -> str:
        self._notifier.hold(None)
        logger.info("notifications unheld")
        return "notifications unheld"

    async def mail(self) -> str:
        try:
            # high priority bypasses batching and hold
            await self._notifier.send(AlertRecord(
                subject="Test only",
                body="This is test only.",
                priority=AlertPriority.HIGH,
            ))
        except Exception as e:
            return f"test alert failed: {e}"

        logger.info("test alert sent")
        return "test alert sent"

    async def dump(self) -> str:
        task = asyncio.create_task(self._snapshot.dump())
        self._background.add(task)
        task.add_done_callback(self._dump_done)
        return "dumping"

    async def debug(self) -> str:
        processes = await self._manager.list_processes()
        await asyncio.to_thread(
            _write_json, os.path.join(self._debug_dir, DEBUG_PROCESSES_FILE), processes
        )
        await asyncio.to_thread(
            _write_json, os.path.join(self._debug_dir, DEBUG_CONFIG_FILE), self._store.to_dict()
        )
        return "dumping"

    def _dump_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Snapshot dump failed: {task.exception()}")


def _write_json(path: str, document: Any) -> None:
    with open(path, "w") as f:
        json.dump(document, f, default=str)
