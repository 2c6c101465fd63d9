"""
EventRouter - Turns process manager events into alerts.

Handles three bus events:
- process:event      lifecycle changes (restart, exit, online...)
- process:exception  uncaught exceptions, when ``exceptions`` is enabled
- process:msg        custom messages, when ``messages`` is enabled

A message whose data is the literal "alive" resets the AliveWatchdog
instead of producing an alert. Other messages are dropped when their
compact JSON form matches one of the message exclude expressions.
"""
from __future__ import annotations

import html
import json
import logging
import os
from typing import TYPE_CHECKING, Any, Mapping, Tuple

from .models import AlertPriority, AlertRecord, Attachment, MonitoredProcess
from .watchdog import AliveWatchdog

if TYPE_CHECKING:
    from pm_health.config.store import ConfigStore
    from pm_health.manager.bus import EventBus
    from pm_health.monitoring.notifier import Notifier

logger = logging.getLogger(__name__)

LOGS = ("pm_err_log_path", "pm_out_log_path")
ALIVE_MESSAGE = "alive"

LIFECYCLE_EVENT = "process:event"
EXCEPTION_EVENT = "process:exception"
MESSAGE_EVENT = "process:msg"


class EventRouter:
    """
    Routes process manager events.

    Usage:
        router = EventRouter(store, notifier, watchdog)
        router.attach(bus)
    """

    def __init__(
        self,
        store: "ConfigStore",
        notifier: "Notifier",
        watchdog: AliveWatchdog,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._watchdog = watchdog

    def attach(self, bus: "EventBus") -> None:
        """Subscribe to the process manager bus."""
        bus.on(LIFECYCLE_EVENT, self.on_lifecycle)
        bus.on(EXCEPTION_EVENT, self.on_exception)
        bus.on(MESSAGE_EVENT, self.on_message)

    async def on_lifecycle(self, data: Mapping[str, Any]) -> None:
        process_info = data.get("process") or {}
        process = MonitoredProcess.from_payload(process_info)
        event = data.get("event")

        if data.get("manually") or not self._store.is_included(process.name):
            return

        config = self._store.current
        if isinstance(config.events, list) and event not in config.events:
            return

        attachments: Tuple[Attachment, ...] = ()
        if config.add_logs is True:
            attachments = tuple(
                Attachment(filename=os.path.basename(process_info[key]), path=process_info[key])
                for key in LOGS
                if process_info.get(key)
            )

        await self._send(AlertRecord(
            subject=f"{process.label} - {event}",
            body=(
                f"App: <b>{html.escape(process.label)}</b>\n"
                f"Event: <b>{html.escape(str(event))}</b>\n"
                f"<pre>{html.escape(_pretty(data))}</pre>"
            ),
            priority=AlertPriority.HIGH,
            attachments=attachments,
        ))

    async def on_exception(self, data: Mapping[str, Any]) -> None:
        if not self._store.current.exceptions:
            return

        process = MonitoredProcess.from_payload(data.get("process") or {})
        if not self._store.is_included(process.name):
            return

        await self._send(AlertRecord(
            subject=f"{process.label} - exception",
            body=(
                f"App: <b>{html.escape(process.label)}</b>\n"
                f"<pre>{html.escape(_pretty(data.get('data')))}</pre>"
            ),
            priority=AlertPriority.HIGH,
        ))

    async def on_message(self, data: Mapping[str, Any]) -> None:
        config = self._store.current
        if not config.messages:
            return

        process = MonitoredProcess.from_payload(data.get("process") or {})
        if not self._store.is_included(process.name):
            return

        payload = data.get("data")
        if payload == ALIVE_MESSAGE:
            self._watchdog.on_alive(process, config.alive_timeout_s)
            return

        if self._store.is_message_excluded(_compact(payload)):
            logger.debug(f"Excluded message from {process.label}")
            return

        await self._send(AlertRecord(
            subject=f"{process.label} - message",
            body=(
                f"App: <b>{html.escape(process.label)}</b>\n"
                f"<pre>{html.escape(_pretty(payload))}</pre>"
            ),
        ))

    async def _send(self, alert: AlertRecord) -> None:
        try:
            await self._notifier.send(alert)
        except Exception as e:
            logger.error(f"Failed to send [{alert.subject}]: {e}")


def _compact(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)


def _pretty(value: Any) -> str:
    return json.dumps(value, indent=4, default=str)
