"""
Notifier - Alert delivery with hold window and batching.

Delivery rules:
- High priority alerts go out immediately, bypassing hold and batching
- During a hold window every other alert is dropped
- With ``batchPeriodM`` > 0 other alerts are collected and sent as one
  digest after the period, or as soon as ``batchMaxMessages`` is reached

Alerts are delivered to Telegram by default.
"""
from __future__ import annotations

import html
import logging
import os
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional, Protocol

import httpx

from pm_health.core.models import AlertPriority, AlertRecord
from pm_health.core.scheduler import Scheduler

if TYPE_CHECKING:
    from pm_health.config.settings import HealthConfig
    from pm_health.config.store import ConfigStore

logger = logging.getLogger(__name__)

BATCH_KEY = "notify:batch"
TELEGRAM_MAX_LENGTH = 4096


class DeliveryError(Exception):
    """An alert could not be delivered."""
    pass


class AlertTransport(Protocol):
    """Delivers one alert."""

    async def deliver(self, alert: AlertRecord) -> None: ...


class TelegramTransport:
    """
    Sends alerts through the Telegram Bot API.

    Every configured chat id receives the message; attachments are sent as
    documents after it. Token and chat ids are read from the store on each
    delivery so remote changes to ``chatIds`` apply at once.
    """

    API_BASE = "https://api.telegram.org"

    def __init__(
        self,
        store: "ConfigStore",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self._store = store
        self._client = client
        self._timeout = timeout

    async def deliver(self, alert: AlertRecord) -> None:
        config = self._store.current
        if not config.telegram_bot_token or not config.chat_ids:
            raise DeliveryError("Telegram credentials not configured")

        url = f"{self.API_BASE}/bot{config.telegram_bot_token}"
        text = format_message(alert)

        if self._client is not None:
            await self._send_all(self._client, url, config.chat_ids, text, alert)
            return

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            await self._send_all(client, url, config.chat_ids, text, alert)

    async def _send_all(
        self,
        client: httpx.AsyncClient,
        url: str,
        chat_ids: List[str],
        text: str,
        alert: AlertRecord,
    ) -> None:
        try:
            for chat_id in chat_ids:
                resp = await client.post(
                    f"{url}/sendMessage",
                    json={"chat_id": chat_id, "text": text, "parse_mode": "HTML"},
                )
                resp.raise_for_status()

                for attachment in alert.attachments:
                    if not os.path.exists(attachment.path):
                        logger.warning(f"Attachment not found: {attachment.path}")
                        continue
                    with open(attachment.path, "rb") as f:
                        resp = await client.post(
                            f"{url}/sendDocument",
                            data={"chat_id": chat_id},
                            files={"document": (attachment.filename, f)},
                        )
                    resp.raise_for_status()
        except httpx.HTTPError as e:
            raise DeliveryError(f"Telegram API error: {e}") from e

        logger.info(f"Sent Telegram alert: {alert.subject[:50]}")


def format_message(alert: AlertRecord) -> str:
    """Format an alert as Telegram HTML."""
    marker = "⚠️ " if alert.priority is AlertPriority.HIGH else ""
    text = f"{marker}<b>{html.escape(alert.subject)}</b>\n\n{alert.body.strip()}"
    if len(text) > TELEGRAM_MAX_LENGTH:
        text = text[: TELEGRAM_MAX_LENGTH - 20] + "\n... (truncated)"
    return text


class Notifier:
    """
    Manages alert delivery.

    Usage:
        notifier = Notifier(store, scheduler=scheduler)
        store.subscribe(notifier.config_changed)

        await notifier.send(AlertRecord(subject="api:0 - restart", body="..."))
        notifier.hold(datetime.now(timezone.utc) + timedelta(minutes=30))
    """

    def __init__(
        self,
        store: "ConfigStore",
        transport: Optional[AlertTransport] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self._store = store
        self._transport = transport or TelegramTransport(store)
        self._scheduler = scheduler or Scheduler()

        self._held_until: Optional[datetime] = None
        self._batch: List[AlertRecord] = []
        self._sent_count = 0
        self._dropped_count = 0

    @property
    def held_until(self) -> Optional[datetime]:
        return self._held_until

    @property
    def pending(self) -> int:
        """Alerts waiting in the current batch."""
        return len(self._batch)

    def hold(self, until: Optional[datetime]) -> None:
        """Hold non-urgent alerts until ``until``; None clears the hold."""
        self._held_until = until

    def is_held(self) -> bool:
        if self._held_until is None:
            return False
        if datetime.now(timezone.utc) >= self._held_until:
            self._held_until = None
            return False
        return True

    async def send(self, alert: AlertRecord) -> None:
        """
        Send or queue an alert.

        Raises:
            DeliveryError: immediate delivery failed
        """
        if alert.is_high:
            await self._deliver(alert)
            return

        if self.is_held():
            self._dropped_count += 1
            logger.info(f"Alert held, dropped: {alert.subject}")
            return

        config = self._store.current
        if not config.batch_period_m or config.batch_period_m <= 0:
            await self._deliver(alert)
            return

        self._batch.append(alert)

        if len(self._batch) >= max(1, config.batch_max_messages):
            self._scheduler.cancel(BATCH_KEY)
            await self.flush()
        elif not self._scheduler.is_pending(BATCH_KEY):
            self._scheduler.schedule(BATCH_KEY, config.batch_period_m * 60, self.flush)

    async def flush(self) -> int:
        """Deliver the pending batch as one alert. Returns the number of alerts sent."""
        batch, self._batch = self._batch, []
        if not batch:
            return 0

        if len(batch) == 1:
            await self._deliver(batch[0])
        else:
            await self._deliver(combine(batch))
        return len(batch)

    def config_changed(self, config: Optional["HealthConfig"] = None) -> None:
        config = config or self._store.current
        logger.info(
            f"Notification config: batch {config.batch_period_m} min / "
            f"{config.batch_max_messages} messages, {len(config.chat_ids)} recipient(s)"
        )

        # batching switched off: do not keep queued alerts waiting
        if self._batch and (not config.batch_period_m or config.batch_period_m <= 0):
            self._scheduler.schedule(BATCH_KEY, 0, self.flush)

    def get_stats(self) -> dict:
        return {
            "sent": self._sent_count,
            "dropped": self._dropped_count,
            "pending": len(self._batch),
            "held_until": self._held_until.isoformat() if self._held_until else None,
        }

    async def close(self) -> None:
        """Cancel the batch timer and deliver what is pending."""
        self._scheduler.cancel(BATCH_KEY)
        try:
            await self.flush()
        except Exception as e:
            logger.warning(f"Failed to flush pending alerts: {e}")

    async def _deliver(self, alert: AlertRecord) -> None:
        await self._transport.deliver(alert)
        self._sent_count += 1


def combine(alerts: List[AlertRecord]) -> AlertRecord:
    """Merge a batch into one digest alert."""
    body = "\n\n".join(f"<b>{html.escape(a.subject)}</b>\n{a.body.strip()}" for a in alerts)
    attachments = tuple(att for a in alerts for att in a.attachments)
    return AlertRecord(
        subject=f"{len(alerts)} message(s)",
        body=body,
        priority=AlertPriority.NORMAL,
        attachments=attachments,
    )
