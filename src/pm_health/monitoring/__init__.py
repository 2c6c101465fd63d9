"""
Monitoring Layer - Alert delivery, metric snapshots and operator access.

This module provides:
    - Notifier: Alert delivery with hold window and batching
    - TelegramTransport: Default delivery through the Telegram Bot API
    - SnapshotStore: Last metric values, inactivation and periodic digest
    - AdminActions: hold, unheld, mail, dump, debug
    - Dashboard: Flask admin API (actions, event publishing, health)

Delivery Rules:
    - High priority alerts bypass hold and batching
    - Other alerts are dropped during a hold and batched when configured
"""

from .notifier import (
    AlertTransport,
    DeliveryError,
    Notifier,
    TelegramTransport,
    format_message,
)
from .snapshot import SnapshotStore
from .actions import HOLD_PERIOD_M, ActionHandlerError, AdminActions
from .dashboard import Dashboard

__all__ = [
    # Notification
    "Notifier",
    "AlertTransport",
    "TelegramTransport",
    "DeliveryError",
    "format_message",
    # Snapshot
    "SnapshotStore",
    # Actions
    "AdminActions",
    "ActionHandlerError",
    "HOLD_PERIOD_M",
    # Dashboard
    "Dashboard",
]
