"""
Process Manager Layer - Access to the supervised processes.

This module provides:
    - EventBus: In-process publish/subscribe for process events
    - Pm2Client: PM2 adapter (process list, derived lifecycle events)
    - ProcessManager: Protocol the engine depends on
    - ManagerError: Base of the fatal connection/list errors
"""

from .bus import EventBus
from .pm2 import (
    ManagerConnectionError,
    ManagerError,
    ManagerListError,
    Pm2Client,
    ProcessManager,
)

__all__ = [
    "EventBus",
    "Pm2Client",
    "ProcessManager",
    "ManagerError",
    "ManagerConnectionError",
    "ManagerListError",
]
