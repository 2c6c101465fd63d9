"""
In-process event bus.

Process manager adapters publish ``process:event``, ``process:exception``
and ``process:msg`` payloads here; the EventRouter subscribes to them.
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Union

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[Awaitable[None], None]]


class EventBus:
    """Publish/subscribe by event name. Handlers may be sync or async."""

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def on(self, event: str, handler: Handler) -> None:
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Handler) -> None:
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    async def emit(self, event: str, payload: Any) -> int:
        """
        Deliver a payload to every handler of ``event``.

        A failing handler is logged and does not stop the others.

        Returns:
            Number of handlers called
        """
        handlers = list(self._handlers.get(event, []))

        for handler in handlers:
            try:
                result = handler(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Handler for [{event}] failed: {e}")

        return len(handlers)
