"""
Scheduler - Keyed registry of async timers and recurring tasks.

Every timer is identified by a key ("poll", "alive:<name>", ...). Scheduling
a key that already has a pending timer cancels and replaces it in one step,
so at most one timer exists per key at any instant.

Recurring tasks survive failures of a single iteration: the exception is
logged and the next iteration runs after the interval. Only exception types
passed as ``fatal`` end the loop; they surface on the returned task. An
interval that is not a number is logged and the previous one is kept.
"""
from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, Union

logger = logging.getLogger(__name__)

# Used when a recurring interval cannot be read and no earlier value exists
FALLBACK_INTERVAL_S = 60

Callback = Callable[[], Union[Awaitable[Any], Any]]
Interval = Union[float, Callable[[], float]]
FatalHook = Callable[[str, BaseException], Any]


class Scheduler:
    """
    Owns named asyncio tasks.

    Usage:
        scheduler = Scheduler()
        scheduler.schedule("alive:api", 30, on_timeout)
        scheduler.every("poll", lambda: store.current.metric_interval_s, cycle.run_once)
        ...
        await scheduler.close()
    """

    def __init__(self, on_fatal: Optional[FatalHook] = None) -> None:
        """
        Args:
            on_fatal: Called with (key, exception) when a recurring task
                      stops on one of its fatal exception types
        """
        self._tasks: Dict[str, asyncio.Task] = {}
        self.on_fatal = on_fatal

    def schedule(self, key: str, delay_s: float, callback: Callback) -> asyncio.Task:
        """
        Run ``callback`` once after ``delay_s`` seconds.

        Any pending timer under the same key is cancelled first.
        """
        self.cancel(key)
        task = asyncio.create_task(self._run_later(key, delay_s, callback), name=key)
        self._tasks[key] = task
        return task

    def every(
        self,
        key: str,
        interval_s: Interval,
        callback: Callback,
        initial_delay_s: float = 0,
        fatal: Tuple[Type[BaseException], ...] = (),
    ) -> asyncio.Task:
        """
        Run ``callback`` repeatedly, waiting ``interval_s`` after each run.

        Args:
            key: Task identity
            interval_s: Seconds, or a callable re-read after every iteration
            callback: Sync or async callable
            initial_delay_s: Wait before the first run
            fatal: Exception types that stop the loop instead of being logged
        """
        self.cancel(key)
        task = asyncio.create_task(
            self._run_every(key, interval_s, callback, initial_delay_s, fatal),
            name=key,
        )
        self._tasks[key] = task
        return task

    def cancel(self, key: str) -> bool:
        """Cancel the pending task for ``key``. Returns True if one was pending."""
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        if task is asyncio.current_task():
            # a callback replacing its own key must not cancel itself
            return False
        task.cancel()
        return True

    def is_pending(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def keys(self) -> list[str]:
        return [key for key, task in self._tasks.items() if not task.done()]

    async def close(self) -> None:
        """Cancel every task and wait for them to finish."""
        tasks = list(self._tasks.values())
        self._tasks.clear()

        for task in tasks:
            if not task.done():
                task.cancel()

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run_later(self, key: str, delay_s: float, callback: Callback) -> None:
        try:
            delay = _resolve(delay_s)
        except (TypeError, ValueError) as e:
            logger.error(f"Timer [{key}] has an invalid delay, firing now: {e}")
            delay = 0
        await asyncio.sleep(delay)

        # the timer has fired; it no longer occupies its slot
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]

        try:
            await _call(callback)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Timer [{key}] failed: {e}")

    async def _run_every(
        self,
        key: str,
        interval_s: Interval,
        callback: Callback,
        initial_delay_s: float,
        fatal: Tuple[Type[BaseException], ...],
    ) -> None:
        if initial_delay_s > 0:
            await asyncio.sleep(initial_delay_s)

        delay: Optional[float] = None
        while True:
            try:
                await _call(callback)
            except asyncio.CancelledError:
                raise
            except fatal as e:
                if self.on_fatal is not None:
                    self.on_fatal(key, e)
                raise
            except Exception as e:
                logger.exception(f"Error in recurring task [{key}]: {e}")

            try:
                delay = _resolve(interval_s)
            except Exception as e:
                fallback = delay if delay is not None else FALLBACK_INTERVAL_S
                logger.error(f"Invalid interval for [{key}], using {fallback} s: {e}")
                delay = fallback

            await asyncio.sleep(delay)


async def _call(callback: Callback) -> Any:
    result = callback()
    if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
        return await result
    return result


def _resolve(interval_s: Interval) -> float:
    """Read an interval; raises ValueError unless it is a finite number >= 0."""
    value = interval_s() if callable(interval_s) else interval_s
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"not a number: {value!r}")
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"out of range: {value!r}")
    return float(value)
