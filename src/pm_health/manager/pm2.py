"""
PM2 process manager adapter.

Talks to PM2 through its CLI:
- ``pm2 ping`` to check the daemon answers
- ``pm2 jlist`` to list processes with their monitoring data

PM2's own event bus is not reachable from Python, so lifecycle events are
derived by comparing two consecutive listings: a status change emits the
new status as the event name, a restart counter increase emits "restart"
and a process that disappears emits "delete".

Connection and listing failures raise ManagerError subclasses; the engine
treats them as fatal.
"""
from __future__ import annotations

import asyncio
import json
import logging
import shutil
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from pm_health.core.scheduler import Scheduler

from .bus import EventBus

logger = logging.getLogger(__name__)

PROCESS_FIELDS = ("name", "pm_id", "pm_err_log_path", "pm_out_log_path")

CommandRunner = Callable[[List[str]], Awaitable[Tuple[int, str, str]]]


class ManagerError(Exception):
    """Base exception for process manager failures."""
    pass


class ManagerConnectionError(ManagerError):
    """The process manager cannot be reached."""
    pass


class ManagerListError(ManagerError):
    """The process list cannot be read."""
    pass


class ProcessManager(Protocol):
    """What the engine needs from a process manager."""

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def list_processes(self) -> List[Dict[str, Any]]: ...

    async def launch_bus(self) -> EventBus: ...


async def run_command(args: List[str]) -> Tuple[int, str, str]:
    """Run a command, returning (exit code, stdout, stderr)."""
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")


class Pm2Client:
    """
    PM2 adapter based on the pm2 CLI.

    Usage:
        client = Pm2Client(scheduler)
        await client.connect()
        bus = await client.launch_bus()
        processes = await client.list_processes()
    """

    def __init__(
        self,
        scheduler: Optional[Scheduler] = None,
        pm2_bin: str = "pm2",
        watch_interval_s: float = 5,
        _runner: Optional[CommandRunner] = None,  # For testing
    ) -> None:
        self._scheduler = scheduler or Scheduler()
        self._pm2_bin = pm2_bin
        self._watch_interval_s = watch_interval_s
        self._runner = _runner or run_command

        self._bus: Optional[EventBus] = None
        self._connected = False
        self._last_seen: Optional[Dict[Any, Dict[str, Any]]] = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Check the PM2 daemon answers."""
        if self._runner is run_command and shutil.which(self._pm2_bin) is None:
            raise ManagerConnectionError(f"{self._pm2_bin} executable not found")

        try:
            code, _, stderr = await self._runner([self._pm2_bin, "ping"])
        except OSError as e:
            raise ManagerConnectionError(f"cannot run {self._pm2_bin}: {e}") from e

        if code != 0:
            raise ManagerConnectionError(f"{self._pm2_bin} ping failed: {stderr.strip()}")

        self._connected = True
        logger.info("PM2: Connected")

    async def disconnect(self) -> None:
        self._scheduler.cancel("bus:watch")
        self._connected = False

    async def list_processes(self) -> List[Dict[str, Any]]:
        """Return the raw ``pm2 jlist`` entries."""
        try:
            code, stdout, stderr = await self._runner([self._pm2_bin, "jlist"])
        except OSError as e:
            raise ManagerListError(f"cannot run {self._pm2_bin}: {e}") from e

        if code != 0:
            raise ManagerListError(f"{self._pm2_bin} jlist failed: {stderr.strip()}")

        return parse_jlist(stdout)

    async def launch_bus(self) -> EventBus:
        """Create the event bus and start watching for lifecycle changes."""
        if self._bus is None:
            self._bus = EventBus()
            self._scheduler.every(
                "bus:watch",
                self._watch_interval_s,
                self.watch_once,
                fatal=(ManagerError,),
            )
        return self._bus

    async def watch_once(self) -> int:
        """Compare the process list with the previous one and emit events."""
        current = {
            app.get("pm_id"): app for app in await self.list_processes()
        }
        previous, self._last_seen = self._last_seen, current

        if previous is None or self._bus is None:
            return 0

        emitted = 0
        for pm_id, app in current.items():
            before = previous.get(pm_id)
            if before is None:
                continue

            env, env_before = app.get("pm2_env") or {}, before.get("pm2_env") or {}

            if (env.get("restart_time") or 0) > (env_before.get("restart_time") or 0):
                await self._bus.emit("process:event", lifecycle_payload("restart", app))
                emitted += 1
            elif env.get("status") != env_before.get("status"):
                await self._bus.emit("process:event", lifecycle_payload(env.get("status"), app))
                emitted += 1

        for pm_id, app in previous.items():
            if pm_id not in current:
                await self._bus.emit("process:event", lifecycle_payload("delete", app))
                emitted += 1

        return emitted


def parse_jlist(stdout: str) -> List[Dict[str, Any]]:
    """
    Extract the process list from ``pm2 jlist`` output.

    pm2 may print notices first, some of them bracketed like
    ``[PM2] Spawning PM2 daemon``, so every line starting with "[" is tried
    until one opens a JSON array.

    Raises:
        ManagerListError: No line holds a JSON array
    """
    decoder = json.JSONDecoder()
    lines = stdout.splitlines()
    error: Optional[Exception] = None

    for i, line in enumerate(lines):
        if not line.lstrip().startswith("["):
            continue
        try:
            processes, _ = decoder.raw_decode("\n".join(lines[i:]).lstrip())
        except json.JSONDecodeError as e:
            error = e
            continue
        if isinstance(processes, list):
            return processes

    if error is not None:
        raise ManagerListError(f"invalid pm2 jlist output: {error}")
    raise ManagerListError("pm2 jlist returned no process list")


def lifecycle_payload(event: Optional[str], app: Dict[str, Any]) -> Dict[str, Any]:
    """Lifecycle event payload in the PM2 bus format."""
    env = app.get("pm2_env") or {}
    process = {
        key: app.get(key, env.get(key))
        for key in PROCESS_FIELDS
        if app.get(key, env.get(key)) is not None
    }
    return {
        "event": event,
        "manually": False,
        "process": process,
        "at": env.get("pm_uptime"),
    }
