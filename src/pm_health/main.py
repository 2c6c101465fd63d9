"""
pm-health - Main Entry Point

Monitors processes supervised by PM2 and sends alerts for lifecycle events,
exceptions, custom messages, missed "alive" signals and bad metrics.

Usage:
    python -m pm_health.main [--config CONFIG_PATH] [--log-level LEVEL]
    pm-health --config /etc/pm-health.json

Configuration:
    The engine reads configuration from:
    1. A JSON file (--config, PM_HEALTH_CONFIG or ./pm-health.json)
    2. Environment variables (see pm_health.config.settings.load_config)
    3. A remote JSON document (webConfig.url), re-fetched every
       webConfig.fetchIntervalM minutes

Environment Variables:
    LOG_LEVEL                 Logging level (DEBUG/INFO/WARNING/ERROR)
    PM_HEALTH_CONFIG          Path of the JSON configuration file
    TELEGRAM_BOT_TOKEN        Telegram bot token for alerts
    TELEGRAM_CHAT_ID          Telegram chat id(s) for alerts
    DASHBOARD_API_KEY         API key for the admin HTTP API

Exit Status:
    0 on shutdown by signal, 1 when the process manager cannot be reached
    or listed, or when another instance is already running.
"""

from __future__ import annotations

import argparse
import asyncio
import atexit
import fcntl
import json
import logging
import os
import signal
import sys
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, Optional

# Configure logging before imports
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

from pm_health.config import (  # noqa: E402
    ConfigFetchError,
    ConfigStore,
    HealthConfig,
    RemoteConfigFetcher,
    load_config,
    load_env_file,
)
from pm_health.core import AliveWatchdog, EventRouter, PollCycle, Scheduler  # noqa: E402
from pm_health.manager import ManagerError, Pm2Client, ProcessManager  # noqa: E402
from pm_health.monitoring import (  # noqa: E402
    AdminActions,
    AlertTransport,
    Dashboard,
    Notifier,
    SnapshotStore,
)

# Default PID file location
DEFAULT_PID_FILE = "/tmp/pm-health.pid"


class SingletonError(Exception):
    """Raised when another engine instance is already running."""
    pass


@contextmanager
def singleton_lock(pid_file: str = DEFAULT_PID_FILE) -> Generator[None, None, None]:
    """
    Ensure only one engine instance runs at a time.

    Uses file locking (fcntl.LOCK_EX | fcntl.LOCK_NB). The lock is released
    when the process exits.

    Raises:
        SingletonError: If another instance is already running
    """
    pid_path = Path(pid_file)

    existing_pid = None
    try:
        existing_pid = pid_path.read_text().strip()
    except FileNotFoundError:
        pass

    # "a+" so the file is not truncated before we own the lock
    fp = open(pid_path, "a+")

    try:
        fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        fp.close()
        if existing_pid:
            raise SingletonError(
                f"Another pm-health instance is already running (PID: {existing_pid})"
            )
        raise SingletonError("Another pm-health instance is already running")

    fp.seek(0)
    fp.truncate()
    fp.write(str(os.getpid()))
    fp.flush()

    def cleanup():
        try:
            fcntl.flock(fp.fileno(), fcntl.LOCK_UN)
            fp.close()
            pid_path.unlink(missing_ok=True)
        except OSError as e:
            logger.debug(f"PID file cleanup failed: {e}")

    atexit.register(cleanup)

    try:
        logger.info(f"Acquired singleton lock (PID: {os.getpid()}, file: {pid_file})")
        yield
    finally:
        cleanup()
        atexit.unregister(cleanup)


class HealthService:
    """
    Engine orchestrator.

    Manages the lifecycle of all components:
    - Configuration store and remote reload
    - Process manager connection and event bus
    - Event routing, liveness watchdog and metric polling
    - Notification, snapshot and the admin HTTP API
    """

    def __init__(
        self,
        config: HealthConfig,
        manager: Optional[ProcessManager] = None,
        transport: Optional[AlertTransport] = None,
        fetcher: Optional[RemoteConfigFetcher] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.store = ConfigStore(config)
        # manager adapters may share the scheduler; its fatal errors stop the engine
        self.scheduler = scheduler or Scheduler()
        self.scheduler.on_fatal = self._on_fatal
        self.notifier = Notifier(self.store, transport=transport, scheduler=self.scheduler)
        self.snapshot = SnapshotStore(self.store.current.snapshot)
        self.watchdog = AliveWatchdog(self.notifier, self.scheduler)
        self.router = EventRouter(self.store, self.notifier, self.watchdog)
        self.manager = manager or Pm2Client(
            self.scheduler, watch_interval_s=self.store.current.pm2_watch_interval_s
        )
        self.poll_cycle = PollCycle(self.store, self.manager, self.snapshot, self.notifier)
        self.actions = AdminActions(
            self.notifier,
            self.snapshot,
            self.manager,
            self.store,
            on_fatal=lambda e: self._on_fatal("actions", e),
        )

        web_config = self.store.current.web_config
        if fetcher is None and web_config is not None and web_config.url:
            fetcher = RemoteConfigFetcher(web_config)
        self._fetcher = fetcher

        self.store.subscribe(self.notifier.config_changed)

        self._running = False
        self._shutdown_event = asyncio.Event()
        self._fatal_error: Optional[BaseException] = None
        self._started_at: Optional[datetime] = None
        self._dashboard: Optional[Dashboard] = None
        self._dashboard_thread: Optional[threading.Thread] = None
        self._http_server: Any = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Start the engine and run until shutdown.

        Raises:
            ManagerError: the process manager cannot be reached or listed
        """
        config = self.store.current
        if config.debug_log_enabled:
            logging.getLogger().setLevel(logging.DEBUG)
            logger.debug("debug log enabled in config")
        logger.debug(json.dumps(config.to_dict(), indent=2, default=str))

        logger.info("pm-health is on")
        self._running = True
        self._started_at = datetime.now(timezone.utc)
        self._shutdown_event.clear()

        self._setup_signal_handlers()

        try:
            self.store.changed()

            if self._fetcher is not None:
                await self.fetch_config()

                interval_m = config.web_config.fetch_interval_m if config.web_config else 0
                if interval_m > 0:
                    self.scheduler.every(
                        "config:fetch",
                        interval_m * 60,
                        self.fetch_config,
                        initial_delay_s=interval_m * 60,
                    )

            await self.manager.connect()

            bus = await self.manager.launch_bus()
            self.router.attach(bus)

            self.scheduler.every(
                "poll",
                self.poll_cycle.interval_s,
                self.poll_cycle.run_once,
                fatal=(ManagerError,),
            )

            if self.store.current.dashboard_enabled:
                self._dashboard = Dashboard(
                    self.actions,
                    bus=bus,
                    watchdog=self.watchdog,
                    notifier=self.notifier,
                    event_loop=asyncio.get_running_loop(),
                    started_at=self._started_at,
                )
                self._start_dashboard()

            await self._shutdown_event.wait()

            if self._fatal_error is not None:
                raise self._fatal_error
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the engine gracefully."""
        if not self._running:
            return

        logger.info("Shutting down...")
        self._running = False
        self._shutdown_event.set()

        self._stop_dashboard()

        self.watchdog.close()
        await self.notifier.close()
        await self.scheduler.close()

        try:
            await self.manager.disconnect()
        except Exception as e:
            logger.warning(f"Error disconnecting from process manager: {e}")

        if self._fetcher is not None:
            await self._fetcher.close()

        logger.info("Shutdown complete")

    async def fetch_config(self) -> bool:
        """Fetch and apply the remote configuration. Failures are logged."""
        try:
            payload = await self._fetcher.fetch()
        except ConfigFetchError as e:
            logger.error(f"failed to fetch config -> {e}")
            return False

        self.store.apply_remote(payload)
        return True

    def request_shutdown(self, reason: str = "manual") -> None:
        if not self._running:
            return
        logger.warning(f"Shutdown requested: {reason}")
        self._shutdown_event.set()

    def _on_fatal(self, source: str, error: BaseException) -> None:
        logger.error(f"Fatal error in [{source}]: {error}")
        if self._fatal_error is None:
            self._fatal_error = error
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def handle_signal(sig):
            logger.info(f"Received signal {sig}")
            self._shutdown_event.set()

        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except (NotImplementedError, RuntimeError):
            # not supported on this platform or outside the main thread
            pass

    def _start_dashboard(self) -> None:
        """Start the Flask admin API in a background thread."""
        from werkzeug.serving import make_server

        config = self.store.current
        app = self._dashboard.create_app()

        try:
            self._http_server = make_server(
                host=config.dashboard_host,
                port=config.dashboard_port,
                app=app,
                threaded=True,
            )
        except OSError as e:
            logger.error(f"Admin API failed to start: {e}")
            return

        def run_server():
            logger.info(f"Admin API: http://{config.dashboard_host}:{config.dashboard_port}")
            self._http_server.serve_forever()

        self._dashboard_thread = threading.Thread(target=run_server, daemon=True)
        self._dashboard_thread.start()

    def _stop_dashboard(self) -> None:
        if self._http_server is not None:
            logger.info("Admin API: Shutting down...")
            self._http_server.shutdown()
            self._http_server.server_close()
            self._http_server = None

        if self._dashboard_thread is not None:
            self._dashboard_thread.join(timeout=5)
            if self._dashboard_thread.is_alive():
                logger.warning("Admin API thread did not stop cleanly")
            self._dashboard_thread = None


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="pm-health: alerting for PM2 supervised processes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to the JSON configuration file",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    parser.add_argument(
        "--pid-file",
        default=DEFAULT_PID_FILE,
        help=f"Singleton lock file (default: {DEFAULT_PID_FILE})",
    )
    return parser.parse_args(argv)


async def main_async(args: argparse.Namespace) -> int:
    """Async main function."""
    try:
        config = load_config(args.config)
    except (OSError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    service = HealthService(config)

    try:
        await service.start()
        return 0
    except ManagerError as e:
        logger.error(f"Process manager failure: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    load_env_file()

    args = parse_args(argv)

    if args.log_level:
        logging.getLogger().setLevel(getattr(logging, args.log_level))

    try:
        with singleton_lock(args.pid_file):
            try:
                return asyncio.run(main_async(args))
            except KeyboardInterrupt:
                return 0
    except SingletonError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
