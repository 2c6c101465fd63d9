"""
Admin HTTP API.

Provides a Flask application for operator actions and for processes that
publish exception/message events (including "alive") over HTTP.

SECURITY:
- Optional API key authentication via DASHBOARD_API_KEY env var
- Bind to localhost by default
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import os
from datetime import datetime, timezone
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Optional

from flask import Flask, Response, abort, current_app, jsonify, request

from .actions import ACTIONS, ActionHandlerError

if TYPE_CHECKING:
    from pm_health.core.watchdog import AliveWatchdog
    from pm_health.manager.bus import EventBus
    from pm_health.monitoring.actions import AdminActions
    from pm_health.monitoring.notifier import Notifier

logger = logging.getLogger(__name__)

EVENT_CATEGORIES = {
    "exception": "process:exception",
    "message": "process:msg",
}


def require_api_key(f: Callable) -> Callable:
    """
    Decorator to require API key authentication.

    If an API key is configured, requests must include either:
    - X-API-Key header
    - api_key query parameter

    If no API key is configured, authentication is disabled.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        api_key = current_app.dashboard._api_key  # type: ignore
        if not api_key:
            return f(*args, **kwargs)

        provided_key = request.headers.get("X-API-Key") or request.args.get("api_key")

        if not provided_key or provided_key != api_key:
            logger.warning(f"Unauthorized API access attempt from {request.remote_addr}")
            abort(401)

        return f(*args, **kwargs)

    return decorated


class Dashboard:
    """
    Admin web application.

    Endpoints:
        GET  /health                 - Engine status
        POST /actions/<name>         - hold, unheld, mail, dump, debug
        POST /events/<category>      - exception or message event from a process

    Usage:
        dashboard = Dashboard(actions, bus, event_loop=asyncio.get_running_loop())
        app = dashboard.create_app()
    """

    def __init__(
        self,
        actions: "AdminActions",
        bus: Optional["EventBus"] = None,
        watchdog: Optional["AliveWatchdog"] = None,
        notifier: Optional["Notifier"] = None,
        event_loop: Optional[asyncio.AbstractEventLoop] = None,
        started_at: Optional[datetime] = None,
        api_key: Optional[str] = None,
    ) -> None:
        """
        Initialize the dashboard.

        Args:
            actions: AdminActions instance
            bus: Event bus that receives published events
            watchdog: AliveWatchdog, reported by /health
            notifier: Notifier, reported by /health
            event_loop: Main asyncio event loop. Flask runs in a separate
                       thread, so coroutines are dispatched to this loop
                       with run_coroutine_threadsafe().
            api_key: API key; defaults to DASHBOARD_API_KEY
        """
        self._actions = actions
        self._bus = bus
        self._watchdog = watchdog
        self._notifier = notifier
        self._event_loop = event_loop
        self._started_at = started_at or datetime.now(timezone.utc)
        self._api_key = api_key if api_key is not None else os.environ.get("DASHBOARD_API_KEY")

    def _run_async(self, coro, timeout: float = 10.0) -> Any:
        """
        Run an async coroutine from the Flask thread safely.

        Raises:
            RuntimeError: If event loop is not running (shutdown in progress)
            TimeoutError: If operation times out
        """
        if self._event_loop is None:
            # Fallback: create new loop (only for testing without main loop)
            loop = asyncio.new_event_loop()
            try:
                return loop.run_until_complete(coro)
            finally:
                loop.close()

        if self._event_loop.is_closed() or not self._event_loop.is_running():
            coro.close()
            raise RuntimeError("Event loop is not running (shutdown in progress)")

        future = asyncio.run_coroutine_threadsafe(coro, self._event_loop)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            logger.error(f"Async operation timed out after {timeout}s")
            raise TimeoutError(f"Operation timed out after {timeout}s")

    def create_app(self, testing: bool = False) -> Flask:
        """Create the Flask application."""
        app = Flask(__name__)
        app.config["TESTING"] = testing

        # Store reference for routes
        app.dashboard = self  # type: ignore

        self._register_routes(app)
        return app

    def _register_routes(self, app: Flask) -> None:
        """Register all HTTP routes."""

        @app.route("/health")
        @require_api_key
        def health() -> Response:
            dashboard: Dashboard = app.dashboard  # type: ignore
            uptime = (datetime.now(timezone.utc) - dashboard._started_at).total_seconds()

            return jsonify({
                "status": "running",
                "uptime_seconds": int(uptime),
                "notifications": dashboard._notifier.get_stats() if dashboard._notifier else None,
                "alive": dashboard._watchdog.armed() if dashboard._watchdog else {},
            })

        @app.route("/actions/<name>", methods=["POST"])
        @require_api_key
        def run_action(name: str) -> Response:
            dashboard: Dashboard = app.dashboard  # type: ignore

            if name not in ACTIONS:
                return jsonify({"error": f"unknown action [{name}]"}), 404

            kwargs = {}
            if name == "hold":
                payload = request.get_json(silent=True) or {}
                minutes = payload.get("minutes", request.args.get("minutes"))
                if minutes is not None:
                    kwargs["minutes"] = minutes

            try:
                reply = dashboard._run_async(dashboard._actions.run(name, **kwargs))
            except (ActionHandlerError, RuntimeError, TimeoutError) as e:
                return jsonify({"error": str(e)}), 503

            return jsonify({"reply": reply})

        @app.route("/events/<category>", methods=["POST"])
        @require_api_key
        def publish_event(category: str) -> Response:
            dashboard: Dashboard = app.dashboard  # type: ignore

            event = EVENT_CATEGORIES.get(category)
            if event is None:
                return jsonify({"error": f"unknown event category [{category}]"}), 404

            if dashboard._bus is None:
                return jsonify({"error": "event bus not available"}), 503

            payload = request.get_json(silent=True)
            if not isinstance(payload, dict) or not isinstance(payload.get("process"), dict):
                return jsonify({"error": "expected {\"process\": {...}, \"data\": ...}"}), 400

            try:
                handlers = dashboard._run_async(dashboard._bus.emit(event, payload))
            except (RuntimeError, TimeoutError) as e:
                return jsonify({"error": str(e)}), 503

            return jsonify({"accepted": True, "handlers": handlers})
