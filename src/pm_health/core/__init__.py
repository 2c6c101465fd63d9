"""
Core Layer - The alerting decision engine.

This module provides:
    - Scheduler: Keyed async timers with atomic cancel-and-replace
    - MetricProbeRule / evaluate / should_alert: Probe evaluation
    - AliveWatchdog: Liveness escalation for "alive" messages
    - EventRouter: Process events -> alerts or watchdog resets
    - PollCycle: Periodic metric sweep with one combined alert per cycle

Data Flow:
    1. Process manager bus delivers lifecycle/exception/message events
    2. EventRouter filters them and sends alerts or resets the watchdog
    3. Scheduler runs PollCycle every metric interval
    4. PollCycle evaluates metrics, records them, sends a combined alert
"""

from .models import (
    AlertPriority,
    AlertRecord,
    AlertRow,
    Attachment,
    MetricSample,
    MonitoredProcess,
)
from .probes import (
    MetricParseError,
    MetricProbeRule,
    ProbeOperator,
    ProbeResult,
    evaluate,
    should_alert,
)
from .scheduler import Scheduler
from .watchdog import (
    ALIVE_CONSECUTIVE_TIMEOUT_S,
    ALIVE_MAX_CONSECUTIVE_TESTS,
    AliveWatchdog,
)
from .event_router import EventRouter
from .poll_cycle import PollCycle, build_alert, collect_samples

__all__ = [
    # Models
    "AlertPriority",
    "AlertRecord",
    "AlertRow",
    "Attachment",
    "MetricSample",
    "MonitoredProcess",
    # Probes
    "MetricProbeRule",
    "MetricParseError",
    "ProbeOperator",
    "ProbeResult",
    "evaluate",
    "should_alert",
    # Scheduling
    "Scheduler",
    # Watchdog
    "AliveWatchdog",
    "ALIVE_MAX_CONSECUTIVE_TESTS",
    "ALIVE_CONSECUTIVE_TIMEOUT_S",
    # Routing and polling
    "EventRouter",
    "PollCycle",
    "build_alert",
    "collect_samples",
]
