"""
Data models shared by the decision engine.

These models represent:
- Processes reported by the process manager
- Metric samples gathered in a poll cycle
- Alerts handed to the notifier
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Tuple


class AlertPriority(str, Enum):
    """Delivery priority of an alert."""
    NORMAL = "normal"
    HIGH = "high"


@dataclass(frozen=True)
class MonitoredProcess:
    """A supervised process, identified by name and manager id."""

    name: str
    pm_id: Any

    @classmethod
    def from_payload(cls, process: Mapping[str, Any]) -> "MonitoredProcess":
        return cls(name=str(process.get("name", "")), pm_id=process.get("pm_id"))

    @property
    def label(self) -> str:
        return f"{self.name}:{self.pm_id}"


@dataclass(frozen=True)
class MetricSample:
    """
    One metric value read from a process during a poll cycle.

    Attributes:
        pm_id: Process manager id
        process_name: Process name
        key: Metric name (memory, cpu, custom keys...)
        raw_value: Value as reported, not yet parsed
        is_direct: True for non-numeric metadata (versions) that skip parsing
    """
    pm_id: Any
    process_name: str
    key: str
    raw_value: Any
    is_direct: bool = False


@dataclass(frozen=True)
class Attachment:
    """A file attached to an alert."""

    filename: str
    path: str


@dataclass(frozen=True)
class AlertRecord:
    """An alert ready for delivery. Immutable once built."""

    subject: str
    body: str
    priority: AlertPriority = AlertPriority.NORMAL
    attachments: Tuple[Attachment, ...] = field(default_factory=tuple)

    @property
    def is_high(self) -> bool:
        return self.priority is AlertPriority.HIGH


@dataclass(frozen=True)
class AlertRow:
    """One bad metric collected during a poll cycle."""

    process: MonitoredProcess
    key: str
    value: Any
    previous: Optional[Any]
    target: Optional[Any]
