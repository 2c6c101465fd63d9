"""
Metric probe evaluation.

A probe rule compares one metric value against a target with an operator
and an optional tolerance. Evaluation is a pure function of the sample and
the rule; whether the result turns into an alert additionally depends on the
previously recorded value (``if_changed`` rules).
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import MetricSample

logger = logging.getLogger(__name__)

_NUMBER_PREFIX = re.compile(r"[+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|Infinity)")


class MetricParseError(ValueError):
    """A non-direct metric value is not a number."""

    def __init__(self, process_name: str, key: str, raw_value: Any):
        super().__init__(f"monit [{process_name}.{key}] -> [{raw_value}] is not a number")
        self.process_name = process_name
        self.key = key
        self.raw_value = raw_value


class ProbeOperator(str, Enum):
    """Comparison operators a probe rule may use."""
    LT = "<"
    GT = ">"
    EQ = "="
    LE = "<="
    GE = ">="
    NE = "!="
    NEAR = "~"
    NOT_NEAR = "!~"


class MetricProbeRule(BaseModel):
    """
    Rule applied to one metric key.

    Field names follow Python style; the camelCase names used in JSON
    configuration (``ifChanged``, ``noNotify``...) are accepted as aliases.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    target: Optional[Any] = None
    op: Optional[ProbeOperator] = None
    tolerance: Optional[float] = None
    if_changed: bool = Field(default=False, alias="ifChanged")
    no_history: bool = Field(default=False, alias="noHistory")
    no_notify: bool = Field(default=False, alias="noNotify")
    exclude: bool = False
    direct: bool = False

    @classmethod
    def default_for(cls, sample: MetricSample) -> "MetricProbeRule":
        """Rule used for a metric without configuration: record, never notify."""
        return cls(no_notify=True, direct=sample.is_direct, no_history=sample.is_direct)


@dataclass(frozen=True)
class ProbeResult:
    """Parsed value and verdict of one evaluation."""

    value: Any
    bad: bool = False


def parse_value(sample: MetricSample) -> float:
    """
    Parse a sample's raw value as a float, raising MetricParseError.

    Strings are read up to the end of their leading number, so "95%" and
    "12.5ms" give 95.0 and 12.5.
    """
    raw = sample.raw_value
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        raise MetricParseError(sample.process_name, sample.key, raw)

    if isinstance(raw, str):
        match = _NUMBER_PREFIX.match(raw.strip())
        if match is None:
            raise MetricParseError(sample.process_name, sample.key, raw)
        value = float(match.group())
    else:
        value = float(raw)

    if math.isnan(value):
        raise MetricParseError(sample.process_name, sample.key, raw)
    return value


def compare(op: ProbeOperator, value: Any, target: Any, tolerance: float = 0) -> bool:
    """Apply ``op`` to value and target. True means the metric is bad."""
    if op is ProbeOperator.LT:
        return value < target and abs(value - target) > tolerance
    if op is ProbeOperator.GT:
        return value > target and abs(value - target) > tolerance
    if op is ProbeOperator.EQ:
        return value == target
    if op is ProbeOperator.LE:
        return value <= target
    if op is ProbeOperator.GE:
        return value >= target
    if op is ProbeOperator.NE:
        return value != target
    if op in (ProbeOperator.NEAR, ProbeOperator.NOT_NEAR):
        return abs(value - target) > tolerance
    raise ValueError(f"Unknown probe operator: {op!r}")


def evaluate(sample: MetricSample, rule: MetricProbeRule) -> ProbeResult:
    """
    Evaluate a sample against a rule.

    Raises:
        MetricParseError: the rule is not direct and the value is not numeric
    """
    value = sample.raw_value if rule.direct else parse_value(sample)

    if rule.op is None or rule.target is None:
        return ProbeResult(value=value)

    try:
        bad = compare(rule.op, value, rule.target, rule.tolerance or 0)
    except TypeError as e:
        logger.warning(
            f"Cannot compare [{sample.process_name}.{sample.key}] "
            f"{value!r} {rule.op.value} {rule.target!r}: {e}"
        )
        bad = False

    return ProbeResult(value=value, bad=bool(bad))


def should_alert(rule: MetricProbeRule, result: ProbeResult, last_value: Any) -> bool:
    """Whether an evaluated sample escalates to an alert row."""
    if rule.no_notify or not result.bad:
        return False
    return not rule.if_changed or last_value != result.value


def history_data(result: ProbeResult) -> dict:
    """Snapshot payload for a result; ``bad`` is only stored when set."""
    data: dict = {"v": result.value}
    if result.bad:
        data["bad"] = True
    return data
