"""
Tests for metric probe evaluation.

Probes compare a metric value with a target using one of a closed set of
operators. The tolerance only applies to the directional and "near"
operators.
"""
import math

import pytest
from pydantic import ValidationError

from pm_health.core.models import MetricSample
from pm_health.core.probes import (
    MetricParseError,
    MetricProbeRule,
    ProbeOperator,
    ProbeResult,
    compare,
    evaluate,
    history_data,
    parse_value,
    should_alert,
)


def sample(value, key="cpu", direct=False):
    return MetricSample(pm_id=0, process_name="api", key=key, raw_value=value, is_direct=direct)


def rule(**kwargs):
    return MetricProbeRule(**kwargs)


class TestOperatorTable:
    """The verdict for every operator, value, target and tolerance."""

    @pytest.mark.parametrize("op,value,target,tolerance,expected", [
        # <  : value below target by more than the tolerance
        ("<", 10, 12, 1, True),
        ("<", 10, 12, 3, False),
        ("<", 10, 12, 2, False),
        ("<", 12, 10, 0, False),
        ("<", 10, 10, 0, False),
        # >  : value above target by more than the tolerance
        (">", 95, 90, 2, True),
        (">", 91, 90, 2, False),
        (">", 89, 90, 0, False),
        # =, <=, >=, != ignore tolerance
        ("=", 5, 5, 100, True),
        ("=", 5, 6, 100, False),
        ("<=", 5, 5, 100, True),
        ("<=", 6, 5, 100, False),
        (">=", 5, 5, 100, True),
        (">=", 4, 5, 100, False),
        ("!=", 4, 5, 100, True),
        ("!=", 5, 5, 0, False),
        # ~ and !~ : distance from target exceeds the tolerance, either direction
        ("~", 10, 15, 3, True),
        ("~", 20, 15, 3, True),
        ("~", 16, 15, 3, False),
        ("!~", 10, 15, 3, True),
        ("!~", 14, 15, 3, False),
    ])
    def test_compare(self, op, value, target, tolerance, expected):
        assert compare(ProbeOperator(op), value, target, tolerance) is expected

    def test_evaluate_uses_operator_table(self):
        result = evaluate(sample(10), rule(op="<", target=12, tolerance=1))

        assert result == ProbeResult(value=10.0, bad=True)

    def test_tolerance_defaults_to_zero(self):
        result = evaluate(sample(91), rule(op=">", target=90))

        assert result.bad is True

    def test_unknown_operator_is_rejected_by_rule(self):
        with pytest.raises(ValidationError):
            MetricProbeRule(op="=~", target=1)


class TestParsing:
    """Tests for numeric parsing of non-direct values."""

    @pytest.mark.parametrize("raw,expected", [
        (42, 42.0),
        ("12.5", 12.5),
        (" 7 ", 7.0),
        (0, 0.0),
        ("95%", 95.0),
        ("12.5ms", 12.5),
        ("-3e2 ops", -300.0),
        (".5", 0.5),
    ])
    def test_parses_numbers(self, raw, expected):
        assert parse_value(sample(raw)) == expected

    @pytest.mark.parametrize("raw", [
        "abc", "", None, True, float("nan"), [1], "ms 12", "info", "NaN",
    ])
    def test_rejects_non_numbers(self, raw):
        with pytest.raises(MetricParseError) as exc_info:
            parse_value(sample(raw))

        assert exc_info.value.key == "cpu"
        assert "monit [api.cpu]" in str(exc_info.value)

    def test_evaluate_raises_parse_error(self):
        with pytest.raises(MetricParseError):
            evaluate(sample("n/a"), rule(op=">", target=1))

    def test_direct_value_is_not_parsed(self):
        result = evaluate(sample("v20.1.0", key="node"), rule(direct=True))

        assert result.value == "v20.1.0"
        assert result.bad is False

    def test_direct_value_compared_as_is(self):
        result = evaluate(sample("5.3.0", key="pm2"), rule(direct=True, op="!=", target="5.4.0"))

        assert result.bad is True

    def test_incomparable_direct_value_is_not_bad(self, caplog):
        result = evaluate(sample("abc", key="x"), rule(direct=True, op=">", target=1))

        assert result.bad is False
        assert "Cannot compare" in caplog.text


class TestRuleWithoutComparison:

    def test_missing_target_is_never_bad(self):
        result = evaluate(sample(99), rule(op=">"))

        assert result == ProbeResult(value=99.0, bad=False)

    def test_missing_operator_is_never_bad(self):
        result = evaluate(sample(99), rule(target=1))

        assert result.bad is False


class TestDefaultRule:
    """Rules synthesized for metrics without configuration."""

    def test_numeric_metric(self):
        default = MetricProbeRule.default_for(sample(5, key="custom"))

        assert default.no_notify is True
        assert default.direct is False
        assert default.no_history is False

    def test_direct_metric(self):
        default = MetricProbeRule.default_for(sample("v20", key="node", direct=True))

        assert default.no_notify is True
        assert default.direct is True
        assert default.no_history is True


class TestShouldAlert:
    """Change suppression and notify flags."""

    def test_bad_value_alerts(self):
        assert should_alert(rule(), ProbeResult(5, bad=True), last_value=None) is True

    def test_good_value_never_alerts(self):
        assert should_alert(rule(), ProbeResult(5, bad=False), last_value=None) is False

    def test_no_notify_suppresses(self):
        assert should_alert(rule(no_notify=True), ProbeResult(5, bad=True), None) is False

    def test_if_changed_suppresses_repeat(self):
        """
        GOTCHA: ifChanged compares against the last recorded value.

        The same bad value on consecutive cycles alerts only once.
        """
        r = rule(if_changed=True)

        assert should_alert(r, ProbeResult(5, bad=True), last_value=None) is True
        assert should_alert(r, ProbeResult(5, bad=True), last_value=5) is False
        assert should_alert(r, ProbeResult(6, bad=True), last_value=5) is True

    def test_alias_names_accepted(self):
        r = MetricProbeRule.model_validate({"ifChanged": True, "noNotify": False})

        assert r.if_changed is True


class TestHistoryData:

    def test_good_value(self):
        assert history_data(ProbeResult(1.5)) == {"v": 1.5}

    def test_bad_value_is_flagged(self):
        assert history_data(ProbeResult(1.5, bad=True)) == {"v": 1.5, "bad": True}


def test_infinite_values_parse():
    assert math.isinf(parse_value(sample("Infinity")))
    assert math.isinf(parse_value(sample(float("inf"))))
