"""
Tests for ConfigStore.

The store owns the live configuration, the process inclusion policy and
the whitelisted remote merge.
"""
import logging

import pytest

from pm_health.config.settings import METRIC_INTERVAL_S, HealthConfig
from pm_health.config.store import REMOTE_KEYS, ConfigStore, compile_exclusions


class TestInclusionPolicy:
    """Tests for is_included()."""

    def test_nothing_monitored_without_lists(self):
        """
        GOTCHA: No inclusion and no exclusion list means nothing is monitored.

        An empty config must not silently watch every process.
        """
        store = ConfigStore(HealthConfig())

        assert store.is_included("api") is False
        assert store.is_included("worker") is False

    def test_exclusion_list_monitors_everything_else(self):
        store = ConfigStore(HealthConfig(apps_excluded=["worker"]))

        assert store.is_included("api") is True
        assert store.is_included("worker") is False

    def test_inclusion_list_takes_precedence(self):
        """Inclusion wins when both lists are set."""
        store = ConfigStore(HealthConfig(
            apps_included=["api"],
            apps_excluded=["api", "worker"],
        ))

        assert store.is_included("api") is True
        assert store.is_included("web") is False

    def test_empty_exclusion_list_monitors_everything(self):
        store = ConfigStore(HealthConfig(apps_excluded=[]))

        assert store.is_included("anything") is True

    def test_self_is_never_monitored(self):
        store = ConfigStore(HealthConfig(apps_included=["pm-health", "api"]))

        assert store.is_included("pm-health") is False
        assert store.is_included("api") is True

    def test_custom_self_name(self):
        store = ConfigStore(HealthConfig(apps_excluded=[], self_name="monitor"))

        assert store.is_included("monitor") is False
        assert store.is_included("pm-health") is True


class TestIntervalFloor:
    """Tests for the metric interval floor applied at construction."""

    def test_missing_interval_gets_default(self):
        store = ConfigStore(HealthConfig())

        assert store.current.metric_interval_s == METRIC_INTERVAL_S

    def test_interval_below_floor_is_raised(self, caplog):
        with caplog.at_level(logging.INFO):
            store = ConfigStore(HealthConfig(metric_interval_s=10))

        assert store.current.metric_interval_s == METRIC_INTERVAL_S
        assert "Setting default metric check interval 60 s." in caplog.text

    def test_interval_above_floor_is_kept(self):
        store = ConfigStore(HealthConfig(metric_interval_s=300))

        assert store.current.metric_interval_s == 300

    def test_remote_merge_does_not_reapply_floor(self, store):
        """
        GOTCHA: The floor only applies when the store is created.

        A remote value below 60 is taken as is.
        """
        store.apply_remote({"metricIntervalS": 30})

        assert store.current.metric_interval_s == 30


class TestApplyRemote:
    """Tests for the whitelisted remote merge."""

    def test_applies_whitelisted_and_ignores_unknown(self, store):
        applied = store.apply_remote({"metricIntervalS": 30, "unknownKey": "x"})

        assert applied == ["metricIntervalS"]
        assert store.current.metric_interval_s == 30
        assert not hasattr(store.current, "unknownKey")
        assert "unknownKey" not in store.to_dict()

    def test_non_whitelisted_known_keys_are_ignored(self, store):
        """appsIncluded and selfName are local settings only."""
        applied = store.apply_remote({
            "appsIncluded": ["api"],
            "selfName": "other",
            "telegramBotToken": "stolen",
        })

        assert applied == []
        assert store.current.apps_included is None
        assert store.current.self_name == "pm-health"
        assert store.current.telegram_bot_token is None

    def test_null_values_are_skipped(self, store):
        store.apply_remote({"appsExcluded": None, "exceptions": True})

        assert store.current.apps_excluded == ["worker"]
        assert store.current.exceptions is True

    @pytest.mark.parametrize("key, field_name, value", [
        ("metricIntervalS", "metric_interval_s", "abc"),
        ("aliveTimeoutS", "alive_timeout_s", "abc"),
        ("batchPeriodM", "batch_period_m", [1]),
        ("batchMaxMessages", "batch_max_messages", True),
        ("metricIntervalS", "metric_interval_s", float("nan")),
    ])
    def test_non_numeric_values_are_skipped(self, store, caplog, key, field_name, value):
        """
        GOTCHA: A malformed number must not replace a working setting.

        The interval and timeout feed the poll loop and the alive timers.
        """
        before = getattr(store.current, field_name)

        applied = store.apply_remote({key: value, "exceptions": True})

        assert applied == ["exceptions"]
        assert getattr(store.current, field_name) == before
        assert store.current.exceptions is True
        assert f"Ignoring remote [{key}]" in caplog.text

    def test_numeric_values_below_floor_are_kept(self, store):
        store.apply_remote({"metricIntervalS": 0.5, "aliveTimeoutS": 2, "batchMaxMessages": 3.0})

        assert store.current.metric_interval_s == 0.5
        assert store.current.alive_timeout_s == 2
        assert store.current.batch_max_messages == 3

    def test_replaces_metric_rules(self, store):
        store.apply_remote({"metric": {"memory": {"op": ">", "target": 512, "ifChanged": True}}})

        assert store.rule_for("cpu") is None
        rule = store.rule_for("memory")
        assert rule.target == 512
        assert rule.if_changed is True

    def test_swaps_config_object(self, store):
        """Readers holding the old snapshot never see a half-merged config."""
        before = store.current

        store.apply_remote({"events": ["restart"], "batchPeriodM": 5})

        assert before.events is None
        assert before.batch_period_m == 0
        assert store.current is not before
        assert store.current.events == ["restart"]
        assert store.current.batch_period_m == 5

    def test_chat_ids_are_strings(self, store):
        store.apply_remote({"chatIds": [12345, "678"]})

        assert store.current.chat_ids == ["12345", "678"]

    def test_whitelist_contents(self):
        assert "metricIntervalS" in REMOTE_KEYS
        assert "messageExcludeExps" in REMOTE_KEYS
        assert "appsIncluded" not in REMOTE_KEYS
        assert "selfName" not in REMOTE_KEYS

    def test_notifies_listeners_even_without_changes(self, store):
        seen = []
        store.subscribe(seen.append)

        store.apply_remote({})

        assert seen == [store.current]

    def test_listener_failure_is_logged(self, store, caplog):
        def broken(config):
            raise RuntimeError("boom")

        seen = []
        store.subscribe(broken)
        store.subscribe(seen.append)

        store.apply_remote({"addLogs": True})

        assert "boom" in caplog.text
        assert len(seen) == 1
        assert seen[0].add_logs is True


class TestMessageExclusions:
    """Tests for messageExcludeExps compilation and matching."""

    def test_matches_anywhere_in_text(self, store):
        store.apply_remote({"messageExcludeExps": ['"status":"ok"']})

        assert store.is_message_excluded('{"status":"ok","n":1}') is True
        assert store.is_message_excluded('{"status":"fail"}') is False

    def test_invalid_expression_is_skipped(self, store, caplog):
        store.apply_remote({"messageExcludeExps": ["([", "^heartbeat"]})

        assert len(store.message_exclusions) == 1
        assert store.is_message_excluded("heartbeat 1") is True
        assert "Invalid message exclude expression" in caplog.text

    def test_non_list_is_ignored(self, caplog):
        assert compile_exclusions("^x") == ()
        assert "must be a list" in caplog.text

    def test_none_means_no_exclusions(self):
        assert compile_exclusions(None) == ()

    def test_exclusions_rebuilt_on_change(self, store):
        store.apply_remote({"messageExcludeExps": ["a"]})
        assert store.is_message_excluded("a") is True

        store.apply_remote({"messageExcludeExps": []})
        assert store.is_message_excluded("a") is False


class TestRuleLookup:

    def test_rule_for_known_and_unknown_keys(self, store):
        assert store.rule_for("cpu").target == 90
        assert store.rule_for("missing") is None

    @pytest.mark.parametrize("payload", [{"metric": "nonsense"}, {"metric": []}])
    def test_invalid_metric_map_clears_rules(self, store, payload):
        store.apply_remote(payload)

        assert store.current.metric == {}
