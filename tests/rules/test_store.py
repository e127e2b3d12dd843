"""Tests for RuleStore persistence, ranking, retention and concurrency."""

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from pyro_thor.errors import DataError, OpenError
from pyro_thor.rules.models import RuleMetadata, Severity
from pyro_thor.rules.store import INTEL_TABLE, RULES_TABLE, TABLES, RuleStore


class TestRuleStoreOpen:
    def test_creates_parent_directory_and_tables(self, store_path):
        assert not store_path.parent.exists()
        RuleStore.open(store_path)

        assert store_path.is_file()
        with sqlite3.connect(store_path) as conn:
            names = {
                row[0]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
        assert set(TABLES) <= names

    def test_reopen_keeps_data(self, store_path, make_rule, make_indicator):
        store = RuleStore.open(store_path)
        rule = make_rule()
        indicator = make_indicator()
        store.put_rule(rule)
        store.put_indicator(indicator)

        reopened = RuleStore.open(store_path)
        assert reopened.get_rule(rule.id) == rule
        assert reopened.get_indicator(indicator.id) == indicator

    def test_unusable_path_raises_open_error(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("file in the way")
        with pytest.raises(OpenError):
            RuleStore.open(blocker / "store.db")


class TestRules:
    def test_put_then_get_is_equal(self, store, make_rule):
        rule = make_rule(
            severity=Severity.CRITICAL,
            mitre_tactics=["TA0002"],
            mitre_techniques=["T1059"],
            threat_actors=["APT29"],
            malware_families=["Emotet"],
        )
        store.put_rule(rule)
        assert store.get_rule(rule.id) == rule

    def test_get_missing_returns_none(self, store):
        assert store.get_rule("nope") is None

    def test_list_returns_every_rule(self, store, make_rule):
        rules = [make_rule(name=f"Rule_{i}") for i in range(7)]
        for rule in reversed(rules):
            store.put_rule(rule)

        listed = store.list_rules()
        assert len(listed) == 7
        assert {r.id for r in listed} == {r.id for r in rules}

    def test_list_is_a_fresh_snapshot(self, store, make_rule):
        first = store.list_rules()
        store.put_rule(make_rule())
        assert first == []
        assert len(store.list_rules()) == 1

    def test_reinsert_same_id_replaces(self, store, make_rule):
        rule = make_rule()
        store.put_rule(rule)
        updated = rule.model_copy(update={"description": "second version", "version": "2.0"})
        store.put_rule(updated)

        assert store.get_rule(rule.id).description == "second version"
        assert len(store.list_rules()) == 1

    def test_delete_rule(self, store, make_rule):
        rule = make_rule()
        store.put_rule(rule)
        assert store.delete_rule(rule.id) is True
        assert store.get_rule(rule.id) is None
        assert store.delete_rule(rule.id) is False

    def test_corrupt_payload_raises_data_error(self, store, store_path):
        with sqlite3.connect(store_path) as conn:
            conn.execute(
                f"INSERT INTO {RULES_TABLE} (id, payload) VALUES (?, ?)",
                ("broken", b"{not json"),
            )
        with pytest.raises(DataError):
            store.get_rule("broken")


class TestRuleMetadata:
    def test_metadata_without_rule(self, store):
        metadata = RuleMetadata(rule_id="orphan", performance_score=0.7)
        store.put_metadata(metadata)

        assert store.get_metadata("orphan") == metadata
        assert store.get_rule("orphan") is None

    def test_metadata_independent_of_rule(self, store, make_rule):
        rule = make_rule()
        store.put_rule(rule)
        assert store.get_metadata(rule.id) is None

        store.put_metadata(RuleMetadata(rule_id=rule.id, effectiveness_rating="high"))
        assert store.get_metadata(rule.id).effectiveness_rating == "high"
        assert store.get_rule(rule.id) == rule

    def test_record_detection_creates_and_increments(self, store):
        when = datetime(2020, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        first = store.record_detection("r1", when=when)
        assert first.detection_count == 1
        assert first.last_detection == when

        store.record_detection("r1")
        stored = store.get_metadata("r1")
        assert stored.detection_count == 2
        assert stored.last_detection > when

    def test_record_detection_keeps_other_fields(self, store):
        store.put_metadata(RuleMetadata(rule_id="r1", false_positive_rate=0.25, detection_count=4))
        store.record_detection("r1")

        stored = store.get_metadata("r1")
        assert stored.detection_count == 5
        assert stored.false_positive_rate == 0.25


class TestThreatIntel:
    def test_find_by_value_is_literal_containment(self, store, make_indicator):
        store.put_indicator(make_indicator(value="evil.example.com"))
        store.put_indicator(make_indicator(value="good.example.org"))
        store.put_indicator(make_indicator(value="evil%example"))

        assert {i.value for i in store.find_indicators_by_value("evil")} == {
            "evil.example.com",
            "evil%example",
        }
        assert [i.value for i in store.find_indicators_by_value("%")] == ["evil%example"]
        assert store.find_indicators_by_value("missing") == []

    def test_rank_filters_and_sorts_descending(self, store, make_indicator):
        for confidence in (0.2, 0.9, 0.5, 0.75, 0.49):
            store.put_indicator(make_indicator(value=f"v{confidence}", confidence=confidence))

        ranked = store.rank_by_confidence(0.5)
        assert [i.confidence for i in ranked] == [0.9, 0.75, 0.5]

    def test_rank_ties_broken_by_id(self, store, make_indicator):
        for indicator_id in ("c", "a", "b"):
            store.put_indicator(make_indicator(id=indicator_id, confidence=0.8))
        store.put_indicator(make_indicator(id="z", confidence=0.95))

        assert [i.id for i in store.rank_by_confidence(0.0)] == ["z", "a", "b", "c"]

    def test_rank_nan_threshold_raises(self, store, make_indicator):
        store.put_indicator(make_indicator())
        with pytest.raises(DataError):
            store.rank_by_confidence(float("nan"))

    def test_purge_scenario(self, store, make_indicator):
        fresh = make_indicator(value="fresh", days_ago=0)
        recent = make_indicator(value="recent", days_ago=10)
        stale = make_indicator(value="stale", days_ago=40)
        for indicator in (fresh, recent, stale):
            store.put_indicator(indicator)

        assert store.purge_indicators_older_than(30) == 1
        assert store.get_indicator(stale.id) is None
        assert store.get_indicator(fresh.id) is not None
        assert store.get_indicator(recent.id) is not None

        assert store.purge_indicators_older_than(30) == 0

    def test_purge_with_fixed_clock(self, store, make_indicator):
        now = datetime(2026, 6, 1, tzinfo=timezone.utc)
        boundary = make_indicator(
            value="boundary",
            first_seen=now - timedelta(days=31),
            last_seen=now - timedelta(days=30),
        )
        older = make_indicator(
            value="older",
            first_seen=now - timedelta(days=31),
            last_seen=now - timedelta(days=30, seconds=1),
        )
        store.put_indicator(boundary)
        store.put_indicator(older)

        # Strictly before the cutoff only.
        assert store.purge_indicators_older_than(30, now=now) == 1
        assert store.get_indicator(boundary.id) is not None

    def test_purge_negative_days_rejected(self, store):
        with pytest.raises(ValueError):
            store.purge_indicators_older_than(-1)

    def test_purge_nan_days_rejected(self, store):
        with pytest.raises(ValueError):
            store.purge_indicators_older_than(float("nan"))

    @pytest.mark.parametrize("days", [1_000_000, 10**12, float("inf")])
    def test_purge_beyond_calendar_removes_nothing(self, store, make_indicator, days):
        ancient = make_indicator(
            value="ancient",
            first_seen=datetime(1, 1, 2, tzinfo=timezone.utc),
            last_seen=datetime(1, 1, 3, tzinfo=timezone.utc),
        )
        store.put_indicator(ancient)
        store.put_indicator(make_indicator(value="fresh"))

        assert store.purge_indicators_older_than(days) == 0
        assert store.stats().indicators_count == 2

    def test_delete_indicator(self, store, make_indicator):
        indicator = make_indicator()
        store.put_indicator(indicator)
        assert store.delete_indicator(indicator.id) is True
        assert store.get_indicator(indicator.id) is None

    def test_nan_payload_on_disk_raises_data_error(self, store, store_path, make_indicator):
        payload = make_indicator(id="bad").model_dump_json().replace('"confidence":0.5', '"confidence":NaN')
        with sqlite3.connect(store_path) as conn:
            conn.execute(
                f"INSERT INTO {INTEL_TABLE} (id, payload) VALUES (?, ?)",
                ("bad", payload.encode()),
            )
        with pytest.raises(DataError):
            store.rank_by_confidence(0.1)


class TestStatsAndConcurrency:
    def test_stats_counts_each_table(self, store, store_path, make_rule, make_indicator):
        store.put_rule(make_rule(name="a"))
        store.put_rule(make_rule(name="b"))
        store.put_metadata(RuleMetadata(rule_id="x"))
        store.put_indicator(make_indicator())

        stats = store.stats()
        assert stats.rules_count == 2
        assert stats.metadata_count == 1
        assert stats.indicators_count == 1
        assert stats.store_path == str(store_path)
        assert stats.computed_at.tzinfo is not None

    def test_concurrent_writers(self, store, make_rule):
        rules = [make_rule(name=f"Rule_{i}") for i in range(40)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(store.put_rule, rules))

        assert len(store.list_rules()) == 40

    def test_concurrent_detections_are_not_lost(self, store):
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: store.record_detection("hot"), range(24)))

        assert store.get_metadata("hot").detection_count == 24
