"""Shared test fixtures for the pyro-thor test suite."""

import pytest
from datetime import datetime, timedelta, timezone

from pyro_thor.rules.models import IndicatorType, Rule, ThreatIntelIndicator
from pyro_thor.rules.store import RuleStore


@pytest.fixture
def store_path(tmp_path):
    """Location of a not-yet-created rule store."""
    return tmp_path / "db" / "yara_rules.db"


@pytest.fixture
def store(store_path):
    """A fresh, empty rule store."""
    return RuleStore.open(store_path)


@pytest.fixture
def rules_dir(tmp_path):
    """Temporary directory for YARA rule files."""
    d = tmp_path / "rules"
    d.mkdir()
    return d


@pytest.fixture
def make_rule():
    def _make(name="Demo_Rule", **overrides):
        fields = {
            "name": name,
            "content": f"rule {name} {{ condition: true }}",
            "author": "tests",
            "tags": ["demo"],
        }
        fields.update(overrides)
        return Rule(**fields)

    return _make


@pytest.fixture
def make_indicator():
    def _make(value="198.51.100.7", confidence=0.5, days_ago=0, **overrides):
        last_seen = datetime.now(timezone.utc) - timedelta(days=days_ago)
        fields = {
            "indicator_type": IndicatorType.IP,
            "value": value,
            "confidence": confidence,
            "first_seen": last_seen - timedelta(days=1),
            "last_seen": last_seen,
        }
        fields.update(overrides)
        return ThreatIntelIndicator(**fields)

    return _make
