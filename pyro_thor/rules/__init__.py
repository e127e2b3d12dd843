"""Embedded detection-rule and threat-intel store."""

from .models import (
    IndicatorType,
    Rule,
    RuleMetadata,
    Severity,
    StoreStats,
    ThreatIntelIndicator,
    compute_content_hash,
)
from .store import RuleStore
from .sync import sync_from_directory

__all__ = [
    "IndicatorType",
    "Rule",
    "RuleMetadata",
    "Severity",
    "StoreStats",
    "ThreatIntelIndicator",
    "compute_content_hash",
    "RuleStore",
    "sync_from_directory",
]
