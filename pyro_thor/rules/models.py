"""Pydantic v2 models for the rule and threat-intel store."""

import hashlib
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Naive timestamps are taken to be UTC so every comparison is aware.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def compute_content_hash(content: str) -> str:
    """SHA256 digest of rule source text, as recorded in Rule.content_hash."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IndicatorType(str, Enum):
    IP = "ip"
    DOMAIN = "domain"
    HASH = "hash"
    URL = "url"
    EMAIL = "email"
    FILE = "file"
    OTHER = "other"


class Rule(BaseModel):
    """A detection signature with provenance and taxonomy metadata."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    content: str
    author: str = ""
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    severity: Severity = Severity.MEDIUM
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: str = "1.0"
    content_hash: str = ""
    source: str = ""
    mitre_tactics: List[str] = Field(default_factory=list)
    mitre_techniques: List[str] = Field(default_factory=list)
    threat_actors: List[str] = Field(default_factory=list)
    malware_families: List[str] = Field(default_factory=list)

    @field_validator("created_at", "updated_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_timestamps(self) -> "Rule":
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must not be earlier than created_at")
        return self


class RuleMetadata(BaseModel):
    """Operational statistics for a rule, linked by id only."""

    rule_id: str
    performance_score: float = 0.0
    false_positive_rate: float = 0.0
    detection_count: int = Field(default=0, ge=0)
    last_detection: Optional[datetime] = None
    effectiveness_rating: str = "unknown"
    confidence_score: float = 0.0
    relevance_score: float = 0.0

    @field_validator("last_detection")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class ThreatIntelIndicator(BaseModel):
    """A threat-intelligence observable with confidence and freshness."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    indicator_type: IndicatorType
    value: str
    confidence: float = Field(ge=0.0, le=1.0, allow_inf_nan=False)
    threat_score: float = 0.0
    first_seen: datetime = Field(default_factory=utc_now)
    last_seen: datetime = Field(default_factory=utc_now)
    source_feeds: List[str] = Field(default_factory=list)
    associated_campaigns: List[str] = Field(default_factory=list)
    mitre_mapping: List[str] = Field(default_factory=list)
    quantum_resistant: bool = False

    @field_validator("first_seen", "last_seen")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_window(self) -> "ThreatIntelIndicator":
        if self.last_seen < self.first_seen:
            raise ValueError("last_seen must not be earlier than first_seen")
        return self


class StoreStats(BaseModel):
    """Point-in-time table counts. Computed on demand, never persisted."""

    rules_count: int
    metadata_count: int
    indicators_count: int
    store_path: str
    computed_at: datetime = Field(default_factory=utc_now)
