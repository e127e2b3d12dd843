"""SQLite-backed store for detection rules, rule metadata and threat intel.

Each table maps an opaque string id to a JSON payload. Every public call
opens its own connection and runs exactly one transaction, so concurrent
scan runs can share a store without extra locking: writers serialize on
SQLite's reserved lock, readers see the last committed snapshot.
"""

import logging
import math
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from ..errors import DataError, OpenError, StoreError
from .models import Rule, RuleMetadata, StoreStats, ThreatIntelIndicator, utc_now

RULES_TABLE = "rules"
METADATA_TABLE = "rule_metadata"
INTEL_TABLE = "threat_intel"
TABLES = (RULES_TABLE, METADATA_TABLE, INTEL_TABLE)

ModelT = TypeVar("ModelT", bound=BaseModel)


class RuleStore:
    """File-backed embedded store with three independent keyed tables."""

    def __init__(
        self,
        db_path: Union[str, Path],
        busy_timeout: float = 30.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self.logger = logger or logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self._init_database()

    @classmethod
    def open(cls, db_path: Union[str, Path], **kwargs) -> "RuleStore":
        """Open (creating if needed) the store at ``db_path``."""
        return cls(db_path, **kwargs)

    def _init_database(self) -> None:
        """Create the parent directory and the three tables if absent."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                with conn:
                    for table in TABLES:
                        conn.execute(
                            f"CREATE TABLE IF NOT EXISTS {table} ("
                            "id TEXT PRIMARY KEY NOT NULL, "
                            "payload BLOB NOT NULL)"
                        )
            finally:
                conn.close()
        except (OSError, sqlite3.Error) as e:
            raise OpenError(f"Failed to open rule store at {self.db_path}: {e}") from e

        self.logger.info(f"Initialized rule store at {self.db_path}")

    @contextmanager
    def _transaction(self, write: bool = False) -> Iterator[sqlite3.Connection]:
        """One connection, one transaction. Rolls back on any error."""
        try:
            conn = sqlite3.connect(
                self.db_path, timeout=self.busy_timeout, isolation_level=None
            )
        except sqlite3.Error as e:
            raise StoreError(f"Failed to connect to {self.db_path}: {e}") from e

        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StoreError(f"Rule store transaction failed: {e}") from e
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @staticmethod
    def _encode(record: BaseModel) -> bytes:
        try:
            return record.model_dump_json().encode("utf-8")
        except (ValueError, TypeError) as e:
            raise DataError(f"Failed to serialize {type(record).__name__}: {e}") from e

    @staticmethod
    def _decode(model: Type[ModelT], payload: bytes) -> ModelT:
        try:
            return model.model_validate_json(payload)
        except ValidationError as e:
            raise DataError(f"Failed to deserialize {model.__name__}: {e}") from e

    def _put(self, table: str, key: str, record: BaseModel) -> None:
        payload = self._encode(record)
        with self._transaction(write=True) as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO {table} (id, payload) VALUES (?, ?)",
                (key, payload),
            )

    def _get(self, table: str, key: str, model: Type[ModelT]) -> Optional[ModelT]:
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT payload FROM {table} WHERE id = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        return self._decode(model, row[0])

    def _all(self, table: str, model: Type[ModelT]) -> List[ModelT]:
        with self._transaction() as conn:
            rows = conn.execute(f"SELECT payload FROM {table}").fetchall()
        return [self._decode(model, row[0]) for row in rows]

    def _delete(self, table: str, key: str) -> bool:
        with self._transaction(write=True) as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (key,))
            return cursor.rowcount > 0

    # Rules

    def put_rule(self, rule: Rule) -> None:
        self._put(RULES_TABLE, rule.id, rule)
        self.logger.info(f"Stored rule: {rule.name} ({rule.id})")

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return self._get(RULES_TABLE, rule_id, Rule)

    def list_rules(self) -> List[Rule]:
        """Snapshot of every stored rule, in no particular order."""
        return self._all(RULES_TABLE, Rule)

    def delete_rule(self, rule_id: str) -> bool:
        return self._delete(RULES_TABLE, rule_id)

    # Rule metadata

    def put_metadata(self, metadata: RuleMetadata) -> None:
        self._put(METADATA_TABLE, metadata.rule_id, metadata)
        self.logger.debug(f"Updated metadata for rule: {metadata.rule_id}")

    def get_metadata(self, rule_id: str) -> Optional[RuleMetadata]:
        return self._get(METADATA_TABLE, rule_id, RuleMetadata)

    def record_detection(
        self, rule_id: str, when: Optional[datetime] = None
    ) -> RuleMetadata:
        """Increment a rule's detection count inside a single write transaction."""
        when = when or utc_now()
        with self._transaction(write=True) as conn:
            row = conn.execute(
                f"SELECT payload FROM {METADATA_TABLE} WHERE id = ?", (rule_id,)
            ).fetchone()
            if row is None:
                metadata = RuleMetadata(rule_id=rule_id)
            else:
                metadata = self._decode(RuleMetadata, row[0])
            metadata = metadata.model_copy(
                update={
                    "detection_count": metadata.detection_count + 1,
                    "last_detection": when,
                }
            )
            conn.execute(
                f"INSERT OR REPLACE INTO {METADATA_TABLE} (id, payload) VALUES (?, ?)",
                (rule_id, self._encode(metadata)),
            )
        return metadata

    # Threat intel

    def put_indicator(self, indicator: ThreatIntelIndicator) -> None:
        if math.isnan(indicator.confidence):
            raise DataError(f"Indicator {indicator.id} has NaN confidence")
        self._put(INTEL_TABLE, indicator.id, indicator)
        self.logger.info(
            f"Stored threat intel indicator: {indicator.value} "
            f"(confidence: {indicator.confidence:.2f})"
        )

    def get_indicator(self, indicator_id: str) -> Optional[ThreatIntelIndicator]:
        return self._get(INTEL_TABLE, indicator_id, ThreatIntelIndicator)

    def delete_indicator(self, indicator_id: str) -> bool:
        return self._delete(INTEL_TABLE, indicator_id)

    def find_indicators_by_value(self, substring: str) -> List[ThreatIntelIndicator]:
        """Indicators whose value literally contains ``substring``."""
        return [
            indicator
            for indicator in self._all(INTEL_TABLE, ThreatIntelIndicator)
            if substring in indicator.value
        ]

    def rank_by_confidence(self, min_confidence: float) -> List[ThreatIntelIndicator]:
        """Indicators at or above ``min_confidence``, highest first.

        Equal confidences are ordered by id so the result is deterministic.
        """
        if math.isnan(min_confidence):
            raise DataError("min_confidence must be a number, got NaN")

        selected = []
        for indicator in self._all(INTEL_TABLE, ThreatIntelIndicator):
            if math.isnan(indicator.confidence):
                raise DataError(f"Indicator {indicator.id} has NaN confidence")
            if indicator.confidence >= min_confidence:
                selected.append(indicator)

        selected.sort(key=lambda i: (-i.confidence, i.id))
        return selected

    def purge_indicators_older_than(
        self, days: float, now: Optional[datetime] = None
    ) -> int:
        """Delete indicators last seen before ``now - days``. Returns the count."""
        if math.isnan(days) or days < 0:
            raise ValueError(f"days must be non-negative, got {days}")
        try:
            cutoff = (now or utc_now()) - timedelta(days=days)
        except OverflowError:
            # Older than any representable timestamp, so nothing is stale.
            cutoff = datetime.min.replace(tzinfo=timezone.utc)

        with self._transaction(write=True) as conn:
            rows = conn.execute(f"SELECT id, payload FROM {INTEL_TABLE}").fetchall()
            stale = [
                key
                for key, payload in rows
                if self._decode(ThreatIntelIndicator, payload).last_seen < cutoff
            ]
            conn.executemany(
                f"DELETE FROM {INTEL_TABLE} WHERE id = ?", [(key,) for key in stale]
            )

        self.logger.info(f"Cleaned up {len(stale)} old threat intel indicators")
        return len(stale)

    def stats(self) -> StoreStats:
        with self._transaction() as conn:
            counts = {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in TABLES
            }
        return StoreStats(
            rules_count=counts[RULES_TABLE],
            metadata_count=counts[METADATA_TABLE],
            indicators_count=counts[INTEL_TABLE],
            store_path=str(self.db_path),
        )
