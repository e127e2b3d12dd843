"""Pydantic v2 models describing one scan run."""

import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..rules.store import RuleStore
from ..stages import ScanStage, ScanState


class ScanMode(str, Enum):
    STANDARD = "standard"
    ENTERPRISE = "enterprise"


class ScanContext(BaseModel):
    """Inputs of a scan run plus the working directory it allocates."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    scan_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    scan_path: Path
    output_path: Path
    mode: ScanMode = ScanMode.STANDARD
    store: Optional[RuleStore] = None
    # Set once by the Prepare stage, kept afterwards for inspection.
    working_dir: Optional[Path] = None

    @property
    def store_attached(self) -> bool:
        return self.store is not None


class ScanOutcome(BaseModel):
    """What a scan run produced."""

    scan_id: str
    mode: ScanMode
    state: ScanState = ScanState.IDLE
    failed_stage: Optional[ScanStage] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    return_code: Optional[int] = None
    stderr: str = ""
    report: Any = None
    output_path: Optional[Path] = None
    published: bool = False
    publish_error: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None
