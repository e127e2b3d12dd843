"""States and stages of a single scan run."""

from enum import Enum


class ScanState(str, Enum):
    IDLE = "idle"
    PREPARED = "prepared"
    PACKAGE_READY = "package_ready"
    EXTRACTED = "extracted"
    EXECUTED = "executed"
    FINALIZED = "finalized"
    FAILED = "failed"


class ScanStage(str, Enum):
    PREPARE = "prepare"
    ACQUIRE = "acquire"
    EXTRACT = "extract"
    EXECUTE = "execute"
    FINALIZE = "finalize"
    PUBLISH = "publish"
    CLEANUP = "cleanup"
