"""Exception hierarchy shared by the store, the scan lifecycle and the CLI."""

from typing import Optional

from .stages import ScanStage


class PyroThorError(Exception):
    """Base class for all pyro-thor errors.

    ``retryable`` tells callers whether repeating the same operation may
    succeed (network trouble) or is pointless (a broken package).
    """

    retryable: bool = False


class ConfigError(PyroThorError):
    """Configuration could not be loaded or validated."""


class StoreError(PyroThorError):
    """The embedded rule store failed."""


class OpenError(StoreError):
    """The store file or its tables could not be initialized."""


class DataError(StoreError):
    """A record could not be serialized, deserialized or compared."""


class RuleImportError(PyroThorError):
    """A rules directory could not be listed."""


class ScanError(PyroThorError):
    """A fatal failure of one scan run, tagged with the stage that failed."""

    default_stage: Optional[ScanStage] = None

    def __init__(
        self,
        message: str,
        stage: Optional[ScanStage] = None,
        cause: Optional[BaseException] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage or self.default_stage
        self.cause = cause
        if retryable is not None:
            self.retryable = retryable

    def __str__(self) -> str:
        stage = self.stage.value if self.stage else "unknown"
        text = f"[{stage}] {self.message}"
        if self.cause is not None:
            text += f": {self.cause}"
        return text


class AcquisitionError(ScanError):
    default_stage = ScanStage.ACQUIRE
    retryable = True


class ExtractionError(ScanError):
    default_stage = ScanStage.EXTRACT


class BinaryNotFoundError(ScanError):
    default_stage = ScanStage.EXECUTE


class ExecutionError(ScanError):
    """The scanner exited with a non-zero status or could not be launched."""

    default_stage = ScanStage.EXECUTE

    def __init__(
        self,
        message: str,
        stderr: str = "",
        return_code: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.stderr = stderr
        self.return_code = return_code

    def __str__(self) -> str:
        text = super().__str__()
        if self.stderr:
            text += f"\n{self.stderr.strip()}"
        return text


class ExecutionTimeout(ScanError):
    """A download or the scanner process exceeded its deadline."""

    default_stage = ScanStage.EXECUTE
    retryable = True


class ResultFormatError(ScanError):
    default_stage = ScanStage.EXECUTE


class TransportError(PyroThorError):
    """An HTTP exchange with the Pyro server failed."""

    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransportTimeout(TransportError):
    """An HTTP exchange did not complete before its deadline."""
