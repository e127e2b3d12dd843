"""Acquires the THOR package and unpacks it into a scan's working directory."""

import asyncio
import hashlib
import io
import logging
import os
import shutil
import tempfile
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from ..errors import (
    AcquisitionError,
    ExecutionTimeout,
    ExtractionError,
    TransportError,
    TransportTimeout,
)
from ..models import PyroConfig
from ..stages import ScanStage
from .platform import PlatformHooks, PlatformInfo
from .transport import Transport

logger = logging.getLogger(__name__)


def best_effort(log: logging.Logger, action: str, func: Callable[..., None], *args) -> bool:
    """Run a side effect whose failure must never stop a scan."""
    try:
        func(*args)
    except Exception as e:
        log.warning(f"Failed to {action}: {e}")
        return False
    return True


@dataclass
class ScannerPackage:
    """A THOR package either on local disk or held in memory."""

    location: str
    path: Optional[Path] = None
    content: Optional[bytes] = None

    def open(self) -> zipfile.ZipFile:
        if self.path is not None:
            return zipfile.ZipFile(self.path, "r")
        return zipfile.ZipFile(io.BytesIO(self.content or b""), "r")

    def sha256(self) -> str:
        h = hashlib.sha256()
        if self.path is not None:
            with open(self.path, "rb") as f:
                for chunk in iter(lambda: f.read(8192), b""):
                    h.update(chunk)
        else:
            h.update(self.content or b"")
        return h.hexdigest()


class PackageManager:
    """Local-first acquisition of the scanner package plus ZIP extraction.

    Resolution order:
    1. scanning.package_path on local disk
    2. <pyro.endpoint>/api/tools/<package> via the Transport

    A verified download is saved to scanning.package_path so later runs
    take the first branch.
    """

    def __init__(
        self,
        config: PyroConfig,
        transport: Transport,
        hooks: PlatformHooks,
        platform: PlatformInfo,
    ):
        self.config = config
        self.transport = transport
        self.hooks = hooks
        self.platform = platform
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def acquire(self) -> ScannerPackage:
        local = Path(self.config.scanning.package_path)
        if local.is_file():
            self.logger.info(f"Using local Thor package: {local}")
            package = ScannerPackage(location=str(local), path=local)
        else:
            package = await self._download()

        self._verify(package)
        if package.path is None:
            best_effort(
                self.logger,
                f"save Thor package to {local}",
                self._save,
                package,
                local,
            )
        return package

    def _save(self, package: ScannerPackage, local: Path) -> None:
        """Write a downloaded package to ``local`` atomically."""
        local.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{local.name}.", suffix=".part", dir=str(local.parent)
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(package.content or b"")
            os.replace(tmp_name, local)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        self.logger.info(f"Saved Thor package to {local}")

    async def _download(self) -> ScannerPackage:
        url = self.config.package_url
        timeout = self.config.pyro.timeout_seconds
        self.logger.info(
            f"Downloading Thor package from Pyro server: {self.config.pyro.endpoint}"
        )

        try:
            content = await asyncio.wait_for(
                self.transport.download(url, self.config.pyro.api_key, timeout),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, TransportTimeout) as e:
            raise ExecutionTimeout(
                f"Thor package download exceeded {timeout}s",
                stage=ScanStage.ACQUIRE,
                cause=e,
            ) from e
        except TransportError as e:
            raise AcquisitionError("Failed to download Thor package", cause=e) from e

        self.logger.info(f"Thor package downloaded successfully ({len(content)} bytes)")
        return ScannerPackage(location=url, content=content)

    def _verify(self, package: ScannerPackage) -> None:
        """SHA256 check against scanning.package_sha256 if configured."""
        expected = self.config.scanning.package_sha256
        if not expected:
            self.logger.debug("No expected package hash configured, skipping verification")
            return

        actual = package.sha256()
        if actual != expected.lower():
            raise AcquisitionError(
                f"Thor package hash mismatch for {package.location}: "
                f"expected {expected}, got {actual}",
                retryable=False,
            )

    def extract(self, package: ScannerPackage, dest_dir: Path) -> int:
        """Unpack every archive entry under ``dest_dir``. Returns the entry count.

        Not transactional: a failure part-way leaves earlier entries on disk.
        """
        dest_dir = Path(dest_dir).resolve()
        self.logger.info(f"Extracting Thor package to: {dest_dir}")

        try:
            archive = package.open()
        except (zipfile.BadZipFile, OSError) as e:
            raise ExtractionError("Failed to read ZIP archive", cause=e) from e

        binary_name = self.platform.binary_name
        count = 0
        with archive:
            for info in archive.infolist():
                target = self._entry_target(dest_dir, info.filename)
                try:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    if info.is_dir():
                        target.mkdir(parents=True, exist_ok=True)
                    else:
                        with archive.open(info) as src, open(target, "wb") as out:
                            shutil.copyfileobj(src, out)
                except (OSError, zipfile.BadZipFile, zlib.error, EOFError, RuntimeError) as e:
                    raise ExtractionError(f"Failed to extract {info.filename}", cause=e) from e

                if not info.is_dir() and binary_name in info.filename:
                    best_effort(
                        self.logger,
                        f"set executable permissions on {target}",
                        self.hooks.set_executable,
                        target,
                    )
                count += 1

        self.logger.debug(f"Extracted {count} entries to {dest_dir}")
        return count

    @staticmethod
    def _entry_target(dest_dir: Path, name: str) -> Path:
        target = (dest_dir / name).resolve()
        if target != dest_dir and dest_dir not in target.parents:
            raise ExtractionError(f"Archive entry escapes the working directory: {name}")
        return target
