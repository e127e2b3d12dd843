"""Platform detection and OS-specific best-effort side effects.

The lifecycle talks to one PlatformHooks object chosen at startup by
select_platform_hooks(); it never branches on the OS itself.
"""

import logging
import os
import platform as _platform
import stat
import subprocess
import sys
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
    "armv8": "aarch64",
    "i686": "x86",
    "i386": "x86",
}


def _detect_os() -> str:
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "macos"
    if sys.platform.startswith("linux"):
        return "linux"
    return sys.platform


def _detect_arch() -> str:
    machine = _platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


@dataclass(frozen=True)
class PlatformInfo:
    os: str
    arch: str
    temp_dir: Path
    executable_extension: str = ""

    @classmethod
    def detect(cls) -> "PlatformInfo":
        os_name = _detect_os()
        return cls(
            os=os_name,
            arch=_detect_arch(),
            temp_dir=Path(tempfile.gettempdir()),
            executable_extension=".exe" if os_name == "windows" else "",
        )

    @property
    def binary_name(self) -> str:
        """File name of the THOR Lite scanner for this platform."""
        return f"thor-lite_{self.arch}{self.executable_extension}"

    def is_windows(self) -> bool:
        return self.os == "windows"

    def is_unix(self) -> bool:
        return self.os in ("linux", "macos")


class PlatformHooks(ABC):
    """Best-effort OS side effects around a scan.

    Implementations may raise; callers log the failure and carry on.
    """

    @abstractmethod
    def add_isolation_exception(self, path: Path) -> None:
        """Ask local security tooling to leave ``path`` alone."""

    @abstractmethod
    def remove_isolation_exception(self, path: Path) -> None:
        """Undo add_isolation_exception()."""

    @abstractmethod
    def set_executable(self, path: Path) -> None:
        """Make ``path`` runnable as a program."""


class NoopPlatformHooks(PlatformHooks):
    """For targets without any isolation or permission mechanism."""

    def add_isolation_exception(self, path: Path) -> None:
        logger.debug(f"No isolation mechanism on this platform, skipping {path}")

    def remove_isolation_exception(self, path: Path) -> None:
        logger.debug(f"No isolation mechanism on this platform, skipping {path}")

    def set_executable(self, path: Path) -> None:
        logger.debug(f"No permission bits on this platform, skipping {path}")


class UnixPlatformHooks(NoopPlatformHooks):
    """POSIX: only permission bits matter."""

    def set_executable(self, path: Path) -> None:
        mode = os.stat(path).st_mode
        os.chmod(path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        logger.debug(f"Set executable permissions on {path}")


class WindowsPlatformHooks(PlatformHooks):
    """Windows: Defender exclusions through PowerShell."""

    def __init__(self, powershell: str = "powershell", timeout: float = 60):
        self.powershell = powershell
        self.timeout = timeout

    def _run_powershell(self, command: str) -> None:
        cmd: List[str] = [
            self.powershell,
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy",
            "Bypass",
            "-Command",
            command,
        ]
        result = subprocess.run(
            cmd, capture_output=True, text=True, timeout=self.timeout
        )
        if result.returncode != 0:
            raise RuntimeError(
                f"PowerShell exited with code {result.returncode}: {result.stderr.strip()}"
            )

    @staticmethod
    def _quote(path: Path) -> str:
        """PowerShell single-quoted literal; embedded quotes are doubled."""
        return "'" + str(path).replace("'", "''") + "'"

    def add_isolation_exception(self, path: Path) -> None:
        self._run_powershell(f"Add-MpPreference -ExclusionPath {self._quote(path)}")
        logger.info(f"Added Windows Defender exclusion for {path}")

    def remove_isolation_exception(self, path: Path) -> None:
        self._run_powershell(f"Remove-MpPreference -ExclusionPath {self._quote(path)}")
        logger.info(f"Removed Windows Defender exclusion for {path}")

    def set_executable(self, path: Path) -> None:
        # .exe files are runnable by extension alone
        pass


def select_platform_hooks(info: Optional[PlatformInfo] = None) -> PlatformHooks:
    """Pick the hooks implementation for the running platform."""
    info = info or PlatformInfo.detect()
    if info.is_windows():
        return WindowsPlatformHooks()
    if info.is_unix():
        return UnixPlatformHooks()
    return NoopPlatformHooks()
