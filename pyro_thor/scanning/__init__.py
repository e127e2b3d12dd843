"""THOR scan orchestration.

Acquires the THOR Lite package, runs the scanner in an isolated working
directory and collects its JSON report.
"""

from .lifecycle import ScanLifecycle, compose_arguments, extract_rule_names
from .models import ScanContext, ScanMode, ScanOutcome
from .package import PackageManager, ScannerPackage
from .platform import (
    NoopPlatformHooks,
    PlatformHooks,
    PlatformInfo,
    UnixPlatformHooks,
    WindowsPlatformHooks,
    select_platform_hooks,
)
from .transport import HttpxTransport, Transport

__all__ = [
    "ScanLifecycle",
    "compose_arguments",
    "extract_rule_names",
    "ScanContext",
    "ScanMode",
    "ScanOutcome",
    "PackageManager",
    "ScannerPackage",
    "NoopPlatformHooks",
    "PlatformHooks",
    "PlatformInfo",
    "UnixPlatformHooks",
    "WindowsPlatformHooks",
    "select_platform_hooks",
    "HttpxTransport",
    "Transport",
]
