"""One-shot import of rule files from a directory into a RuleStore."""

import logging
from pathlib import Path
from typing import Iterable, Union

from ..errors import DataError, RuleImportError
from .models import Rule, Severity, compute_content_hash, utc_now
from .store import RuleStore

logger = logging.getLogger(__name__)

DEFAULT_RULE_EXTENSIONS = (".yar", ".yara")


def rule_from_file(path: Path, content: str) -> Rule:
    """Build a Rule for a freshly imported file."""
    now = utc_now()
    return Rule(
        name=path.stem or "unknown",
        content=content,
        author="Auto-imported",
        description=f"Imported from {path}",
        tags=["auto-imported"],
        severity=Severity.MEDIUM,
        created_at=now,
        updated_at=now,
        version="1.0",
        content_hash=compute_content_hash(content),
        source=str(path),
    )


def sync_from_directory(
    store: RuleStore,
    directory: Union[str, Path],
    extensions: Iterable[str] = DEFAULT_RULE_EXTENSIONS,
) -> int:
    """Import every rule file directly inside ``directory``.

    Subdirectories are not descended into. Files that cannot be read or
    stored are logged and skipped, so the return value is the number of
    rules actually imported.

    Raises:
        RuleImportError: if the directory itself cannot be listed.
    """
    directory = Path(directory)
    wanted = {ext.lower() for ext in extensions}

    try:
        entries = sorted(directory.iterdir())
    except OSError as e:
        raise RuleImportError(f"Failed to read rules directory {directory}: {e}") from e

    synced = 0
    for path in entries:
        if path.suffix.lower() not in wanted or not path.is_file():
            continue

        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Skipping unreadable rule file {path}: {e}")
            continue

        try:
            store.put_rule(rule_from_file(path, content))
        except DataError as e:
            logger.warning(f"Skipping rule file {path}: {e}")
            continue
        synced += 1

    logger.info(f"Synced {synced} YARA rules from directory: {directory}")
    return synced
