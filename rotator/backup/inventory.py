"""
Listing of existing backup sets under the backup root.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, NamedTuple, Optional

from .policy import RotationTier

logger = logging.getLogger(__name__)

KIND_DIRECTORY = 'directory'
KIND_ARCHIVE = 'archive'


@dataclass(frozen=True)
class BackupSet:
    """One backup artifact on disk: a set directory or its archive file."""
    name: str
    path: Path
    modified: datetime
    kind: str

    @property
    def is_archive(self) -> bool:
        return self.kind == KIND_ARCHIVE


class InventoryScan(NamedTuple):
    """Sets found for a tier, oldest first. `error` is set when the root could not be read."""
    sets: List[BackupSet]
    error: Optional[str] = None


def list_backup_sets(root, host_id: str, tier: RotationTier) -> InventoryScan:
    """
    List the backup sets of one tier.

    An entry belongs to the tier when its name contains both the host
    identifier and the tier label. Sets are ordered by last-write time,
    ties broken by name.

    Args:
        root: Backup root directory
        host_id: Host identifier prefix of set names
        tier: Tier to list

    Returns:
        InventoryScan; an unreadable root yields no sets and an error text
    """
    root = Path(root)

    try:
        entries = list(os.scandir(root))
    except OSError as e:
        logger.warning(f"Cannot list {root}: {e}")
        return InventoryScan(sets=[], error=str(e))

    sets = []
    for entry in entries:
        if host_id not in entry.name or tier.label not in entry.name:
            continue

        try:
            is_dir = entry.is_dir()
            stat = entry.stat()
        except OSError as e:
            # Entry vanished or is unreadable; it cannot be rotated either
            logger.warning(f"Skipping {entry.path}: {e}")
            continue

        sets.append(BackupSet(
            name=entry.name,
            path=Path(entry.path),
            modified=datetime.fromtimestamp(stat.st_mtime),
            kind=KIND_DIRECTORY if is_dir else KIND_ARCHIVE,
        ))

    sets.sort(key=lambda s: (s.modified, s.name))
    return InventoryScan(sets=sets)
