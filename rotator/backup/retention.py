"""
Count-based rotation of backup sets.

Before a new set of a tier is created, the oldest existing sets of that tier
are deleted until fewer than the retention count remain, so the count holds
once the new set lands.
"""

import logging
import shutil
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .inventory import BackupSet, InventoryScan
from .messages import Msg
from .policy import RotationTier
from .result import JobResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemovalOutcome:
    """Result of one deletion attempt."""
    name: str
    removed: bool
    error: Optional[str] = None


def select_expired(sets: Sequence[BackupSet], retention: int) -> List[BackupSet]:
    """
    Pick the sets to delete, oldest first.

    While the remaining count is at least `retention` the oldest remaining set
    is taken, so at most retention-1 survive; a retention of 0 takes them all.

    Args:
        sets: Existing sets of one tier, oldest first
        retention: Configured retention count (>= 0)

    Returns:
        Sets to delete
    """
    remaining = len(sets)
    expired = []

    for backup_set in sets:
        if remaining < retention:
            break
        expired.append(backup_set)
        remaining -= 1

    return expired


def remove_backup_set(backup_set: BackupSet):
    """
    Delete a set directory or archive file.

    Raises:
        OSError: If the deletion fails
    """
    if backup_set.path.is_dir() and not backup_set.path.is_symlink():
        shutil.rmtree(backup_set.path)
    else:
        backup_set.path.unlink()


class RotationEnforcer:
    """
    Enforces the retention count of one tier and reports into a JobResult.

    Deletions are best-effort: a failed deletion is recorded as a warning and
    the remaining candidates are still processed.
    """

    def __init__(self, result: JobResult):
        """
        Initialize rotation enforcer.

        Args:
            result: Job record receiving removed set names and messages
        """
        self.result = result

    def enforce(self, scan: InventoryScan, tier: RotationTier, retention: int, root=None) -> List[RemovalOutcome]:
        """
        Delete the oldest sets of `tier` down to retention-1.

        Args:
            scan: Inventory of the tier
            tier: Tier being rotated
            retention: Retention count for the tier
            root: Backup root, for messages only

        Returns:
            One RemovalOutcome per deletion attempt, oldest first
        """
        if scan.error is not None:
            self.result.warn(Msg.INVENTORY_FAILED, root=root, error=scan.error)

        self.result.info(
            Msg.INVENTORY_FOUND,
            count=len(scan.sets),
            tier=tier.value,
            keep=max(retention - 1, 0),
        )

        outcomes = []
        for backup_set in select_expired(scan.sets, retention):
            outcomes.append(self._remove(backup_set))

        removed = sum(1 for o in outcomes if o.removed)
        self.result.info(Msg.ROTATION_DONE, removed=removed, failed=len(outcomes) - removed)

        return outcomes

    def _remove(self, backup_set: BackupSet) -> RemovalOutcome:
        try:
            remove_backup_set(backup_set)
        except OSError as e:
            self.result.warn(Msg.SET_REMOVE_FAILED, name=backup_set.name, error=e)
            return RemovalOutcome(name=backup_set.name, removed=False, error=str(e))

        self.result.add_removed_set(backup_set.name)
        self.result.info(Msg.SET_REMOVED, name=backup_set.name)
        return RemovalOutcome(name=backup_set.name, removed=True)


def enforce_rotation(scan: InventoryScan, tier: RotationTier, retention: int, result: JobResult, root=None) -> List[RemovalOutcome]:
    """
    Enforce the retention count of one tier.

    Convenience wrapper around RotationEnforcer.enforce().
    """
    return RotationEnforcer(result).enforce(scan, tier, retention, root=root)
