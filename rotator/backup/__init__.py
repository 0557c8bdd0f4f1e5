"""
Backup module for rotator.

This module handles the rotation workflow including:
- Tier resolution and set naming
- Inventory and count-based rotation
- Backup engine invocation
- Compression
- Remote synchronization
- Job result aggregation and reporting
"""

from .executor import BackupOrchestrator, execute_backup_run
from .policy import RetentionPolicy, RotationTier, resolve_plan
from .result import JobResult, Status
from .retention import RotationEnforcer
from .compression import compress_backup_set
from .mirror import synchronize

__all__ = [
    'BackupOrchestrator',
    'execute_backup_run',
    'RetentionPolicy',
    'RotationTier',
    'resolve_plan',
    'JobResult',
    'Status',
    'RotationEnforcer',
    'compress_backup_set',
    'synchronize',
]
