"""
Job result record shared by every pipeline stage.

A JobResult is created at run start, handed explicitly to each stage, and
only ever grows: messages are appended and the overall state moves up the
chain UNSET < WARNING < ERROR, never down. finalize() fills in the disabled
stage states and SUCCESSFUL, after which the record is read-only.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from .messages import Msg, render
from .policy import RotationTier

job_logger = logging.getLogger('rotator.job')


class Status(str, Enum):
    UNSET = 'UNSET'
    DISABLED = 'DISABLED'
    SUCCESSFUL = 'SUCCESSFUL'
    WARNING = 'WARNING'
    ERROR = 'ERROR'

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    Status.UNSET: 0,
    Status.DISABLED: 0,
    Status.SUCCESSFUL: 0,
    Status.WARNING: 1,
    Status.ERROR: 2,
}


class RunAborted(Exception):
    """Fatal condition: skip the remaining stages and go straight to reporting."""
    pass


@dataclass
class JobResult:
    config_path: Optional[str] = None
    log_path: Optional[str] = None
    backup_type: Optional[str] = None
    tier: Optional[RotationTier] = None
    set_name: Optional[str] = None
    host_id: Optional[str] = None
    compress_enabled: bool = False
    sync_enabled: bool = False
    notify_enabled: bool = False

    state: Status = Status.UNSET
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    engine_result_code: Optional[int] = None
    engine_started_at: Optional[datetime] = None
    engine_ended_at: Optional[datetime] = None
    artifact: Optional[str] = None
    failure_log: Optional[str] = None

    compression: Status = Status.UNSET
    removed_sets: List[str] = field(default_factory=list)
    synchronization: Status = Status.UNSET
    mirror_log: Optional[str] = None

    messages: List[str] = field(default_factory=list)
    finalized: bool = field(default=False, init=False)

    def escalate(self, status: Status):
        """Raise the overall state to `status` unless it is already as severe."""
        self._ensure_open()
        if status.severity > self.state.severity:
            self.state = status

    def log(self, level: int, msg: Msg, **fields) -> str:
        """
        Append a catalog message to the record and the job log.

        Does not change the overall state.

        Returns:
            The rendered message text
        """
        self._ensure_open()
        text = render(msg, **fields)
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.messages.append(f"[{timestamp}] {logging.getLevelName(level)} {text}")
        job_logger.log(level, text)
        return text

    def info(self, msg: Msg, **fields) -> str:
        return self.log(logging.INFO, msg, **fields)

    def warn(self, msg: Msg, **fields) -> str:
        """Log at WARNING and escalate to at least WARNING."""
        text = self.log(logging.WARNING, msg, **fields)
        self.escalate(Status.WARNING)
        return text

    def fail(self, msg: Msg, **fields) -> str:
        """Log at ERROR and escalate to ERROR."""
        text = self.log(logging.ERROR, msg, **fields)
        self.escalate(Status.ERROR)
        return text

    def set_compression(self, status: Status):
        self._ensure_open()
        self.compression = status

    def set_synchronization(self, status: Status):
        self._ensure_open()
        self.synchronization = status

    def add_removed_set(self, name: str):
        self._ensure_open()
        self.removed_sets.append(name)

    def finalize(self, completed_at: Optional[datetime] = None) -> 'JobResult':
        """Close the record. Idempotent."""
        if self.finalized:
            return self

        if not self.compress_enabled:
            self.compression = Status.DISABLED
        if not self.sync_enabled:
            self.synchronization = Status.DISABLED
        if self.state is Status.UNSET:
            self.state = Status.SUCCESSFUL

        self.completed_at = completed_at or datetime.now()
        self.info(Msg.RUN_COMPLETE, state=self.state.value)
        self.finalized = True
        return self

    def to_dict(self) -> dict:
        """Plain representation for reports and history rows."""
        def _iso(value):
            return value.isoformat() if value else None

        return {
            'config_path': self.config_path,
            'log_path': self.log_path,
            'backup_type': self.backup_type,
            'tier': self.tier.value if self.tier else None,
            'set_name': self.set_name,
            'host_id': self.host_id,
            'compress_enabled': self.compress_enabled,
            'sync_enabled': self.sync_enabled,
            'notify_enabled': self.notify_enabled,
            'state': self.state.value,
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'engine_result_code': self.engine_result_code,
            'engine_started_at': _iso(self.engine_started_at),
            'engine_ended_at': _iso(self.engine_ended_at),
            'artifact': self.artifact,
            'failure_log': self.failure_log,
            'compression': self.compression.value,
            'removed_sets': list(self.removed_sets),
            'synchronization': self.synchronization.value,
            'mirror_log': self.mirror_log,
            'messages': list(self.messages),
        }

    def _ensure_open(self):
        if self.finalized:
            raise RuntimeError("JobResult is finalized and read-only")
