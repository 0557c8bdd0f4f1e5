"""
Backup engine adapters and the job runner.

The engine itself (volume imaging, system-state capture) is external. This
module submits one job per run, reads the engine's own job history
afterwards, and maps the outcome into the JobResult.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from rotator.utils.process import run_tool, ToolError
from .messages import Msg
from .policy import EngineMode, RotationPlan
from .result import JobResult, RunAborted

logger = logging.getLogger(__name__)


class EngineError(Exception):
    """Raised when the engine cannot be invoked or queried."""
    pass


@dataclass(frozen=True)
class BackupPolicy:
    mode: EngineMode
    destination: str


@dataclass(frozen=True)
class EngineJob:
    """Most recent job from the engine's history."""
    start_time: datetime
    end_time: Optional[datetime]
    result_code: int
    failure_log_path: Optional[str] = None


class BackupEngine(ABC):

    @abstractmethod
    def submit(self, policy: BackupPolicy):
        """Run a backup synchronously. Raises EngineError if it cannot be started."""

    @abstractmethod
    def last_job(self) -> Optional[EngineJob]:
        """Most recent completed job, or None when the history is empty."""


# Renders the newest Windows Server Backup job as one JSON object
WB_HISTORY_SCRIPT = (
    "$job = Get-WBJob -Previous 1; "
    "if ($job) { $job | Select-Object "
    "@{n='StartTime';e={$_.StartTime.ToString('s')}}, "
    "@{n='EndTime';e={$_.EndTime.ToString('s')}}, "
    "HResult, ErrorDescription, FailureLogPath "
    "| ConvertTo-Json -Compress }"
)


class WbadminEngine(BackupEngine):
    """
    Windows Server Backup through wbadmin.exe.

    BareMetal runs 'wbadmin start backup -allCritical', SystemState runs
    'wbadmin start systemstatebackup'. The job outcome is read back with the
    Get-WBJob PowerShell cmdlet.
    """

    def __init__(self, wbadmin: str = 'wbadmin', powershell: str = 'powershell'):
        self.wbadmin = wbadmin
        self.powershell = powershell

    def build_command(self, policy: BackupPolicy) -> List[str]:
        target = f"-backupTarget:{policy.destination}"

        if policy.mode is EngineMode.BARE_METAL:
            return [self.wbadmin, 'start', 'backup', target, '-allCritical', '-quiet']
        return [self.wbadmin, 'start', 'systemstatebackup', target, '-quiet']

    def submit(self, policy: BackupPolicy):
        if not os.path.isdir(policy.destination):
            raise EngineError(f"Backup target not reachable: {policy.destination}")

        try:
            outcome = run_tool(self.build_command(policy))
        except ToolError as e:
            raise EngineError(str(e)) from e

        if outcome.returncode != 0:
            # The job history holds the authoritative result code
            logger.warning(f"wbadmin exited with code {outcome.returncode}: {outcome.last_line}")

    def last_job(self) -> Optional[EngineJob]:
        try:
            outcome = run_tool([self.powershell, '-NoProfile', '-NonInteractive', '-Command', WB_HISTORY_SCRIPT])
        except ToolError as e:
            raise EngineError(str(e)) from e

        if outcome.returncode != 0:
            raise EngineError(f"Get-WBJob failed with code {outcome.returncode}: {outcome.last_line}")

        return parse_job_json('\n'.join(outcome.output_lines))


def _parse_time(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def parse_job_json(text: str) -> Optional[EngineJob]:
    """
    Parse the JSON rendering of a Get-WBJob record.

    Returns:
        EngineJob, or None when there is no job or no usable start time

    Raises:
        EngineError: If the text is not valid JSON
    """
    text = text.strip()
    if not text:
        return None

    try:
        data = json.loads(text)
    except ValueError as e:
        raise EngineError(f"Unreadable job history: {e}") from e

    if isinstance(data, list):
        data = data[0] if data else None
    if not data:
        return None

    start_time = _parse_time(data.get('StartTime'))
    if start_time is None:
        return None

    return EngineJob(
        start_time=start_time,
        end_time=_parse_time(data.get('EndTime')),
        result_code=int(data.get('HResult') or 0),
        failure_log_path=data.get('FailureLogPath') or None,
    )


def create_engine(settings) -> BackupEngine:
    """
    Factory function to create the configured backup engine.

    Raises:
        ValueError: If ENGINE names an unknown engine
    """
    engine = settings.get('ENGINE', 'wbadmin')
    if engine == 'wbadmin':
        return WbadminEngine()
    raise ValueError(f"Invalid backup engine: {engine}")


class JobRunner:
    """
    Runs the engine for one plan and records the outcome.

    A job read from history only counts as this run's when its start time
    differs from `previous_start`, the engine start time recorded by the
    previous invocation; otherwise the engine silently did nothing.
    """

    def __init__(self, engine: BackupEngine, result: JobResult, previous_start: Optional[datetime] = None):
        self.engine = engine
        self.result = result
        self.previous_start = previous_start

    def run(self, plan: RotationPlan, root) -> EngineJob:
        """
        Submit the backup and read back its result.

        Args:
            plan: Resolved rotation plan
            root: Backup root; the set is written to root/<set name>

        Returns:
            The engine job identified as this run's

        Raises:
            RunAborted: If the engine cannot run or its result cannot be determined
        """
        destination = Path(root) / plan.set_name

        try:
            destination.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self.result.fail(Msg.DESTINATION_FAILED, destination=destination, error=e)
            raise RunAborted(str(e)) from e

        self.result.info(Msg.ENGINE_SUBMIT, mode=plan.mode.value, destination=destination)

        try:
            self.engine.submit(BackupPolicy(mode=plan.mode, destination=str(destination)))
        except EngineError as e:
            self.result.fail(Msg.ENGINE_FAULT, error=e)
            self._discard_empty(destination)
            raise RunAborted(str(e)) from e

        try:
            job = self.engine.last_job()
        except EngineError as e:
            logger.error(f"Cannot read engine history: {e}")
            job = None

        if job is None or job.start_time == self.previous_start:
            self.result.fail(Msg.ENGINE_NO_RESULT)
            self._discard_empty(destination)
            raise RunAborted("backup result could not be determined")

        self.result.engine_started_at = job.start_time
        self.result.engine_ended_at = job.end_time
        self.result.engine_result_code = job.result_code
        if destination.is_dir():
            self.result.artifact = str(destination)

        if job.result_code == 0:
            self.result.info(Msg.ENGINE_SUCCESS, start=job.start_time, end=job.end_time)
        else:
            self.result.failure_log = job.failure_log_path
            self.result.fail(Msg.ENGINE_FAILED, code=job.result_code, failure_log=job.failure_log_path)

        return job

    def _discard_empty(self, destination: Path):
        """Remove the set directory created for this run if the engine left it empty."""
        try:
            if destination.is_dir() and not any(destination.iterdir()):
                destination.rmdir()
        except OSError as e:
            logger.warning(f"Could not remove empty destination {destination}: {e}")
