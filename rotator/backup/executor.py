"""
Backup orchestrator - runs the complete rotation workflow once.

Workflow:
1. Resolve tier, retention count and set name from the run date
2. Open the per-run and monthly job logs
3. Check the backup root (missing root is fatal)
4. List existing sets of the tier and delete the oldest down to retention-1
5. Run the backup engine and verify its result (fault or unknown result is fatal)
6. Compress the produced set (if enabled)
7. Mirror the backup root to the remote destination (if enabled)
8. Finalize the report, store it in the run history and send it (if enabled)

Step 8 runs on every exit path.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from .compression import Archiver, archive_path_for, compress_backup_set, create_archiver
from .engine import BackupEngine, JobRunner, create_engine
from .inventory import list_backup_sets
from .joblog import JobLog
from .messages import Msg
from .mirror import Mirror, create_mirror, synchronize
from .notify import NotificationError, Notifier, create_notifier
from .policy import RetentionPolicy, RotationPlan, parse_tier_modes, resolve_plan
from .result import JobResult, RunAborted, job_logger
from .retention import RotationEnforcer

logger = logging.getLogger(__name__)


class BackupOrchestrator:
    """
    Orchestrates one rotation run against the configured backup root.

    Adapters default to the ones configured in settings; tests pass their own.
    """

    def __init__(
        self,
        settings,
        engine: Optional[BackupEngine] = None,
        archiver: Optional[Archiver] = None,
        mirror: Optional[Mirror] = None,
        notifier: Optional[Notifier] = None,
        history=None,
        now: Optional[datetime] = None
    ):
        """
        Initialize backup orchestrator.

        Args:
            settings: Settings mapping
            engine: Backup engine adapter
            archiver: Archiver used when COMPRESS_ENABLED
            mirror: Mirror used when SYNC_ENABLED
            notifier: Notifier used when NOTIFY_ENABLED
            history: HistoryStore for previous engine start and run records
            now: Run timestamp (defaults to the current time)

        Raises:
            ValueError: If the configuration names an unknown adapter or
                retention counts are invalid
        """
        self.settings = settings
        self.policy = RetentionPolicy.from_settings(settings)
        self.tier_modes = parse_tier_modes(settings.get('TIER_MODES'))
        self.history = history
        self.now = now

        self.compress_enabled = bool(settings.get('COMPRESS_ENABLED'))
        self.sync_enabled = bool(settings.get('SYNC_ENABLED'))
        self.notify_enabled = bool(settings.get('NOTIFY_ENABLED'))

        self.engine = engine or create_engine(settings)

        if archiver is None and self.compress_enabled:
            archiver = create_archiver(settings)
        self.archiver = archiver

        # None after this point means no destination configured
        if mirror is None and self.sync_enabled:
            mirror = create_mirror(settings)
        self.mirror = mirror

        if notifier is None and self.notify_enabled:
            notifier = create_notifier(settings)
        self.notifier = notifier

    def execute(self) -> JobResult:
        """
        Execute one run.

        Returns:
            The finalized JobResult
        """
        started_at = self.now or datetime.now()
        host_id = self.settings['HOST_ID']
        plan = resolve_plan(started_at.date(), self.policy, host_id, self.tier_modes)

        result = JobResult(
            config_path=self.settings.get('CONFIG_PATH'),
            backup_type=plan.mode.value,
            tier=plan.tier,
            set_name=plan.set_name,
            host_id=host_id,
            compress_enabled=self.compress_enabled,
            sync_enabled=self.sync_enabled,
            notify_enabled=self.notify_enabled,
            started_at=started_at,
        )

        joblog = JobLog(self.settings['LOG_DIR'], self.settings.get('TOOL_NAME', 'rotator'), host_id, started_at)
        self._open_joblog(joblog, result)

        result.info(
            Msg.RUN_START,
            tool=joblog.tool_name,
            set_name=plan.set_name,
            tier=plan.tier.value,
            mode=plan.mode.value,
            retention=plan.retention,
        )

        try:
            self._execute_workflow(plan, result, joblog)

        except RunAborted as e:
            logger.error(f"Run aborted: {e}")

        except Exception as e:
            logger.exception("Unexpected error during backup run")
            result.fail(Msg.RUN_FAILED, error=e)

        finally:
            try:
                self._report(result)
            finally:
                try:
                    if self.mirror is not None:
                        self.mirror.close()
                finally:
                    joblog.close()

        return result

    def _open_joblog(self, joblog: JobLog, result: JobResult):
        configured_dir = joblog.log_dir

        try:
            fallback_error = joblog.open()
        except OSError as e:
            logger.error(f"Job log unavailable, continuing without log files: {e}")
            return

        result.log_path = str(joblog.run_log_path)
        if fallback_error:
            result.warn(Msg.LOG_DIR_FALLBACK, path=configured_dir, error=fallback_error, fallback=joblog.log_dir)

    def _execute_workflow(self, plan: RotationPlan, result: JobResult, joblog: JobLog):
        """Run the stages in order. Raises RunAborted on fatal conditions."""
        root = Path(self.settings['BACKUP_ROOT'])

        if not root.is_dir():
            result.fail(Msg.ROOT_MISSING, root=root)
            raise RunAborted(f"backup root not found: {root}")

        # Rotation before creation, so the count holds once the new set lands
        scan = list_backup_sets(root, result.host_id, plan.tier)
        RotationEnforcer(result).enforce(scan, plan.tier, plan.retention, root=root)

        previous_start = self._previous_engine_start(result)
        JobRunner(self.engine, result, previous_start).run(plan, root)

        # Stage outcomes are independent of the engine result code
        if self.compress_enabled:
            compress_backup_set(
                self.archiver,
                root / plan.set_name,
                archive_path_for(root, plan.set_name, self.settings.get('ARCHIVE_FORMAT', '7z')),
                result,
                joblog.side_log_path('archiver'),
            )

        if self.sync_enabled:
            synchronize(self.mirror, root, plan.tier, result, joblog.side_log_path('mirror'))

    def _previous_engine_start(self, result: JobResult) -> Optional[datetime]:
        if self.history is None:
            return None

        try:
            return self.history.last_engine_start(result.host_id)
        except SQLAlchemyError as e:
            result.warn(Msg.HISTORY_UNAVAILABLE, error=e)
            return None

    def _report(self, result: JobResult):
        """Finalize, persist and send the report. Failures here are logged only."""
        result.finalize()

        if self.history is not None:
            try:
                self.history.record(result)
            except SQLAlchemyError as e:
                job_logger.error(f"Failed to store run history: {e}")

        if self.notify_enabled and self.notifier is not None:
            attachments = [result.log_path] if result.log_path else []
            try:
                self.notifier.send(result, attachments=attachments)
            except NotificationError as e:
                job_logger.error(f"Failed to send report: {e}")


def execute_backup_run(settings, now: Optional[datetime] = None) -> JobResult:
    """
    Execute one run with the adapters and history store configured in settings.

    Args:
        settings: Settings mapping
        now: Run timestamp override (defaults to the current time)

    Returns:
        The finalized JobResult

    Raises:
        ValueError: If the configuration is invalid
    """
    from rotator.models import create_history_store

    try:
        history = create_history_store(settings)
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Run history unavailable: {e}")
        history = None

    orchestrator = BackupOrchestrator(settings, history=history, now=now)
    return orchestrator.execute()
