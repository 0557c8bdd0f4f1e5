"""
Unit tests for scheduled runs (rotator/scheduler.py).
"""

from unittest.mock import MagicMock, patch

import pytest

import rotator.scheduler as scheduler_module
from rotator.scheduler import (
    BACKUP_JOB_ID,
    get_scheduled_jobs,
    init_scheduler,
    start_scheduler,
    stop_scheduler,
    _run_backup_wrapper,
)


class TestSchedulerInitialization:
    """Test scheduler initialization."""

    def test_init_scheduler(self, settings):
        """Test the cron job is registered with overlap protection."""
        settings['SCHEDULE_CRON'] = '30 21 * * *'

        scheduler = init_scheduler(settings)
        job = scheduler.get_job(BACKUP_JOB_ID)

        assert job is not None
        assert 'SRV01' in job.name
        assert scheduler._job_defaults['max_instances'] == 1
        assert scheduler._job_defaults['coalesce'] is True
        fields = {f.name: str(f) for f in job.trigger.fields}
        assert fields['hour'] == '21'
        assert fields['minute'] == '30'

    def test_init_scheduler_only_once(self, settings):
        """Test a second call returns the same scheduler."""
        first = init_scheduler(settings)
        second = init_scheduler(settings)

        assert first is second

    def test_invalid_cron(self, settings):
        """Test an invalid expression raises ValueError."""
        settings['SCHEDULE_CRON'] = 'every night'

        with pytest.raises(ValueError):
            init_scheduler(settings)


class TestSchedulerLifecycle:
    """Test start and stop."""

    def test_start_scheduler_not_initialized(self):
        """Test starting without init raises RuntimeError."""
        with pytest.raises(RuntimeError):
            start_scheduler()

    def test_start_scheduler(self):
        """Test start is delegated to APScheduler."""
        scheduler_module.scheduler = MagicMock()
        scheduler_module.scheduler.get_jobs.return_value = []

        start_scheduler()

        scheduler_module.scheduler.start.assert_called_once()

    def test_start_scheduler_interrupted(self):
        """Test an interrupt ends start quietly."""
        scheduler_module.scheduler = MagicMock()
        scheduler_module.scheduler.get_jobs.return_value = []
        scheduler_module.scheduler.start.side_effect = KeyboardInterrupt

        start_scheduler()

    def test_stop_scheduler(self):
        """Test a running scheduler is shut down."""
        scheduler_module.scheduler = MagicMock()
        scheduler_module.scheduler.running = True

        stop_scheduler()

        scheduler_module.scheduler.shutdown.assert_called_once_with(wait=False)

    def test_stop_scheduler_not_running(self):
        """Test stopping an idle scheduler does nothing."""
        scheduler_module.scheduler = MagicMock()
        scheduler_module.scheduler.running = False

        stop_scheduler()

        scheduler_module.scheduler.shutdown.assert_not_called()


class TestSchedulerQueries:
    """Test job listing."""

    def test_get_scheduled_jobs_not_initialized(self):
        """Test an empty list without scheduler."""
        assert get_scheduled_jobs() == []

    def test_get_scheduled_jobs(self, settings):
        """Test the registered job is listed."""
        init_scheduler(settings)

        jobs = get_scheduled_jobs()

        assert len(jobs) == 1
        assert jobs[0]['id'] == BACKUP_JOB_ID
        assert 'cron' in jobs[0]['trigger']


class TestRunBackupWrapper:
    """Test the scheduled job body."""

    @patch('rotator.scheduler.execute_backup_run')
    def test_runs_with_settings(self, mock_execute, settings):
        """Test one orchestrator pass with the scheduler settings."""
        init_scheduler(settings)

        _run_backup_wrapper()

        mock_execute.assert_called_once_with(settings)

    @patch('rotator.scheduler.execute_backup_run')
    def test_configuration_error_is_logged(self, mock_execute, settings):
        """Test a configuration error does not escape into APScheduler."""
        mock_execute.side_effect = ValueError('Invalid sync method: ftp')
        init_scheduler(settings)

        _run_backup_wrapper()
