"""
APScheduler configuration for unattended runs.

One cron-triggered job runs a single orchestrator pass. max_instances=1 and
coalesce keep this process from overlapping runs against the backup root;
other processes must not target the same root.
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from rotator.backup.executor import execute_backup_run

logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'rotation_backup'

# Global scheduler instance and the settings its job runs with
scheduler = None
job_settings = None


def init_scheduler(settings):
    """
    Initialize and configure APScheduler.

    Args:
        settings: Settings mapping; SCHEDULE_CRON selects the run times

    Returns:
        The configured scheduler

    Raises:
        ValueError: If SCHEDULE_CRON is not a valid crontab expression
    """
    global scheduler, job_settings

    if scheduler is not None:
        return scheduler

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 3600  # A run delayed by up to an hour still happens
    }

    timezone = settings.get('SCHEDULER_TIMEZONE')
    scheduler_kwargs = {'job_defaults': job_defaults}
    if timezone:
        scheduler_kwargs['timezone'] = timezone

    trigger = CronTrigger.from_crontab(settings['SCHEDULE_CRON'], timezone=timezone)

    scheduler = BlockingScheduler(**scheduler_kwargs)
    job_settings = settings
    scheduler.add_job(
        func=_run_backup_wrapper,
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name=f"Rotation backup: {settings['HOST_ID']}",
        replace_existing=True
    )

    logger.info(f"Scheduled rotation backup ({settings['SCHEDULE_CRON']})")
    return scheduler


def start_scheduler():
    """
    Start the scheduler. Blocks until stop_scheduler() or an interrupt.
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    for job in get_scheduled_jobs():
        logger.info(f"  - {job['id']}: {job['name']} ({job['trigger']})")

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler interrupted")


def stop_scheduler():
    """Stop the scheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def _run_backup_wrapper():
    """
    Run one orchestrator pass in scheduler context.

    Job state is reported through the job log and notification; only
    configuration errors surface here.
    """
    logger.info("Scheduler starting rotation backup")
    try:
        result = execute_backup_run(job_settings)
    except ValueError as e:
        logger.error(f"Scheduled rotation backup not started: {e}")
        return
    logger.info(f"Rotation backup {result.set_name} finished with state {result.state.value}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    global scheduler

    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        next_run = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs
