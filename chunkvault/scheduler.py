"""
APScheduler configuration and job scheduling for Chunkvault.

Manages:
- The scheduled backup job (based on the BACKUP_SCHEDULE cron expression)
- Manual backup triggers
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from chunkvault.backup.executor import execute_backup

logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'scheduled_backup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance

    Raises:
        ValueError: If BACKUP_SCHEDULE is not a valid cron expression
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app
    tz = app.config.get('SCHEDULER_TIMEZONE', 'UTC')

    # A single worker: backups never overlap within this process
    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=tz
    )

    schedule = app.config.get('BACKUP_SCHEDULE')
    if schedule:
        scheduler.add_job(
            func=_execute_backup_wrapper,
            trigger=CronTrigger.from_crontab(schedule, timezone=tz),
            id=BACKUP_JOB_ID,
            name='Scheduled Backup',
            replace_existing=True
        )
        logger.info(f"Scheduled backup job ({schedule} {tz})")
    else:
        logger.info("No BACKUP_SCHEDULE configured, only manual backups will run")

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started (state={scheduler.state})")

    for job in scheduler.get_jobs():
        next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """Stop the APScheduler and forget it, so it can be initialized again."""
    global scheduler, flask_app

    if scheduler is not None and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")
    scheduler = None
    flask_app = None


def _execute_backup_wrapper():
    """
    Run the configured backup job in scheduler context.

    Failures are recorded in the returned report and logged; nothing
    propagates into the scheduler thread.
    """
    with flask_app.app_context():
        logger.info("Scheduler executing backup")
        report = execute_backup(flask_app.config)
        logger.info(f"Backup completed with status: {report.status}")
        return report


def trigger_backup_now() -> str:
    """
    Manually trigger a backup immediately.

    Returns:
        ID of the one-time scheduler job

    Raises:
        RuntimeError: If the scheduler is not initialized
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    now = datetime.now(timezone.utc)
    job_id = f"manual_{int(now.timestamp())}"

    # One second delay so the trigger is never in the past when added
    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name='Manual Backup',
        replace_existing=True
    )

    logger.info(f"Manually triggered backup ({job_id})")
    return job_id


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    """Check if the scheduler of this process is running."""
    return scheduler is not None and scheduler.running
