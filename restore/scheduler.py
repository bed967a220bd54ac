"""
APScheduler configuration and job scheduling for ReStore.

Manages:
- Periodic backups, one interval job per watch directory
- Daily retention policy enforcement
- Manual backup triggers
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from restore.backup.executor import BackupExecutor, normalize_directory
from restore.backup.retention import RetentionManager
from restore.exceptions import RestoreError
from restore.state import SystemState
from restore.utils.password import PasswordProvider

logger = logging.getLogger(__name__)

# Global scheduler instance and the executor its jobs run
scheduler = None
backup_executor = None
retention_manager = None


def _backup_job_id(directory: str) -> str:
    return f"backup:{normalize_directory(directory)}"


def init_scheduler(settings, state: SystemState,
                   password_provider: Optional[PasswordProvider] = None) -> BackgroundScheduler:
    """
    Initialize and configure APScheduler.

    Args:
        settings: Loaded Settings (watch directories, interval, retention)
        state: Shared SystemState
        password_provider: Passed to the backup executor for encrypted backups
    """
    global scheduler, backup_executor, retention_manager

    if scheduler is not None:
        return scheduler

    backup_executor = BackupExecutor(settings, state, password_provider)
    retention_manager = RetentionManager(settings, state)

    executors = {
        'default': ThreadPoolExecutor(max_workers=3)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    interval = max(1, int(settings.backup_interval))
    for watch in settings.watch_directories:
        scheduler.add_job(
            func=_execute_backup_wrapper,
            trigger=IntervalTrigger(seconds=interval),
            args=[watch.path],
            id=_backup_job_id(watch.path),
            name=f"Backup {watch.path}",
            next_run_time=datetime.now(timezone.utc) + timedelta(seconds=5),
            replace_existing=True
        )

    # Add retention policy job (runs daily at 2 AM UTC)
    scheduler.add_job(
        func=_execute_retention_wrapper,
        trigger=CronTrigger(hour=2, minute=0),
        id='retention_cleanup',
        name='Daily Retention Cleanup',
        replace_existing=True
    )

    logger.info(
        f"Scheduler configured: {len(settings.watch_directories)} watch directories, "
        f"interval {interval}s"
    )
    return scheduler


def start_scheduler():
    """Start the APScheduler."""
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info("APScheduler started")

    for job in scheduler.get_jobs():
        next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """Stop the APScheduler and forget the configured jobs."""
    global scheduler, backup_executor, retention_manager

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")

    scheduler = None
    backup_executor = None
    retention_manager = None


def _execute_backup_wrapper(directory: str):
    """Run one backup in the scheduler's worker thread; failures are logged."""
    try:
        logger.info(f"Scheduler executing backup of {directory}")
        result = asyncio.run(backup_executor.backup_directory(directory))
        if result.remote_path:
            logger.info(f"Scheduled backup of {directory} stored at {result.remote_path}")
    except RestoreError as e:
        logger.error(f"Scheduled backup of {directory} failed: {e}")
    except Exception:
        logger.exception(f"Unexpected error in scheduled backup of {directory}")


def _execute_retention_wrapper():
    try:
        retention_manager.apply_all()
    except Exception:
        logger.exception("Scheduled retention cleanup failed")


def trigger_backup_now(directory: str):
    """
    Run a backup of a directory immediately, outside its interval.

    Raises:
        RuntimeError: If scheduler is not initialized
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=DateTrigger(run_date=datetime.now(timezone.utc)),
        args=[directory],
        id=f"manual:{normalize_directory(directory)}:{datetime.now(timezone.utc).timestamp()}",
        name=f"Manual backup {directory}",
        replace_existing=False
    )

    logger.info(f"Triggered manual backup of {directory}")


def get_scheduled_jobs() -> list:
    """Describe the scheduled jobs (id, name, next run time)."""
    if scheduler is None:
        return []

    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if getattr(job, 'next_run_time', None) else None,
        }
        for job in scheduler.get_jobs()
    ]
