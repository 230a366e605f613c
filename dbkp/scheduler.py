"""
APScheduler configuration for dbkp.

Runs retention cleanup once a day.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from dbkp.config import Config
from dbkp.storage.retention import RetentionManager


logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = None


def init_scheduler(manager: RetentionManager, hour: int = None, minute: int = 0):
    """
    Initialize and configure APScheduler.

    Args:
        manager: Retention manager to run daily
        hour: Hour of day (UTC) for the cleanup run, default Config.RETENTION_HOUR
        minute: Minute of the hour
    """
    global scheduler

    if scheduler is not None:
        return scheduler

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
        timezone=Config.SCHEDULER_TIMEZONE
    )

    scheduler.add_job(
        func=manager.enforce_all_policies,
        trigger=CronTrigger(hour=Config.RETENTION_HOUR if hour is None else hour, minute=minute),
        id='retention_cleanup',
        name='Daily Retention Cleanup',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after init_scheduler().
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (jobs: {len(scheduler.get_jobs())})")


def stop_scheduler():
    """Stop the APScheduler and forget it."""
    global scheduler

    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("APScheduler stopped")

    scheduler = None
