"""
scheduler.py – Background scheduling for the movie tagger.

Manages a BackgroundScheduler that periodically runs a reconcile-and-sync
cycle (picking up movies that appeared, vanished, or were renamed) and a
broken-symlink cleanup.  Both jobs go through the engine, so they never race
a cycle triggered from the web UI.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import load_config
from engine import get_engine
from errors import TaggerError

# Initialize the scheduler
_scheduler = BackgroundScheduler()
logger = logging.getLogger(__name__)


def start_scheduler() -> None:
    """Start the background scheduler and load jobs from config."""
    if not _scheduler.running:
        _scheduler.start()
        logger.info("Background scheduler started")
    update_scheduler_jobs()


def stop_scheduler() -> None:
    if _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Background scheduler stopped")


def update_scheduler_jobs() -> None:
    """Synchronise the scheduled jobs with the current configuration."""
    _scheduler.remove_all_jobs()

    config = load_config()
    sched_cfg = config.get("scheduler", {})

    # 1. Periodic reconciliation
    if sched_cfg.get("reconcile_enabled"):
        cron_expr = sched_cfg.get("reconcile_schedule")
        if cron_expr:
            try:
                _scheduler.add_job(
                    _run_reconcile_job,
                    CronTrigger.from_crontab(cron_expr),
                    id="reconcile",
                    name="Reconcile tags and library visibility",
                    max_instances=1,
                    coalesce=True,
                )
                logger.info(f"Scheduled reconciliation: {cron_expr}")
            except ValueError:
                logger.exception("Failed to schedule reconciliation")

    # 2. Cleanup
    if sched_cfg.get("cleanup_enabled", True):
        cleanup_cron = sched_cfg.get("cleanup_schedule", "0 * * * *")
        if cleanup_cron:
            try:
                _scheduler.add_job(
                    _run_cleanup_job,
                    CronTrigger.from_crontab(cleanup_cron),
                    id="cleanup",
                    name="Cleanup Broken Symlinks",
                    max_instances=1,
                    coalesce=True,
                )
                logger.info(f"Scheduled cleanup job: {cleanup_cron}")
            except ValueError:
                logger.exception("Failed to schedule cleanup job")


def _run_reconcile_job() -> None:
    """Job handler for the periodic reconciliation."""
    config = load_config()
    logger.info("Background reconciliation starting")
    try:
        report = get_engine(config).trigger()
    except TaggerError:
        logger.exception("Background reconciliation could not start")
        return
    logger.info(f"Background reconciliation finished: {report.status} ({report.message})")


def _run_cleanup_job() -> None:
    """Job handler for cleaning up broken symlinks."""
    config = load_config()
    logger.info("Background cleanup job starting")
    try:
        deleted = get_engine(config).cleanup()
    except TaggerError:
        logger.exception("Background cleanup could not start")
        return
    logger.info(f"Background cleanup job finished: deleted {deleted} broken symlinks")
