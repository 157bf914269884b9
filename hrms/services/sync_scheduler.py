"""Background scheduler for automatic integration synchronization.

Periodically syncs every active connection whose ``sync_frequency`` has
elapsed, without requiring manual intervention.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from flask import Flask

from .integrations import SYNC_STATUS_SUCCESS

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "integration_sync_due"

# Global scheduler instance
_scheduler: Optional[BackgroundScheduler] = None
_scheduler_lock = threading.Lock()


def get_scheduler() -> Optional[BackgroundScheduler]:
    """Get the global scheduler instance."""
    return _scheduler


def init_scheduler(app: Flask) -> Optional[BackgroundScheduler]:
    """Initialize and start the background scheduler.

    Returns:
        BackgroundScheduler instance or None if disabled
    """
    global _scheduler

    with _scheduler_lock:
        if _scheduler is not None:
            logger.warning("Scheduler already initialized")
            return _scheduler

        if not app.config.get("INTEGRATION_SYNC_ENABLED", False):
            logger.info("Automatic integration sync is disabled")
            return None

        sync_interval = app.config.get("INTEGRATION_SYNC_INTERVAL", 300)
        sync_on_startup = app.config.get("INTEGRATION_SYNC_ON_STARTUP", True)

        _scheduler = BackgroundScheduler(
            daemon=True,
            job_defaults={
                "coalesce": True,  # Combine missed runs into one
                "max_instances": 1,  # Only one instance of each job at a time
                "misfire_grace_time": 60,
            },
        )
        _scheduler.add_job(
            func=_run_sync_due,
            trigger=IntervalTrigger(seconds=sync_interval),
            id=SYNC_JOB_ID,
            name="Sync due integration connections",
            replace_existing=True,
            kwargs={"app": app},
        )
        _scheduler.start()
        logger.info("Integration sync scheduler started (interval=%ds)", sync_interval)

        if sync_on_startup:
            # Let the app finish starting first.
            _scheduler.add_job(
                func=_run_sync_due,
                trigger="date",
                run_date=datetime.now() + timedelta(seconds=30),
                id="integration_sync_startup",
                name="Initial integration sync on startup",
                kwargs={"app": app},
            )
            logger.info("Scheduled initial integration sync in 30 seconds")

        return _scheduler


def shutdown_scheduler() -> None:
    """Shutdown the scheduler gracefully."""
    global _scheduler

    with _scheduler_lock:
        if _scheduler is not None:
            logger.info("Shutting down integration sync scheduler...")
            _scheduler.shutdown(wait=True)
            _scheduler = None
            logger.info("Integration sync scheduler stopped")


def _run_sync_due(app: Flask) -> dict:
    """Sync every due connection and summarize the outcome."""
    with app.app_context():
        from .integrations.sync import sync_due_connections

        try:
            results = sync_due_connections()
        except Exception:  # noqa: BLE001
            logger.exception("Scheduled integration sync failed")
            return {"total": 0, "success": 0, "failed": 0}

        summary = {
            "total": len(results),
            "success": sum(
                1 for r in results.values() if r.status == SYNC_STATUS_SUCCESS
            ),
        }
        summary["failed"] = summary["total"] - summary["success"]
        if summary["total"]:
            logger.info(
                "Auto-sync completed: %d/%d successful, %d with errors",
                summary["success"],
                summary["total"],
                summary["failed"],
            )
        else:
            logger.debug("No integration connections due for sync")
        return summary


def trigger_sync_now(app: Flask) -> None:
    """Manually trigger an immediate sync of due connections."""
    if _scheduler is None:
        logger.warning("Scheduler not running, executing sync directly")
        _run_sync_due(app)
        return

    _scheduler.add_job(
        func=_run_sync_due,
        trigger="date",
        run_date=datetime.now(),
        id=f"integration_sync_manual_{datetime.now().timestamp()}",
        name="Manual integration sync trigger",
        kwargs={"app": app},
    )
    logger.info("Manual sync triggered")


def get_scheduler_status() -> dict:
    """Get current scheduler status."""
    if _scheduler is None:
        return {"running": False, "enabled": False, "next_run": None, "jobs": []}

    jobs = [
        {
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
        }
        for job in _scheduler.get_jobs()
    ]
    main_job = _scheduler.get_job(SYNC_JOB_ID)
    next_run = main_job.next_run_time if main_job else None

    return {
        "running": _scheduler.running,
        "enabled": True,
        "next_run": next_run.isoformat() if next_run else None,
        "jobs": jobs,
    }
