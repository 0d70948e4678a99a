"""
APScheduler Background Jobs

Scheduled orphan sweep comparing the blob store with attachment rows.
Jobs run via BackgroundScheduler in FastAPI process.
"""

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.config import settings

logger = structlog.get_logger(__name__)


def run_scheduled_orphan_sweep():
    """
    Wrapper function for scheduled orphan sweep job.

    Called by APScheduler every settings.orphan_sweep_interval_minutes to
    delete blobs left behind by failed row inserts or crashed requests.
    """
    try:
        from app.database import SessionLocal
        from app.services.orphan_sweep import OrphanSweepService
        from app.services.storage import get_blob_store

        if SessionLocal is None:
            logger.warning("orphan_sweep_skipped", reason="database_not_configured")
            return

        sweep_svc = OrphanSweepService(
            session_factory=SessionLocal,
            blob_store=get_blob_store()
        )
        result = sweep_svc.run_sweep()
        logger.info("orphan_sweep_job_completed", **result)

    except Exception as e:
        logger.error("orphan_sweep_crashed", error=str(e), exc_info=True)


def start_scheduler(environment: str = "production") -> BackgroundScheduler:
    """
    Start background scheduler with all jobs.

    Args:
        environment: Current environment (skip scheduler in testing)

    Returns:
        BackgroundScheduler instance
    """
    scheduler = BackgroundScheduler(timezone="UTC")

    if environment == "testing":
        logger.info("scheduler_skipped", reason="testing_environment")
        return scheduler

    scheduler.add_job(
        run_scheduled_orphan_sweep,
        trigger=IntervalTrigger(minutes=settings.orphan_sweep_interval_minutes),
        id="orphan_sweep",
        name="Blob Store Orphan Sweep",
        replace_existing=True
    )
    logger.info("job_registered", job="orphan_sweep", interval_minutes=settings.orphan_sweep_interval_minutes)

    scheduler.start()
    logger.info("scheduler_started", jobs=["orphan_sweep"])

    return scheduler


def stop_scheduler(scheduler: BackgroundScheduler):
    """
    Stop background scheduler gracefully.

    Args:
        scheduler: BackgroundScheduler instance to stop
    """
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")


__all__ = [
    "start_scheduler",
    "stop_scheduler",
    "run_scheduled_orphan_sweep",
]
