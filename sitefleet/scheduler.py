# sitefleet/scheduler.py
import logging

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .services.reconciliation import ReconciliationService

logger = logging.getLogger(__name__)


def job_listener(event):
    """Logs the outcome of every scheduled job run."""
    if event.exception:
        logger.error(f"[Scheduler] Job {event.job_id} failed: {event.exception}")
    else:
        logger.info(f"[Scheduler] Job {event.job_id} executed")


def build_scheduler(reconciliation: ReconciliationService, reconcile_interval: int) -> AsyncIOScheduler:
    """
    Configures the in-process scheduler. The caller starts it from inside the
    running event loop (FastAPI lifespan) and shuts it down on exit.
    """
    scheduler = AsyncIOScheduler(
        job_defaults={
            "coalesce": True,  # collapse missed runs into one
            "max_instances": 1,
            "misfire_grace_time": 300,
        }
    )
    scheduler.add_listener(job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    if reconcile_interval and reconcile_interval > 0:
        logger.info(f"[Scheduler] Reconciliation every {reconcile_interval}s")
        scheduler.add_job(
            reconciliation.check_all,
            trigger=IntervalTrigger(seconds=reconcile_interval),
            id="reconcile_job",
            name="Mirror divergence check",
            replace_existing=True,
        )
    else:
        logger.info("[Scheduler] Reconciliation job disabled")

    return scheduler
