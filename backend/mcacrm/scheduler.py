"""APScheduler configuration for job-queue maintenance."""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
import logging

from mcacrm.config import settings

logger = logging.getLogger(__name__)

# Create scheduler instance
scheduler = AsyncIOScheduler()


async def sweep_stale_jobs():
    """
    Requeue jobs stuck in `processing` past their lease.

    A worker that claimed a job and died never reports back; once the
    lease expires the job becomes claimable again.
    """
    try:
        from mcacrm.database import get_db
        from mcacrm.services.job_queue import JobQueueService

        async for db in get_db():
            requeued = await JobQueueService(db).requeue_stale_jobs(settings.JOB_LEASE_SECONDS)
            if requeued:
                logger.info(f"Job sweeper requeued {requeued} job(s)")
            break  # Only use first db session

    except Exception as e:
        logger.error(f"Error in job sweeper: {e}")


def start_scheduler():
    """Start the APScheduler with the job sweeper."""
    if not settings.ENABLE_JOB_SWEEPER:
        logger.info("Job sweeper disabled")
        return

    if scheduler.running:
        logger.info("Scheduler already running")
        return

    scheduler.add_job(
        sweep_stale_jobs,
        trigger=IntervalTrigger(seconds=settings.JOB_SWEEP_INTERVAL_SECONDS),
        id='sweep_stale_jobs',
        name='Requeue expired job leases',
        replace_existing=True,
        max_instances=1,
    )

    scheduler.start()
    logger.info(
        f"Scheduler started: job sweeper every {settings.JOB_SWEEP_INTERVAL_SECONDS}s, "
        f"lease {settings.JOB_LEASE_SECONDS}s"
    )


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")
