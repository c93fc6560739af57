"""Background jobs for alert delivery, retries and cleanup."""

import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from booster_beacon.alerts.delivery import AlertDeliveryService
from booster_beacon.config import settings
from booster_beacon.db.database import async_session_maker
from booster_beacon.db.repositories import AlertRepository

logger = logging.getLogger(__name__)

_delivery_service: AlertDeliveryService | None = None


def get_delivery_service() -> AlertDeliveryService:
    global _delivery_service
    if _delivery_service is None:
        _delivery_service = AlertDeliveryService()
    return _delivery_service


# ================== JOB FUNCTIONS ==================

async def job_process_pending_alerts() -> dict:
    """Deliver due pending alerts."""
    summary = await get_delivery_service().process_pending_alerts(settings.pending_batch_size)
    if summary["processed"] or summary["skipped"] or summary["errors"]:
        logger.info(f"Pending alerts processed: {summary}")
    return summary


async def job_retry_failed_alerts() -> int:
    """Put failed alerts under the retry ceiling back in the pending queue."""
    async with async_session_maker() as session:
        repo = AlertRepository(session)
        candidates = await repo.get_failed_alerts_for_retry(
            max_retries=settings.alert_max_retries,
            limit=settings.alert_retry_batch_size,
        )
        requeued = await repo.requeue_for_retry(
            [str(a.id) for a in candidates], max_retries=settings.alert_max_retries
        )
        await session.commit()

    if requeued:
        logger.info(f"Re-queued {requeued} failed alerts for retry")
    return requeued


async def job_cleanup_old_alerts() -> int:
    """Purge sent alerts older than the retention window."""
    async with async_session_maker() as session:
        deleted = await AlertRepository(session).cleanup_old_alerts(settings.alert_cleanup_days)
        await session.commit()
    return deleted


def create_scheduler() -> AsyncIOScheduler:
    """Create the alert job scheduler."""
    scheduler = AsyncIOScheduler(timezone="UTC")

    # Pending delivery: every 30 seconds
    scheduler.add_job(
        job_process_pending_alerts,
        IntervalTrigger(seconds=30),
        id="process_pending_alerts",
        name="Process Pending Alerts",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    # Retry sweep: every 5 minutes
    scheduler.add_job(
        job_retry_failed_alerts,
        IntervalTrigger(minutes=5),
        id="retry_failed_alerts",
        name="Retry Failed Alerts",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    # Cleanup: daily at 3 AM UTC
    scheduler.add_job(
        job_cleanup_old_alerts,
        CronTrigger(hour=3, minute=0, timezone="UTC"),
        id="cleanup_old_alerts",
        name="Cleanup Sent Alerts",
        replace_existing=True,
    )

    logger.info("Scheduler configured: pending 30s, retry sweep 5m, cleanup daily 03:00 UTC")
    return scheduler


async def run_retry_sweep_once():
    """Re-queue failed alerts and deliver them immediately (manual trigger)."""
    await job_retry_failed_alerts()
    await job_process_pending_alerts()


if __name__ == "__main__":
    logging.basicConfig(level=settings.log_level)
    asyncio.run(run_retry_sweep_once())
