"""
APScheduler jobs for background queue maintenance.

The periodic sweep replays queues that clients filled but never asked to
process (e.g. the app was closed right after reconnecting). The nightly
cleanup enforces queue retention.

The scheduler runs in its own process (wired in __main__.py); the HTTP API
runs separately under uvicorn. A sweep and an API-triggered pass for the
same user can therefore overlap; the queue store's per-item claim keeps
them from applying the same item twice.
"""
import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from budgetsync.config import get_settings

logger = logging.getLogger(__name__)


def build_scheduler(service) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        service: SyncService the jobs run against.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _sweep_queues,
        trigger="interval",
        minutes=settings.sync_sweep_minutes,
        id="sync_queue_sweep",
        replace_existing=True,
        max_instances=1,
        kwargs={"service": service},
    )
    scheduler.add_job(
        _nightly_cleanup,
        trigger="cron",
        hour=settings.sync_cleanup_hour,
        minute=0,
        id="sync_queue_cleanup",
        replace_existing=True,
        kwargs={"service": service},
    )

    return scheduler


async def _sweep_queues(service) -> None:
    """
    Run a sync pass for every user with pending or retryable items.

    Users are independent, so their passes run concurrently; each user's
    items are still replayed one at a time by the processor.
    """
    try:
        users = service.store.users_with_work()
    except Exception as exc:
        logger.error("Queue sweep failed: %s", exc)
        return

    if not users:
        return
    logger.info("Queue sweep: %d user(s) with work", len(users))

    results = await asyncio.gather(
        *(service.process(user_id) for user_id in users),
        return_exceptions=True,
    )
    for user_id, result in zip(users, results):
        if isinstance(result, Exception):
            logger.error("Sync pass for user %s failed: %s", user_id, result)
        else:
            logger.info(
                "Swept user %s: %d ok, %d conflict(s), %d failed",
                user_id, result.successful, result.conflicts, result.failed,
            )


async def _nightly_cleanup(service) -> None:
    """Nightly job: purge completed items past the retention window, all users."""
    settings = get_settings()
    try:
        deleted = service.cleanup(None, settings.sync_cleanup_days)
        logger.info("Nightly cleanup removed %d completed item(s)", deleted)
    except Exception as exc:
        logger.error("Nightly cleanup failed: %s", exc)
