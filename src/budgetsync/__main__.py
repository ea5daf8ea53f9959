"""
Main entrypoint: runs the queue maintenance scheduler, or a one-shot command.

FastAPI runs separately under uvicorn.

Usage:
    python -m budgetsync                    # starts the scheduler
    python -m budgetsync process <user_id>  # one sync pass for a user
    python -m budgetsync cleanup [days]     # purge completed items, all users
    uvicorn budgetsync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

from budgetsync.config import get_settings

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _build_service():
    from budgetsync.db.engine import get_engine
    from budgetsync.sync.service import build_sync_service

    return build_sync_service(get_engine())


def _run_process(user_id: str) -> None:
    result = asyncio.run(_build_service().process(user_id))
    logger.info(
        "Processed %d item(s): %d ok, %d conflict(s), %d failed",
        result.processed, result.successful, result.conflicts, result.failed,
    )
    for error in result.errors:
        logger.warning("  %s", error)


def _run_cleanup(days: int) -> None:
    deleted = _build_service().cleanup(None, days)
    logger.info("Removed %d completed item(s) older than %d day(s)", deleted, days)


async def _run_scheduler() -> None:
    from budgetsync.scheduler.jobs import build_scheduler

    settings = get_settings()
    scheduler = build_scheduler(_build_service())
    scheduler.start()
    logger.info(
        "Scheduler started (sweep every %d min, cleanup at %02d:00 UTC)",
        settings.sync_sweep_minutes,
        settings.sync_cleanup_hour,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


def main(argv) -> int:
    command = argv[0] if argv else None
    if command == "process":
        if len(argv) < 2:
            logger.error("Usage: python -m budgetsync process <user_id>")
            return 2
        _run_process(argv[1])
    elif command == "cleanup":
        days = int(argv[1]) if len(argv) > 1 else get_settings().sync_cleanup_days
        _run_cleanup(days)
    elif command is None:
        asyncio.run(_run_scheduler())
    else:
        logger.error("Unknown command: %s", command)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
