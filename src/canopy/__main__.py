"""
Main entrypoint: runs the location sync scheduler.

FastAPI runs separately under uvicorn.

Usage:
    python -m canopy                       # starts the scheduler loop
    python -m canopy sync [--site SITE_ID] # one-shot sync, then exit
    uvicorn canopy.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


async def _run_scheduler() -> None:
    from canopy.config import get_settings
    from canopy.db.engine import get_engine
    from canopy.scheduler.jobs import build_scheduler

    settings = get_settings()
    engine = get_engine()

    if not (settings.metrc_vendor_api_key and settings.metrc_user_api_key):
        logger.warning("METRC_VENDOR_API_KEY / METRC_USER_API_KEY not set; every sync will fail.")

    scheduler = build_scheduler(engine)
    scheduler.start()
    logger.info(
        "Scheduler started (location sync every %d min). Press Ctrl+C to stop.",
        settings.location_sync_interval_minutes,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m canopy sync` or just `python -m canopy`
    if len(sys.argv) > 1 and sys.argv[1] == "sync":
        from canopy.scripts.sync_sites import run_sync
        sys.exit(run_sync(sys.argv[2:]))
    else:
        asyncio.run(_run_scheduler())
