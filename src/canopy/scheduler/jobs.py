"""
APScheduler jobs for background location sync.

Every location_sync_interval_minutes each active site with a Metrc license
is reconciled, one site at a time. Changes made directly in Metrc (new,
renamed or removed locations) show up without anyone pressing "sync".

A site that is already being synced (API request, CLI, another worker)
is skipped for this tick.
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel import Session, select

from canopy.config import get_settings
from canopy.models.room import Site
from canopy.sync.locking import SiteSyncLock, SyncInProgressError

logger = logging.getLogger(__name__)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine to pass to the sync service.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _scheduled_sync,
        trigger="interval",
        minutes=settings.location_sync_interval_minutes,
        id="location_sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"engine": engine},
    )

    return scheduler


def _syncable_sites(engine):
    with Session(engine) as s:
        sites = s.exec(
            select(Site)
            .where(Site.is_active == True, Site.license_number != None)  # noqa: E711,E712
            .order_by(Site.created_at)
        ).all()
        return [(site.id, site.license_number) for site in sites]


async def _scheduled_sync(engine) -> None:
    """Interval job: reconcile every licensed site. Never raises."""
    from canopy.metrc.client import MetrcClient
    from canopy.metrc.credentials import credentials_from_settings
    from canopy.sync.engine import LocationSyncService

    settings = get_settings()
    lock = SiteSyncLock(engine, settings.sync_lock_timeout_seconds)

    try:
        sites = _syncable_sites(engine)
        logger.info("Scheduled location sync starting for %d site(s)", len(sites))

        for site_id, license_number in sites:
            credentials = credentials_from_settings(license_number, settings)
            try:
                async with lock.hold(site_id):
                    async with MetrcClient.from_settings(credentials, settings) as client:
                        service = LocationSyncService(client=client, engine=engine)
                        result = await service.sync(site_id, credentials)
                logger.info("Site %s: %s", site_id, result.status)
            except SyncInProgressError:
                logger.info("Site %s already syncing, skipped", site_id)
            except Exception as exc:
                logger.error("Scheduled sync failed for site %s: %s", site_id, exc)

    except Exception as exc:
        logger.error("Scheduled location sync failed: %s", exc)
