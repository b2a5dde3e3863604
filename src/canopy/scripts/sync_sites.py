"""
One-shot location sync from the command line.

Usage:
    python -m canopy sync                 # every active site with a license
    python -m canopy sync --site SITE_ID  # one site
    python -m canopy.scripts.sync_sites --site SITE_ID

Each site runs under the same per-site lock as the API and the scheduler,
so a site that is already syncing is reported and skipped. The exit code
is 1 when any site failed outright.
"""
import argparse
import asyncio
import logging
import sys
from typing import List, Optional

logger = logging.getLogger(__name__)


def _select_sites(engine, site_id: Optional[str]):
    from sqlmodel import Session, select

    from canopy.models.room import Site

    with Session(engine) as s:
        if site_id:
            site = s.get(Site, site_id)
            return [(site.id, site.license_number)] if site else []
        sites = s.exec(
            select(Site)
            .where(Site.is_active == True, Site.license_number != None)  # noqa: E711,E712
            .order_by(Site.created_at)
        ).all()
        return [(site.id, site.license_number) for site in sites]


async def _sync_sites(site_id: Optional[str]) -> int:
    from canopy.config import get_settings
    from canopy.db.engine import get_engine
    from canopy.metrc.client import MetrcClient
    from canopy.metrc.credentials import credentials_from_settings
    from canopy.sync.engine import LocationSyncService
    from canopy.sync.locking import SiteSyncLock, SyncInProgressError

    settings = get_settings()
    engine = get_engine()
    lock = SiteSyncLock(engine, settings.sync_lock_timeout_seconds)

    sites = _select_sites(engine, site_id)
    if not sites:
        logger.error("No site to sync%s", f" with id {site_id}" if site_id else "")
        return 1

    failures = 0
    for sid, license_number in sites:
        credentials = credentials_from_settings(license_number, settings)
        try:
            async with lock.hold(sid):
                async with MetrcClient.from_settings(credentials, settings) as client:
                    service = LocationSyncService(client=client, engine=engine)
                    result = await service.sync(sid, credentials)
        except SyncInProgressError as exc:
            logger.warning("%s", exc)
            continue

        print(
            f"{sid}: {result.status} (found={result.locations_found} "
            f"created={result.rooms_created} updated={result.rooms_updated} "
            f"matched={result.rooms_matched} orphaned={result.rooms_orphaned} "
            f"pushed={result.rooms_pushed})"
        )
        if result.fatal_error:
            print(f"  fatal: {result.fatal_error}")
        for error in result.errors:
            print(f"  error: {error}")
        if result.status == "failed":
            failures += 1

    return 1 if failures else 0


def run_sync(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="python -m canopy sync",
        description="Reconcile rooms with Metrc locations",
    )
    parser.add_argument("--site", help="Sync only this site id")
    args = parser.parse_args(argv)
    return asyncio.run(_sync_sites(args.site))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    sys.exit(run_sync())
