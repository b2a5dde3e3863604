"""
Per-site serialization of sync runs.

Two runs racing on the same site can both decide a room needs pushing and
create it upstream twice, so callers (API route, scheduler, CLI) wrap each
run in SiteSyncLock.hold(site_id). The engine itself never locks.

Two layers:
  - an in-process set of in-flight site ids (cheap, covers one worker);
  - a persisted SiteSyncLock row with an expiry, covering several workers
    or processes sharing the database. A row past expires_at belongs to a
    crashed run and is taken over with a conditional UPDATE, so only one
    worker wins a stale row.

Runs for different sites never contend.
"""
import logging
import os
import socket
import threading
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Optional
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from canopy.models.base import utcnow
from canopy.models.sync import SiteSyncLock as SiteSyncLockRow

logger = logging.getLogger(__name__)


class SyncInProgressError(RuntimeError):
    """Raised when another run already holds the site."""

    def __init__(self, site_id: str, owner: Optional[str] = None):
        self.site_id = site_id
        self.owner = owner
        detail = f" (held by {owner})" if owner else ""
        super().__init__(f"A location sync is already running for site {site_id}{detail}")


class SiteSyncLock:
    def __init__(self, engine, timeout_seconds: int = 900):
        self.engine = engine
        self.timeout = timedelta(seconds=timeout_seconds)
        self._in_flight = set()
        self._guard = threading.Lock()

    @asynccontextmanager
    async def hold(self, site_id: str) -> AsyncIterator[str]:
        """Hold the site for the duration of the block.

        Yields:
            The owner token written to the lock row.

        Raises:
            SyncInProgressError: if the site is already held.
        """
        with self._guard:
            if site_id in self._in_flight:
                raise SyncInProgressError(site_id)
            self._in_flight.add(site_id)

        try:
            token = f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"
            self._acquire_row(site_id, token)
            try:
                yield token
            finally:
                self._release_row(site_id, token)
        finally:
            with self._guard:
                self._in_flight.discard(site_id)

    def is_held(self, site_id: str) -> bool:
        with self._guard:
            if site_id in self._in_flight:
                return True
        with Session(self.engine) as s:
            row = s.get(SiteSyncLockRow, site_id)
            return row is not None and row.expires_at > utcnow()

    def _acquire_row(self, site_id: str, token: str) -> None:
        now = utcnow()
        with Session(self.engine) as s:
            row = s.get(SiteSyncLockRow, site_id)
            if row is None:
                s.add(SiteSyncLockRow(
                    site_id=site_id,
                    owner=token,
                    acquired_at=now,
                    expires_at=now + self.timeout,
                ))
                try:
                    s.commit()
                except IntegrityError as exc:
                    # Another process inserted the row between our read and write
                    raise SyncInProgressError(site_id) from exc
                return
            if row.expires_at > now:
                raise SyncInProgressError(site_id, row.owner)
            stale_owner, stale_since = row.owner, row.acquired_at

        logger.warning(
            "Taking over stale sync lock for site %s held by %s since %s",
            site_id, stale_owner, stale_since,
        )
        if not self._take_over(site_id, stale_owner, token, now):
            raise SyncInProgressError(site_id)

    def _take_over(self, site_id: str, stale_owner: str, token: str, now) -> bool:
        """Claim an expired row only if it still belongs to stale_owner.

        The ownership and expiry check happen in the UPDATE itself, so of two
        workers that read the same stale row exactly one gets rowcount 1.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                update(SiteSyncLockRow)
                .where(
                    SiteSyncLockRow.site_id == site_id,
                    SiteSyncLockRow.owner == stale_owner,
                    SiteSyncLockRow.expires_at <= now,
                )
                .values(owner=token, acquired_at=now, expires_at=now + self.timeout)
            )
            return result.rowcount == 1

    def _release_row(self, site_id: str, token: str) -> None:
        with Session(self.engine) as s:
            row = s.get(SiteSyncLockRow, site_id)
            if row is not None and row.owner == token:
                s.delete(row)
                s.commit()
