"""
sync_scheduler.py — Periodic provider timing sync for auto-sync campaigns.

Single-flight: a tick that arrives while the previous run is still in
flight is skipped, not queued. One campaign failing does not stop the
others in the same run.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Awaitable, Callable, Optional

from racesync.core import database as db
from racesync.core import reconciliation
from racesync.core.config import settings
from racesync.core.errors import NotFoundError
from racesync.core.provider_client import ProviderClient

logger = logging.getLogger("racesync.scheduler")

SyncFn = Callable[[sqlite3.Connection, ProviderClient, int], Awaitable[dict]]


class SyncScheduler:
    """Async background task running the timing sync on a fixed interval."""

    def __init__(self, connect: Callable[[], sqlite3.Connection] = db.get_connection,
                 client: Optional[ProviderClient] = None,
                 sync_fn: SyncFn = reconciliation.sync_timing_only,
                 interval: Optional[float] = None):
        self.connect = connect
        self.sync_fn = sync_fn
        self.interval = interval if interval is not None else settings.SYNC_INTERVAL_S
        self._client = client
        self._owns_client = client is None
        self._lock = asyncio.Lock()
        self._generation = 0
        self._total_runs = 0
        self._started = False
        self._task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def is_running(self) -> bool:
        """True while a sync run is in flight."""
        return self._lock.locked()

    def get_stats(self) -> dict:
        return {
            "is_running": self.is_running,
            "total_runs": self._total_runs,
            "generation": self._generation,
        }

    def _get_client(self) -> ProviderClient:
        if self._client is None:
            self._client = ProviderClient()
        return self._client

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Provider auto-sync scheduler started (every %ss)", self.interval)

    async def stop(self) -> None:
        self._started = False
        for task in (self._task, self._tick_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._tick_task = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        logger.info("Provider auto-sync scheduler stopped")

    async def run_once(self) -> bool:
        """Sync every auto-sync campaign. Returns False if a run was already in flight."""
        if self._lock.locked():
            return False

        async with self._lock:
            self._generation += 1
            generation = self._generation
            conn = self.connect()
            try:
                campaigns = db.get_auto_sync_campaigns(conn)
                for campaign in campaigns:
                    await self._sync_campaign(conn, campaign, generation)
            finally:
                conn.close()
            self._total_runs += 1
        return True

    async def _sync_campaign(self, conn: sqlite3.Connection, campaign: sqlite3.Row,
                             generation: int) -> None:
        label = campaign["name"] or campaign["id"]
        try:
            result = await self.sync_fn(conn, self._get_client(), campaign["id"])
        except Exception as e:
            logger.error("Auto-sync failed for campaign %s: %s", label, e)
            return
        if result.get("updated") or result.get("status_changes"):
            logger.info("Auto-sync [%s] run %d: %d timing updates, %d status changes",
                        label, generation, result.get("updated", 0),
                        result.get("status_changes", 0))

    async def _loop(self) -> None:
        while self._started:
            # A tick landing on an in-flight run is dropped
            if self._tick_task is None or self._tick_task.done():
                self._tick_task = asyncio.create_task(self._tick())
            await asyncio.sleep(self.interval)

    async def _tick(self) -> None:
        try:
            await self.run_once()
        except Exception as e:
            logger.error("Auto-sync run error: %s", e)


def set_auto_sync(conn: sqlite3.Connection, campaign_id: int, enabled: bool) -> dict:
    """Opt a campaign in or out of scheduled sync."""
    if db.get_campaign(conn, campaign_id) is None:
        raise NotFoundError("Campaign", campaign_id)
    db.update_campaign(conn, campaign_id, auto_sync=int(enabled))
    logger.info("Auto-sync %s for campaign %s", "ENABLED" if enabled else "DISABLED", campaign_id)
    return dict(db.get_campaign(conn, campaign_id))
