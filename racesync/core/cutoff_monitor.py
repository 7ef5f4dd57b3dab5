"""
cutoff_monitor.py — Cutoff-time DNF automation.

Once a checkpoint's cutoff has passed, in_progress runners of the
checkpoint's campaign that never recorded a checkpoint are marked dnf.
The runner's position on the course is not compared with the triggering
checkpoint.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
from datetime import datetime
from typing import Callable, Optional

from racesync.core import database as db
from racesync.core.config import settings

logger = logging.getLogger("racesync.cutoff")

_HHMM_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_cutoff(value: Optional[str], now: datetime) -> Optional[datetime]:
    """Parse a cutoff as an ISO datetime or bare 'HH:MM' on now's date.

    Returns None for empty, '-' or unparseable values.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text or text == "-":
        return None

    m = _HHMM_RE.match(text)
    if m:
        hour, minute = int(m.group(1)), int(m.group(2))
        if hour > 23 or minute > 59:
            return None
        return now.replace(hour=hour, minute=minute, second=0, microsecond=0)

    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None

    # Compare like with like
    if parsed.tzinfo is not None and now.tzinfo is None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    elif parsed.tzinfo is None and now.tzinfo is not None:
        parsed = parsed.replace(tzinfo=now.tzinfo)
    return parsed


def check_cutoffs(conn: sqlite3.Connection, now: Optional[datetime] = None) -> dict:
    """Apply every elapsed checkpoint cutoff.

    Returns {"processed", "dnf_count"}; processed counts cutoffs that have passed.
    """
    now = now or datetime.now()
    processed = 0
    dnf_count = 0

    for cp in db.get_cutoff_checkpoints(conn):
        cutoff = parse_cutoff(cp["cutoff_time"], now)
        if cutoff is None or now < cutoff:
            continue
        processed += 1
        marked = db.mark_stalled_runners_dnf(conn, cp["campaign_id"])
        if marked:
            logger.info("Cutoff %s at %s passed: %d runner(s) marked DNF",
                        cp["name"], cp["cutoff_time"], marked)
        dnf_count += marked

    return {"processed": processed, "dnf_count": dnf_count}


class CutoffMonitor:
    """Async background task that runs check_cutoffs on a fixed interval."""

    def __init__(self, connect: Callable[[], sqlite3.Connection] = db.get_connection,
                 interval: Optional[float] = None):
        self.connect = connect
        self.interval = interval if interval is not None else settings.CUTOFF_INTERVAL_S
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_run: Optional[str] = None
        self._total_dnf = 0
        self._error_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def get_status(self) -> dict:
        return {
            "is_running": self._running,
            "interval_s": self.interval,
            "last_run": self._last_run,
            "total_dnf": self._total_dnf,
            "error_count": self._error_count,
        }

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Cutoff monitor started (every %ss)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def run_once(self) -> dict:
        conn = self.connect()
        try:
            result = check_cutoffs(conn)
        finally:
            conn.close()
        self._last_run = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        self._total_dnf += result["dnf_count"]
        return result

    async def _loop(self) -> None:
        while self._running:
            try:
                self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._error_count += 1
                logger.error("Cutoff check failed: %s", e)
            await asyncio.sleep(self.interval)
