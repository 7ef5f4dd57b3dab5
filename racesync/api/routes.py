"""
routes.py — REST API endpoints for racesync.

All endpoints under /api/. Wraps store reads from core/database.py, scan
ingestion from core/timing_engine.py, and provider reconciliation from
core/reconciliation.py.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from racesync.api.websocket import manager as ws_manager
from racesync.core import database as db
from racesync.core import reconciliation
from racesync.core.config import settings
from racesync.core.cutoff_monitor import check_cutoffs
from racesync.core.errors import NotFoundError, RaceSyncError, UpstreamError
from racesync.core.provider_client import ProviderClient
from racesync.core.sync_scheduler import set_auto_sync
from racesync.core.timing_engine import process_scan, recompute_rankings

logger = logging.getLogger("racesync.api")

router = APIRouter()

GENERIC_UPSTREAM_MESSAGE = "Timing provider request failed"


# ─── Helpers ─────────────────────────────────────────────────────────

def _rows_to_list(rows) -> list[dict]:
    return [dict(r) for r in rows]


def _get_conn():
    return db.get_connection()


def _http_error(e: RaceSyncError) -> HTTPException:
    message = e.message
    if isinstance(e, UpstreamError) and settings.is_production:
        message = GENERIC_UPSTREAM_MESSAGE
    return HTTPException(e.status_code, message)


def _provider(request: Request) -> ProviderClient:
    client = getattr(request.app.state, "provider_client", None)
    if client is None:
        client = ProviderClient()
        request.app.state.provider_client = client
    return client


# ─── Pydantic models ─────────────────────────────────────────────────

class ScanCreate(BaseModel):
    bib: str
    checkpoint: str
    timestamp: Optional[datetime] = None
    note: Optional[str] = None


class RankingRequest(BaseModel):
    category: str


class AutoSyncUpdate(BaseModel):
    enabled: bool


# ─── Status ──────────────────────────────────────────────────────────

@router.get("/status")
async def server_status(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    monitor = getattr(request.app.state, "cutoff_monitor", None)
    return {
        "ok": True,
        "environment": settings.ENVIRONMENT,
        "scheduler": scheduler.get_stats() if scheduler else None,
        "cutoff_monitor": monitor.get_status() if monitor else None,
    }


# ─── Scans ───────────────────────────────────────────────────────────

@router.post("/events/{event_id}/scans")
async def create_scan(event_id: int, body: ScanCreate):
    conn = _get_conn()
    try:
        if db.get_event(conn, event_id) is None:
            raise HTTPException(404, "Event not found")
        timestamp = body.timestamp or datetime.now()
        return process_scan(conn, event_id, body.bib, body.checkpoint, timestamp,
                            note=body.note, publisher=ws_manager.publish)
    except RaceSyncError as e:
        raise _http_error(e) from e
    finally:
        conn.close()


@router.get("/events/{event_id}/scans")
async def list_scans(event_id: int, limit: int = Query(100, ge=1, le=1000)):
    conn = _get_conn()
    try:
        return _rows_to_list(db.get_event_scans(conn, event_id, limit))
    finally:
        conn.close()


@router.get("/runners/{runner_id}/scans")
async def list_runner_scans(runner_id: int):
    conn = _get_conn()
    try:
        if db.get_runner(conn, runner_id) is None:
            raise HTTPException(404, "Runner not found")
        return _rows_to_list(db.get_runner_scans(conn, runner_id))
    finally:
        conn.close()


# ─── Runners + rankings ──────────────────────────────────────────────

@router.get("/events/{event_id}/runners")
async def list_runners(event_id: int,
                       category: Optional[str] = None,
                       gender: Optional[str] = None,
                       age_group: Optional[str] = None,
                       status: Optional[str] = None,
                       checkpoint: Optional[str] = None,
                       limit: Optional[int] = Query(None, ge=1)):
    conn = _get_conn()
    try:
        rows = db.list_runners(conn, event_id, category=category, gender=gender,
                               age_group=age_group, status=status,
                               checkpoint=checkpoint, limit=limit)
        return {
            "total": db.count_runners(conn, event_id),
            "runners": _rows_to_list(rows),
        }
    finally:
        conn.close()


@router.get("/events/{event_id}/status-counts")
async def status_counts(event_id: int):
    conn = _get_conn()
    try:
        return db.get_status_counts(conn, event_id)
    finally:
        conn.close()


@router.post("/events/{event_id}/rankings")
async def recompute_rankings_endpoint(event_id: int, body: RankingRequest):
    conn = _get_conn()
    try:
        if db.get_event(conn, event_id) is None:
            raise HTTPException(404, "Event not found")
        ranked = recompute_rankings(conn, event_id, body.category)
        return {"ok": True, "ranked": ranked}
    finally:
        conn.close()


# ─── Cutoffs ─────────────────────────────────────────────────────────

@router.post("/cutoffs/check")
async def check_cutoffs_endpoint():
    conn = _get_conn()
    try:
        return check_cutoffs(conn)
    finally:
        conn.close()


# ─── Provider sync ───────────────────────────────────────────────────

@router.post("/campaigns/{campaign_id}/sync/import")
async def import_endpoint(campaign_id: int, request: Request):
    conn = _get_conn()
    try:
        return await reconciliation.import_from_provider(
            conn, _provider(request), campaign_id, publisher=ws_manager.publish)
    except RaceSyncError as e:
        raise _http_error(e) from e
    finally:
        conn.close()


@router.post("/campaigns/{campaign_id}/sync/runners")
async def sync_runners_endpoint(campaign_id: int, request: Request,
                                update_existing: bool = True):
    conn = _get_conn()
    try:
        return await reconciliation.sync_runners(
            conn, _provider(request), campaign_id, update_existing=update_existing)
    except RaceSyncError as e:
        raise _http_error(e) from e
    finally:
        conn.close()


@router.post("/campaigns/{campaign_id}/sync/timing")
async def sync_timing_endpoint(campaign_id: int, request: Request):
    conn = _get_conn()
    try:
        return await reconciliation.sync_timing_only(conn, _provider(request), campaign_id)
    except RaceSyncError as e:
        raise _http_error(e) from e
    finally:
        conn.close()


@router.get("/campaigns/{campaign_id}/sync/preview")
async def preview_endpoint(campaign_id: int, request: Request,
                           kind: str = "info", page: int = 1):
    conn = _get_conn()
    try:
        return await reconciliation.preview_provider_data(
            conn, _provider(request), campaign_id, kind, page)
    except RaceSyncError as e:
        raise _http_error(e) from e
    finally:
        conn.close()


@router.get("/campaigns/{campaign_id}/sync/logs")
async def sync_logs(campaign_id: int, limit: int = Query(10, ge=1, le=100)):
    conn = _get_conn()
    try:
        return db.get_sync_stats(conn, campaign_id, limit)
    finally:
        conn.close()


@router.get("/campaigns/{campaign_id}/sync/last-error")
async def last_sync_error(campaign_id: int):
    conn = _get_conn()
    try:
        return {"campaign_id": campaign_id,
                "last_sync_error": db.was_last_sync_error(conn, campaign_id)}
    finally:
        conn.close()


@router.get("/campaigns/{campaign_id}/sync/latest-payload")
async def latest_payload(campaign_id: int):
    conn = _get_conn()
    try:
        return db.get_latest_payload(conn, campaign_id)
    finally:
        conn.close()


@router.get("/sync/errors")
async def all_sync_errors():
    conn = _get_conn()
    try:
        return db.get_campaign_sync_errors(conn)
    finally:
        conn.close()


# ─── Auto-sync scheduler ─────────────────────────────────────────────

@router.put("/campaigns/{campaign_id}/auto-sync")
async def update_auto_sync(campaign_id: int, body: AutoSyncUpdate):
    conn = _get_conn()
    try:
        campaign = set_auto_sync(conn, campaign_id, body.enabled)
        return {"id": campaign["id"], "auto_sync": bool(campaign["auto_sync"])}
    except NotFoundError as e:
        raise _http_error(e) from e
    finally:
        conn.close()


@router.get("/sync/scheduler")
async def scheduler_stats(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        return {"is_running": False, "total_runs": 0, "generation": 0}
    return scheduler.get_stats()
