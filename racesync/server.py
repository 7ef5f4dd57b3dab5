"""
racesync — Server entry point.

Starts the FastAPI server with the REST API, per-event WebSocket, the
cutoff monitor and the provider auto-sync scheduler.
Usage:
    python -m racesync.server
    # or: uvicorn racesync.server:app --host 0.0.0.0 --port 8080 --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from racesync.api.routes import router as api_router
from racesync.api.websocket import router as ws_router
from racesync.core.config import settings
from racesync.core.cutoff_monitor import CutoffMonitor
from racesync.core.database import get_connection, init_db, migrate_db
from racesync.core.provider_client import ProviderClient
from racesync.core.sync_scheduler import SyncScheduler

logger = logging.getLogger("racesync")

PORT = 8080


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: init database, start background jobs. Shutdown: stop them."""
    conn = get_connection()
    init_db(conn)
    migrate_db(conn)
    conn.close()

    app.state.provider_client = ProviderClient()
    app.state.cutoff_monitor = CutoffMonitor()
    app.state.scheduler = SyncScheduler(client=app.state.provider_client)

    if settings.CUTOFF_MONITOR_ENABLED:
        await app.state.cutoff_monitor.start()
    if settings.SCHEDULER_ENABLED:
        await app.state.scheduler.start()

    yield

    # Shutdown
    await app.state.scheduler.stop()
    await app.state.cutoff_monitor.stop()
    await app.state.provider_client.aclose()


app = FastAPI(title="racesync", lifespan=lifespan)

# API + WebSocket routers
app.include_router(api_router, prefix="/api")
app.include_router(ws_router)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("racesync server — http://localhost:%d/api/status", PORT)
    uvicorn.run("racesync.server:app", host="0.0.0.0", port=PORT)
