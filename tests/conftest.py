"""
Pytest configuration and fixtures.

Every test gets a fresh SQLite database in its own temp dir, and
settings.DB_PATH points at it so route handlers and background jobs open
the same file.
"""

from urllib.parse import parse_qs

import httpx
import pytest

from racesync.core import database
from racesync.core.config import settings
from racesync.core.provider_client import ProviderClient


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "test.db"
    monkeypatch.setattr(settings, "DB_PATH", path)
    return path


@pytest.fixture
def conn(db_path):
    c = database.get_connection(db_path)
    database.init_db(c)
    database.migrate_db(c)
    yield c
    c.close()


@pytest.fixture
def race(conn):
    """One sync-enabled campaign with a single 10K event."""
    campaign_id = database.create_campaign(
        conn, "City Run", race_id="R1", token="secrettoken123", allow_sync=True,
        event_date="2026-05-01", location="Bangkok",
    )
    event_id = database.create_event(conn, campaign_id, "10K", category="10K",
                                      distance=10.0, date="2026-05-01")
    return {"campaign_id": campaign_id, "event_id": event_id}


class FakeProvider:
    """httpx.MockTransport handler emulating the provider's form-POST API.

    routes maps a URL path to a callable(form) returning a JSON body or an
    httpx.Response.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.calls.append((request.url.path, form))
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, json={"msg": "not found"})
        result = handler(form)
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json=result)

    def paths(self):
        return [path for path, _ in self.calls]


def paged(rows_by_eid, page_size=100):
    """Route handler serving rows per eid ('' when no eid), one page at a time."""
    def handler(form):
        rows = rows_by_eid.get(form.get("eid", ""), [])
        page = int(form.get("page", "1"))
        chunk = rows[(page - 1) * page_size: page * page_size]
        return {"code": 0, "data": chunk, "total": len(rows)}
    return handler


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def provider(fake_provider):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_provider))
    return ProviderClient(client=client)
