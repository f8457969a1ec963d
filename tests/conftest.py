import asyncio
import os
import tempfile
from typing import Any, Dict, List, Tuple

import httpx
import pytest

# server.py reads its config at import time
_DB_DIR = tempfile.mkdtemp(prefix="ticketdesk-test-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/app.db"
os.environ["CACHE_BACKEND"] = "off"

from fastapi.testclient import TestClient  # noqa: E402

from ticketdesk.commerce import LeadConnector  # noqa: E402
from ticketdesk.helpers import (  # noqa: E402
    new_id, qr_code_url_for, ticket_number_for,
)
from ticketdesk.infra.sql import GatedAsyncSession, make_async_engine  # noqa: E402
from ticketdesk.model import events, orders  # noqa: E402
from ticketdesk.model.db import Base, create_schema  # noqa: E402


class RecordingFeed:
    """Stands in for the change feed; remembers what was published."""

    def __init__(self) -> None:
        self.published: List[Tuple[str, ...]] = []

    async def publish(self, *tables: str) -> None:
        self.published.append(tables)


class FakeUpstream:
    """httpx.MockTransport handler for the commerce platform."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.routes: Dict[Tuple[str, str], Tuple[int, Any]] = {}

    def reply(self, method: str, path: str, status: int, body: Any) -> None:
        self.routes[(method, path)] = (status, body)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests
                if r.method == method and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.routes.get(
            (request.method, request.url.path), (200, {}))
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
async def sessions(tmp_path):
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await create_schema(conn)
    yield SessionAsync, gated
    await engine.dispose()


@pytest.fixture
async def ds(sessions):
    SessionAsync, gated = sessions
    async with SessionAsync() as session:
        yield GatedAsyncSession(
            session=session, gated=gated, feed=RecordingFeed())


@pytest.fixture
async def other_ds(sessions):
    """A second connection to the same database, for concurrent callers."""
    SessionAsync, gated = sessions
    async with SessionAsync() as session:
        yield GatedAsyncSession(
            session=session, gated=gated, feed=RecordingFeed())


@pytest.fixture
async def commerce(upstream):
    async def resolve_key(location_id):
        return "secret-key" if location_id == "loc-1" else None

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(upstream)
    ) as http:
        yield LeadConnector(http, resolve_key, base_url="https://commerce.test")


# ---- row factories
async def make_event(ds, **over) -> Dict[str, Any]:
    fields = {"title": "Launch Night", "date": "2026-11-01", "capacity": 10}
    fields.update(over)
    sold = fields.pop("tickets_sold", 0)
    product = fields.pop("external_product_id", None)
    async with ds.tx() as db:
        event = await events.insert_event(db, fields)
        if sold:
            event = await events.update_event(
                db, event["id"], {"tickets_sold": sold})
        if product:
            await events.set_event_product(db, event["id"], product)
            event = await events.get_event(db, event["id"])
    return event


async def make_attendee(ds, total_tickets=2, **contact) -> Dict[str, Any]:
    event = await make_event(ds, capacity=max(10, total_tickets))
    order_id = new_id()
    ticket = ticket_number_for(order_id)
    async with ds.tx() as db:
        c, _ = await orders.upsert_contact(
            db, contact.get("name", "Ada Lovelace"),
            contact.get("email", "ada@example.com"),
            contact.get("phone"))
        order = await orders.insert_order(
            db, order_id=order_id,
            event_id=event["id"], contact_id=c["id"],
            quantity=total_tickets, total=0, status="completed",
            location_id="loc-1",
        )
        attendee = await orders.insert_attendee(
            db, order_id=order["id"], contact_id=c["id"],
            ticket_number=ticket, qr_code_url=qr_code_url_for(ticket),
            event_title=event["title"], total_tickets=total_tickets,
            location_id="loc-1",
        )
        await orders.insert_seats(db, attendee["id"], total_tickets)
    return attendee


# ---- app
async def _reset_schema(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await create_schema(conn)


@pytest.fixture
def client(upstream):
    from ticketdesk import server

    asyncio.run(_reset_schema(server.engine))
    with TestClient(server.app) as c:
        # route all outbound calls through the fake upstream
        c.portal.call(server.app.state.http.aclose)
        server.app.state.http = httpx.AsyncClient(
            transport=httpx.MockTransport(upstream))
        yield c
