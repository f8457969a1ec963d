from __future__ import annotations
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx
import redis.asyncio as redis

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse, Response

from .commerce import CommerceAdapter, ContactConfirmer, LeadConnector
from .errors import (
    BadRequest, InsufficientCapacity, NotFound, TicketdeskError, Unknown,
)
from .infra.sql import GatedAsyncSession, make_async_engine
from .infra.timings import install_shutdown_report, summary
from .model import apikeys, orders
from .model.cache import (
    BACKEND as CACHE_BACKEND, QueryCache, new_cache, new_feed,
)
from .model.db import create_schema
from .workflows import catalog, checkin, intake

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./ticketdesk.db")
CACHE_TTL_SECONDS = int(os.environ.get("CACHE_TTL_SECONDS", "60"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("ticketdesk")

engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)

app = FastAPI(
    title="ticketdesk",
    default_response_class=ORJSONResponse,
)
# the dashboard and the commerce platform's webhooks call from other origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

install_shutdown_report(app)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    db = DATABASE_URL.split("://", 1)[0]
    log.info("=" * 50)
    log.info("ticketdesk is starting up...")
    log.info("   - Database: %s", db)
    log.info("   - Query cache: %s", CACHE_BACKEND)
    log.info("=" * 50)


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=64
        ),
    )


@app.on_event("startup")
async def _cache_start():
    r = None
    if CACHE_BACKEND != "off":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        r = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    app.state.redis = r
    app.state.cache = new_cache(r=r, ttl_seconds=CACHE_TTL_SECONDS)
    app.state.feed = new_feed(cache=app.state.cache, r=r)
    app.state.listener = None
    if r is not None:
        app.state.listener = asyncio.create_task(app.state.feed.listen())


@app.on_event("shutdown")
async def _cache_stop():
    task = getattr(app.state, "listener", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            # the remaining shutdown hooks still have to run
            log.warning("change listener ended with an error", exc_info=True)
        app.state.listener = None
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _db_stop():
    await engine.dispose()


# ----------------------------
# Dependencies
# ----------------------------
@asynccontextmanager
async def open_ds() -> AsyncIterator[GatedAsyncSession]:
    """A session of its own, for work that outlives the request."""
    async with SessionAsync() as session:
        yield GatedAsyncSession(
            session=session, gated=gated,
            feed=getattr(app.state, "feed", None),
        )


async def get_ds() -> AsyncIterator[GatedAsyncSession]:
    async with open_ds() as ds:
        yield ds


def commerce_for(ds: GatedAsyncSession) -> CommerceAdapter:
    async def resolve_key(location_id: str) -> Optional[str]:
        async with ds.tx() as db:
            return await apikeys.get_api_key(db, location_id)

    return LeadConnector(app.state.http, resolve_key)


async def commerce_api(
    ds: GatedAsyncSession = Depends(get_ds),
) -> CommerceAdapter:
    return commerce_for(ds)


def confirmer() -> ContactConfirmer:
    return ContactConfirmer(app.state.http)


def query_cache() -> QueryCache:
    return app.state.cache


# ----------------------------
# Background follow-ups
# ----------------------------
async def _inventory_followup(
    event_id: str, location_id: Optional[str] = None
) -> None:
    async with open_ds() as ds:
        await catalog.sync_inventory_quietly(
            ds, commerce_for(ds), event_id, location_id)


async def _product_followup(event_id: str) -> None:
    async with open_ds() as ds:
        await catalog.sync_product_quietly(ds, commerce_for(ds), event_id)


async def _confirm_followup(fields: Dict[str, str]) -> None:
    if not fields.get("email") and not fields.get("first_name"):
        return
    await confirmer().confirm_quietly(**fields)


# ----------------------------
# Error mapping
# ----------------------------
@app.exception_handler(TicketdeskError)
async def _ticketdesk_error(request: Request, exc: TicketdeskError):
    if exc.status_code >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path,
                  exc.message)
    return ORJSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception):
    log.exception("%s %s crashed", request.method, request.url.path)
    err = Unknown(str(exc) or "Internal server error")
    return ORJSONResponse(err.to_dict(), status_code=err.status_code)


def _envelope_error(e: Exception) -> ORJSONResponse:
    """{success: false} body used by the functions endpoints."""
    if isinstance(e, (BadRequest, InsufficientCapacity)):
        status = e.status_code
        log.warning("function rejected request: %s", e)
    else:
        status = 500
        log.error("function failed: %s", e)
    return ORJSONResponse({"success": False, "error": str(e)},
                          status_code=status)


async def _body(request: Request) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        raise BadRequest("Request body must be valid JSON")
    if not isinstance(payload, dict):
        raise BadRequest("Request body must be a JSON object")
    return payload


# ----------------------------
# Functions: webhook and commerce proxies
# ----------------------------
@app.post("/functions/orders-webhook", status_code=201)
async def orders_webhook(
    request: Request,
    background: BackgroundTasks,
    ds: GatedAsyncSession = Depends(get_ds),
):
    payload = await _body(request)
    result = await intake.intake_order(ds, payload)
    background.add_task(
        _inventory_followup,
        result["event"]["id"], result["order"].get("location_id"),
    )
    return result


@app.post("/functions/fetch-order")
async def fetch_order(
    request: Request,
    background: BackgroundTasks,
    ds: GatedAsyncSession = Depends(get_ds),
    commerce: CommerceAdapter = Depends(commerce_api),
):
    try:
        payload = await _body(request)
        result = await intake.fetch_remote_order(ds, commerce, payload)
    except (TicketdeskError, httpx.HTTPError) as e:
        return _envelope_error(e)
    if result.get("event_id"):
        background.add_task(
            _inventory_followup, result["event_id"], result["location_id"])
    return result


@app.post("/functions/confirm-contact")
async def confirm_contact(
    request: Request,
    cc: ContactConfirmer = Depends(confirmer),
):
    body = await _body(request)
    if not body.get("email") and not body.get("first_name"):
        raise BadRequest("Missing required fields")
    fields = {
        k: str(body.get(k) or "")
        for k in ("email", "first_name", "last_name", "phone",
                  "event_name", "location_id")
    }
    try:
        resp = await cc.confirm(**fields)
    except httpx.HTTPError as e:
        log.error("confirm-contact failed: %s", e)
        return ORJSONResponse({"error": str(e)}, status_code=500)
    return Response(
        content=resp.content,
        status_code=resp.status_code,
        media_type="application/json",
    )


@app.post("/functions/sync-bundle-price")
async def sync_bundle_price(
    request: Request,
    commerce: CommerceAdapter = Depends(commerce_api),
):
    try:
        data = await catalog.push_bundle_price(commerce, await _body(request))
    except (TicketdeskError, httpx.HTTPError) as e:
        return _envelope_error(e)
    return {"success": True, "data": data}


@app.post("/functions/update-bundle-price")
async def update_bundle_price(
    request: Request,
    commerce: CommerceAdapter = Depends(commerce_api),
):
    try:
        data = await catalog.push_price_update(commerce, await _body(request))
    except (TicketdeskError, httpx.HTTPError) as e:
        return _envelope_error(e)
    return {"success": True, "data": data}


@app.post("/functions/sync-inventory")
async def sync_inventory(
    request: Request,
    commerce: CommerceAdapter = Depends(commerce_api),
):
    try:
        data = await catalog.push_inventory(commerce, await _body(request))
    except (TicketdeskError, httpx.HTTPError) as e:
        return _envelope_error(e)
    return {"success": True, "data": data}


@app.api_route("/functions/sync-product", methods=["POST", "PUT"])
async def sync_product(
    request: Request,
    ds: GatedAsyncSession = Depends(get_ds),
    commerce: CommerceAdapter = Depends(commerce_api),
):
    try:
        data = await catalog.sync_product(ds, commerce, await _body(request))
    except (TicketdeskError, httpx.HTTPError) as e:
        return _envelope_error(e)
    return {"success": True, "data": data}


# ----------------------------
# API: events & bundles
# ----------------------------
@app.get("/api/events")
async def api_list_events(
    location_id: Optional[str] = None,
    ds: GatedAsyncSession = Depends(get_ds),
    cache: QueryCache = Depends(query_cache),
):
    return await cache.fetch(
        "events", f"list:{location_id or '*'}",
        lambda: catalog.list_events(ds, location_id),
    )


@app.post("/api/events", status_code=201)
async def api_create_event(
    request: Request,
    background: BackgroundTasks,
    ds: GatedAsyncSession = Depends(get_ds),
):
    event = await catalog.create_event(ds, await _body(request))
    if event.get("location_id"):
        background.add_task(_product_followup, event["id"])
    return event


@app.get("/api/events/{event_id}")
async def api_get_event(
    event_id: str,
    ds: GatedAsyncSession = Depends(get_ds),
    cache: QueryCache = Depends(query_cache),
):
    return await cache.fetch(
        "events", f"one:{event_id}", lambda: catalog.get_event(ds, event_id),
    )


@app.patch("/api/events/{event_id}")
async def api_update_event(
    event_id: str,
    request: Request,
    background: BackgroundTasks,
    ds: GatedAsyncSession = Depends(get_ds),
):
    event, changed = await catalog.update_event(
        ds, event_id, await _body(request))
    if event.get("location_id"):
        if changed & {"title", "description"} and \
                event.get("external_product_id"):
            background.add_task(_product_followup, event_id)
        if "capacity" in changed:
            background.add_task(_inventory_followup, event_id)
    return event


@app.delete("/api/events/{event_id}", status_code=204)
async def api_delete_event(
    event_id: str, ds: GatedAsyncSession = Depends(get_ds),
):
    await catalog.delete_event(ds, event_id)
    return Response(status_code=204)


@app.post("/api/events/{event_id}/sync-inventory")
async def api_sync_event_inventory(
    event_id: str,
    ds: GatedAsyncSession = Depends(get_ds),
    commerce: CommerceAdapter = Depends(commerce_api),
):
    items = await catalog.sync_event_inventory(ds, commerce, event_id)
    return {"success": True, "items": items or []}


@app.get("/api/events/{event_id}/bundles")
async def api_list_bundles(
    event_id: str,
    ds: GatedAsyncSession = Depends(get_ds),
    cache: QueryCache = Depends(query_cache),
):
    return await cache.fetch(
        "bundle_options", f"event:{event_id}",
        lambda: catalog.list_bundles(ds, event_id),
    )


@app.post("/api/events/{event_id}/bundles", status_code=201)
async def api_create_bundle(
    event_id: str,
    request: Request,
    ds: GatedAsyncSession = Depends(get_ds),
    commerce: CommerceAdapter = Depends(commerce_api),
):
    return await catalog.create_bundle(
        ds, commerce, event_id, await _body(request))


@app.patch("/api/bundles/{bundle_id}")
async def api_update_bundle(
    bundle_id: str,
    request: Request,
    ds: GatedAsyncSession = Depends(get_ds),
    commerce: CommerceAdapter = Depends(commerce_api),
):
    return await catalog.update_bundle(
        ds, commerce, bundle_id, await _body(request))


@app.delete("/api/bundles/{bundle_id}", status_code=204)
async def api_delete_bundle(
    bundle_id: str, ds: GatedAsyncSession = Depends(get_ds),
):
    await catalog.delete_bundle(ds, bundle_id)
    return Response(status_code=204)


# ----------------------------
# API: orders, attendees, seats
# ----------------------------
@app.get("/api/orders")
async def api_list_orders(
    ds: GatedAsyncSession = Depends(get_ds),
    cache: QueryCache = Depends(query_cache),
):
    async def load():
        async with ds.tx() as db:
            return await orders.list_orders(db)

    return await cache.fetch("orders", "list", load)


@app.delete("/api/orders/{order_id}", status_code=204)
async def api_delete_order(
    order_id: str, ds: GatedAsyncSession = Depends(get_ds),
):
    async with ds.tx() as db:
        deleted = await orders.delete_order(db, order_id)
    if not deleted:
        raise NotFound(f"Order {order_id} not found")
    log.info("order %s deleted", order_id)
    return Response(status_code=204)


@app.get("/api/orders/{order_id}/seats")
async def api_order_seats(
    order_id: str,
    ds: GatedAsyncSession = Depends(get_ds),
    cache: QueryCache = Depends(query_cache),
):
    return await cache.fetch(
        "seat_assignments", f"order:{order_id}",
        lambda: checkin.seats_for_order(ds, order_id),
    )


@app.get("/api/stats")
async def api_stats(ds: GatedAsyncSession = Depends(get_ds)):
    async with ds.tx() as db:
        return {
            "contacts": await orders.count_contacts(db),
            "orders": await orders.count_orders(db),
            "attendees": await orders.count_attendees(db),
        }


@app.get("/api/attendees")
async def api_list_attendees(
    event_title: Optional[str] = None,
    ds: GatedAsyncSession = Depends(get_ds),
    cache: QueryCache = Depends(query_cache),
):
    return await cache.fetch(
        "attendees", f"list:{event_title or '*'}",
        lambda: checkin.list_attendees(ds, event_title),
    )


@app.get("/api/attendees/lookup")
async def api_lookup_ticket(
    ticket: str = "", ds: GatedAsyncSession = Depends(get_ds),
):
    return {"attendee": await checkin.find_by_ticket(ds, ticket)}


@app.get("/api/attendees/{attendee_id}/seats")
async def api_attendee_seats(
    attendee_id: str,
    ds: GatedAsyncSession = Depends(get_ds),
    cache: QueryCache = Depends(query_cache),
):
    return await cache.fetch(
        "seat_assignments", f"attendee:{attendee_id}",
        lambda: checkin.seats_for_attendee(ds, attendee_id),
    )


@app.post("/api/attendees/{attendee_id}/check-in")
async def api_check_in(
    attendee_id: str,
    background: BackgroundTasks,
    ds: GatedAsyncSession = Depends(get_ds),
):
    attendee = await checkin.check_in(ds, attendee_id)
    background.add_task(_confirm_followup, checkin.confirmation_for(attendee))
    return attendee


@app.post("/api/attendees/{attendee_id}/check-out")
async def api_check_out(
    attendee_id: str, ds: GatedAsyncSession = Depends(get_ds),
):
    return await checkin.check_out(ds, attendee_id)


@app.put("/api/seats/{seat_id}")
async def api_assign_seat(
    seat_id: str,
    request: Request,
    ds: GatedAsyncSession = Depends(get_ds),
):
    return await checkin.assign_seat(ds, seat_id, await _body(request))


@app.post("/api/seats/{seat_id}/unassign")
async def api_unassign_seat(
    seat_id: str, ds: GatedAsyncSession = Depends(get_ds),
):
    return await checkin.unassign_seat(ds, seat_id)


@app.post("/api/seats/{seat_id}/check-in")
async def api_check_in_seat(
    seat_id: str, ds: GatedAsyncSession = Depends(get_ds),
):
    return await checkin.check_in_seat(ds, seat_id)


@app.post("/api/seats/{seat_id}/check-out")
async def api_check_out_seat(
    seat_id: str, ds: GatedAsyncSession = Depends(get_ds),
):
    return await checkin.check_out_seat(ds, seat_id)


@app.post("/api/seats/{seat_id}/admit")
async def api_admit_seat(
    seat_id: str,
    background: BackgroundTasks,
    ds: GatedAsyncSession = Depends(get_ds),
):
    result = await checkin.admit_seat(ds, seat_id)
    background.add_task(
        _confirm_followup,
        checkin.confirmation_for(result["attendee"], result["seat"]),
    )
    return result


@app.post("/api/seats/{seat_id}/release")
async def api_release_seat(
    seat_id: str, ds: GatedAsyncSession = Depends(get_ds),
):
    return await checkin.release_seat(ds, seat_id)


@app.get("/api/attendance")
async def api_attendance(
    search: Optional[str] = None,
    ds: GatedAsyncSession = Depends(get_ds),
    cache: QueryCache = Depends(query_cache),
):
    if search:
        return await checkin.attendance(ds, search)
    return await cache.fetch(
        "attendance", "all", lambda: checkin.attendance(ds),
    )


# ----------------------------
# API: location keys & diagnostics
# ----------------------------
@app.get("/api/location-keys")
async def api_list_keys(
    ds: GatedAsyncSession = Depends(get_ds),
    cache: QueryCache = Depends(query_cache),
):
    async def load():
        async with ds.tx() as db:
            return await apikeys.list_api_keys(db)

    return await cache.fetch("location_api_keys", "list", load)


@app.put("/api/location-keys")
async def api_put_key(
    request: Request, ds: GatedAsyncSession = Depends(get_ds),
):
    body = await _body(request)
    location_id = (body.get("location_id") or "").strip()
    api_key = (body.get("api_key") or "").strip()
    if not location_id or not api_key:
        raise BadRequest("location_id and api_key are required")
    async with ds.tx() as db:
        return await apikeys.upsert_api_key(db, location_id, api_key)


@app.delete("/api/location-keys/{key_id}", status_code=204)
async def api_delete_key(
    key_id: str, ds: GatedAsyncSession = Depends(get_ds),
):
    async with ds.tx() as db:
        deleted = await apikeys.delete_api_key(db, key_id)
    if not deleted:
        raise NotFound(f"API key {key_id} not found")
    return Response(status_code=204)


@app.get("/api/timings")
async def api_timings():
    return summary()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
