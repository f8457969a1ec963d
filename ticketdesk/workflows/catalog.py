# workflows/catalog.py
"""
Events and bundle options, and their mirror on the commerce platform.

Local rows are authoritative. Every upstream call happens after the local
transaction committed; when it fails the local write stays and the caller
gets a warning string (or a log line, for the background variants).
"""
from __future__ import annotations
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from ..commerce import CommerceAdapter, DEFAULT_CURRENCY, upstream_id
from ..errors import BadRequest, NoApiKey, NotFound, UpstreamError
from ..helpers import as_int, as_number, bundles_available
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from ..model import events

log = logging.getLogger(__name__)

# failures a best-effort sync tolerates
SYNC_ERRORS = (UpstreamError, NoApiKey, httpx.HTTPError)


def inventory_items(
    bundles: Iterable[Dict[str, Any]], capacity: int, tickets_sold: int
) -> List[Dict[str, Any]]:
    return [
        {
            "priceId": b["external_price_id"],
            "availableQuantity": bundles_available(
                capacity, tickets_sold, b["bundle_quantity"]),
            "allowOutOfStockPurchases": False,
        }
        for b in bundles
        if b.get("external_price_id")
    ]


# ------------------------------------------------------------------------------
# events
# ------------------------------------------------------------------------------
def _event_fields(payload: Dict[str, Any], *, partial: bool) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key in ("title", "venue", "date", "end_date", "time", "description",
                "cover_image", "location_id"):
        if key in payload:
            out[key] = payload[key]
    if not partial:
        if not (out.get("title") or "").strip():
            raise BadRequest("title is required")
        if not out.get("date"):
            raise BadRequest("date is required")
    elif "title" in out and not (out["title"] or "").strip():
        raise BadRequest("title cannot be empty")

    if "capacity" in payload or not partial:
        capacity = as_int(payload.get("capacity"))
        if capacity is None or capacity < 1:
            raise BadRequest("capacity must be an integer >= 1")
        out["capacity"] = capacity
    if "ticket_price" in payload:
        price = as_number(payload["ticket_price"])
        if price is None or price < 0:
            raise BadRequest("ticket_price must be a number >= 0")
        out["ticket_price"] = price
    if "tickets_sold" in payload and partial:
        sold = as_int(payload["tickets_sold"])
        if sold is None or sold < 0:
            raise BadRequest("tickets_sold must be an integer >= 0")
        out["tickets_sold"] = sold
    if "is_active" in payload:
        out["is_active"] = bool(payload["is_active"])
    return out


async def list_events(
    ds: GatedAsyncSession, location_id: Optional[str] = None
) -> List[Dict[str, Any]]:
    async with ds.tx() as db:
        return await events.list_events(db, location_id)


async def get_event(ds: GatedAsyncSession, event_id: str) -> Dict[str, Any]:
    async with ds.tx() as db:
        event = await events.get_event(db, event_id)
    if event is None:
        raise NotFound(f"Event {event_id} not found")
    return event


async def create_event(
    ds: GatedAsyncSession, payload: Dict[str, Any]
) -> Dict[str, Any]:
    fields = _event_fields(payload, partial=False)
    async with ds.tx() as db:
        event = await events.insert_event(db, fields)
    log.info("event %s created: %s (capacity %d)",
             event["id"], event["title"], event["capacity"])
    return event


async def update_event(
    ds: GatedAsyncSession, event_id: str, payload: Dict[str, Any]
) -> Tuple[Dict[str, Any], set]:
    """
    Partial update. Returns (event, changed columns) so the caller can
    decide which upstream follow-ups to schedule.
    """
    updates = _event_fields(payload, partial=True)
    updates.pop("location_id", None)
    async with ds.tx() as db:
        current = await events.get_event(db, event_id)
        if current is None:
            raise NotFound(f"Event {event_id} not found")
        capacity = updates.get("capacity", current["capacity"])
        sold = updates.get("tickets_sold", current["tickets_sold"])
        if sold > capacity:
            raise BadRequest(
                f"capacity {capacity} is below tickets sold ({sold})"
            )
        event = await events.update_event(db, event_id, updates)
    return event, set(updates)


async def delete_event(ds: GatedAsyncSession, event_id: str) -> None:
    async with ds.tx() as db:
        if await events.get_event(db, event_id) is None:
            raise NotFound(f"Event {event_id} not found")
        n = await events.count_orders(db, event_id)
        if n:
            raise BadRequest(
                f"Event has {n} order(s); delete them first", orders=n
            )
        await events.delete_event(db, event_id)
    log.info("event %s deleted", event_id)


# ------------------------------------------------------------------------------
# commerce: products and inventory
# ------------------------------------------------------------------------------
async def sync_product(
    ds: GatedAsyncSession, commerce: CommerceAdapter, payload: Dict[str, Any]
) -> Dict[str, Any]:
    """Create or update the upstream product; remember its id on the event."""
    name = payload.get("name")
    location_id = payload.get("locationId")
    if not name or not location_id:
        raise BadRequest("name and locationId are required")
    description = payload.get("description") or ""
    product_id = payload.get("ghlProductId")
    event_id = payload.get("eventId")

    if payload.get("action") == "update" or product_id:
        if not product_id:
            raise BadRequest("ghlProductId is required to update a product")
        data = await commerce.update_product(
            location_id, product_id, name, description)
    else:
        data = await commerce.create_product(location_id, name, description)
        product_id = upstream_id(data, "product")

    if event_id and product_id:
        async with ds.tx() as db:
            await events.set_event_product(db, event_id, product_id)
        log.info("event %s linked to product %s", event_id, product_id)
    return data


async def sync_event_product(
    ds: GatedAsyncSession, commerce: CommerceAdapter, event_id: str
) -> Optional[Dict[str, Any]]:
    event = await get_event(ds, event_id)
    if not event.get("location_id"):
        return None
    return await sync_product(ds, commerce, {
        "name": event["title"],
        "locationId": event["location_id"],
        "description": event.get("description") or "",
        "eventId": event["id"],
        "ghlProductId": event.get("external_product_id"),
    })


async def sync_event_inventory(
    ds: GatedAsyncSession, commerce: CommerceAdapter, event_id: str,
    location_id: Optional[str] = None,
) -> Optional[List[Dict[str, Any]]]:
    """Push availability of every linked bundle. None when nothing to push."""
    async with ds.tx() as db:
        event = await events.get_event(db, event_id)
        if event is None:
            raise NotFound(f"Event {event_id} not found")
        bundles = await events.list_bundles(db, event_id)
    location_id = location_id or event.get("location_id")
    items = inventory_items(bundles, event["capacity"], event["tickets_sold"])
    if not location_id or not items:
        return None
    await commerce.sync_inventory(location_id, items)
    log.info("inventory synced for event %s: %s", event_id, items)
    return items


async def sync_product_quietly(
    ds: GatedAsyncSession, commerce: CommerceAdapter, event_id: str
) -> None:
    try:
        await sync_event_product(ds, commerce, event_id)
    except SYNC_ERRORS as e:
        log.error("product sync for event %s failed: %s", event_id, e)


async def sync_inventory_quietly(
    ds: GatedAsyncSession, commerce: CommerceAdapter, event_id: str,
    location_id: Optional[str] = None,
) -> None:
    try:
        await sync_event_inventory(ds, commerce, event_id, location_id)
    except SYNC_ERRORS as e:
        log.error("inventory sync for event %s failed: %s", event_id, e)


# ------------------------------------------------------------------------------
# bundle options
# ------------------------------------------------------------------------------
def _bundle_name_price(payload: Dict[str, Any]) -> Tuple[str, float]:
    name = (payload.get("package_name") or "").strip()
    if not name:
        raise BadRequest("package_name is required")
    price = as_number(payload.get("package_price", 0))
    if price is None or price < 0:
        raise BadRequest("package_price must be a number >= 0")
    return name, price


async def list_bundles(
    ds: GatedAsyncSession, event_id: str
) -> List[Dict[str, Any]]:
    async with ds.tx() as db:
        return await events.list_bundles(db, event_id)


async def create_bundle(
    ds: GatedAsyncSession, commerce: CommerceAdapter, event_id: str,
    payload: Dict[str, Any],
) -> Dict[str, Any]:
    name, price = _bundle_name_price(payload)
    qty = as_int(payload.get("bundle_quantity"))
    if qty is None or qty < 1:
        raise BadRequest("bundle_quantity must be an integer >= 1")

    async with ds.tx() as db:
        event = await events.get_event(db, event_id)
        if event is None:
            raise NotFound(f"Event {event_id} not found")
        bundle = await events.insert_bundle(db, event_id, name, price, qty)

    out: Dict[str, Any] = {"bundle": bundle}
    product_id = event.get("external_product_id")
    location_id = event.get("location_id")
    if not product_id or not location_id:
        return out

    try:
        async with timeit("sync.bundle_price"):
            data = await commerce.create_price(
                location_id, product_id,
                name=name, amount=price,
                currency=payload.get("currency") or DEFAULT_CURRENCY,
                available_quantity=bundles_available(
                    event["capacity"], event["tickets_sold"], qty),
            )
    except SYNC_ERRORS as e:
        log.warning("bundle %s saved, price sync failed: %s", bundle["id"], e)
        out["warning"] = f"Bundle saved but price sync failed: {e}"
        return out

    price_id = upstream_id(data, "price")
    if price_id:
        async with ds.tx() as db:
            await events.set_bundle_price(db, bundle["id"], price_id)
        bundle["external_price_id"] = price_id
    else:
        log.warning("price created for bundle %s but no id in %r",
                    bundle["id"], data)
    return out


async def update_bundle(
    ds: GatedAsyncSession, commerce: CommerceAdapter, bundle_id: str,
    payload: Dict[str, Any],
) -> Dict[str, Any]:
    name, price = _bundle_name_price(payload)
    async with ds.tx() as db:
        current = await events.get_bundle(db, bundle_id)
        if current is None:
            raise NotFound(f"Bundle {bundle_id} not found")
        if "bundle_quantity" in payload and \
                as_int(payload["bundle_quantity"]) != current["bundle_quantity"]:
            raise BadRequest("bundle_quantity cannot be changed after creation")
        bundle = await events.update_bundle(db, bundle_id, name, price)
        event = await events.get_event(db, bundle["event_id"])

    out: Dict[str, Any] = {"bundle": bundle}
    price_id = bundle.get("external_price_id")
    product_id = event.get("external_product_id") if event else None
    location_id = event.get("location_id") if event else None
    if not price_id or not product_id or not location_id:
        return out

    available = bundles_available(
        event["capacity"], event["tickets_sold"], bundle["bundle_quantity"])
    try:
        async with timeit("sync.bundle_price"):
            await commerce.update_price(
                location_id, product_id, price_id,
                name=name, amount=price,
                currency=payload.get("currency") or DEFAULT_CURRENCY,
                available_quantity=available,
            )
    except SYNC_ERRORS as e:
        log.warning("bundle %s saved, price update failed: %s", bundle_id, e)
        out["warning"] = f"Bundle saved but price sync failed: {e}"
    out["available_quantity"] = available
    return out


async def delete_bundle(ds: GatedAsyncSession, bundle_id: str) -> None:
    # the upstream price is left behind
    async with ds.tx() as db:
        if not await events.delete_bundle(db, bundle_id):
            raise NotFound(f"Bundle {bundle_id} not found")


# ------------------------------------------------------------------------------
# functions endpoints: thin proxies onto the commerce adapter
# ------------------------------------------------------------------------------
async def push_bundle_price(
    commerce: CommerceAdapter, payload: Dict[str, Any]
) -> Any:
    product_id = payload.get("ghlProductId")
    name = payload.get("bundleName")
    location_id = payload.get("locationId")
    qty = as_int(payload.get("bundleQuantity"))
    if not product_id or not name or not location_id or not qty:
        raise BadRequest(
            "ghlProductId, bundleName, locationId, and bundleQuantity "
            "are required"
        )
    capacity = as_int(payload.get("eventCapacity")) or 0
    sold = as_int(payload.get("ticketsSold")) or 0
    return await commerce.create_price(
        location_id, product_id,
        name=name,
        amount=as_number(payload.get("amount")) or 0,
        currency=payload.get("currency") or DEFAULT_CURRENCY,
        available_quantity=bundles_available(capacity, sold, qty),
    )


async def push_price_update(
    commerce: CommerceAdapter, payload: Dict[str, Any]
) -> Any:
    product_id = payload.get("ghlProductId")
    price_id = payload.get("ghlPriceId")
    name = payload.get("bundleName")
    location_id = payload.get("locationId")
    if not product_id or not price_id or not name or not location_id:
        raise BadRequest(
            "ghlProductId, ghlPriceId, bundleName, and locationId are required"
        )
    available = payload.get("availableQuantity")
    return await commerce.update_price(
        location_id, product_id, price_id,
        name=name,
        amount=as_number(payload.get("amount")) or 0,
        currency=payload.get("currency") or DEFAULT_CURRENCY,
        available_quantity=as_int(available) if available is not None else None,
    )


async def push_inventory(
    commerce: CommerceAdapter, payload: Dict[str, Any]
) -> Any:
    location_id = payload.get("locationId")
    items = payload.get("items")
    if not location_id or not isinstance(items, list) or not items:
        raise BadRequest("locationId and items are required")
    return await commerce.sync_inventory(location_id, items)
