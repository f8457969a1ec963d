# workflows/intake.py
"""
Order intake: the orders webhook and the remote order fetch both end in
provision_order(), which creates contact, order, attendee, seats and bumps
the event's sold counter inside ONE transaction. The sold counter update is
guarded by capacity, so two concurrent intakes cannot oversell.

Inventory sync to the commerce platform is the caller's follow-up after
commit (see catalog.sync_inventory_quietly).
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..commerce import CommerceAdapter, DEFAULT_CURRENCY
from ..errors import BadRequest, InsufficientCapacity, NotFound
from ..helpers import (
    as_int, as_number, is_valid_email, new_id, qr_code_url_for,
    ticket_number_for,
)
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from ..model import events, orders

log = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "completed", "cancelled", "refunded")


def _text(contact: Dict[str, Any], field: str) -> str:
    value = contact.get(field)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise BadRequest(f"contact.{field} must be a string")
    return value.strip()


def parse_intake(payload: Any) -> Dict[str, Any]:
    """Validate a webhook body. Raises BadRequest naming the bad field."""
    if not isinstance(payload, dict):
        raise BadRequest("Request body must be a JSON object")
    contact = payload.get("contact")
    if not isinstance(contact, dict):
        contact = {}

    event_id = payload.get("event_id")
    name = _text(contact, "name")
    email = _text(contact, "email")
    phone = _text(contact, "phone")
    missing = [
        field for field, value in (
            ("event_id", event_id),
            ("contact.name", name),
            ("contact.email", email),
        ) if not value
    ]
    if missing:
        raise BadRequest("Missing required fields: " + ", ".join(missing))
    if not is_valid_email(email):
        raise BadRequest("contact.email is not a valid email address")

    quantity = as_int(payload.get("quantity"))
    if quantity is None or quantity <= 0:
        raise BadRequest("quantity must be a positive integer")

    raw_total = payload.get("total")
    total = 0.0 if raw_total is None else as_number(raw_total)
    if total is None or total < 0:
        raise BadRequest("total must be a number >= 0")

    status = payload.get("status") or "completed"
    if status not in ORDER_STATUSES:
        raise BadRequest(
            f"status must be one of {', '.join(ORDER_STATUSES)}"
        )

    return {
        "event_id": str(event_id),
        "location_id": payload.get("location_id") or None,
        "name": name,
        "email": email,
        "phone": phone or None,
        "quantity": quantity,
        "total": total,
        "status": status,
        "price_id": payload.get("price_id") or None,
    }


# ------------------------------------------------------------------------------
# UN-GATED: caller owns the transaction
# ------------------------------------------------------------------------------
async def provision_order(
    db: AsyncSession, *, event: Dict[str, Any], name: str, email: str,
    phone: Optional[str], seats: int, total: float, status: str,
    location_id: Optional[str], bundle_id: Optional[str] = None,
) -> Dict[str, Any]:
    available = event["capacity"] - event["tickets_sold"]
    if seats > available:
        raise InsufficientCapacity(available=available, requested=seats)

    contact, created = await orders.upsert_contact(db, name, email, phone)
    order = await orders.insert_order(
        db,
        order_id=new_id(),
        event_id=event["id"],
        contact_id=contact["id"],
        quantity=seats,
        total=total,
        status=status,
        location_id=location_id,
        bundle_option_id=bundle_id,
    )
    ticket = ticket_number_for(order["id"])
    attendee = await orders.insert_attendee(
        db,
        order_id=order["id"],
        contact_id=contact["id"],
        ticket_number=ticket,
        qr_code_url=qr_code_url_for(ticket),
        event_title=event["title"],
        total_tickets=seats,
        location_id=location_id,
    )
    await orders.insert_seats(db, attendee["id"], seats)

    updated = await events.add_tickets_sold(db, event["id"], seats)
    if updated is None:
        # someone else sold the seats since we read the event
        current = await events.get_event(db, event["id"])
        left = current["capacity"] - current["tickets_sold"] if current else 0
        raise InsufficientCapacity(available=left, requested=seats)

    return {
        "order": order,
        "attendee": attendee,
        "contact": contact,
        "contact_created": created,
        "event": updated,
    }


# ------------------------------------------------------------------------------
# orders webhook
# ------------------------------------------------------------------------------
async def intake_order(ds: GatedAsyncSession, payload: Any) -> Dict[str, Any]:
    req = parse_intake(payload)

    async with timeit("db.intake_order"):
        async with ds.tx() as db:
            event = await events.get_event(db, req["event_id"])
            if event is None:
                raise NotFound(f"Event {req['event_id']} not found")

            bundle = None
            if req["price_id"]:
                bundle = await events.get_bundle_by_price(db, req["price_id"])
                if bundle and bundle["event_id"] != event["id"]:
                    log.warning("price %s belongs to another event, ignored",
                                req["price_id"])
                    bundle = None

            seats = req["quantity"] * (bundle["bundle_quantity"] if bundle else 1)
            total = req["total"]
            if total <= 0 and bundle:
                total = bundle["package_price"]

            result = await provision_order(
                db,
                event=event,
                name=req["name"],
                email=req["email"],
                phone=req["phone"],
                seats=seats,
                total=total,
                status=req["status"],
                location_id=req["location_id"] or event.get("location_id"),
                bundle_id=bundle["id"] if bundle else None,
            )

    updated = result["event"]
    log.info("intake: order %s, %d seat(s) for %s (%d/%d sold)",
             result["order"]["id"], seats, updated["title"],
             updated["tickets_sold"], updated["capacity"])

    out: Dict[str, Any] = {
        "success": True,
        "order": result["order"],
        "attendee": result["attendee"],
        "event": {
            "id": updated["id"],
            "title": updated["title"],
            "tickets_sold": updated["tickets_sold"],
            "remaining_seats": updated["capacity"] - updated["tickets_sold"],
        },
    }
    if bundle:
        out["bundle"] = {
            "id": bundle["id"],
            "name": bundle["package_name"],
            "quantity": bundle["bundle_quantity"],
        }
    return out


# ------------------------------------------------------------------------------
# remote order fetch
# ------------------------------------------------------------------------------
def _line_items(
    data: Dict[str, Any], order_id: str, location_id: str
) -> List[Dict[str, Any]]:
    snapshot = data.get("contactSnapshot") or {}
    contact_name = " ".join(
        p for p in (snapshot.get("firstName"), snapshot.get("lastName")) if p
    ) or None
    out = []
    for item in data.get("items") or []:
        product = item.get("product") or {}
        price = item.get("price") or {}
        out.append({
            "order_id": order_id,
            "location_id": location_id,
            "contact_name": contact_name,
            "contact_email": snapshot.get("email") or None,
            "contact_phone": snapshot.get("phone") or None,
            "contact_id": data.get("contactId") or snapshot.get("id"),
            "product_id": product.get("_id"),
            "price_id": price.get("_id") or item.get("_id"),
            "price_name": price.get("name") or item.get("name"),
            "quantity": as_int(item.get("qty")) or 1,
            "unit_price": as_number(price.get("amount")) or 0,
            "currency": (price.get("currency") or data.get("currency")
                         or DEFAULT_CURRENCY),
        })
    return out


async def fetch_remote_order(
    ds: GatedAsyncSession, commerce: CommerceAdapter, payload: Any
) -> Dict[str, Any]:
    """
    Pull a paid order from the commerce platform, keep the raw response and
    its line items for audit, then provision one local order for it.
    """
    payload = payload if isinstance(payload, dict) else {}
    order_id = (
        ((payload.get("order") or {}).get("metadata") or {}).get("metadata")
        or {}
    ).get("orderId")
    location_id = (payload.get("location") or {}).get("id")
    if not order_id or not location_id:
        raise BadRequest("orderId and locationId are required")

    log.info("fetching order %s for location %s", order_id, location_id)
    data = await commerce.get_order(location_id, order_id)
    if not isinstance(data, dict):
        data = {"raw": data}

    items = _line_items(data, order_id, location_id)
    async with ds.tx() as db:
        await orders.insert_order_response(db, order_id, location_id, data)
        await orders.insert_line_items(db, items)

    contact = items[0] if items else {}
    snapshot = data.get("contactSnapshot") or {}
    email = contact.get("contact_email") or snapshot.get("email")
    if not email:
        log.warning("order %s has no contact email, not provisioned", order_id)
        return {
            "success": True, "lineItemsStored": len(items),
            "warning": "No contact email, orders not processed",
        }
    name = contact.get("contact_name") or " ".join(
        p for p in (snapshot.get("firstName"), snapshot.get("lastName")) if p
    ) or "Unknown"
    phone = contact.get("contact_phone") or snapshot.get("phone")

    async with timeit("db.fetch_order"):
        async with ds.tx() as db:
            event = None
            seats = 0
            total = 0.0
            first_bundle = None
            for li in items:
                if not li["product_id"] or not li["price_id"]:
                    log.warning("line item without product or price, skipped")
                    continue
                if event is None:
                    event = await events.get_event_by_product(
                        db, li["product_id"])
                    if event is None:
                        log.warning("no event for product %s, skipped",
                                    li["product_id"])
                        continue
                total += li["quantity"] * li["unit_price"]
                bundle = await events.get_bundle_by_price(db, li["price_id"])
                seats += li["quantity"] * (
                    bundle["bundle_quantity"] if bundle else 1)
                if first_bundle is None and bundle:
                    first_bundle = bundle

            if event is None or seats <= 0:
                log.warning("order %s matched no event", order_id)
                return {
                    "success": True, "lineItemsStored": len(items),
                    "warning": "No matching event",
                }

            result = await provision_order(
                db,
                event=event,
                name=name,
                email=email,
                phone=phone,
                seats=seats,
                total=total,
                status="completed",
                location_id=location_id,
                bundle_id=first_bundle["id"] if first_bundle else None,
            )

    attendee = result["attendee"]
    log.info("fetched order %s -> %s, %d seat(s), total %.2f for %s",
             order_id, result["order"]["id"], seats, total, event["title"])
    return {
        "success": True,
        "lineItemsStored": len(items),
        "event_id": event["id"],
        "location_id": location_id,
        "order": {
            "orderId": result["order"]["id"],
            "eventTitle": event["title"],
            "seats": seats,
            "total": total,
            "ticketNumber": attendee["ticket_number"],
            "qrCodeUrl": attendee["qr_code_url"],
        },
    }
