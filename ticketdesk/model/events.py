# model/events.py
"""
Events and their bundle options.

Every function here is UN-GATED: it expects to run inside a transaction the
caller opened with `GatedAsyncSession.tx()`, and marks the tables it writes
with `touch()` so the change feed can invalidate cached reads after commit.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_id, now_iso, to_number
from ..infra.sql import touch

# columns a dashboard update may change
EVENT_FIELDS = (
    "title", "venue", "date", "end_date", "time", "description",
    "cover_image", "capacity", "ticket_price", "is_active", "tickets_sold",
)


def _event(row) -> Dict[str, Any]:
    d = dict(row)
    d["ticket_price"] = to_number(d.get("ticket_price"))
    d["tickets_sold"] = int(d.get("tickets_sold") or 0)
    d["capacity"] = int(d["capacity"])
    d["is_active"] = bool(d.get("is_active"))
    return d


def _bundle(row) -> Dict[str, Any]:
    d = dict(row)
    d["package_price"] = to_number(d.get("package_price"))
    d["bundle_quantity"] = int(d["bundle_quantity"])
    return d


# ------------------------------------------------------------------------------
# events
# ------------------------------------------------------------------------------
async def list_events(
    db: AsyncSession, location_id: Optional[str] = None
) -> List[Dict[str, Any]]:
    if location_id:
        rows = (await db.execute(text("""
            SELECT * FROM events WHERE location_id = :loc
            ORDER BY date ASC, created_at ASC
        """), {"loc": location_id})).mappings().all()
    else:
        rows = (await db.execute(text("""
            SELECT * FROM events ORDER BY date ASC, created_at ASC
        """))).mappings().all()
    return [_event(r) for r in rows]


async def get_event(db: AsyncSession, event_id: str) -> Optional[Dict[str, Any]]:
    row = (await db.execute(
        text("SELECT * FROM events WHERE id = :id"), {"id": event_id}
    )).mappings().first()
    return _event(row) if row else None


async def get_event_by_product(
    db: AsyncSession, product_id: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(text("""
        SELECT * FROM events WHERE external_product_id = :pid
        ORDER BY created_at ASC LIMIT 1
    """), {"pid": product_id})).mappings().first()
    return _event(row) if row else None


async def insert_event(db: AsyncSession, fields: Dict[str, Any]) -> Dict[str, Any]:
    params = {
        "id": new_id(),
        "title": fields["title"],
        "venue": fields.get("venue") or "",
        "date": fields["date"],
        "end_date": fields.get("end_date"),
        "time": fields.get("time"),
        "description": fields.get("description") or "",
        "cover_image": fields.get("cover_image"),
        "capacity": int(fields["capacity"]),
        "ticket_price": float(fields.get("ticket_price") or 0),
        "is_active": bool(fields.get("is_active", True)),
        "location_id": fields.get("location_id"),
        "created_at": now_iso(),
    }
    row = (await db.execute(text("""
        INSERT INTO events(
          id, title, venue, date, end_date, time, description, cover_image,
          capacity, ticket_price, tickets_sold, is_active, location_id,
          external_product_id, created_at
        ) VALUES (
          :id, :title, :venue, :date, :end_date, :time, :description,
          :cover_image, :capacity, :ticket_price, 0, :is_active,
          :location_id, NULL, :created_at
        )
        RETURNING *
    """), params)).mappings().first()
    touch(db, "events")
    return _event(row)


async def update_event(
    db: AsyncSession, event_id: str, updates: Dict[str, Any]
) -> Optional[Dict[str, Any]]:
    cols = [k for k in EVENT_FIELDS if k in updates]
    if not cols:
        return await get_event(db, event_id)
    assignments = ", ".join(f"{c} = :{c}" for c in cols)
    params = {c: updates[c] for c in cols}
    params["id"] = event_id
    row = (await db.execute(
        text(f"UPDATE events SET {assignments} WHERE id = :id RETURNING *"),
        params,
    )).mappings().first()
    if row is None:
        return None
    touch(db, "events")
    return _event(row)


async def set_event_product(
    db: AsyncSession, event_id: str, product_id: str
) -> bool:
    res = await db.execute(text("""
        UPDATE events SET external_product_id = :pid WHERE id = :id
    """), {"pid": product_id, "id": event_id})
    touch(db, "events")
    return res.rowcount > 0


async def add_tickets_sold(
    db: AsyncSession, event_id: str, qty: int
) -> Optional[Dict[str, Any]]:
    """
    Bump tickets_sold by qty unless that would pass capacity.
    Returns the updated event, or None when the guard refused the write.
    """
    row = (await db.execute(text("""
        UPDATE events SET tickets_sold = tickets_sold + :q
        WHERE id = :id AND tickets_sold + :q <= capacity
        RETURNING *
    """), {"q": int(qty), "id": event_id})).mappings().first()
    if row is None:
        return None
    touch(db, "events")
    return _event(row)


async def count_orders(db: AsyncSession, event_id: str) -> int:
    return int((await db.execute(
        text("SELECT COUNT(*) FROM orders WHERE event_id = :id"),
        {"id": event_id},
    )).scalar_one())


async def delete_event(db: AsyncSession, event_id: str) -> bool:
    await db.execute(
        text("DELETE FROM bundle_options WHERE event_id = :id"),
        {"id": event_id},
    )
    res = await db.execute(
        text("DELETE FROM events WHERE id = :id"), {"id": event_id}
    )
    touch(db, "events", "bundle_options")
    return res.rowcount > 0


# ------------------------------------------------------------------------------
# bundle options
# ------------------------------------------------------------------------------
async def list_bundles(db: AsyncSession, event_id: str) -> List[Dict[str, Any]]:
    rows = (await db.execute(text("""
        SELECT * FROM bundle_options WHERE event_id = :eid
        ORDER BY created_at ASC
    """), {"eid": event_id})).mappings().all()
    return [_bundle(r) for r in rows]


async def get_bundle(db: AsyncSession, bundle_id: str) -> Optional[Dict[str, Any]]:
    row = (await db.execute(
        text("SELECT * FROM bundle_options WHERE id = :id"), {"id": bundle_id}
    )).mappings().first()
    return _bundle(row) if row else None


async def get_bundle_by_price(
    db: AsyncSession, price_id: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(text("""
        SELECT * FROM bundle_options WHERE external_price_id = :pid
        ORDER BY created_at ASC LIMIT 1
    """), {"pid": price_id})).mappings().first()
    return _bundle(row) if row else None


async def insert_bundle(
    db: AsyncSession, event_id: str, package_name: str,
    package_price: float, bundle_quantity: int,
) -> Dict[str, Any]:
    row = (await db.execute(text("""
        INSERT INTO bundle_options(
          id, event_id, package_name, package_price, bundle_quantity,
          external_price_id, created_at
        ) VALUES (:id, :eid, :name, :price, :qty, NULL, :created_at)
        RETURNING *
    """), {
        "id": new_id(),
        "eid": event_id,
        "name": package_name,
        "price": float(package_price),
        "qty": int(bundle_quantity),
        "created_at": now_iso(),
    })).mappings().first()
    touch(db, "bundle_options")
    return _bundle(row)


async def update_bundle(
    db: AsyncSession, bundle_id: str, package_name: str, package_price: float
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(text("""
        UPDATE bundle_options SET package_name = :name, package_price = :price
        WHERE id = :id
        RETURNING *
    """), {
        "name": package_name, "price": float(package_price), "id": bundle_id,
    })).mappings().first()
    if row is None:
        return None
    touch(db, "bundle_options")
    return _bundle(row)


async def set_bundle_price(
    db: AsyncSession, bundle_id: str, price_id: str
) -> None:
    await db.execute(text("""
        UPDATE bundle_options SET external_price_id = :pid WHERE id = :id
    """), {"pid": price_id, "id": bundle_id})
    touch(db, "bundle_options")


async def delete_bundle(db: AsyncSession, bundle_id: str) -> bool:
    res = await db.execute(
        text("DELETE FROM bundle_options WHERE id = :id"), {"id": bundle_id}
    )
    touch(db, "bundle_options")
    return res.rowcount > 0
