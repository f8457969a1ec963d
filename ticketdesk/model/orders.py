# model/orders.py
"""
Contacts, orders, attendees, seat assignments and the upstream order audit
tables.

UN-GATED like model/events.py: callers own the transaction.
"""
from __future__ import annotations
from typing import Any, Dict, Iterable, List, Optional, Tuple

import orjson
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_id, now_iso, to_number
from ..infra.sql import touch

# occupant columns cleared by unassign
OCCUPANT_FIELDS = (
    "name", "email", "phone", "is_minor",
    "guardian_name", "guardian_email", "guardian_phone",
)

_ATTENDEE_WITH_CONTACT = """
    SELECT a.*, c.name AS c_name, c.email AS c_email, c.phone AS c_phone
    FROM attendees AS a
    JOIN contacts AS c ON c.id = a.contact_id
"""


def _order(row) -> Dict[str, Any]:
    d = dict(row)
    d["total"] = to_number(d.get("total"))
    d["quantity"] = int(d["quantity"])
    return d


def _attendee(row) -> Dict[str, Any]:
    d = dict(row)
    d["total_tickets"] = int(d["total_tickets"])
    d["check_in_count"] = int(d.get("check_in_count") or 0)
    if "c_name" in d:
        d["contact"] = {
            "id": d["contact_id"],
            "name": d.pop("c_name"),
            "email": d.pop("c_email"),
            "phone": d.pop("c_phone"),
        }
    return d


def _seat(row) -> Dict[str, Any]:
    d = dict(row)
    d["seat_number"] = int(d["seat_number"])
    d["is_minor"] = bool(d.get("is_minor"))
    return d


# ------------------------------------------------------------------------------
# contacts
# ------------------------------------------------------------------------------
async def find_contact_by_email(
    db: AsyncSession, email: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(
        text("SELECT * FROM contacts WHERE email = :email"), {"email": email}
    )).mappings().first()
    return dict(row) if row else None


async def upsert_contact(
    db: AsyncSession, name: str, email: str, phone: Optional[str] = None
) -> Tuple[Dict[str, Any], bool]:
    """Find-or-create by exact email. Returns (contact, created)."""
    existing = await find_contact_by_email(db, email)
    if existing:
        return existing, False
    row = (await db.execute(text("""
        INSERT INTO contacts(id, name, email, phone, created_at)
        VALUES (:id, :name, :email, :phone, :created_at)
        RETURNING *
    """), {
        "id": new_id(), "name": name, "email": email, "phone": phone,
        "created_at": now_iso(),
    })).mappings().first()
    touch(db, "contacts")
    return dict(row), True


async def count_contacts(db: AsyncSession) -> int:
    return int((await db.execute(
        text("SELECT COUNT(*) FROM contacts"))).scalar_one())


# ------------------------------------------------------------------------------
# orders
# ------------------------------------------------------------------------------
async def insert_order(
    db: AsyncSession, *, order_id: str, event_id: str, contact_id: str,
    quantity: int, total: float, status: str, location_id: Optional[str],
    bundle_option_id: Optional[str] = None,
) -> Dict[str, Any]:
    row = (await db.execute(text("""
        INSERT INTO orders(
          id, event_id, contact_id, quantity, total, status, location_id,
          bundle_option_id, created_at
        ) VALUES (
          :id, :event_id, :contact_id, :quantity, :total, :status,
          :location_id, :bundle_option_id, :created_at
        )
        RETURNING *
    """), {
        "id": order_id,
        "event_id": event_id,
        "contact_id": contact_id,
        "quantity": int(quantity),
        "total": float(total),
        "status": status,
        "location_id": location_id,
        "bundle_option_id": bundle_option_id,
        "created_at": now_iso(),
    })).mappings().first()
    touch(db, "orders")
    return _order(row)


async def list_orders(db: AsyncSession) -> List[Dict[str, Any]]:
    rows = (await db.execute(text("""
        SELECT o.*, c.name AS c_name, c.email AS c_email, c.phone AS c_phone
        FROM orders AS o JOIN contacts AS c ON c.id = o.contact_id
        ORDER BY o.created_at DESC
    """))).mappings().all()
    out = []
    for r in rows:
        d = _order(r)
        d["contact"] = {
            "id": d["contact_id"],
            "name": d.pop("c_name"),
            "email": d.pop("c_email"),
            "phone": d.pop("c_phone"),
        }
        out.append(d)
    return out


async def count_orders(db: AsyncSession) -> int:
    return int((await db.execute(
        text("SELECT COUNT(*) FROM orders"))).scalar_one())


async def delete_order(db: AsyncSession, order_id: str) -> bool:
    # attendee rows (and their seats) go first, then the order itself
    await db.execute(text("""
        DELETE FROM seat_assignments WHERE attendee_id IN (
          SELECT id FROM attendees WHERE order_id = :id
        )
    """), {"id": order_id})
    await db.execute(
        text("DELETE FROM attendees WHERE order_id = :id"), {"id": order_id}
    )
    res = await db.execute(
        text("DELETE FROM orders WHERE id = :id"), {"id": order_id}
    )
    touch(db, "orders", "attendees", "seat_assignments")
    return res.rowcount > 0


# ------------------------------------------------------------------------------
# attendees
# ------------------------------------------------------------------------------
async def insert_attendee(
    db: AsyncSession, *, order_id: str, contact_id: str, ticket_number: str,
    qr_code_url: str, event_title: str, total_tickets: int,
    location_id: Optional[str],
) -> Dict[str, Any]:
    row = (await db.execute(text("""
        INSERT INTO attendees(
          id, order_id, contact_id, ticket_number, qr_code_url, event_title,
          total_tickets, check_in_count, checked_in_at, location_id,
          created_at
        ) VALUES (
          :id, :order_id, :contact_id, :ticket_number, :qr_code_url,
          :event_title, :total_tickets, 0, NULL, :location_id, :created_at
        )
        RETURNING *
    """), {
        "id": new_id(),
        "order_id": order_id,
        "contact_id": contact_id,
        "ticket_number": ticket_number,
        "qr_code_url": qr_code_url,
        "event_title": event_title,
        "total_tickets": int(total_tickets),
        "location_id": location_id,
        "created_at": now_iso(),
    })).mappings().first()
    touch(db, "attendees")
    return _attendee(row)


async def get_attendee(
    db: AsyncSession, attendee_id: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(
        text(_ATTENDEE_WITH_CONTACT + " WHERE a.id = :id"),
        {"id": attendee_id},
    )).mappings().first()
    return _attendee(row) if row else None


async def get_attendee_for_order(
    db: AsyncSession, order_id: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(
        text(_ATTENDEE_WITH_CONTACT + " WHERE a.order_id = :oid"),
        {"oid": order_id},
    )).mappings().first()
    return _attendee(row) if row else None


async def find_attendee_by_ticket(
    db: AsyncSession, ticket_number: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(
        text(_ATTENDEE_WITH_CONTACT
             + " WHERE lower(a.ticket_number) = lower(:t)"),
        {"t": ticket_number},
    )).mappings().first()
    return _attendee(row) if row else None


async def list_attendees(
    db: AsyncSession, event_title: Optional[str] = None
) -> List[Dict[str, Any]]:
    if event_title:
        rows = (await db.execute(
            text(_ATTENDEE_WITH_CONTACT
                 + " WHERE a.event_title = :title"
                 + " ORDER BY a.created_at DESC"),
            {"title": event_title},
        )).mappings().all()
    else:
        rows = (await db.execute(
            text(_ATTENDEE_WITH_CONTACT + " ORDER BY a.created_at DESC")
        )).mappings().all()
    return [_attendee(r) for r in rows]


async def count_attendees(db: AsyncSession) -> int:
    return int((await db.execute(
        text("SELECT COUNT(*) FROM attendees"))).scalar_one())


async def increment_check_in(
    db: AsyncSession, attendee_id: str, now: str
) -> Optional[Dict[str, Any]]:
    """
    count+1 guarded by total_tickets in a single statement.
    None means no row matched (missing attendee or already full).
    """
    row = (await db.execute(text("""
        UPDATE attendees
        SET check_in_count = check_in_count + 1, checked_in_at = :now
        WHERE id = :id AND check_in_count < total_tickets
        RETURNING *
    """), {"id": attendee_id, "now": now})).mappings().first()
    if row is None:
        return None
    touch(db, "attendees")
    return _attendee(row)


async def decrement_check_in(
    db: AsyncSession, attendee_id: str
) -> Optional[Dict[str, Any]]:
    """
    count-1 guarded by zero; checked_in_at is cleared only when the count
    reaches 0. SET expressions see the pre-update values.
    """
    row = (await db.execute(text("""
        UPDATE attendees
        SET check_in_count = check_in_count - 1,
            checked_in_at = CASE
              WHEN check_in_count - 1 = 0 THEN NULL
              ELSE checked_in_at
            END
        WHERE id = :id AND check_in_count > 0
        RETURNING *
    """), {"id": attendee_id})).mappings().first()
    if row is None:
        return None
    touch(db, "attendees")
    return _attendee(row)


# ------------------------------------------------------------------------------
# seat assignments
# ------------------------------------------------------------------------------
async def insert_seats(
    db: AsyncSession, attendee_id: str, count: int
) -> int:
    created_at = now_iso()
    rows = [
        {
            "id": new_id(), "attendee_id": attendee_id, "seat_number": n,
            "created_at": created_at,
        }
        for n in range(1, int(count) + 1)
    ]
    if rows:
        await db.execute(text("""
            INSERT INTO seat_assignments(
              id, attendee_id, seat_number, is_minor, created_at
            ) VALUES (:id, :attendee_id, :seat_number, FALSE, :created_at)
        """), rows)
        touch(db, "seat_assignments")
    return len(rows)


async def get_seat(db: AsyncSession, seat_id: str) -> Optional[Dict[str, Any]]:
    row = (await db.execute(
        text("SELECT * FROM seat_assignments WHERE id = :id"), {"id": seat_id}
    )).mappings().first()
    return _seat(row) if row else None


async def list_seats(
    db: AsyncSession, attendee_id: str
) -> List[Dict[str, Any]]:
    rows = (await db.execute(text("""
        SELECT * FROM seat_assignments WHERE attendee_id = :aid
        ORDER BY seat_number ASC
    """), {"aid": attendee_id})).mappings().all()
    return [_seat(r) for r in rows]


async def set_seat_checked_in(
    db: AsyncSession, seat_id: str, when: Optional[str]
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(text("""
        UPDATE seat_assignments SET checked_in_at = :when WHERE id = :id
        RETURNING *
    """), {"when": when, "id": seat_id})).mappings().first()
    if row is None:
        return None
    touch(db, "seat_assignments")
    return _seat(row)


async def update_seat_occupant(
    db: AsyncSession, seat_id: str, occupant: Dict[str, Any]
) -> Optional[Dict[str, Any]]:
    params = {k: occupant.get(k) for k in OCCUPANT_FIELDS}
    params["is_minor"] = bool(params["is_minor"])
    params["id"] = seat_id
    row = (await db.execute(text("""
        UPDATE seat_assignments SET
          name = :name, email = :email, phone = :phone, is_minor = :is_minor,
          guardian_name = :guardian_name, guardian_email = :guardian_email,
          guardian_phone = :guardian_phone
        WHERE id = :id
        RETURNING *
    """), params)).mappings().first()
    if row is None:
        return None
    touch(db, "seat_assignments")
    return _seat(row)


async def clear_seat(db: AsyncSession, seat_id: str) -> Optional[Dict[str, Any]]:
    row = (await db.execute(text("""
        UPDATE seat_assignments SET
          name = NULL, email = NULL, phone = NULL, is_minor = FALSE,
          guardian_name = NULL, guardian_email = NULL, guardian_phone = NULL,
          checked_in_at = NULL
        WHERE id = :id
        RETURNING *
    """), {"id": seat_id})).mappings().first()
    if row is None:
        return None
    touch(db, "seat_assignments")
    return _seat(row)


async def list_attendance(
    db: AsyncSession, search: Optional[str] = None
) -> List[Dict[str, Any]]:
    """Named seats with their event and main purchaser, latest check-ins
    first and never-checked-in seats last."""
    rows = (await db.execute(text("""
        SELECT s.id AS seat_id, s.attendee_id, s.name, s.email, s.phone,
               s.checked_in_at, a.event_title, c.name AS main_purchaser
        FROM seat_assignments AS s
        JOIN attendees AS a ON a.id = s.attendee_id
        LEFT JOIN contacts AS c ON c.id = a.contact_id
        WHERE s.name IS NOT NULL
        ORDER BY s.checked_in_at IS NULL, s.checked_in_at DESC
    """))).mappings().all()
    records = [
        {
            "seat_id": r["seat_id"],
            "attendee_id": r["attendee_id"],
            "name": r["name"] or "",
            "email": r["email"] or "",
            "phone": r["phone"] or "",
            "event_title": r["event_title"] or "",
            "main_purchaser": r["main_purchaser"] or "",
            "checked_in_at": r["checked_in_at"],
        }
        for r in rows
    ]
    if not search:
        return records
    q = search.lower()
    keys = ("name", "email", "phone", "event_title", "main_purchaser")
    return [r for r in records if any(q in r[k].lower() for k in keys)]


# ------------------------------------------------------------------------------
# upstream order audit
# ------------------------------------------------------------------------------
async def insert_order_response(
    db: AsyncSession, order_id: str, location_id: str, payload: Any
) -> None:
    await db.execute(text("""
        INSERT INTO order_responses(
          id, order_id, location_id, response_data, created_at
        ) VALUES (:id, :oid, :loc, :data, :created_at)
    """), {
        "id": new_id(),
        "oid": order_id,
        "loc": location_id,
        "data": orjson.dumps(payload).decode(),
        "created_at": now_iso(),
    })


async def insert_line_items(
    db: AsyncSession, items: Iterable[Dict[str, Any]]
) -> int:
    created_at = now_iso()
    rows = [
        {
            "id": new_id(),
            "order_id": it["order_id"],
            "location_id": it["location_id"],
            "contact_name": it.get("contact_name"),
            "contact_email": it.get("contact_email"),
            "contact_phone": it.get("contact_phone"),
            "contact_id": it.get("contact_id"),
            "product_id": it.get("product_id"),
            "price_id": it.get("price_id"),
            "price_name": it.get("price_name"),
            "quantity": int(it.get("quantity") or 1),
            "unit_price": float(it.get("unit_price") or 0),
            "currency": it.get("currency"),
            "created_at": created_at,
        }
        for it in items
    ]
    if rows:
        await db.execute(text("""
            INSERT INTO order_line_items(
              id, order_id, location_id, contact_name, contact_email,
              contact_phone, contact_id, product_id, price_id, price_name,
              quantity, unit_price, currency, created_at
            ) VALUES (
              :id, :order_id, :location_id, :contact_name, :contact_email,
              :contact_phone, :contact_id, :product_id, :price_id,
              :price_name, :quantity, :unit_price, :currency, :created_at
            )
        """), rows)
    return len(rows)
