# workflows/checkin.py
"""
Attendee and seat check-in.

Two independent notions of "checked in" exist:
  - attendees.check_in_count: how many of the order's tickets were redeemed,
    bounded to 0..total_tickets
  - seat_assignments.checked_in_at: per seat timestamp, unbounded toggle

admit_seat()/release_seat() touch both, one transaction each, seat first.
Nothing reconciles the two if the second step fails.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from ..errors import BadRequest, CapacityExceeded, NotFound, NothingToUndo
from ..helpers import is_valid_email, is_valid_phone, now_iso, split_name
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from ..model import orders

log = logging.getLogger(__name__)


# ------------------------------------------------------------------------------
# attendee counter
# ------------------------------------------------------------------------------
async def check_in(ds: GatedAsyncSession, attendee_id: str) -> Dict[str, Any]:
    async with timeit("db.check_in"):
        async with ds.tx() as db:
            updated = await orders.increment_check_in(db, attendee_id, now_iso())
            current = await orders.get_attendee(db, attendee_id)
    if current is None:
        raise NotFound(f"Attendee {attendee_id} not found")
    if updated is None:
        raise CapacityExceeded(
            f"All {current['total_tickets']} tickets already checked in",
            check_in_count=current["check_in_count"],
            total_tickets=current["total_tickets"],
        )
    log.info("attendee %s checked in (%d/%d)", attendee_id,
             current["check_in_count"], current["total_tickets"])
    return current


async def check_out(ds: GatedAsyncSession, attendee_id: str) -> Dict[str, Any]:
    async with timeit("db.check_out"):
        async with ds.tx() as db:
            updated = await orders.decrement_check_in(db, attendee_id)
            current = await orders.get_attendee(db, attendee_id)
    if current is None:
        raise NotFound(f"Attendee {attendee_id} not found")
    if updated is None:
        raise NothingToUndo(
            "No check-ins to undo",
            check_in_count=current["check_in_count"],
            total_tickets=current["total_tickets"],
        )
    log.info("attendee %s checked out (%d/%d)", attendee_id,
             current["check_in_count"], current["total_tickets"])
    return current


# ------------------------------------------------------------------------------
# seats
# ------------------------------------------------------------------------------
async def _set_seat(
    ds: GatedAsyncSession, seat_id: str, when: Optional[str]
) -> Dict[str, Any]:
    async with ds.tx() as db:
        seat = await orders.set_seat_checked_in(db, seat_id, when)
    if seat is None:
        raise NotFound(f"Seat {seat_id} not found")
    return seat


async def check_in_seat(ds: GatedAsyncSession, seat_id: str) -> Dict[str, Any]:
    return await _set_seat(ds, seat_id, now_iso())


async def check_out_seat(ds: GatedAsyncSession, seat_id: str) -> Dict[str, Any]:
    return await _set_seat(ds, seat_id, None)


async def admit_seat(ds: GatedAsyncSession, seat_id: str) -> Dict[str, Any]:
    seat = await check_in_seat(ds, seat_id)
    attendee = await check_in(ds, seat["attendee_id"])
    return {"seat": seat, "attendee": attendee}


async def release_seat(ds: GatedAsyncSession, seat_id: str) -> Dict[str, Any]:
    seat = await check_out_seat(ds, seat_id)
    attendee = await check_out(ds, seat["attendee_id"])
    return {"seat": seat, "attendee": attendee}


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def validate_occupant(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize the seat form. Adults keep name/email/phone, minors keep the
    name plus guardian details; the other group is stored as NULL.
    """
    is_minor = bool(payload.get("is_minor"))
    name = _clean(payload.get("name"))
    if not name:
        raise BadRequest("Name is required")

    if is_minor:
        guardian_name = _clean(payload.get("guardian_name"))
        guardian_email = _clean(payload.get("guardian_email"))
        guardian_phone = _clean(payload.get("guardian_phone"))
        if not guardian_name or not guardian_email:
            raise BadRequest("Guardian name and email are required for minors")
        if not is_valid_email(guardian_email):
            raise BadRequest("Invalid guardian email address")
        if guardian_phone and not is_valid_phone(guardian_phone):
            raise BadRequest(
                "Invalid guardian phone number, use + followed by 7-15 digits"
            )
        return {
            "name": name, "email": None, "phone": None, "is_minor": True,
            "guardian_name": guardian_name,
            "guardian_email": guardian_email,
            "guardian_phone": guardian_phone,
        }

    email = _clean(payload.get("email"))
    phone = _clean(payload.get("phone"))
    if not email:
        raise BadRequest("Email is required for non-minor attendees")
    if not is_valid_email(email):
        raise BadRequest("Invalid email address")
    if phone and not is_valid_phone(phone):
        raise BadRequest("Invalid phone number, use + followed by 7-15 digits")
    return {
        "name": name, "email": email, "phone": phone, "is_minor": False,
        "guardian_name": None, "guardian_email": None, "guardian_phone": None,
    }


async def assign_seat(
    ds: GatedAsyncSession, seat_id: str, payload: Dict[str, Any]
) -> Dict[str, Any]:
    occupant = validate_occupant(payload)
    async with ds.tx() as db:
        seat = await orders.update_seat_occupant(db, seat_id, occupant)
    if seat is None:
        raise NotFound(f"Seat {seat_id} not found")
    return seat


async def unassign_seat(ds: GatedAsyncSession, seat_id: str) -> Dict[str, Any]:
    # the attendee counter is left alone on purpose; see module docstring
    async with ds.tx() as db:
        seat = await orders.clear_seat(db, seat_id)
    if seat is None:
        raise NotFound(f"Seat {seat_id} not found")
    return seat


# ------------------------------------------------------------------------------
# lookups
# ------------------------------------------------------------------------------
async def find_by_ticket(
    ds: GatedAsyncSession, ticket_number: str
) -> Optional[Dict[str, Any]]:
    ticket = (ticket_number or "").strip()
    if not ticket:
        raise BadRequest("Please enter a ticket number")
    async with ds.tx() as db:
        return await orders.find_attendee_by_ticket(db, ticket)


async def list_attendees(
    ds: GatedAsyncSession, event_title: Optional[str] = None
) -> List[Dict[str, Any]]:
    async with ds.tx() as db:
        return await orders.list_attendees(db, event_title)


async def seats_for_attendee(
    ds: GatedAsyncSession, attendee_id: str
) -> List[Dict[str, Any]]:
    async with ds.tx() as db:
        return await orders.list_seats(db, attendee_id)


async def seats_for_order(
    ds: GatedAsyncSession, order_id: str
) -> List[Dict[str, Any]]:
    async with ds.tx() as db:
        attendee = await orders.get_attendee_for_order(db, order_id)
        if attendee is None:
            return []
        return await orders.list_seats(db, attendee["id"])


async def attendance(
    ds: GatedAsyncSession, search: Optional[str] = None
) -> List[Dict[str, Any]]:
    async with ds.tx() as db:
        return await orders.list_attendance(db, search)


def confirmation_for(
    attendee: Dict[str, Any], seat: Optional[Dict[str, Any]] = None
) -> Dict[str, str]:
    """
    Fields for ContactConfirmer.confirm(): the seat occupant when the seat is
    named (their guardian's contact for minors), otherwise the purchaser.
    """
    contact = attendee.get("contact") or {}
    if seat and seat.get("name"):
        name = seat["name"]
        if seat.get("is_minor"):
            email, phone = seat.get("guardian_email"), seat.get("guardian_phone")
        else:
            email, phone = seat.get("email"), seat.get("phone")
    else:
        name = contact.get("name") or ""
        email, phone = contact.get("email"), contact.get("phone")
    first, last = split_name(name)
    return {
        "email": email or "",
        "first_name": first,
        "last_name": last,
        "phone": phone or "",
        "event_name": attendee.get("event_title") or "",
        "location_id": attendee.get("location_id") or "",
    }
