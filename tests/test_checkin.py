import asyncio

import pytest

from conftest import make_attendee
from ticketdesk.errors import (
    BadRequest, CapacityExceeded, NotFound, NothingToUndo,
)
from ticketdesk.model import orders
from ticketdesk.workflows import checkin


async def _count(ds, attendee_id):
    async with ds.tx() as db:
        return (await orders.get_attendee(db, attendee_id))["check_in_count"]


async def test_check_in_until_full(ds):
    attendee = await make_attendee(ds, total_tickets=2)

    first = await checkin.check_in(ds, attendee["id"])
    second = await checkin.check_in(ds, attendee["id"])
    assert first["check_in_count"] == 1
    assert second["check_in_count"] == 2
    assert second["checked_in_at"] is not None
    assert second["contact"]["email"] == "ada@example.com"

    with pytest.raises(CapacityExceeded) as exc:
        await checkin.check_in(ds, attendee["id"])
    assert exc.value.extra["total_tickets"] == 2
    assert await _count(ds, attendee["id"]) == 2


async def test_check_in_refusal_writes_nothing(ds):
    attendee = await make_attendee(ds, total_tickets=1)
    await checkin.check_in(ds, attendee["id"])
    ds.feed.published.clear()

    with pytest.raises(CapacityExceeded):
        await checkin.check_in(ds, attendee["id"])
    assert ds.feed.published == []


async def test_concurrent_check_in_on_last_ticket(ds, other_ds):
    attendee = await make_attendee(ds, total_tickets=2)
    await checkin.check_in(ds, attendee["id"])

    results = await asyncio.gather(
        checkin.check_in(ds, attendee["id"]),
        checkin.check_in(other_ds, attendee["id"]),
        return_exceptions=True,
    )

    assert sum(isinstance(r, dict) for r in results) == 1
    assert sum(isinstance(r, CapacityExceeded) for r in results) == 1
    assert await _count(ds, attendee["id"]) == 2


async def test_check_out_keeps_timestamp_until_zero(ds):
    attendee = await make_attendee(ds, total_tickets=2)
    await checkin.check_in(ds, attendee["id"])
    await checkin.check_in(ds, attendee["id"])

    one = await checkin.check_out(ds, attendee["id"])
    assert one["check_in_count"] == 1
    assert one["checked_in_at"] is not None

    zero = await checkin.check_out(ds, attendee["id"])
    assert zero["check_in_count"] == 0
    assert zero["checked_in_at"] is None

    with pytest.raises(NothingToUndo):
        await checkin.check_out(ds, attendee["id"])
    assert await _count(ds, attendee["id"]) == 0


async def test_unknown_attendee(ds):
    with pytest.raises(NotFound):
        await checkin.check_in(ds, "nope")
    with pytest.raises(NotFound):
        await checkin.check_out(ds, "nope")


async def test_check_in_publishes_attendee_change(ds):
    attendee = await make_attendee(ds)
    ds.feed.published.clear()
    await checkin.check_in(ds, attendee["id"])
    assert ds.feed.published == [("attendees",)]


async def test_find_by_ticket_any_case(ds):
    attendee = await make_attendee(ds)
    ticket = attendee["ticket_number"]

    exact = await checkin.find_by_ticket(ds, ticket)
    lower = await checkin.find_by_ticket(ds, "  " + ticket.lower() + " ")
    assert exact["id"] == lower["id"] == attendee["id"]
    assert await checkin.find_by_ticket(ds, "TKT-MISSING") is None
    with pytest.raises(BadRequest):
        await checkin.find_by_ticket(ds, "   ")


async def test_seat_toggle_is_unbounded(ds):
    attendee = await make_attendee(ds, total_tickets=2)
    seats = await checkin.seats_for_attendee(ds, attendee["id"])
    assert [s["seat_number"] for s in seats] == [1, 2]

    seat = seats[0]
    assert (await checkin.check_in_seat(ds, seat["id"]))["checked_in_at"]
    assert (await checkin.check_in_seat(ds, seat["id"]))["checked_in_at"]
    assert (await checkin.check_out_seat(ds, seat["id"]))["checked_in_at"] is None
    # the attendee counter is a separate thing
    assert await _count(ds, attendee["id"]) == 0

    with pytest.raises(NotFound):
        await checkin.check_in_seat(ds, "nope")


async def test_admit_and_release_move_both(ds):
    attendee = await make_attendee(ds, total_tickets=1)
    seat = (await checkin.seats_for_attendee(ds, attendee["id"]))[0]

    admitted = await checkin.admit_seat(ds, seat["id"])
    assert admitted["seat"]["checked_in_at"] is not None
    assert admitted["attendee"]["check_in_count"] == 1

    released = await checkin.release_seat(ds, seat["id"])
    assert released["seat"]["checked_in_at"] is None
    assert released["attendee"]["check_in_count"] == 0


async def test_admit_over_total_leaves_seat_marked(ds):
    attendee = await make_attendee(ds, total_tickets=1)
    await checkin.check_in(ds, attendee["id"])
    seat = (await checkin.seats_for_attendee(ds, attendee["id"]))[0]

    with pytest.raises(CapacityExceeded):
        await checkin.admit_seat(ds, seat["id"])
    async with ds.tx() as db:
        assert (await orders.get_seat(db, seat["id"]))["checked_in_at"]


async def test_assign_adult_seat(ds):
    attendee = await make_attendee(ds)
    seat = (await checkin.seats_for_attendee(ds, attendee["id"]))[0]

    saved = await checkin.assign_seat(ds, seat["id"], {
        "name": " Grace Hopper ", "email": "grace@example.com",
        "phone": "+61 (400) 123-456", "guardian_name": "ignored",
    })
    assert saved["name"] == "Grace Hopper"
    assert saved["email"] == "grace@example.com"
    assert saved["is_minor"] is False
    assert saved["guardian_name"] is None


async def test_assign_minor_clears_own_contact(ds):
    attendee = await make_attendee(ds)
    seat = (await checkin.seats_for_attendee(ds, attendee["id"]))[0]

    saved = await checkin.assign_seat(ds, seat["id"], {
        "name": "Young Tim", "is_minor": True, "email": "tim@example.com",
        "guardian_name": "Tim Senior", "guardian_email": "sr@example.com",
    })
    assert saved["is_minor"] is True
    assert saved["email"] is None
    assert saved["phone"] is None
    assert saved["guardian_email"] == "sr@example.com"


@pytest.mark.parametrize("payload", [
    {"email": "a@example.com"},
    {"name": "A"},
    {"name": "A", "email": "not-an-email"},
    {"name": "A", "email": "a@example.com", "phone": "0400123456"},
    {"name": "A", "email": "a@example.com", "phone": "+123"},
    {"name": "Kid", "is_minor": True, "guardian_name": "Parent"},
    {"name": "Kid", "is_minor": True, "guardian_email": "p@example.com"},
])
def test_validate_occupant_rejects(payload):
    with pytest.raises(BadRequest):
        checkin.validate_occupant(payload)


async def test_unassign_clears_occupant_not_counter(ds):
    attendee = await make_attendee(ds)
    seat = (await checkin.seats_for_attendee(ds, attendee["id"]))[0]
    await checkin.assign_seat(ds, seat["id"], {
        "name": "Grace", "email": "grace@example.com"})
    await checkin.admit_seat(ds, seat["id"])

    cleared = await checkin.unassign_seat(ds, seat["id"])
    assert cleared["name"] is None
    assert cleared["email"] is None
    assert cleared["checked_in_at"] is None
    assert await _count(ds, attendee["id"]) == 1


async def test_attendance_lists_named_seats(ds):
    attendee = await make_attendee(ds, total_tickets=3)
    s1, s2, _ = await checkin.seats_for_attendee(ds, attendee["id"])
    await checkin.assign_seat(ds, s1["id"], {
        "name": "Grace", "email": "grace@example.com"})
    await checkin.assign_seat(ds, s2["id"], {
        "name": "Alan", "email": "alan@example.com"})
    await checkin.check_in_seat(ds, s2["id"])

    records = await checkin.attendance(ds)
    assert [r["name"] for r in records] == ["Alan", "Grace"]
    assert records[0]["main_purchaser"] == "Ada Lovelace"

    found = await checkin.attendance(ds, "GRACE")
    assert [r["seat_id"] for r in found] == [s1["id"]]


async def test_seats_for_order(ds):
    attendee = await make_attendee(ds, total_tickets=2)
    seats = await checkin.seats_for_order(ds, attendee["order_id"])
    assert len(seats) == 2
    assert await checkin.seats_for_order(ds, "nope") == []


def test_confirmation_prefers_named_seat():
    attendee = {
        "event_title": "Launch Night", "location_id": "loc-1",
        "contact": {"name": "Ada King Lovelace", "email": "ada@example.com",
                    "phone": None},
    }
    fields = checkin.confirmation_for(attendee)
    assert fields["first_name"] == "Ada"
    assert fields["last_name"] == "King Lovelace"
    assert fields["phone"] == ""

    minor = {"name": "Young Tim", "is_minor": True,
             "guardian_email": "sr@example.com", "guardian_phone": "+6140000000"}
    fields = checkin.confirmation_for(attendee, minor)
    assert fields["first_name"] == "Young"
    assert fields["email"] == "sr@example.com"
    assert fields["event_name"] == "Launch Night"
