from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Numeric,
    Boolean,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
)
from sqlalchemy.ext.asyncio import AsyncConnection


Base = declarative_base()

# ids are uuid4 strings, timestamps are ISO-8601 UTC strings


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    venue = Column(String, nullable=False, default="")
    date = Column(String, nullable=False)
    end_date = Column(String, nullable=True)
    time = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    cover_image = Column(String, nullable=True)
    capacity = Column(Integer, nullable=False)
    ticket_price = Column(Numeric(10, 2), nullable=False, default=0)
    tickets_sold = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    location_id = Column(String, nullable=True, index=True)
    external_product_id = Column(String, nullable=True, index=True)
    created_at = Column(String, nullable=False)

    __table_args__ = (
        CheckConstraint("capacity >= 1", name="ck_events_capacity"),
        CheckConstraint(
            "tickets_sold >= 0 AND tickets_sold <= capacity",
            name="ck_events_tickets_sold",
        ),
    )


class Contact(Base):
    __tablename__ = "contacts"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)
    phone = Column(String, nullable=True)
    created_at = Column(String, nullable=False)


class BundleOption(Base):
    __tablename__ = "bundle_options"
    id = Column(String, primary_key=True)
    event_id = Column(
        String, ForeignKey("events.id", ondelete="CASCADE"), nullable=False,
        index=True,
    )
    package_name = Column(String, nullable=False)
    package_price = Column(Numeric(10, 2), nullable=False, default=0)
    # fixed at creation
    bundle_quantity = Column(Integer, nullable=False, default=1)
    external_price_id = Column(String, nullable=True, index=True)
    created_at = Column(String, nullable=False)

    __table_args__ = (
        CheckConstraint("bundle_quantity >= 1", name="ck_bundle_quantity"),
        CheckConstraint("package_price >= 0", name="ck_bundle_price"),
    )


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    contact_id = Column(String, ForeignKey("contacts.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    total = Column(Numeric(10, 2), nullable=False, default=0)

    # pending | completed | cancelled | refunded
    status = Column(String, nullable=False, default="completed")
    location_id = Column(String, nullable=True)
    bundle_option_id = Column(
        String, ForeignKey("bundle_options.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at = Column(String, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_orders_quantity"),
        CheckConstraint(
            "status IN ('pending','completed','cancelled','refunded')",
            name="ck_orders_status",
        ),
    )


class Attendee(Base):
    __tablename__ = "attendees"
    id = Column(String, primary_key=True)
    order_id = Column(
        String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False,
        unique=True,
    )
    contact_id = Column(String, ForeignKey("contacts.id"), nullable=False)
    ticket_number = Column(String, nullable=False, unique=True)
    qr_code_url = Column(String, nullable=True)
    event_title = Column(String, nullable=False)
    total_tickets = Column(Integer, nullable=False, default=1)
    check_in_count = Column(Integer, nullable=False, default=0)
    checked_in_at = Column(String, nullable=True)
    location_id = Column(String, nullable=True)
    created_at = Column(String, nullable=False)

    __table_args__ = (
        CheckConstraint("total_tickets >= 1", name="ck_attendees_total"),
        CheckConstraint(
            "check_in_count >= 0 AND check_in_count <= total_tickets",
            name="ck_attendees_check_in_count",
        ),
        Index("ix_attendees_event_title", "event_title"),
    )


class SeatAssignment(Base):
    __tablename__ = "seat_assignments"
    id = Column(String, primary_key=True)
    attendee_id = Column(
        String, ForeignKey("attendees.id", ondelete="CASCADE"),
        nullable=False,
    )
    seat_number = Column(Integer, nullable=False)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    is_minor = Column(Boolean, nullable=False, default=False)
    guardian_name = Column(String, nullable=True)
    guardian_email = Column(String, nullable=True)
    guardian_phone = Column(String, nullable=True)
    checked_in_at = Column(String, nullable=True)
    created_at = Column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("attendee_id", "seat_number",
                         name="uq_seat_per_attendee"),
    )


class LocationApiKey(Base):
    __tablename__ = "location_api_keys"
    id = Column(String, primary_key=True)
    location_id = Column(String, nullable=False, unique=True)
    api_key = Column(String, nullable=False)
    created_at = Column(String, nullable=False)


# raw upstream order payloads, kept for audit
class OrderResponse(Base):
    __tablename__ = "order_responses"
    id = Column(String, primary_key=True)
    order_id = Column(String, nullable=False, index=True)
    location_id = Column(String, nullable=False)
    response_data = Column(Text, nullable=False)
    created_at = Column(String, nullable=False)


class OrderLineItem(Base):
    __tablename__ = "order_line_items"
    id = Column(String, primary_key=True)
    order_id = Column(String, nullable=False, index=True)
    location_id = Column(String, nullable=False)
    contact_name = Column(String, nullable=True)
    contact_email = Column(String, nullable=True)
    contact_phone = Column(String, nullable=True)
    contact_id = Column(String, nullable=True)
    product_id = Column(String, nullable=True)
    price_id = Column(String, nullable=True)
    price_name = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String, nullable=True)
    created_at = Column(String, nullable=False)


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)
