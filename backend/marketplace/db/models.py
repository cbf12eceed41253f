from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)

    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True, index=True)
    role = Column(String, nullable=False, default="user")  # user | vendor | admin
    is_approved = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utc_now, nullable=False)

    offerings = relationship("Offering", back_populates="vendor")


class Offering(Base):
    __tablename__ = "offerings"
    __table_args__ = (
        CheckConstraint(
            "max_per_day IS NULL OR max_per_day >= 1",
            name="ck_offerings_max_per_day_positive",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    vendor_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    title = Column(String, nullable=False)
    min_price = Column(Integer, nullable=True)
    max_price = Column(Integer, nullable=True)
    availability_mode = Column(String, nullable=False, default="capacity")  # capacity | slot
    max_per_day = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    vendor = relationship("User", back_populates="offerings")
    variants = relationship(
        "OfferingVariant",
        back_populates="offering",
        cascade="all, delete-orphan",
    )
    slots = relationship(
        "OfferingSlot",
        back_populates="offering",
        cascade="all, delete-orphan",
    )


class OfferingVariant(Base):
    __tablename__ = "offering_variants"
    __table_args__ = (
        CheckConstraint("unit_price >= 0", name="ck_offering_variants_price_non_negative"),
        CheckConstraint("min_quantity >= 1", name="ck_offering_variants_min_quantity"),
    )

    id = Column(Integer, primary_key=True, index=True)
    offering_id = Column(
        Integer,
        ForeignKey("offerings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name = Column(String, nullable=False)
    unit = Column(String, nullable=False)
    unit_price = Column(Integer, nullable=False)
    min_quantity = Column(Integer, nullable=False, default=1)
    max_quantity = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    offering = relationship("Offering", back_populates="variants")


class OfferingSlot(Base):
    __tablename__ = "offering_slots"

    id = Column(Integer, primary_key=True, index=True)
    offering_id = Column(
        Integer,
        ForeignKey("offerings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    label = Column(String, nullable=True)  # morning | afternoon | evening | night
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    offering = relationship("Offering", back_populates="slots")


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        Index(
            "uq_reservations_active_slot_claim",
            "offering_id",
            "reserved_date",
            "slot_id",
            unique=True,
            postgresql_where=text("status != 'cancelled' AND slot_id IS NOT NULL"),
            sqlite_where=text("status != 'cancelled' AND slot_id IS NOT NULL"),
        ),
        Index("ix_reservations_offering_date_status", "offering_id", "reserved_date", "status"),
        Index("ix_reservations_status_payment_created", "status", "payment_status", "created_at"),
        CheckConstraint("grand_total = sub_total + tax", name="ck_reservations_grand_total"),
        CheckConstraint(
            "payment_status IN ('unpaid', 'paid', 'refunded')",
            name="ck_reservations_payment_status",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)

    requester_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    vendor_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    offering_id = Column(
        Integer,
        ForeignKey("offerings.id", ondelete="RESTRICT"),
        nullable=False,
    )

    reserved_date = Column(Date, nullable=False)
    slot_id = Column(
        Integer,
        ForeignKey("offering_slots.id", ondelete="RESTRICT"),
        nullable=True,
    )
    slot_start_time = Column(Time, nullable=True)
    slot_end_time = Column(Time, nullable=True)
    message = Column(String(500), nullable=True)

    status = Column(String, nullable=False, default="pending")
    payment_status = Column(String, nullable=False, default="unpaid")
    currency = Column(String, nullable=False, default="ARS")
    sub_total = Column(Integer, nullable=False, default=0)
    tax = Column(Integer, nullable=False, default=0)
    grand_total = Column(Integer, nullable=False, default=0)
    cancel_reason = Column(String, nullable=True)

    confirmed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    requester = relationship("User", foreign_keys=[requester_id])
    vendor = relationship("User", foreign_keys=[vendor_id])
    offering = relationship("Offering")
    slot = relationship("OfferingSlot")
    items = relationship(
        "ReservationItem",
        back_populates="reservation",
        cascade="all, delete-orphan",
        order_by="ReservationItem.position",
    )
    payment_intents = relationship(
        "PaymentIntent",
        back_populates="reservation",
        cascade="all, delete-orphan",
    )


class ReservationItem(Base):
    __tablename__ = "reservation_items"
    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_reservation_items_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(
        Integer,
        ForeignKey("reservations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    variant_id = Column(
        Integer,
        ForeignKey("offering_variants.id", ondelete="RESTRICT"),
        nullable=False,
    )
    position = Column(Integer, nullable=False, default=0)

    # Snapshot of the variant at reservation time.
    name = Column(String, nullable=False)
    unit = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)

    reservation = relationship("Reservation", back_populates="items")


class DailyCapacityCounter(Base):
    __tablename__ = "daily_capacity_counters"
    __table_args__ = (
        UniqueConstraint(
            "offering_id",
            "reserved_date",
            name="uq_daily_capacity_counters_offering_date",
        ),
        CheckConstraint("reserved >= 0", name="ck_daily_capacity_counters_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    offering_id = Column(
        Integer,
        ForeignKey("offerings.id", ondelete="CASCADE"),
        nullable=False,
    )
    reserved_date = Column(Date, nullable=False)
    reserved = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)


class PaymentIntent(Base):
    __tablename__ = "payment_intents"
    __table_args__ = (
        Index(
            "uq_payment_intents_one_active_per_reservation",
            "reservation_id",
            unique=True,
            postgresql_where=text("status = 'created'"),
            sqlite_where=text("status = 'created'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(
        Integer,
        ForeignKey("reservations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    status = Column(String, nullable=False, default="created")  # created | verified | abandoned
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="ARS")
    receipt = Column(String, nullable=False, unique=True)
    external_ref = Column(String, nullable=False, unique=True, index=True)
    external_payment_id = Column(String, nullable=True)
    signature = Column(String, nullable=True)
    provider_payload = Column(Text, nullable=True)

    verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    reservation = relationship("Reservation", back_populates="payment_intents")


class RateLimitCounter(Base):
    __tablename__ = "rate_limit_counters"
    __table_args__ = (
        UniqueConstraint(
            "actor",
            "operation",
            "window_start",
            name="uq_rate_limit_counters_actor_operation_window",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    actor = Column(String, nullable=False)
    operation = Column(String, nullable=False)
    window_start = Column(DateTime, nullable=False, index=True)
    hits = Column(Integer, nullable=False, default=0)
