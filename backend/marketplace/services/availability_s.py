from __future__ import annotations

from datetime import date, datetime, timezone, tzinfo
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.db.config import get_reservation_timezone
from marketplace.db.models import DailyCapacityCounter, Reservation, utc_now
from marketplace.services.catalog_s import (
    CapacityPolicy,
    OfferingSnapshot,
    SlotPolicy,
    SlotWindow,
    get_offering,
)
from marketplace.services.reservation_errors import (
    CapacityExceededError,
    SlotUnavailableError,
    ValidationError,
)

RESERVATION_CANCELLED = "cancelled"

logger = logging.getLogger(__name__)


def normalize_reservation_date(
    value: date | datetime | str,
    *,
    reference_tz: tzinfo | None = None,
) -> date:
    tz = reference_tz or get_reservation_timezone()
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            raise ValidationError("date is required")
        try:
            value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"invalid date {raw!r}") from None

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(tz)
        return value.date()
    if isinstance(value, date):
        return value
    raise ValidationError("date must be a date or datetime")


def today_in_reference_tz(now: datetime | None = None) -> date:
    """Calendar day in the reference timezone. A naive ``now`` is read as UTC."""
    tz = get_reservation_timezone()
    if now is None:
        return datetime.now(tz).date()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(tz).date()


def resolve_slot(offering: OfferingSnapshot, slot_id: int | None) -> SlotWindow | None:
    if isinstance(offering.policy, SlotPolicy):
        if slot_id is None:
            raise ValidationError(
                "slot_id is required for slot-based offerings",
                offering_id=offering.id,
            )
        slot = offering.policy.find(int(slot_id))
        if slot is None:
            raise ValidationError(
                f"slot {slot_id} is not offered by this offering",
                offering_id=offering.id,
                slot_id=slot_id,
            )
        return slot

    if slot_id is not None:
        raise ValidationError(
            "slot_id is only valid for slot-based offerings",
            offering_id=offering.id,
        )
    return None


def find_slot_conflict(
    offering_id: int,
    reserved_date: date,
    slot_id: int,
    db: Session,
) -> Reservation | None:
    return (
        db.query(Reservation)
        .filter(
            Reservation.offering_id == offering_id,
            Reservation.reserved_date == reserved_date,
            Reservation.slot_id == slot_id,
            Reservation.status != RESERVATION_CANCELLED,
        )
        .first()
    )


def count_active_reservations(offering_id: int, reserved_date: date, db: Session) -> int:
    count = (
        db.query(func.count(Reservation.id))
        .filter(
            Reservation.offering_id == offering_id,
            Reservation.reserved_date == reserved_date,
            Reservation.status != RESERVATION_CANCELLED,
        )
        .scalar()
    )
    return int(count or 0)


def _slot_unavailable(slot: SlotWindow, reserved_date: date) -> SlotUnavailableError:
    return SlotUnavailableError(
        f"slot {slot.describe()} is already reserved on {reserved_date.isoformat()}",
        slot={
            "slot_id": slot.id,
            "start_time": slot.start_time.strftime("%H:%M"),
            "end_time": slot.end_time.strftime("%H:%M"),
        },
        date=reserved_date.isoformat(),
    )


def _ensure_capacity_counter(offering_id: int, reserved_date: date, db: Session) -> None:
    exists = (
        db.query(DailyCapacityCounter.id)
        .filter(
            DailyCapacityCounter.offering_id == offering_id,
            DailyCapacityCounter.reserved_date == reserved_date,
        )
        .first()
    )
    if exists is not None:
        return

    # Seeded from live rows so a fresh counter agrees with existing reservations.
    counter = DailyCapacityCounter(
        offering_id=offering_id,
        reserved_date=reserved_date,
        reserved=count_active_reservations(offering_id, reserved_date, db),
    )
    try:
        with db.begin_nested():
            db.add(counter)
            db.flush()
    except IntegrityError:
        # Another writer created it first.
        logger.debug(
            "event=capacity_counter_race offering_id=%s date=%s",
            offering_id,
            reserved_date,
        )


def claim_capacity(
    offering_id: int,
    reserved_date: date,
    policy: CapacityPolicy,
    db: Session,
) -> None:
    _ensure_capacity_counter(offering_id, reserved_date, db)
    updated = (
        db.query(DailyCapacityCounter)
        .filter(
            DailyCapacityCounter.offering_id == offering_id,
            DailyCapacityCounter.reserved_date == reserved_date,
            DailyCapacityCounter.reserved < policy.max_per_day,
        )
        .update(
            {
                DailyCapacityCounter.reserved: DailyCapacityCounter.reserved + 1,
                DailyCapacityCounter.updated_at: utc_now(),
            },
            synchronize_session=False,
        )
    )
    if int(updated or 0) != 1:
        raise CapacityExceededError(
            f"no capacity left on {reserved_date.isoformat()}",
            date=reserved_date.isoformat(),
            max_per_day=policy.max_per_day,
        )


def release_capacity(offering_id: int, reserved_date: date, db: Session) -> None:
    db.query(DailyCapacityCounter).filter(
        DailyCapacityCounter.offering_id == offering_id,
        DailyCapacityCounter.reserved_date == reserved_date,
        DailyCapacityCounter.reserved > 0,
    ).update(
        {
            DailyCapacityCounter.reserved: DailyCapacityCounter.reserved - 1,
            DailyCapacityCounter.updated_at: utc_now(),
        },
        synchronize_session=False,
    )


def claim_and_insert(
    reservation: Reservation,
    offering: OfferingSnapshot,
    slot: SlotWindow | None,
    db: Session,
) -> Reservation:
    """Claim the (offering, date[, slot]) and write the reservation in one step.

    For slots the partial unique index on non-cancelled rows is the real
    guard; the read beforehand only produces a friendlier error earlier.
    """
    reserved_date = reservation.reserved_date

    if isinstance(offering.policy, SlotPolicy):
        if slot is None:
            raise ValidationError("slot is required for slot-based offerings")
        if find_slot_conflict(offering.id, reserved_date, slot.id, db) is not None:
            raise _slot_unavailable(slot, reserved_date)
        try:
            with db.begin_nested():
                db.add(reservation)
                db.flush()
        except IntegrityError:
            if find_slot_conflict(offering.id, reserved_date, slot.id, db) is not None:
                logger.info(
                    "event=slot_claim_lost offering_id=%s date=%s slot_id=%s",
                    offering.id,
                    reserved_date,
                    slot.id,
                )
                raise _slot_unavailable(slot, reserved_date) from None
            raise
        return reservation

    claim_capacity(offering.id, reserved_date, offering.policy, db)
    db.add(reservation)
    db.flush()
    return reservation


def release_claim(reservation: Reservation, db: Session) -> None:
    """Give back the claim held by a reservation that is being cancelled."""
    if reservation.slot_id is None:
        release_capacity(int(reservation.offering_id), reservation.reserved_date, db)


def list_availability(offering_id: int, reserved_date: date, db: Session) -> dict:
    offering = get_offering(offering_id, db)

    if isinstance(offering.policy, SlotPolicy):
        taken = {
            int(slot_id)
            for (slot_id,) in db.query(Reservation.slot_id)
            .filter(
                Reservation.offering_id == offering.id,
                Reservation.reserved_date == reserved_date,
                Reservation.status != RESERVATION_CANCELLED,
                Reservation.slot_id.isnot(None),
            )
            .all()
        }
        return {
            "offering_id": offering.id,
            "date": reserved_date.isoformat(),
            "mode": "slot",
            "slots": [
                {
                    "slot_id": slot.id,
                    "label": slot.label,
                    "start_time": slot.start_time.strftime("%H:%M"),
                    "end_time": slot.end_time.strftime("%H:%M"),
                    "available": slot.id not in taken,
                }
                for slot in offering.policy.slots
            ],
        }

    reserved = count_active_reservations(offering.id, reserved_date, db)
    max_per_day = offering.policy.max_per_day
    return {
        "offering_id": offering.id,
        "date": reserved_date.isoformat(),
        "mode": "capacity",
        "max_per_day": max_per_day,
        "reserved": reserved,
        "remaining": max(0, max_per_day - reserved),
    }
