from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
import logging

from sqlalchemy.orm import Session, joinedload

from marketplace.db.config import (
    get_reservation_currency,
    get_reservation_tax_rate,
    get_reservation_ttl_minutes,
)
from marketplace.db.models import PaymentIntent, Reservation, ReservationItem, User, utc_now
from marketplace.services.availability_s import (
    claim_and_insert,
    normalize_reservation_date,
    release_claim,
    resolve_slot,
    today_in_reference_tz,
)
from marketplace.services.catalog_s import get_bookable_vendor, get_offering
from marketplace.services.notifications_s import NotificationSender, queue_notification
from marketplace.services.pricing_s import RequestedLine, price_reservation_lines
from marketplace.services.principals import Principal
from marketplace.services.reservation_errors import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)

RESERVATION_PENDING = "pending"
RESERVATION_CONFIRMED = "confirmed"
RESERVATION_CANCELLED = "cancelled"
RESERVATION_COMPLETED = "completed"
ALLOWED_RESERVATION_STATUS = {
    RESERVATION_PENDING,
    RESERVATION_CONFIRMED,
    RESERVATION_CANCELLED,
    RESERVATION_COMPLETED,
}
ALLOWED_RESERVATION_TRANSITIONS = {
    RESERVATION_PENDING: {RESERVATION_CONFIRMED, RESERVATION_CANCELLED},
    RESERVATION_CONFIRMED: {RESERVATION_COMPLETED, RESERVATION_CANCELLED},
    RESERVATION_COMPLETED: set(),
    RESERVATION_CANCELLED: set(),
}

PAYMENT_UNPAID = "unpaid"
PAYMENT_PAID = "paid"

INTENT_CREATED = "created"
INTENT_ABANDONED = "abandoned"

MAX_MESSAGE_LENGTH = 500
CANCEL_REASON_PAYMENT_TIMEOUT = "payment_timeout"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreateReservationCommand:
    offering_id: int
    reserved_date: date
    lines: tuple[RequestedLine, ...]
    expected_total: int
    slot_id: int | None = None
    message: str | None = None


def build_create_reservation_command(
    *,
    offering_id: int,
    date_value: date | datetime | str,
    lines: list[dict],
    expected_total: int,
    slot_id: int | None = None,
    message: str | None = None,
) -> CreateReservationCommand:
    if not lines:
        raise ValidationError("at least one line item is required")
    normalized_message = None if message is None else str(message).strip() or None
    if normalized_message is not None and len(normalized_message) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"message cannot be longer than {MAX_MESSAGE_LENGTH} characters")
    if int(expected_total) < 0:
        raise ValidationError("expected_total cannot be negative")

    return CreateReservationCommand(
        offering_id=int(offering_id),
        reserved_date=normalize_reservation_date(date_value),
        lines=tuple(
            RequestedLine(variant_id=int(line["variant_id"]), quantity=int(line["quantity"]))
            for line in lines
        ),
        expected_total=int(expected_total),
        slot_id=None if slot_id is None else int(slot_id),
        message=normalized_message,
    )


def _format_time(value) -> str | None:
    if value is None:
        return None
    return value.strftime("%H:%M")


def reservation_to_dict(reservation: Reservation) -> dict:
    slot = None
    if reservation.slot_id is not None:
        slot = {
            "slot_id": reservation.slot_id,
            "start_time": _format_time(reservation.slot_start_time),
            "end_time": _format_time(reservation.slot_end_time),
        }

    return {
        "id": reservation.id,
        "requester_id": reservation.requester_id,
        "vendor_id": reservation.vendor_id,
        "offering_id": reservation.offering_id,
        "status": reservation.status,
        "payment_status": reservation.payment_status,
        "date": reservation.reserved_date,
        "slot": slot,
        "items": [
            {
                "variant_id": item.variant_id,
                "name": item.name,
                "unit": item.unit,
                "quantity": int(item.quantity),
                "unit_price": int(item.unit_price),
            }
            for item in sorted(reservation.items, key=lambda x: (x.position, x.id or 0))
        ],
        "sub_total": int(reservation.sub_total),
        "tax": int(reservation.tax),
        "grand_total": int(reservation.grand_total),
        "currency": reservation.currency,
        "message": reservation.message,
        "cancel_reason": reservation.cancel_reason,
        "confirmed_at": reservation.confirmed_at,
        "completed_at": reservation.completed_at,
        "cancelled_at": reservation.cancelled_at,
        "created_at": reservation.created_at,
        "updated_at": reservation.updated_at,
    }


def _notification_payload(reservation: Reservation) -> dict:
    slot = None
    if reservation.slot_id is not None:
        slot = f"{_format_time(reservation.slot_start_time)}-{_format_time(reservation.slot_end_time)}"
    return {
        "reservation_id": reservation.id,
        "offering": reservation.offering.title if reservation.offering is not None else None,
        "date": reservation.reserved_date.isoformat(),
        "slot": slot,
        "status": reservation.status,
        "grand_total": int(reservation.grand_total),
        "currency": reservation.currency,
    }


def _reservation_query(db: Session):
    return db.query(Reservation).options(joinedload(Reservation.items))


def _lock_reservation(reservation_id: int, db: Session) -> Reservation:
    reservation = (
        db.query(Reservation)
        .filter(Reservation.id == reservation_id)
        .with_for_update()
        .first()
    )
    if reservation is None:
        raise NotFoundError("reservation not found", reservation_id=reservation_id)
    return reservation


def _abandon_active_payment_intents(reservation_id: int, *, now: datetime, db: Session) -> None:
    db.query(PaymentIntent).filter(
        PaymentIntent.reservation_id == reservation_id,
        PaymentIntent.status == INTENT_CREATED,
    ).update(
        {
            PaymentIntent.status: INTENT_ABANDONED,
            PaymentIntent.updated_at: now,
        },
        synchronize_session=False,
    )


def apply_transition(
    reservation: Reservation,
    new_status: str,
    *,
    now: datetime,
    db: Session,
    reason: str | None = None,
) -> None:
    current_status = reservation.status
    allowed = ALLOWED_RESERVATION_TRANSITIONS.get(current_status, set())
    if new_status not in allowed:
        raise InvalidTransitionError(
            f"cannot move reservation from {current_status} to {new_status}",
            reservation_id=reservation.id,
            status=current_status,
            requested_status=new_status,
        )

    reservation.status = new_status
    if new_status == RESERVATION_CONFIRMED and reservation.confirmed_at is None:
        reservation.confirmed_at = now
    elif new_status == RESERVATION_COMPLETED and reservation.completed_at is None:
        reservation.completed_at = now
    elif new_status == RESERVATION_CANCELLED:
        reservation.cancelled_at = now
        reservation.cancel_reason = reason
        release_claim(reservation, db)
        _abandon_active_payment_intents(int(reservation.id), now=now, db=db)
    reservation.updated_at = now
    db.flush()


def create_reservation(
    *,
    principal: Principal,
    command: CreateReservationCommand,
    db: Session,
    now: datetime | None = None,
    tax_rate: Decimal | None = None,
    notifier: NotificationSender | None = None,
) -> dict:
    current_time = now or utc_now()
    offering = get_offering(command.offering_id, db)
    vendor = get_bookable_vendor(offering.vendor_id, db)

    requester = (
        db.query(User)
        .filter(User.id == principal.user_id, User.is_active.is_(True))
        .first()
    )
    if requester is None:
        raise NotFoundError("requester not found", user_id=principal.user_id)

    if command.reserved_date < today_in_reference_tz(current_time):
        raise ValidationError(
            "reservation date cannot be in the past",
            date=command.reserved_date.isoformat(),
        )

    slot = resolve_slot(offering, command.slot_id)
    priced = price_reservation_lines(
        offering.variants,
        command.lines,
        tax_rate=get_reservation_tax_rate() if tax_rate is None else tax_rate,
        expected_total=command.expected_total,
    )

    reservation = Reservation(
        requester_id=int(requester.id),
        vendor_id=int(vendor.id),
        offering_id=offering.id,
        reserved_date=command.reserved_date,
        slot_id=slot.id if slot is not None else None,
        slot_start_time=slot.start_time if slot is not None else None,
        slot_end_time=slot.end_time if slot is not None else None,
        message=command.message,
        status=RESERVATION_PENDING,
        payment_status=PAYMENT_UNPAID,
        currency=get_reservation_currency(),
        sub_total=priced.sub_total,
        tax=priced.tax,
        grand_total=priced.grand_total,
        created_at=current_time,
        updated_at=current_time,
        items=[
            ReservationItem(
                variant_id=line.variant_id,
                position=position,
                name=line.name,
                unit=line.unit,
                quantity=line.quantity,
                unit_price=line.unit_price,
            )
            for position, line in enumerate(priced.lines)
        ],
    )
    claim_and_insert(reservation, offering, slot, db)
    db.refresh(reservation)

    logger.info(
        "event=reservation_created reservation_id=%s offering_id=%s date=%s slot_id=%s requester_id=%s grand_total=%s",
        reservation.id,
        reservation.offering_id,
        reservation.reserved_date,
        reservation.slot_id,
        reservation.requester_id,
        reservation.grand_total,
    )
    queue_notification(
        db,
        vendor.email,
        "reservation_requested",
        _notification_payload(reservation),
        sender=notifier,
    )
    return reservation_to_dict(reservation)


def mark_reservation_status(
    *,
    reservation_id: int,
    new_status: str,
    principal: Principal,
    db: Session,
    now: datetime | None = None,
    notifier: NotificationSender | None = None,
) -> dict:
    if new_status not in ALLOWED_RESERVATION_STATUS:
        raise ValidationError(f"invalid status {new_status!r}")

    reservation = _lock_reservation(reservation_id, db)
    if not principal.can_act_for(reservation.vendor_id):
        raise ForbiddenError(
            "only the vendor or an admin can update this reservation",
            reservation_id=reservation_id,
        )
    if new_status == RESERVATION_CONFIRMED and reservation.payment_status != PAYMENT_PAID:
        raise InvalidTransitionError(
            "reservation can only be confirmed after payment is verified",
            reservation_id=reservation_id,
            status=reservation.status,
            requested_status=new_status,
        )

    current_time = now or utc_now()
    apply_transition(
        reservation,
        new_status,
        now=current_time,
        db=db,
        reason=f"{principal.role}_cancelled" if new_status == RESERVATION_CANCELLED else None,
    )
    logger.info(
        "event=reservation_status_updated reservation_id=%s status=%s actor_id=%s actor_role=%s",
        reservation.id,
        new_status,
        principal.user_id,
        principal.role,
    )
    queue_notification(
        db,
        reservation.requester.email if reservation.requester is not None else None,
        "reservation_status_updated",
        _notification_payload(reservation),
        sender=notifier,
    )
    db.refresh(reservation)
    return reservation_to_dict(reservation)


def confirm_paid_reservation(
    reservation: Reservation,
    *,
    now: datetime,
    db: Session,
    notifier: NotificationSender | None = None,
) -> None:
    reservation.payment_status = PAYMENT_PAID
    apply_transition(reservation, RESERVATION_CONFIRMED, now=now, db=db)
    logger.info(
        "event=reservation_confirmed reservation_id=%s grand_total=%s",
        reservation.id,
        reservation.grand_total,
    )
    queue_notification(
        db,
        reservation.vendor.email if reservation.vendor is not None else None,
        "reservation_confirmed",
        _notification_payload(reservation),
        sender=notifier,
    )


def expire_stale_reservations(
    now: datetime,
    db: Session,
    *,
    ttl_minutes: int | None = None,
    notifier: NotificationSender | None = None,
) -> int:
    ttl = timedelta(minutes=ttl_minutes or get_reservation_ttl_minutes())
    stale = (
        db.query(Reservation)
        .filter(
            Reservation.status == RESERVATION_PENDING,
            Reservation.payment_status == PAYMENT_UNPAID,
            Reservation.created_at <= now - ttl,
        )
        .order_by(Reservation.id.asc())
        .with_for_update(skip_locked=True)
        .all()
    )
    for reservation in stale:
        apply_transition(
            reservation,
            RESERVATION_CANCELLED,
            now=now,
            db=db,
            reason=CANCEL_REASON_PAYMENT_TIMEOUT,
        )
        logger.info(
            "event=reservation_expired reservation_id=%s offering_id=%s date=%s slot_id=%s",
            reservation.id,
            reservation.offering_id,
            reservation.reserved_date,
            reservation.slot_id,
        )
        queue_notification(
            db,
            reservation.requester.email if reservation.requester is not None else None,
            "reservation_expired",
            _notification_payload(reservation),
            sender=notifier,
        )
    return len(stale)


def get_reservation_for_principal(
    reservation_id: int,
    principal: Principal,
    db: Session,
) -> dict:
    reservation = _reservation_query(db).filter(Reservation.id == reservation_id).first()
    if reservation is None or not (
        principal.is_admin
        or principal.user_id in {int(reservation.requester_id), int(reservation.vendor_id)}
    ):
        raise NotFoundError("reservation not found", reservation_id=reservation_id)
    return reservation_to_dict(reservation)


def list_reservations_for_vendor(vendor_id: int, principal: Principal, db: Session) -> list[dict]:
    if not principal.can_act_for(vendor_id):
        raise ForbiddenError("not authorized to access these reservations", vendor_id=vendor_id)
    rows = (
        _reservation_query(db)
        .filter(Reservation.vendor_id == vendor_id)
        .order_by(Reservation.created_at.desc(), Reservation.id.desc())
        .all()
    )
    return [reservation_to_dict(row) for row in rows]


def list_reservations_for_requester(user_id: int, principal: Principal, db: Session) -> list[dict]:
    if not principal.can_act_for(user_id):
        raise ForbiddenError("not authorized to access these reservations", user_id=user_id)
    rows = (
        _reservation_query(db)
        .filter(Reservation.requester_id == user_id)
        .order_by(Reservation.created_at.desc(), Reservation.id.desc())
        .all()
    )
    return [reservation_to_dict(row) for row in rows]
