from __future__ import annotations

from datetime import datetime
import hashlib
import hmac
import json
import logging
import secrets

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.db.config import get_payment_signature_secret
from marketplace.db.models import PaymentIntent, Reservation, utc_now
from marketplace.services.mercadopago_client import (
    PaymentGateway,
    PaymentProviderError,
    get_payment_gateway,
)
from marketplace.services.notifications_s import NotificationSender
from marketplace.services.principals import Principal
from marketplace.services.reservation_errors import (
    AlreadyCancelledError,
    AlreadySettledError,
    GatewayUnavailableError,
    NotFoundError,
    ValidationError,
    VerificationFailedError,
)
from marketplace.services.reservations_s import (
    INTENT_ABANDONED,
    INTENT_CREATED,
    PAYMENT_PAID,
    PAYMENT_UNPAID,
    RESERVATION_CANCELLED,
    RESERVATION_COMPLETED,
    RESERVATION_CONFIRMED,
    confirm_paid_reservation,
    reservation_to_dict,
)

INTENT_VERIFIED = "verified"

logger = logging.getLogger(__name__)


def _payment_intent_to_dict(intent: PaymentIntent) -> dict:
    return {
        "id": intent.id,
        "reservation_id": intent.reservation_id,
        "status": intent.status,
        "amount": int(intent.amount),
        "currency": intent.currency,
        "receipt": intent.receipt,
        "external_ref": intent.external_ref,
        "external_payment_id": intent.external_payment_id,
        "checkout_url": _checkout_url(intent.provider_payload),
        "verified_at": intent.verified_at,
        "created_at": intent.created_at,
        "updated_at": intent.updated_at,
    }


def _serialize_provider_payload(payload: dict | None) -> str | None:
    if payload is None:
        return None
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True)


def _checkout_url(payload: str | None) -> str | None:
    if payload is None:
        return None
    try:
        parsed = json.loads(payload)
    except (TypeError, ValueError):
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed.get("checkout_url")


def build_receipt_id(reservation_id: int) -> str:
    return f"rsv-{reservation_id}-{secrets.token_hex(6)}"


def _find_active_intent(reservation_id: int, db: Session) -> PaymentIntent | None:
    return (
        db.query(PaymentIntent)
        .filter(
            PaymentIntent.reservation_id == reservation_id,
            PaymentIntent.status == INTENT_CREATED,
        )
        .order_by(PaymentIntent.id.desc())
        .first()
    )


def _get_owned_reservation(reservation_id: int, principal: Principal, db: Session) -> Reservation:
    reservation = (
        db.query(Reservation)
        .filter(Reservation.id == reservation_id)
        .with_for_update()
        .first()
    )
    if reservation is None or not principal.can_act_for(reservation.requester_id):
        raise NotFoundError("reservation not found", reservation_id=reservation_id)
    return reservation


def create_payment_intent(
    reservation_id: int,
    principal: Principal,
    db: Session,
    *,
    gateway: PaymentGateway | None = None,
    now: datetime | None = None,
) -> dict:
    reservation = _get_owned_reservation(reservation_id, principal, db)
    if reservation.status == RESERVATION_CANCELLED:
        raise AlreadyCancelledError(
            "reservation is cancelled",
            reservation_id=reservation.id,
        )
    if reservation.payment_status != PAYMENT_UNPAID:
        raise AlreadySettledError(
            "reservation is already paid",
            reservation_id=reservation.id,
            payment_status=reservation.payment_status,
        )

    amount = int(reservation.grand_total)
    if amount <= 0:
        raise ValidationError("reservation total must be greater than 0", reservation_id=reservation.id)

    current_time = now or utc_now()
    active = _find_active_intent(int(reservation.id), db)
    if active is not None:
        if int(active.amount) == amount and active.currency == reservation.currency:
            return _payment_intent_to_dict(active)
        active.status = INTENT_ABANDONED
        active.updated_at = current_time
        db.flush()

    receipt = build_receipt_id(int(reservation.id))
    try:
        order = (gateway or get_payment_gateway()).create_order(amount, reservation.currency, receipt)
    except PaymentProviderError as exc:
        logger.error(
            "event=gateway_order_failed reservation_id=%s receipt=%s error=%s",
            reservation.id,
            receipt,
            exc.__class__.__name__,
        )
        raise GatewayUnavailableError(
            "payment gateway is unavailable, retry later",
            reservation_id=reservation.id,
        ) from exc

    if int(order.amount) != amount:
        logger.error(
            "event=gateway_amount_mismatch reservation_id=%s expected=%s received=%s",
            reservation.id,
            amount,
            order.amount,
        )
        raise GatewayUnavailableError(
            "payment gateway returned an inconsistent order",
            reservation_id=reservation.id,
        )

    intent = PaymentIntent(
        reservation_id=reservation.id,
        status=INTENT_CREATED,
        amount=amount,
        currency=reservation.currency,
        receipt=receipt,
        external_ref=order.external_ref,
        provider_payload=_serialize_provider_payload(
            {"checkout_url": order.checkout_url, "currency": order.currency}
        ),
        created_at=current_time,
        updated_at=current_time,
    )
    try:
        with db.begin_nested():
            db.add(intent)
            db.flush()
    except IntegrityError:
        existing = _find_active_intent(int(reservation.id), db)
        if existing is not None:
            return _payment_intent_to_dict(existing)
        raise

    logger.info(
        "event=payment_intent_created reservation_id=%s intent_id=%s amount=%s currency=%s external_ref=%s",
        reservation.id,
        intent.id,
        amount,
        intent.currency,
        intent.external_ref,
    )
    db.refresh(intent)
    return _payment_intent_to_dict(intent)


def compute_payment_signature(
    external_ref: str,
    external_payment_id: str,
    *,
    secret: str | None = None,
) -> str:
    key = secret or get_payment_signature_secret()
    message = f"{external_ref}|{external_payment_id}"
    return hmac.new(
        key=key.encode("utf-8"),
        msg=message.encode("utf-8"),
        digestmod=hashlib.sha256,
    ).hexdigest()


def is_payment_signature_valid(
    external_ref: str,
    external_payment_id: str,
    signature: str | None,
    *,
    secret: str | None = None,
) -> bool:
    normalized = (signature or "").strip().lower()
    if not normalized:
        return False
    expected = compute_payment_signature(external_ref, external_payment_id, secret=secret)
    return hmac.compare_digest(expected, normalized)


def _settlement_result(reservation: Reservation, intent: PaymentIntent, *, duplicate: bool) -> dict:
    return {
        "reservation": reservation_to_dict(reservation),
        "payment_intent": _payment_intent_to_dict(intent),
        "duplicate": duplicate,
    }


def verify_payment(
    external_ref: str,
    external_payment_id: str,
    signature: str,
    db: Session,
    *,
    now: datetime | None = None,
    secret: str | None = None,
    notifier: NotificationSender | None = None,
) -> dict:
    normalized_ref = str(external_ref or "").strip()
    normalized_payment_id = str(external_payment_id or "").strip()
    if not normalized_ref or not normalized_payment_id:
        raise ValidationError("external_ref and external_payment_id are required")

    # Lock the reservation before its intent, as cancellation and the sweep do.
    intent = db.query(PaymentIntent).filter(PaymentIntent.external_ref == normalized_ref).first()
    if intent is None:
        raise NotFoundError("payment intent not found", external_ref=normalized_ref)

    if not is_payment_signature_valid(
        normalized_ref,
        normalized_payment_id,
        signature,
        secret=secret,
    ):
        logger.warning(
            "event=payment_signature_failed intent_id=%s reservation_id=%s external_ref=%s",
            intent.id,
            intent.reservation_id,
            normalized_ref,
        )
        raise VerificationFailedError(
            "payment signature could not be verified",
            external_ref=normalized_ref,
        )

    reservation = (
        db.query(Reservation)
        .filter(Reservation.id == intent.reservation_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if reservation is None:
        raise NotFoundError("reservation not found", reservation_id=intent.reservation_id)

    intent = (
        db.query(PaymentIntent)
        .filter(PaymentIntent.id == intent.id)
        .with_for_update()
        .populate_existing()
        .one()
    )

    if reservation.status == RESERVATION_CANCELLED:
        logger.info(
            "event=payment_verification_after_cancel reservation_id=%s external_ref=%s",
            reservation.id,
            normalized_ref,
        )
        raise AlreadyCancelledError(
            "reservation was cancelled before payment was verified",
            reservation_id=reservation.id,
            cancel_reason=reservation.cancel_reason,
        )

    if reservation.payment_status == PAYMENT_PAID and reservation.status in {
        RESERVATION_CONFIRMED,
        RESERVATION_COMPLETED,
    }:
        logger.info(
            "event=payment_verification_duplicate reservation_id=%s external_ref=%s",
            reservation.id,
            normalized_ref,
        )
        return _settlement_result(reservation, intent, duplicate=True)

    if intent.status != INTENT_CREATED:
        raise AlreadySettledError(
            "payment intent is no longer active",
            reservation_id=reservation.id,
            intent_status=intent.status,
        )

    current_time = now or utc_now()
    intent.status = INTENT_VERIFIED
    intent.external_payment_id = normalized_payment_id
    intent.signature = signature.strip().lower()
    intent.verified_at = current_time
    intent.updated_at = current_time
    confirm_paid_reservation(reservation, now=current_time, db=db, notifier=notifier)

    logger.info(
        "event=payment_verified reservation_id=%s intent_id=%s external_payment_id=%s",
        reservation.id,
        intent.id,
        normalized_payment_id,
    )
    db.refresh(reservation)
    return _settlement_result(reservation, intent, duplicate=False)


def list_payment_intents_for_reservation(
    reservation_id: int,
    principal: Principal,
    db: Session,
) -> list[dict]:
    reservation = db.query(Reservation).filter(Reservation.id == reservation_id).first()
    if reservation is None or not (
        principal.is_admin
        or principal.user_id in {int(reservation.requester_id), int(reservation.vendor_id)}
    ):
        raise NotFoundError("reservation not found", reservation_id=reservation_id)
    intents = (
        db.query(PaymentIntent)
        .filter(PaymentIntent.reservation_id == reservation_id)
        .order_by(PaymentIntent.created_at.desc(), PaymentIntent.id.desc())
        .all()
    )
    return [_payment_intent_to_dict(intent) for intent in intents]
