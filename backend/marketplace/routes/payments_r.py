import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from marketplace.dependencies.auth_d import get_current_principal
from marketplace.db.session import get_db, get_db_transactional
from marketplace.errors import raise_http_error_from_exception
from marketplace.schemas import VerifyPaymentRequest
from marketplace.services.anti_abuse_s import enforce_payment_intent_rate_limit
from marketplace.services.principals import Principal
from marketplace.services.settlement_s import (
    create_payment_intent,
    list_payment_intents_for_reservation,
    verify_payment,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/reservations/{reservation_id}/payment-intents", status_code=status.HTTP_201_CREATED)
def create_reservation_payment_intent(
    reservation_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db_transactional),
):
    try:
        enforce_payment_intent_rate_limit(principal.user_id, db)
        intent = create_payment_intent(reservation_id, principal, db)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)
    return {"data": intent}


@router.get("/reservations/{reservation_id}/payment-intents")
def get_reservation_payment_intents(
    reservation_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    try:
        intents = list_payment_intents_for_reservation(reservation_id, principal, db)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)
    return {"data": intents}


@router.post("/payments/verify")
def verify_reservation_payment(
    payload: VerifyPaymentRequest,
    db: Session = Depends(get_db_transactional),
):
    try:
        result = verify_payment(
            payload.external_ref,
            payload.external_payment_id,
            payload.signature,
            db,
        )
    except Exception as exc:
        logger.info(
            "event=payment_verify_rejected external_ref=%s error=%s",
            payload.external_ref,
            exc.__class__.__name__,
        )
        raise_http_error_from_exception(exc, db=db)
    return {"data": result}
