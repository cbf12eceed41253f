from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from marketplace.dependencies.auth_d import get_current_principal
from marketplace.db.session import get_db, get_db_transactional
from marketplace.errors import raise_http_error_from_exception
from marketplace.schemas import CreateReservationRequest, UpdateReservationStatusRequest
from marketplace.services.anti_abuse_s import enforce_reservation_rate_limit
from marketplace.services.availability_s import list_availability
from marketplace.services.principals import Principal
from marketplace.services.reservations_s import (
    build_create_reservation_command,
    create_reservation,
    get_reservation_for_principal,
    list_reservations_for_requester,
    list_reservations_for_vendor,
    mark_reservation_status,
)

router = APIRouter()


@router.post("/reservations", status_code=status.HTTP_201_CREATED)
def create_reservation_endpoint(
    payload: CreateReservationRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db_transactional),
):
    try:
        enforce_reservation_rate_limit(principal.user_id, db)
        command = build_create_reservation_command(
            offering_id=payload.offering_id,
            date_value=payload.date,
            lines=[line.model_dump() for line in payload.lines],
            expected_total=payload.expected_total,
            slot_id=payload.slot_id,
            message=payload.message,
        )
        reservation = create_reservation(principal=principal, command=command, db=db)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)
    return {"data": reservation}


@router.get("/reservations/{reservation_id}")
def get_reservation(
    reservation_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    try:
        reservation = get_reservation_for_principal(reservation_id, principal, db)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)
    return {"data": reservation}


@router.patch("/reservations/{reservation_id}/status")
def update_reservation_status(
    reservation_id: int,
    payload: UpdateReservationStatusRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db_transactional),
):
    try:
        reservation = mark_reservation_status(
            reservation_id=reservation_id,
            new_status=payload.status,
            principal=principal,
            db=db,
        )
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)
    return {"data": reservation}


@router.get("/vendors/{vendor_id}/reservations")
def get_vendor_reservations(
    vendor_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    try:
        reservations = list_reservations_for_vendor(vendor_id, principal, db)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)
    return {"data": reservations}


@router.get("/users/{user_id}/reservations")
def get_user_reservations(
    user_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    try:
        reservations = list_reservations_for_requester(user_id, principal, db)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)
    return {"data": reservations}


@router.get("/offerings/{offering_id}/availability")
def get_offering_availability(
    offering_id: int,
    reserved_date: date = Query(alias="date"),
    db: Session = Depends(get_db),
):
    try:
        availability = list_availability(offering_id, reserved_date, db)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)
    return {"data": availability}
