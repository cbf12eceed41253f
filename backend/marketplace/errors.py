from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.services.reservation_errors import ReservationError


def raise_http_error_from_exception(exc: Exception, db: Session | None = None) -> None:
    if db is not None and isinstance(exc, (ReservationError, SQLAlchemyError)):
        db.rollback()

    if isinstance(exc, ReservationError):
        raise HTTPException(status_code=exc.status_code, detail=exc.to_dict()) from exc
    if isinstance(exc, LookupError):
        raise HTTPException(
            status_code=404,
            detail={"kind": "not_found", "message": str(exc)},
        ) from exc
    if isinstance(exc, ValueError):
        raise HTTPException(
            status_code=400,
            detail={"kind": "validation_error", "message": str(exc)},
        ) from exc
    if isinstance(exc, IntegrityError):
        raise HTTPException(
            status_code=409,
            detail={"kind": "conflict", "message": "database constraint violation"},
        ) from exc
    if isinstance(exc, SQLAlchemyError):
        raise HTTPException(
            status_code=500,
            detail={"kind": "database_error", "message": "database error"},
        ) from exc

    raise exc
