from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketplace.dependencies.auth_d import require_admin
from marketplace.db.models import utc_now
from marketplace.db.session import get_db_transactional
from marketplace.errors import raise_http_error_from_exception
from marketplace.schemas import ExpireReservationsResponse
from marketplace.services.principals import Principal
from marketplace.services.reservations_s import expire_stale_reservations

router = APIRouter()


@router.post("/admin/reservations/expire")
def expire_reservations(
    _: Principal = Depends(require_admin),
    db: Session = Depends(get_db_transactional),
):
    try:
        expired_count = expire_stale_reservations(utc_now(), db)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)
    return {"data": ExpireReservationsResponse(expired_count=int(expired_count)).model_dump()}
