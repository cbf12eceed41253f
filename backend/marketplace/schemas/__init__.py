from marketplace.schemas.payments_s import VerifyPaymentRequest
from marketplace.schemas.reservations_s import (
    CreateReservationRequest,
    ExpireReservationsResponse,
    ReservationLineRequest,
    UpdateReservationStatusRequest,
)

__all__ = [
    "CreateReservationRequest",
    "ReservationLineRequest",
    "UpdateReservationStatusRequest",
    "ExpireReservationsResponse",
    "VerifyPaymentRequest",
]
