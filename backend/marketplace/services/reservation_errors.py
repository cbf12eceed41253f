from __future__ import annotations


class ReservationError(Exception):
    """Base error for the reservation engine.

    Every error carries a stable machine-readable ``kind`` and a human
    message. ``details`` names the resource involved, when there is one.
    """

    kind = "reservation_error"
    status_code = 400

    def __init__(self, message: str, **details: object) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"kind": self.kind, "message": self.message}
        payload.update(self.details)
        return payload


class ValidationError(ReservationError, ValueError):
    """Malformed input. Never retried automatically."""

    kind = "validation_error"
    status_code = 400


class InvalidQuantityError(ValidationError):
    kind = "invalid_quantity"


class PriceMismatchError(ValidationError):
    kind = "price_mismatch"


class NotFoundError(ReservationError, LookupError):
    kind = "not_found"
    status_code = 404


class ForbiddenError(ReservationError, PermissionError):
    kind = "forbidden"
    status_code = 403


class ConflictError(ReservationError):
    """The caller may retry with different parameters, not blindly."""

    kind = "conflict"
    status_code = 409


class SlotUnavailableError(ConflictError):
    kind = "slot_unavailable"


class CapacityExceededError(ConflictError):
    kind = "capacity_exceeded"


class AlreadySettledError(ConflictError):
    kind = "already_settled"


class AlreadyCancelledError(ConflictError):
    kind = "already_cancelled"


class InvalidTransitionError(ConflictError):
    kind = "invalid_transition"


class VerificationFailedError(ReservationError):
    """Signature mismatch on a payment confirmation."""

    kind = "verification_failed"
    status_code = 400


class GatewayUnavailableError(ReservationError):
    """Transient payment gateway failure. Safe to retry."""

    kind = "gateway_unavailable"
    status_code = 503


class RateLimitedError(ReservationError):
    kind = "rate_limited"
    status_code = 429
