from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.db.config import (
    get_rate_limit_max_payment_intents,
    get_rate_limit_max_reservations,
    get_rate_limit_window_seconds,
)
from marketplace.db.models import RateLimitCounter, utc_now
from marketplace.services.reservation_errors import RateLimitedError

OPERATION_CREATE_RESERVATION = "create_reservation"
OPERATION_CREATE_PAYMENT_INTENT = "create_payment_intent"

_EPOCH = datetime(1970, 1, 1)


def _window_start(now: datetime, window: timedelta) -> datetime:
    size = int(window.total_seconds())
    if size <= 0:
        raise ValueError("rate limit window must be positive")
    elapsed = int((now - _EPOCH).total_seconds())
    return _EPOCH + timedelta(seconds=elapsed - elapsed % size)


def _increment_if_below_limit(
    *,
    actor: str,
    operation: str,
    window_start: datetime,
    limit: int,
    db: Session,
) -> bool:
    updated = (
        db.query(RateLimitCounter)
        .filter(
            RateLimitCounter.actor == actor,
            RateLimitCounter.operation == operation,
            RateLimitCounter.window_start == window_start,
            RateLimitCounter.hits < limit,
        )
        .update(
            {RateLimitCounter.hits: RateLimitCounter.hits + 1},
            synchronize_session=False,
        )
    )
    return int(updated or 0) == 1


def enforce_rate_limit(
    *,
    actor: str,
    operation: str,
    db: Session,
    limit: int,
    window: timedelta,
    now: datetime | None = None,
) -> None:
    normalized_actor = str(actor).strip().lower() or "unknown"
    if limit <= 0:
        raise ValueError("rate limit must be greater than 0")
    current = now or utc_now()
    window_start = _window_start(current, window)

    if _increment_if_below_limit(
        actor=normalized_actor,
        operation=operation,
        window_start=window_start,
        limit=limit,
        db=db,
    ):
        return

    existing = (
        db.query(RateLimitCounter.id)
        .filter(
            RateLimitCounter.actor == normalized_actor,
            RateLimitCounter.operation == operation,
            RateLimitCounter.window_start == window_start,
        )
        .first()
    )
    if existing is None:
        try:
            with db.begin_nested():
                db.add(
                    RateLimitCounter(
                        actor=normalized_actor,
                        operation=operation,
                        window_start=window_start,
                        hits=1,
                    )
                )
                db.flush()
            return
        except IntegrityError:
            if _increment_if_below_limit(
                actor=normalized_actor,
                operation=operation,
                window_start=window_start,
                limit=limit,
                db=db,
            ):
                return

    raise RateLimitedError(
        f"too many {operation.replace('_', ' ')} attempts, retry later",
        operation=operation,
        retry_after_seconds=int(
            (window_start + window - current).total_seconds()
        ),
    )


def _enforce_in_own_transaction(db: Session, **kwargs) -> None:
    """Count the attempt on a separate session that commits at once.

    The hit must outlive the caller's unit of work, which is rolled back
    whenever the guarded operation fails.
    """
    with Session(bind=db.get_bind(), autoflush=False) as limiter_db:
        enforce_rate_limit(db=limiter_db, **kwargs)
        limiter_db.commit()


def enforce_reservation_rate_limit(actor_id: int, db: Session, *, now: datetime | None = None) -> None:
    _enforce_in_own_transaction(
        db,
        actor=f"user:{actor_id}",
        operation=OPERATION_CREATE_RESERVATION,
        limit=get_rate_limit_max_reservations(),
        window=timedelta(seconds=get_rate_limit_window_seconds()),
        now=now,
    )


def enforce_payment_intent_rate_limit(
    actor_id: int,
    db: Session,
    *,
    now: datetime | None = None,
) -> None:
    _enforce_in_own_transaction(
        db,
        actor=f"user:{actor_id}",
        operation=OPERATION_CREATE_PAYMENT_INTENT,
        limit=get_rate_limit_max_payment_intents(),
        window=timedelta(seconds=get_rate_limit_window_seconds()),
        now=now,
    )


def purge_expired_rate_limits(now: datetime, db: Session, *, keep: timedelta | None = None) -> int:
    horizon = keep or timedelta(seconds=get_rate_limit_window_seconds())
    deleted = (
        db.query(RateLimitCounter)
        .filter(RateLimitCounter.window_start < now - horizon)
        .delete(synchronize_session=False)
    )
    return int(deleted or 0)
