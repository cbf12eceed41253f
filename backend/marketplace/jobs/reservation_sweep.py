"""Periodic release of reservations whose payment never arrived."""

import logging

from marketplace.db.models import utc_now
from marketplace.db.session import SessionLocal
from marketplace.services.anti_abuse_s import purge_expired_rate_limits
from marketplace.services.notifications_s import (
    discard_pending_notifications,
    dispatch_pending_notifications,
)
from marketplace.services.reservations_s import expire_stale_reservations

logger = logging.getLogger(__name__)


def run_reservation_sweep_job(session_factory=None) -> None:
    db = (session_factory or SessionLocal)()
    try:
        now = utc_now()
        expired_count = expire_stale_reservations(now, db)
        purged_count = purge_expired_rate_limits(now, db)
        db.commit()
    except Exception:
        db.rollback()
        discard_pending_notifications(db)
        logger.exception("event=reservation_sweep_failed")
    else:
        # sent only once the sweep's row locks are released
        dispatch_pending_notifications(db)
        if expired_count or purged_count:
            logger.info(
                "event=reservation_sweep_done expired=%s rate_limits_purged=%s",
                expired_count,
                purged_count,
            )
    finally:
        db.close()
