from __future__ import annotations

from collections.abc import Generator
import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from marketplace.db.config import get_database_url
from marketplace.services.notifications_s import (
    discard_pending_notifications,
    dispatch_pending_notifications,
)

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)


engine = build_engine(get_database_url())

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_db_transactional() -> Generator[Session, None, None]:
    """Request-scoped unit of work: services flush, this commits.

    Notifications queued during the request go out only after the commit.
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        discard_pending_notifications(db)
        logger.debug("event=transaction_rolled_back")
        raise
    else:
        dispatch_pending_notifications(db)
    finally:
        db.close()
