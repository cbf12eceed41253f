"""
Outbound reservation notifications.

Services queue notifications on the session with ``queue_notification``;
the unit-of-work owner calls ``dispatch_pending_notifications`` after commit
and ``discard_pending_notifications`` after rollback. Delivery is
fire-and-forget: ``notify`` never raises, so a mail outage can not undo a
committed reservation transition. SMTP is used when SMTP_USER and
SMTP_PASSWORD are set; otherwise messages are only logged.
"""
from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Any, Protocol

from sqlalchemy.orm import Session

from marketplace.db.config import get_smtp_settings

logger = logging.getLogger(__name__)

SUBJECTS = {
    "reservation_requested": "New reservation request - payment pending",
    "reservation_confirmed": "Reservation confirmed - payment received",
    "reservation_status_updated": "Reservation status update",
    "reservation_expired": "Reservation released - payment not received",
}


class NotificationSender(Protocol):
    def send(self, recipient: str, template_kind: str, data: dict[str, Any]) -> None:
        ...


def render_notification(template_kind: str, data: dict[str, Any]) -> tuple[str, str]:
    subject = SUBJECTS.get(template_kind, "Reservation update")
    lines = [subject, ""]
    for key in ("reservation_id", "offering", "date", "slot", "status", "grand_total", "currency"):
        value = data.get(key)
        if value is None:
            continue
        lines.append(f"{key.replace('_', ' ')}: {value}")
    return subject, "\n".join(lines)


class EmailNotificationSender:
    def __init__(self, settings: dict | None = None) -> None:
        self.settings = settings or get_smtp_settings()

    def _from_address(self) -> str:
        if self.settings.get("from_address"):
            return self.settings["from_address"]
        user = self.settings.get("user") or ""
        if user:
            return f"Reservations <{user}>"
        return "Reservations <noreply@localhost>"

    def send(self, recipient: str, template_kind: str, data: dict[str, Any]) -> None:
        recipient = (recipient or "").strip()
        if not recipient:
            logger.debug("event=notification_skipped reason=missing_recipient kind=%s", template_kind)
            return
        subject, body = render_notification(template_kind, data)
        user = self.settings.get("user") or ""
        password = self.settings.get("password") or ""
        if not user or not password:
            logger.info(
                "event=notification_logged kind=%s recipient=%s subject=%s",
                template_kind,
                recipient,
                subject,
            )
            return

        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = self._from_address()
        msg["To"] = recipient
        with smtplib.SMTP(self.settings["host"], self.settings["port"], timeout=10) as server:
            server.starttls()
            server.login(user, password)
            server.sendmail(user, [recipient], msg.as_string())
        logger.info("event=notification_sent kind=%s recipient=%s", template_kind, recipient)


_default_sender: NotificationSender | None = None


def get_notification_sender() -> NotificationSender:
    global _default_sender
    if _default_sender is None:
        _default_sender = EmailNotificationSender()
    return _default_sender


def notify(
    recipient: str | None,
    template_kind: str,
    data: dict[str, Any],
    *,
    sender: NotificationSender | None = None,
) -> bool:
    try:
        (sender or get_notification_sender()).send(recipient or "", template_kind, data)
    except Exception:
        logger.exception(
            "event=notification_failed kind=%s recipient=%s reservation_id=%s",
            template_kind,
            recipient,
            data.get("reservation_id"),
        )
        return False
    return True


PENDING_NOTIFICATIONS_KEY = "pending_notifications"


@dataclass(frozen=True)
class PendingNotification:
    recipient: str | None
    template_kind: str
    data: dict[str, Any]
    sender: NotificationSender | None = None


def queue_notification(
    db: Session,
    recipient: str | None,
    template_kind: str,
    data: dict[str, Any],
    *,
    sender: NotificationSender | None = None,
) -> None:
    db.info.setdefault(PENDING_NOTIFICATIONS_KEY, []).append(
        PendingNotification(recipient, template_kind, dict(data), sender)
    )


def discard_pending_notifications(db: Session) -> int:
    pending = db.info.pop(PENDING_NOTIFICATIONS_KEY, [])
    if pending:
        logger.debug("event=notifications_discarded count=%s", len(pending))
    return len(pending)


def dispatch_pending_notifications(db: Session) -> int:
    """Send everything queued on ``db``. Call only once its transaction has committed."""
    pending = db.info.pop(PENDING_NOTIFICATIONS_KEY, [])
    sent = 0
    for item in pending:
        if notify(item.recipient, item.template_kind, item.data, sender=item.sender):
            sent += 1
    return sent
