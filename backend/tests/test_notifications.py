import sys
import unittest
from pathlib import Path
from unittest import mock

from sqlalchemy.orm import Session

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from marketplace.services import notifications_s
from marketplace.services.notifications_s import (
    EmailNotificationSender,
    discard_pending_notifications,
    dispatch_pending_notifications,
    notify,
    queue_notification,
    render_notification,
)

DATA = {
    "reservation_id": 4,
    "offering": "Hall",
    "date": "2030-01-15",
    "slot": "09:00-12:00",
    "status": "pending",
    "grand_total": 11800,
    "currency": "ARS",
}


class NotificationTests(unittest.TestCase):
    def test_render_includes_reservation_fields(self) -> None:
        subject, body = render_notification("reservation_requested", DATA)

        self.assertIn("payment pending", subject)
        self.assertIn("reservation id: 4", body)
        self.assertIn("grand total: 11800", body)

    def test_sender_failure_is_swallowed_and_logged(self) -> None:
        sender = mock.Mock()
        sender.send.side_effect = OSError("connection refused")

        with self.assertLogs("marketplace.services.notifications_s", level="ERROR") as logs:
            delivered = notify("buyer@example.com", "reservation_expired", DATA, sender=sender)

        self.assertFalse(delivered)
        self.assertIn("event=notification_failed", logs.output[0])

    def test_without_credentials_message_is_only_logged(self) -> None:
        sender = EmailNotificationSender(settings={"host": "smtp.example", "port": 587, "user": "", "password": ""})

        with mock.patch.object(notifications_s.smtplib, "SMTP") as smtp:
            sender.send("buyer@example.com", "reservation_confirmed", DATA)

        smtp.assert_not_called()

    def test_smtp_delivery_when_configured(self) -> None:
        sender = EmailNotificationSender(
            settings={
                "host": "smtp.example",
                "port": 587,
                "user": "bot@example.com",
                "password": "secret",
                "from_address": "",
            }
        )

        with mock.patch.object(notifications_s.smtplib, "SMTP") as smtp:
            sender.send("buyer@example.com", "reservation_confirmed", DATA)

        server = smtp.return_value.__enter__.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("bot@example.com", "secret")
        self.assertEqual(server.sendmail.call_args.args[1], ["buyer@example.com"])

    def test_queued_notifications_wait_for_dispatch(self) -> None:
        db = Session()
        self.addCleanup(db.close)
        sender = mock.Mock()

        queue_notification(db, "vendor@example.com", "reservation_requested", DATA, sender=sender)
        queue_notification(db, "buyer@example.com", "reservation_confirmed", DATA, sender=sender)
        sender.send.assert_not_called()

        self.assertEqual(dispatch_pending_notifications(db), 2)
        self.assertEqual(
            [call.args[:2] for call in sender.send.call_args_list],
            [
                ("vendor@example.com", "reservation_requested"),
                ("buyer@example.com", "reservation_confirmed"),
            ],
        )
        self.assertEqual(dispatch_pending_notifications(db), 0)

    def test_discarded_notifications_are_never_sent(self) -> None:
        db = Session()
        self.addCleanup(db.close)
        sender = mock.Mock()
        queue_notification(db, "buyer@example.com", "reservation_expired", DATA, sender=sender)

        self.assertEqual(discard_pending_notifications(db), 1)
        self.assertEqual(dispatch_pending_notifications(db), 0)
        sender.send.assert_not_called()


if __name__ == "__main__":
    unittest.main()
