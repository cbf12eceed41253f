import unittest
from datetime import date, datetime, timedelta
from unittest import mock

from sqlalchemy import event
from sqlalchemy.dialects import postgresql

from sqlite_support import (
    TEST_ENV,
    build_session_factory,
    build_sqlite_engine,
    seed_requester,
    seed_slot_offering,
    seed_vendor,
    slot_ids,
    variant_id,
)

from marketplace.db.models import Base, PaymentIntent, Reservation
from marketplace.services.mercadopago_client import GatewayOrder
from marketplace.services.mercadopago_client import PaymentProviderUnavailableError
from marketplace.services.notifications_s import dispatch_pending_notifications
from marketplace.services.principals import Principal
from marketplace.services.reservation_errors import (
    AlreadyCancelledError,
    AlreadySettledError,
    GatewayUnavailableError,
    NotFoundError,
    SlotUnavailableError,
    VerificationFailedError,
)
from marketplace.services.reservations_s import (
    build_create_reservation_command,
    create_reservation,
    expire_stale_reservations,
    mark_reservation_status,
)
from marketplace.services.settlement_s import (
    compute_payment_signature,
    create_payment_intent,
    list_payment_intents_for_reservation,
    verify_payment,
)

NOW = datetime(2030, 1, 10, 12, 0)
RESERVED_DATE = date(2030, 1, 15)
SECRET = TEST_ENV["PAYMENT_SIGNATURE_SECRET"]


class SettlementTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.engine = build_sqlite_engine()
        cls.TestSession = build_session_factory(cls.engine)

    @classmethod
    def tearDownClass(cls) -> None:
        cls.engine.dispose()

    def setUp(self) -> None:
        env_patch = mock.patch.dict("os.environ", TEST_ENV)
        env_patch.start()
        self.addCleanup(env_patch.stop)
        Base.metadata.drop_all(bind=self.engine)
        Base.metadata.create_all(bind=self.engine)
        self.session = self.TestSession()
        self.addCleanup(self.session.close)
        self.notifier = mock.Mock()
        self.gateway = mock.Mock()
        self._orders = 0
        self.gateway.create_order.side_effect = self._fake_order

        self.vendor = seed_vendor(self.session)
        self.requester = seed_requester(self.session)
        self.other_requester = seed_requester(self.session, email="other@example.com")
        self.hall = seed_slot_offering(self.session, self.vendor)
        self.session.commit()

    def _fake_order(self, amount_minor_units, currency, receipt_id):
        self._orders += 1
        return GatewayOrder(
            external_ref=f"pref-{self._orders}",
            amount=amount_minor_units,
            currency=currency,
            checkout_url=f"https://checkout.example/{self._orders}",
        )

    def _reserve(self, requester, *, slot_index=0, now=NOW) -> dict:
        command = build_create_reservation_command(
            offering_id=self.hall.id,
            date_value=RESERVED_DATE,
            slot_id=slot_ids(self.hall)[slot_index],
            lines=[{"variant_id": variant_id(self.hall, "Hall"), "quantity": 1}],
            expected_total=10000,
        )
        return create_reservation(
            principal=Principal(user_id=requester.id),
            command=command,
            db=self.session,
            now=now,
            notifier=self.notifier,
        )

    def _intent(self, reservation: dict, requester=None) -> dict:
        return create_payment_intent(
            reservation["id"],
            Principal(user_id=(requester or self.requester).id),
            self.session,
            gateway=self.gateway,
            now=NOW,
        )

    def _verify(self, external_ref: str, payment_id: str = "mp-pay-1", signature: str | None = None) -> dict:
        return verify_payment(
            external_ref,
            payment_id,
            signature or compute_payment_signature(external_ref, payment_id, secret=SECRET),
            self.session,
            now=NOW,
            notifier=self.notifier,
        )

    def test_reserve_pay_verify_and_sweep_scenario(self) -> None:
        first = self._reserve(self.requester)
        self.assertEqual((first["sub_total"], first["tax"], first["grand_total"]), (10000, 1800, 11800))

        with self.assertRaises(SlotUnavailableError):
            self._reserve(self.other_requester)

        intent = self._intent(first)
        self.assertEqual(intent["amount"], 11800)
        self.assertTrue(intent["receipt"].startswith(f"rsv-{first['id']}-"))
        self.gateway.create_order.assert_called_once_with(11800, "ARS", intent["receipt"])

        verified = self._verify(intent["external_ref"])
        self.assertFalse(verified["duplicate"])
        self.assertEqual(verified["reservation"]["status"], "confirmed")
        self.assertEqual(verified["reservation"]["payment_status"], "paid")
        self.assertEqual(verified["payment_intent"]["status"], "verified")

        again = self._verify(intent["external_ref"])
        self.assertTrue(again["duplicate"])
        self.assertEqual(again["reservation"]["status"], "confirmed")

        second = self._reserve(self.other_requester, slot_index=1, now=NOW - timedelta(minutes=31))
        self.assertEqual(expire_stale_reservations(NOW, self.session, notifier=self.notifier), 1)
        self.assertEqual(self.session.get(Reservation, second["id"]).status, "cancelled")
        self.assertEqual(self.session.get(Reservation, first["id"]).status, "confirmed")

        reused = self._reserve(self.requester, slot_index=1)
        self.assertEqual(reused["status"], "pending")

    def test_verification_notifies_vendor(self) -> None:
        reservation = self._reserve(self.requester)
        intent = self._intent(reservation)
        self.session.commit()
        dispatch_pending_notifications(self.session)
        self.notifier.reset_mock()

        self._verify(intent["external_ref"])
        self.notifier.send.assert_not_called()
        self.session.commit()
        dispatch_pending_notifications(self.session)

        recipient, kind, _ = self.notifier.send.call_args.args
        self.assertEqual(recipient, "vendor@example.com")
        self.assertEqual(kind, "reservation_confirmed")

    def test_bad_signature_is_rejected_and_logged(self) -> None:
        reservation = self._reserve(self.requester)
        intent = self._intent(reservation)

        with self.assertLogs("marketplace.services.settlement_s", level="WARNING") as logs:
            with self.assertRaises(VerificationFailedError):
                self._verify(intent["external_ref"], signature="0" * 64)

        self.assertIn("event=payment_signature_failed", logs.output[0])
        stored = self.session.get(Reservation, reservation["id"])
        self.assertEqual((stored.status, stored.payment_status), ("pending", "unpaid"))
        retried = self._verify(intent["external_ref"])
        self.assertEqual(retried["reservation"]["status"], "confirmed")

    def test_verify_locks_reservation_before_intent(self) -> None:
        reservation = self._reserve(self.requester)
        intent = self._intent(reservation)
        self.session.commit()
        locked_tables = []

        def _record_locks(orm_execute_state) -> None:
            if orm_execute_state.is_relationship_load or orm_execute_state.is_column_load:
                return
            sql = str(orm_execute_state.statement.compile(dialect=postgresql.dialect()))
            if "FOR UPDATE" in sql:
                locked_tables.append("payment_intents" if "FROM payment_intents" in sql else "reservations")

        event.listen(self.session, "do_orm_execute", _record_locks)
        self.addCleanup(event.remove, self.session, "do_orm_execute", _record_locks)

        self._verify(intent["external_ref"])

        self.assertEqual(locked_tables, ["reservations", "payment_intents"])

    def test_unknown_external_ref_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self._verify("pref-missing")

    def test_verify_after_cancel_is_already_cancelled(self) -> None:
        reservation = self._reserve(self.requester)
        intent = self._intent(reservation)
        mark_reservation_status(
            reservation_id=reservation["id"],
            new_status="cancelled",
            principal=Principal(user_id=self.vendor.id, role="vendor"),
            db=self.session,
            now=NOW,
            notifier=self.notifier,
        )

        with self.assertRaises(AlreadyCancelledError):
            self._verify(intent["external_ref"])
        self.assertEqual(self.session.get(Reservation, reservation["id"]).payment_status, "unpaid")

    def test_intent_creation_is_idempotent(self) -> None:
        reservation = self._reserve(self.requester)

        first = self._intent(reservation)
        second = self._intent(reservation)

        self.assertEqual(first["id"], second["id"])
        self.assertEqual(self.gateway.create_order.call_count, 1)

    def test_gateway_failure_persists_nothing(self) -> None:
        reservation = self._reserve(self.requester)
        self.gateway.create_order.side_effect = PaymentProviderUnavailableError("down")

        with self.assertRaises(GatewayUnavailableError):
            self._intent(reservation)

        self.assertEqual(self.session.query(PaymentIntent).count(), 0)
        self.assertEqual(self.session.get(Reservation, reservation["id"]).status, "pending")

    def test_intent_for_someone_elses_reservation_is_not_found(self) -> None:
        reservation = self._reserve(self.requester)

        with self.assertRaises(NotFoundError):
            self._intent(reservation, requester=self.other_requester)

    def test_intent_for_paid_reservation_is_already_settled(self) -> None:
        reservation = self._reserve(self.requester)
        intent = self._intent(reservation)
        self._verify(intent["external_ref"])

        with self.assertRaises(AlreadySettledError):
            self._intent(reservation)

    def test_intent_for_cancelled_reservation_is_already_cancelled(self) -> None:
        reservation = self._reserve(self.requester)
        expire_stale_reservations(NOW + timedelta(minutes=31), self.session, notifier=self.notifier)

        with self.assertRaises(AlreadyCancelledError):
            self._intent(reservation)

    def test_list_intents_is_visible_to_vendor(self) -> None:
        reservation = self._reserve(self.requester)
        self._intent(reservation)

        intents = list_payment_intents_for_reservation(
            reservation["id"],
            Principal(user_id=self.vendor.id, role="vendor"),
            self.session,
        )

        self.assertEqual(len(intents), 1)
        self.assertEqual(intents[0]["checkout_url"], "https://checkout.example/1")


if __name__ == "__main__":
    unittest.main()
