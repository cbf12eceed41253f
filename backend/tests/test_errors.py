import sys
import unittest
from pathlib import Path
from unittest import mock

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from marketplace.errors import raise_http_error_from_exception
from marketplace.services.reservation_errors import (
    AlreadyCancelledError,
    ForbiddenError,
    GatewayUnavailableError,
    PriceMismatchError,
    RateLimitedError,
    SlotUnavailableError,
    VerificationFailedError,
)


class HttpErrorMappingTests(unittest.TestCase):
    def _http_error(self, exc: Exception, db=None) -> HTTPException:
        with self.assertRaises(HTTPException) as ctx:
            raise_http_error_from_exception(exc, db=db)
        return ctx.exception

    def test_reservation_errors_keep_kind_and_status(self) -> None:
        cases = [
            (PriceMismatchError("mismatch", expected_total=1, sub_total=2), 400, "price_mismatch"),
            (ForbiddenError("no"), 403, "forbidden"),
            (SlotUnavailableError("taken"), 409, "slot_unavailable"),
            (AlreadyCancelledError("gone"), 409, "already_cancelled"),
            (VerificationFailedError("bad signature"), 400, "verification_failed"),
            (GatewayUnavailableError("down"), 503, "gateway_unavailable"),
            (RateLimitedError("slow down", retry_after_seconds=5), 429, "rate_limited"),
        ]
        for exc, status_code, kind in cases:
            with self.subTest(kind=kind):
                error = self._http_error(exc)
                self.assertEqual(error.status_code, status_code)
                self.assertEqual(error.detail["kind"], kind)
                self.assertEqual(error.detail["message"], exc.message)

    def test_details_are_exposed(self) -> None:
        error = self._http_error(PriceMismatchError("mismatch", expected_total=1, sub_total=2))

        self.assertEqual(error.detail["sub_total"], 2)

    def test_reservation_error_rolls_back_session(self) -> None:
        db = mock.Mock()

        self._http_error(SlotUnavailableError("taken"), db=db)

        db.rollback.assert_called_once()

    def test_generic_lookup_and_value_errors(self) -> None:
        self.assertEqual(self._http_error(LookupError("missing")).status_code, 404)
        self.assertEqual(self._http_error(ValueError("bad")).status_code, 400)

    def test_integrity_error_is_conflict(self) -> None:
        db = mock.Mock()
        exc = IntegrityError("INSERT", {}, Exception("unique"))

        error = self._http_error(exc, db=db)

        self.assertEqual(error.status_code, 409)
        db.rollback.assert_called_once()

    def test_unknown_errors_propagate(self) -> None:
        with self.assertRaises(RuntimeError):
            raise_http_error_from_exception(RuntimeError("boom"))


if __name__ == "__main__":
    unittest.main()
