import sys
import unittest
from decimal import Decimal
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from marketplace.services.catalog_s import VariantSnapshot
from marketplace.services.pricing_s import (
    RequestedLine,
    compute_tax,
    compute_totals,
    price_reservation_lines,
)
from marketplace.services.reservation_errors import (
    InvalidQuantityError,
    NotFoundError,
    PriceMismatchError,
    ValidationError,
)

TAX = Decimal("0.18")
VARIANTS = (
    VariantSnapshot(id=1, name="Hall", unit="event", unit_price=10000),
    VariantSnapshot(id=2, name="Chairs", unit="chair", unit_price=150, min_quantity=10, max_quantity=200),
    VariantSnapshot(id=3, name="Retired", unit="unit", unit_price=99, is_active=False),
)


class PricingTests(unittest.TestCase):
    def test_single_line_totals_with_tax(self) -> None:
        priced = price_reservation_lines(
            VARIANTS,
            [RequestedLine(variant_id=1, quantity=1)],
            tax_rate=TAX,
            expected_total=10000,
        )

        self.assertEqual(priced.sub_total, 10000)
        self.assertEqual(priced.tax, 1800)
        self.assertEqual(priced.grand_total, 11800)
        self.assertEqual(priced.lines[0].name, "Hall")

    def test_multi_line_sub_total_is_sum_of_lines(self) -> None:
        priced = price_reservation_lines(
            VARIANTS,
            [RequestedLine(variant_id=1, quantity=1), RequestedLine(variant_id=2, quantity=20)],
            tax_rate=TAX,
            expected_total=13000,
        )

        self.assertEqual(priced.sub_total, sum(line.line_total for line in priced.lines))
        self.assertEqual(priced.grand_total, priced.sub_total + priced.tax)

    def test_repeated_variant_lines_are_merged(self) -> None:
        priced = price_reservation_lines(
            VARIANTS,
            [RequestedLine(variant_id=2, quantity=6), RequestedLine(variant_id=2, quantity=6)],
            tax_rate=TAX,
            expected_total=1800,
        )

        self.assertEqual(len(priced.lines), 1)
        self.assertEqual(priced.lines[0].quantity, 12)

    def test_expected_total_mismatch_is_rejected(self) -> None:
        with self.assertRaises(PriceMismatchError) as ctx:
            price_reservation_lines(
                VARIANTS,
                [RequestedLine(variant_id=1, quantity=1)],
                tax_rate=TAX,
                expected_total=9000,
            )

        self.assertEqual(ctx.exception.details["sub_total"], 10000)
        self.assertEqual(ctx.exception.kind, "price_mismatch")

    def test_zero_quantity_is_rejected(self) -> None:
        with self.assertRaises(InvalidQuantityError):
            price_reservation_lines(
                VARIANTS,
                [RequestedLine(variant_id=1, quantity=0)],
                tax_rate=TAX,
                expected_total=0,
            )

    def test_quantity_bounds_are_enforced(self) -> None:
        with self.assertRaises(InvalidQuantityError):
            price_reservation_lines(
                VARIANTS,
                [RequestedLine(variant_id=2, quantity=5)],
                tax_rate=TAX,
                expected_total=750,
            )
        with self.assertRaises(InvalidQuantityError):
            price_reservation_lines(
                VARIANTS,
                [RequestedLine(variant_id=2, quantity=201)],
                tax_rate=TAX,
                expected_total=30150,
            )

    def test_unknown_or_inactive_variant_is_not_found(self) -> None:
        for variant_id in (3, 42):
            with self.subTest(variant_id=variant_id):
                with self.assertRaises(NotFoundError):
                    price_reservation_lines(
                        VARIANTS,
                        [RequestedLine(variant_id=variant_id, quantity=1)],
                        tax_rate=TAX,
                        expected_total=None,
                    )

    def test_empty_request_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            price_reservation_lines(VARIANTS, [], tax_rate=TAX, expected_total=0)

    def test_tax_rounds_half_up(self) -> None:
        self.assertEqual(compute_tax(25, Decimal("0.1")), 3)
        self.assertEqual(compute_tax(24, Decimal("0.1")), 2)
        self.assertEqual(compute_tax(0, TAX), 0)

    def test_compute_totals_is_consistent(self) -> None:
        sub_total, tax, grand_total = compute_totals([333, 333, 334], TAX)

        self.assertEqual(sub_total, 1000)
        self.assertEqual(tax, 180)
        self.assertEqual(grand_total, 1180)


if __name__ == "__main__":
    unittest.main()
