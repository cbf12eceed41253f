"""Line-item pricing for reservation requests.

Prices are integers in the smallest currency unit. Tax is the only place
where rounding happens (half-up to the unit); totals are derived from the
line items and never taken from the caller.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from marketplace.services.catalog_s import VariantSnapshot
from marketplace.services.reservation_errors import (
    InvalidQuantityError,
    NotFoundError,
    PriceMismatchError,
    ValidationError,
)


@dataclass(frozen=True)
class RequestedLine:
    variant_id: int
    quantity: int


@dataclass(frozen=True)
class PricedLine:
    variant_id: int
    name: str
    unit: str
    quantity: int
    unit_price: int

    @property
    def line_total(self) -> int:
        return self.quantity * self.unit_price


@dataclass(frozen=True)
class PricedReservation:
    lines: tuple[PricedLine, ...]
    sub_total: int
    tax: int
    grand_total: int


def compute_tax(sub_total: int, tax_rate: Decimal) -> int:
    amount = Decimal(sub_total) * Decimal(tax_rate)
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_totals(line_totals: Iterable[int], tax_rate: Decimal) -> tuple[int, int, int]:
    sub_total = sum(int(total) for total in line_totals)
    tax = compute_tax(sub_total, tax_rate)
    return sub_total, tax, sub_total + tax


def _merge_lines(lines: Sequence[RequestedLine]) -> list[RequestedLine]:
    quantities: dict[int, int] = {}
    for line in lines:
        if int(line.quantity) <= 0:
            raise InvalidQuantityError(
                "quantity must be greater than 0",
                variant_id=line.variant_id,
            )
        variant_id = int(line.variant_id)
        quantities[variant_id] = quantities.get(variant_id, 0) + int(line.quantity)
    return [
        RequestedLine(variant_id=variant_id, quantity=quantity)
        for variant_id, quantity in quantities.items()
    ]


def _check_bounds(variant: VariantSnapshot, quantity: int) -> None:
    if quantity < variant.min_quantity:
        raise InvalidQuantityError(
            f"quantity for {variant.name} must be at least {variant.min_quantity}",
            variant_id=variant.id,
        )
    if variant.max_quantity is not None and quantity > variant.max_quantity:
        raise InvalidQuantityError(
            f"quantity for {variant.name} must be at most {variant.max_quantity}",
            variant_id=variant.id,
        )


def price_reservation_lines(
    variants: Sequence[VariantSnapshot],
    lines: Sequence[RequestedLine],
    *,
    tax_rate: Decimal,
    expected_total: int | None,
) -> PricedReservation:
    if not lines:
        raise ValidationError("at least one line item is required")

    variants_by_id = {variant.id: variant for variant in variants if variant.is_active}
    priced: list[PricedLine] = []
    for line in _merge_lines(lines):
        variant = variants_by_id.get(line.variant_id)
        if variant is None:
            raise NotFoundError(
                f"variant {line.variant_id} not found",
                variant_id=line.variant_id,
            )
        _check_bounds(variant, line.quantity)
        priced.append(
            PricedLine(
                variant_id=variant.id,
                name=variant.name,
                unit=variant.unit,
                quantity=line.quantity,
                unit_price=variant.unit_price,
            )
        )

    sub_total, tax, grand_total = compute_totals(
        (line.line_total for line in priced),
        tax_rate,
    )
    if expected_total is not None and int(expected_total) != sub_total:
        raise PriceMismatchError(
            "expected_total does not match the current catalog price",
            expected_total=int(expected_total),
            sub_total=sub_total,
        )

    return PricedReservation(
        lines=tuple(priced),
        sub_total=sub_total,
        tax=tax,
        grand_total=grand_total,
    )
