from __future__ import annotations

from dataclasses import dataclass
from datetime import time

from sqlalchemy.orm import Session, joinedload

from marketplace.db.models import Offering, User
from marketplace.services.reservation_errors import NotFoundError, ValidationError

AVAILABILITY_CAPACITY = "capacity"
AVAILABILITY_SLOT = "slot"


@dataclass(frozen=True)
class VariantSnapshot:
    id: int
    name: str
    unit: str
    unit_price: int
    min_quantity: int = 1
    max_quantity: int | None = None
    is_active: bool = True


@dataclass(frozen=True)
class SlotWindow:
    id: int
    start_time: time
    end_time: time
    label: str | None = None

    def describe(self) -> str:
        window = f"{self.start_time:%H:%M}-{self.end_time:%H:%M}"
        if self.label:
            return f"{self.label} ({window})"
        return window


@dataclass(frozen=True)
class CapacityPolicy:
    max_per_day: int


@dataclass(frozen=True)
class SlotPolicy:
    slots: tuple[SlotWindow, ...]

    def find(self, slot_id: int) -> SlotWindow | None:
        for slot in self.slots:
            if slot.id == slot_id:
                return slot
        return None


@dataclass(frozen=True)
class OfferingSnapshot:
    id: int
    vendor_id: int
    title: str
    variants: tuple[VariantSnapshot, ...]
    policy: CapacityPolicy | SlotPolicy


def validate_slot_windows(slots: list[SlotWindow] | tuple[SlotWindow, ...]) -> None:
    ordered = sorted(slots, key=lambda slot: (slot.start_time, slot.end_time))
    for slot in ordered:
        if slot.start_time >= slot.end_time:
            raise ValidationError(
                f"slot {slot.describe()} must start before it ends",
                slot_id=slot.id,
            )
    for previous, current in zip(ordered, ordered[1:]):
        if current.start_time < previous.end_time:
            raise ValidationError(
                f"slot {current.describe()} overlaps {previous.describe()}",
                slot_id=current.id,
            )


def _build_policy(offering: Offering) -> CapacityPolicy | SlotPolicy:
    if offering.availability_mode == AVAILABILITY_SLOT:
        windows = tuple(
            SlotWindow(
                id=int(slot.id),
                start_time=slot.start_time,
                end_time=slot.end_time,
                label=slot.label,
            )
            for slot in sorted(offering.slots, key=lambda s: (s.start_time, s.id))
        )
        if not windows:
            raise ValidationError("slot-based offering has no slots", offering_id=offering.id)
        validate_slot_windows(windows)
        return SlotPolicy(slots=windows)

    if offering.availability_mode == AVAILABILITY_CAPACITY:
        max_per_day = int(offering.max_per_day or 0)
        if max_per_day < 1:
            raise ValidationError(
                "capacity-based offering needs max_per_day of at least 1",
                offering_id=offering.id,
            )
        return CapacityPolicy(max_per_day=max_per_day)

    raise ValidationError(
        f"unsupported availability mode {offering.availability_mode!r}",
        offering_id=offering.id,
    )


def get_offering(offering_id: int, db: Session) -> OfferingSnapshot:
    offering = (
        db.query(Offering)
        .options(joinedload(Offering.variants), joinedload(Offering.slots))
        .filter(Offering.id == offering_id, Offering.is_active.is_(True))
        .first()
    )
    if offering is None:
        raise NotFoundError("offering not found", offering_id=offering_id)

    variants = tuple(
        VariantSnapshot(
            id=int(variant.id),
            name=variant.name,
            unit=variant.unit,
            unit_price=int(variant.unit_price),
            min_quantity=int(variant.min_quantity or 1),
            max_quantity=(
                int(variant.max_quantity) if variant.max_quantity is not None else None
            ),
            is_active=bool(variant.is_active),
        )
        for variant in sorted(offering.variants, key=lambda v: v.id)
    )
    return OfferingSnapshot(
        id=int(offering.id),
        vendor_id=int(offering.vendor_id),
        title=offering.title,
        variants=variants,
        policy=_build_policy(offering),
    )


def get_bookable_vendor(vendor_id: int, db: Session) -> User:
    vendor = db.query(User).filter(User.id == vendor_id).first()
    if (
        vendor is None
        or vendor.role != "vendor"
        or not vendor.is_approved
        or not vendor.is_active
    ):
        raise NotFoundError("vendor not found", vendor_id=vendor_id)
    return vendor
