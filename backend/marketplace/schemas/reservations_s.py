import datetime as dt
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ReservationLineRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    variant_id: int = Field(gt=0)
    quantity: int


class CreateReservationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    offering_id: int = Field(gt=0)
    date: dt.datetime | dt.date
    slot_id: int | None = Field(default=None, gt=0)
    lines: list[ReservationLineRequest] = Field(min_length=1, max_length=50)
    expected_total: int = Field(ge=0)
    message: str | None = Field(default=None, max_length=500)


class UpdateReservationStatusRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    status: Literal["confirmed", "completed", "cancelled"]


class ExpireReservationsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    expired_count: int
