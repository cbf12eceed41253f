from pydantic import BaseModel, ConfigDict, Field


class VerifyPaymentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    external_ref: str = Field(min_length=1, max_length=255)
    external_payment_id: str = Field(min_length=1, max_length=255)
    signature: str = Field(min_length=1, max_length=128)
