from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging
import time
from typing import Protocol

import mercadopago

from marketplace.db.config import (
    get_mercadopago_access_token,
    get_mercadopago_notification_url,
    get_mercadopago_timeout_seconds,
)

MAX_RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY_SECONDS = 0.2
MINOR_UNITS_PER_MAJOR = 100

logger = logging.getLogger(__name__)


class PaymentProviderError(Exception):
    """Any failure talking to the payment provider."""


class PaymentProviderTimeoutError(PaymentProviderError):
    pass


class PaymentProviderValidationError(PaymentProviderError):
    """The provider refused the order as sent. Retrying will not help."""


class PaymentProviderAuthError(PaymentProviderError):
    pass


class PaymentProviderUnavailableError(PaymentProviderError):
    pass


@dataclass(frozen=True)
class GatewayOrder:
    external_ref: str
    amount: int
    currency: str
    checkout_url: str | None = None


class PaymentGateway(Protocol):
    def create_order(self, amount_minor_units: int, currency: str, receipt_id: str) -> GatewayOrder:
        ...


def _get_sdk():
    return mercadopago.SDK(get_mercadopago_access_token())


def _handle_response_status(status: int, *, operation: str) -> None:
    if status in {400, 404, 422}:
        raise PaymentProviderValidationError(f"mercadopago {operation} rejected")
    if status in {401, 403}:
        raise PaymentProviderAuthError("mercadopago credentials rejected")
    if status >= 400:
        raise PaymentProviderError(f"mercadopago {operation} failed")


def _to_major_units(amount_minor_units: int) -> float:
    return float(Decimal(int(amount_minor_units)) / MINOR_UNITS_PER_MAJOR)


def build_preference_payload(amount_minor_units: int, currency: str, receipt_id: str) -> dict:
    return {
        "items": [
            {
                "id": receipt_id,
                "title": f"Reservation {receipt_id}",
                "quantity": 1,
                "currency_id": currency,
                "unit_price": _to_major_units(amount_minor_units),
            }
        ],
        "external_reference": receipt_id,
        "notification_url": get_mercadopago_notification_url(),
    }


def create_checkout_preference(
    preference_payload: dict,
    *,
    idempotency_key: str | None = None,
    sdk=None,
) -> dict:
    sdk = sdk or _get_sdk()
    options = {"timeout": get_mercadopago_timeout_seconds()}
    if idempotency_key:
        options["headers"] = {"x-idempotency-key": idempotency_key}
    for attempt in range(1, MAX_RETRY_ATTEMPTS + 1):
        try:
            response = sdk.preference().create(preference_payload, options)
        except TimeoutError as exc:
            if attempt == MAX_RETRY_ATTEMPTS:
                raise PaymentProviderTimeoutError("mercadopago request timed out") from exc
            time.sleep(RETRY_BASE_DELAY_SECONDS * attempt)
            continue
        except Exception as exc:
            if attempt == MAX_RETRY_ATTEMPTS:
                raise PaymentProviderUnavailableError("mercadopago request failed") from exc
            time.sleep(RETRY_BASE_DELAY_SECONDS * attempt)
            continue

        status = int(response.get("status", 0))
        data = response.get("response")
        if status >= 500:
            if attempt == MAX_RETRY_ATTEMPTS:
                raise PaymentProviderUnavailableError("mercadopago unavailable")
            time.sleep(RETRY_BASE_DELAY_SECONDS * attempt)
            continue
        _handle_response_status(status, operation="preference creation")
        if not isinstance(data, dict):
            if attempt == MAX_RETRY_ATTEMPTS:
                raise PaymentProviderUnavailableError("mercadopago invalid response payload")
            time.sleep(RETRY_BASE_DELAY_SECONDS * attempt)
            continue

        if not data.get("id"):
            raise PaymentProviderValidationError("mercadopago preference id missing")
        if not data.get("init_point") and not data.get("sandbox_init_point"):
            raise PaymentProviderValidationError("mercadopago checkout url missing")
        return data

    raise PaymentProviderUnavailableError("mercadopago preference creation failed")


class MercadoPagoGateway:
    """Checkout preferences as payment orders; the preference id is the external ref."""

    def __init__(self, sdk=None) -> None:
        self._sdk = sdk

    def create_order(self, amount_minor_units: int, currency: str, receipt_id: str) -> GatewayOrder:
        if int(amount_minor_units) <= 0:
            raise PaymentProviderValidationError("order amount must be greater than 0")
        data = create_checkout_preference(
            build_preference_payload(amount_minor_units, currency, receipt_id),
            idempotency_key=receipt_id,
            sdk=self._sdk,
        )
        logger.info(
            "event=gateway_order_created provider=mercadopago receipt=%s external_ref=%s",
            receipt_id,
            data["id"],
        )
        return GatewayOrder(
            external_ref=str(data["id"]),
            amount=int(amount_minor_units),
            currency=currency,
            checkout_url=data.get("init_point") or data.get("sandbox_init_point"),
        )


_default_gateway: PaymentGateway | None = None


def get_payment_gateway() -> PaymentGateway:
    global _default_gateway
    if _default_gateway is None:
        _default_gateway = MercadoPagoGateway()
    return _default_gateway
