from __future__ import annotations

from decimal import Decimal, InvalidOperation
import os
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(dotenv_path=ENV_PATH)


def get_database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if database_url and database_url.strip():
        return database_url.strip()
    raise RuntimeError("DATABASE_URL is required")


def _get_positive_int(name: str, default: str) -> int:
    raw_value = os.getenv(name, default).strip()
    try:
        value = int(raw_value)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer") from exc
    if value <= 0:
        raise RuntimeError(f"{name} must be greater than 0")
    return value


def get_reservation_tax_rate() -> Decimal:
    raw_rate = os.getenv("RESERVATION_TAX_RATE", "0.18").strip()
    try:
        rate = Decimal(raw_rate)
    except InvalidOperation as exc:
        raise RuntimeError("RESERVATION_TAX_RATE must be a decimal number") from exc
    if rate < 0 or rate >= 1:
        raise RuntimeError("RESERVATION_TAX_RATE must be between 0 and 1")
    return rate


def get_reservation_currency() -> str:
    currency = os.getenv("RESERVATION_CURRENCY", "ARS").strip().upper()
    if len(currency) != 3 or not currency.isalpha():
        raise RuntimeError("RESERVATION_CURRENCY must be a 3-letter code")
    return currency


def get_reservation_timezone() -> ZoneInfo:
    name = os.getenv("RESERVATION_TIMEZONE", "UTC").strip() or "UTC"
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError as exc:
        raise RuntimeError(f"unknown RESERVATION_TIMEZONE {name!r}") from exc


def get_reservation_ttl_minutes() -> int:
    return _get_positive_int("RESERVATION_TTL_MINUTES", "30")


def get_reservation_sweep_interval_seconds() -> int:
    raw_interval = os.getenv("RESERVATION_SWEEP_INTERVAL_SECONDS", "60").strip()
    interval = int(raw_interval)
    if interval < 0:
        raise RuntimeError("RESERVATION_SWEEP_INTERVAL_SECONDS must be 0 or greater")
    return interval


def get_payment_signature_secret() -> str:
    secret = os.getenv("PAYMENT_SIGNATURE_SECRET", "").strip()
    if secret:
        return secret
    raise RuntimeError("PAYMENT_SIGNATURE_SECRET is required")


def get_mercadopago_access_token() -> str:
    access_token = os.getenv("MERCADOPAGO_ACCESS_TOKEN", "").strip()
    if access_token:
        return access_token
    raise RuntimeError("MERCADOPAGO_ACCESS_TOKEN is required")


def get_mercadopago_timeout_seconds() -> int:
    return _get_positive_int("MERCADOPAGO_TIMEOUT_SECONDS", "10")


def get_mercadopago_notification_url() -> str:
    return os.getenv(
        "MERCADOPAGO_NOTIFICATION_URL",
        "http://localhost:8000/payments/verify",
    ).strip()


def get_smtp_settings() -> dict:
    return {
        "host": os.getenv("SMTP_HOST", "smtp.gmail.com").strip(),
        "port": _get_positive_int("SMTP_PORT", "587"),
        "user": os.getenv("SMTP_USER", "").strip(),
        "password": os.getenv("SMTP_PASSWORD", "").strip(),
        "from_address": os.getenv("NOTIFY_FROM", "").strip(),
    }


def get_rate_limit_window_seconds() -> int:
    return _get_positive_int("RATE_LIMIT_WINDOW_SECONDS", "600")


def get_rate_limit_max_reservations() -> int:
    return _get_positive_int("RATE_LIMIT_MAX_RESERVATIONS", "10")


def get_rate_limit_max_payment_intents() -> int:
    return _get_positive_int("RATE_LIMIT_MAX_PAYMENT_INTENTS", "20")
