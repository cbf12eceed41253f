from datetime import datetime, timedelta, timezone
import os
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt

from marketplace.services.principals import ALLOWED_ROLES, ROLE_USER, Principal

DEFAULT_ALGORITHM = "HS256"
DEFAULT_JWT_ISSUER = "reservations-api"
DEFAULT_ACCESS_TOKEN_EXPIRE_MINUTES = "120"


def get_jwt_settings() -> dict:
    secret_key = os.getenv("JWT_SECRET", "").strip()
    algorithm = os.getenv("JWT_ALGORITHM", DEFAULT_ALGORITHM).strip()
    issuer = os.getenv("JWT_ISSUER", DEFAULT_JWT_ISSUER).strip()
    raw_access_minutes = os.getenv(
        "ACCESS_TOKEN_EXPIRE_MINUTES",
        DEFAULT_ACCESS_TOKEN_EXPIRE_MINUTES,
    ).strip()

    if not secret_key:
        raise RuntimeError("JWT_SECRET is required")
    if not algorithm:
        raise RuntimeError("JWT_ALGORITHM is required")
    if not issuer:
        raise RuntimeError("JWT_ISSUER is required")

    access_minutes = int(raw_access_minutes)
    if access_minutes <= 0:
        raise RuntimeError("ACCESS_TOKEN_EXPIRE_MINUTES must be greater than 0")

    return {
        "secret_key": secret_key,
        "algorithm": algorithm,
        "issuer": issuer,
        "access_token_expire_minutes": access_minutes,
    }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def create_access_token(
    user_id: int,
    role: str = ROLE_USER,
    *,
    expires_delta: Optional[timedelta] = None,
    now: datetime | None = None,
) -> str:
    if role not in ALLOWED_ROLES:
        raise ValueError(f"unknown role {role!r}")
    settings = get_jwt_settings()
    issued_at = now or _utc_now()
    expire_at = issued_at + (
        expires_delta
        if expires_delta is not None
        else timedelta(minutes=settings["access_token_expire_minutes"])
    )
    claims = {
        "sub": str(user_id),
        "type": "access",
        "role": role,
        "iss": settings["issuer"],
        "iat": int(issued_at.timestamp()),
        "exp": int(expire_at.timestamp()),
    }
    return jwt.encode(claims, settings["secret_key"], algorithm=settings["algorithm"])


def decode_access_token(token: str) -> dict:
    settings = get_jwt_settings()
    try:
        payload = jwt.decode(
            token,
            settings["secret_key"],
            algorithms=[settings["algorithm"]],
            issuer=settings["issuer"],
            options={"verify_aud": False},
        )
    except ExpiredSignatureError as exc:
        raise ValueError("Token expired") from exc
    except JWTError as exc:
        raise ValueError("Invalid token") from exc

    if str(payload.get("type", "")).strip().lower() != "access":
        raise ValueError("Invalid token type")
    if not str(payload.get("sub", "")).strip():
        raise ValueError("Token payload is missing subject")
    return payload


def parse_sub_to_user_id(sub: object) -> int:
    raw = str(sub).strip() if sub is not None else ""
    if not raw:
        raise ValueError("Invalid token subject")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError("Invalid token subject") from exc


def principal_from_claims(claims: dict) -> Principal:
    role = str(claims.get("role") or ROLE_USER).strip().lower()
    if role not in ALLOWED_ROLES:
        raise ValueError("Invalid token role")
    return Principal(user_id=parse_sub_to_user_id(claims.get("sub")), role=role)
