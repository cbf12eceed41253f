from __future__ import annotations

from dataclasses import dataclass

ROLE_USER = "user"
ROLE_VENDOR = "vendor"
ROLE_ADMIN = "admin"
ALLOWED_ROLES = {ROLE_USER, ROLE_VENDOR, ROLE_ADMIN}


@dataclass(frozen=True)
class Principal:
    """An already-authenticated caller."""

    user_id: int
    role: str = ROLE_USER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def can_act_for(self, user_id: int | None) -> bool:
        return self.is_admin or (user_id is not None and int(user_id) == self.user_id)
