from __future__ import annotations

from dataclasses import dataclass

from flask import g
from flask_login import current_user

from tagihan.core.models import User


@dataclass(frozen=True)
class AuthContext:
    """Who is acting. Built once per request and passed into every core call."""

    id: int
    display_name: str
    role: str
    unit_name: str | None = None

    @classmethod
    def from_user(cls, user: User) -> "AuthContext":
        return cls(
            id=user.id,
            display_name=user.full_name,
            role=(user.role or "").lower(),
            unit_name=user.unit_name,
        )

    def has_role(self, *roles: str) -> bool:
        return self.role == "admin" or self.role in {r.lower() for r in roles}


def load_auth_context() -> None:
    g.auth = None
    if not current_user.is_authenticated:
        return
    g.auth = AuthContext.from_user(current_user)
