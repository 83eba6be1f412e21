from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

ROLES = ("user", "admin")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    """Identity and credential state for one account.

    ``password_hash``, ``refresh_token`` and the ephemeral token hashes stay
    inside the service layer; use :meth:`to_public` or :meth:`to_profile`
    when building responses.
    """

    id: str
    username: str
    email: str
    password_hash: str
    role: str = "user"
    is_verified: bool = False
    is_active: bool = True
    refresh_token: Optional[str] = None
    email_verification_token_hash: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    password_reset_token_hash: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def set_verification_token(
        self, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> None:
        self.email_verification_token_hash = token_hash
        self.email_verification_expires_at = expires_at

    def clear_verification_token(self) -> None:
        self.set_verification_token(None, None)

    def set_reset_token(
        self, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> None:
        self.password_reset_token_hash = token_hash
        self.password_reset_expires_at = expires_at

    def clear_reset_token(self) -> None:
        self.set_reset_token(None, None)

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "role": self.role,
            "is_active": self.is_active,
            "is_verified": self.is_verified,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_profile(self) -> Dict[str, Any]:
        return {**self.to_public(), "email": self.email}

    def to_login(self) -> Dict[str, Any]:
        return {"id": self.id, "username": self.username, "role": self.role}
