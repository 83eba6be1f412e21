from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

RAW_TOKEN_BYTES = 32


@dataclass(frozen=True)
class EphemeralToken:
    raw_token: str
    token_hash: str
    expires_at: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EphemeralTokenGenerator:
    """Single-use tokens for email verification and password reset.

    Only ``token_hash`` is persisted; ``raw_token`` goes out once through the
    notification sink.
    """

    def __init__(
        self, ttl: timedelta, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        if ttl <= timedelta(0):
            raise ValueError("ephemeral token ttl must be positive")
        self.ttl = ttl
        self._clock = clock or _utcnow

    @staticmethod
    def hash_token(raw_token: str) -> str:
        return hashlib.sha256(raw_token.encode()).hexdigest()

    def generate(self) -> EphemeralToken:
        raw = secrets.token_hex(RAW_TOKEN_BYTES)
        return EphemeralToken(
            raw_token=raw,
            token_hash=self.hash_token(raw),
            expires_at=self._clock() + self.ttl,
        )
