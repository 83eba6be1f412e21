from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from storefront.config import Settings
from storefront.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
TOKEN_KINDS = (ACCESS, REFRESH)


@dataclass(frozen=True)
class TokenConfig:
    """Signing material and lifetimes, fixed for the life of the process."""

    access_secret: str
    refresh_secret: str
    access_ttl: timedelta = timedelta(minutes=15)
    refresh_ttl: timedelta = timedelta(days=1)
    issuer: str = "storefront"
    leeway: timedelta = timedelta(seconds=0)

    def __post_init__(self) -> None:
        if not self.access_secret or not self.refresh_secret:
            raise RuntimeError("token signing secrets must be configured")
        if self.access_secret == self.refresh_secret:
            raise RuntimeError("access and refresh secrets must differ")

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenConfig":
        return cls(
            access_secret=settings.access_token_secret or "",
            refresh_secret=settings.refresh_token_secret or "",
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            issuer=settings.jwt_issuer,
            leeway=timedelta(seconds=settings.jwt_leeway_seconds),
        )


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    issued_at: datetime
    expires_at: datetime
    jti: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCodec:
    """Issues and verifies HS256 access and refresh tokens.

    Access and refresh tokens are signed with different secrets and carry a
    ``token_type`` claim, so one kind never verifies as the other.
    Verification fails closed: every defect yields ``None``.
    """

    def __init__(
        self, config: TokenConfig, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.config = config
        self._clock = clock or _utcnow

    def _secret(self, kind: str) -> bytes:
        if kind == ACCESS:
            return self.config.access_secret.encode()
        if kind == REFRESH:
            return self.config.refresh_secret.encode()
        raise ValueError(f"unknown token kind: {kind}")

    def _ttl(self, kind: str) -> timedelta:
        return self.config.access_ttl if kind == ACCESS else self.config.refresh_ttl

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, kind: str) -> str:
        digest = hmac.new(self._secret(kind), signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode(self, payload: dict[str, Any], kind: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def _issue(self, user_id: str, kind: str) -> str:
        now = self._clock()
        payload = {
            "iss": self.config.issuer,
            "sub": user_id,
            "token_type": kind,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self._ttl(kind)).timestamp()),
        }
        return self._encode(payload, kind)

    def issue_access_token(self, user_id: str) -> str:
        return self._issue(user_id, ACCESS)

    def issue_refresh_token(self, user_id: str) -> str:
        return self._issue(user_id, REFRESH)

    def verify(self, token: Optional[str], kind: str) -> Optional[TokenClaims]:
        if kind not in TOKEN_KINDS:
            raise ValueError(f"unknown token kind: {kind}")
        if not token or not isinstance(token, str) or not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Only HS256 is accepted; rejects alg=none and algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed", kind=kind)
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", kind=kind)
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", kind)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", kind=kind, error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.config.issuer:
            return None
        if payload.get("token_type") != kind:
            return None
        subject = payload.get("sub")
        jti = payload.get("jti")
        if not isinstance(subject, str) or not subject or not isinstance(jti, str):
            return None
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            return None
        now_ts = self._clock().timestamp()
        if exp_ts <= now_ts - self.config.leeway.total_seconds():
            return None
        return TokenClaims(
            user_id=subject,
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            jti=jti,
        )
