from __future__ import annotations

import asyncio
import math
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from storefront.logging import get_logger
from storefront.service.ephemeral import EphemeralTokenGenerator
from storefront.service.errors import (
    AccountDisabledError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    NotVerifiedError,
    ValidationError,
)
from storefront.service.tokens import ACCESS, REFRESH, TokenCodec
from storefront.storage.errors import ConstraintViolation
from storefront.storage.models import ROLES, User

logger = get_logger(__name__)

ADMIN_UPDATABLE_FIELDS = ("role", "is_active")
MAX_PAGE_SIZE = 100


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        role: str = "user",
        is_verified: bool = False,
        is_active: bool = True,
        email_verification_token_hash: Optional[str] = None,
        email_verification_expires_at: Optional[datetime] = None,
    ) -> User: ...

    def save_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_identifier(self, identifier: str) -> Optional[User]: ...

    def get_user_by_verification_token(
        self, token_hash: str, now: datetime
    ) -> Optional[User]: ...

    def get_user_by_reset_token(self, token_hash: str, now: datetime) -> Optional[User]: ...

    def get_user_by_refresh_token(self, token: str) -> Optional[User]: ...

    def list_users(
        self, *, offset: int = 0, limit: int = 10, sort: str = "newest"
    ) -> Tuple[List[User], int]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def set_refresh_token(self, user_id: str, token: str) -> bool: ...

    def clear_refresh_token(self, user_id: str, expected: Optional[str] = None) -> bool: ...


class Notifier(Protocol):
    def send_verification_email(self, to_email: str, raw_token: str) -> bool: ...

    def send_password_reset_email(self, to_email: str, raw_token: str) -> bool: ...


@dataclass
class AuthContext:
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class LoginResult:
    user: Dict[str, Any]
    access_token: str
    refresh_token: str


@dataclass
class UserPage:
    items: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 10

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 1


class AuthService:
    """Registration, verification, login/refresh/logout and account management.

    Operations that could reveal whether an account exists
    (``resend_verification``, ``forgot_password``) always complete silently.
    """

    def __init__(
        self,
        store: AuthStore,
        codec: TokenCodec,
        notifier: Notifier,
        *,
        verification_tokens: EphemeralTokenGenerator,
        reset_tokens: EphemeralTokenGenerator,
        revoke_session_on_refresh_reuse: bool = False,
        revoke_sessions_on_password_reset: bool = False,
    ) -> None:
        self.store: AuthStore = store
        self.codec = codec
        self.notifier = notifier
        self.verification_tokens = verification_tokens
        self.reset_tokens = reset_tokens
        self.revoke_session_on_refresh_reuse = revoke_session_on_refresh_reuse
        self.revoke_sessions_on_password_reset = revoke_sessions_on_password_reset
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # passwords
    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, stored_hash: Optional[str], password: str) -> bool:
        if stored_hash is None:
            # Equalize work for unknown identifiers
            if self._dummy_hash is None:
                self._dummy_hash = self._pwd_hasher.hash(secrets.token_hex(16))
            stored_hash = self._dummy_hash
            try:
                self._pwd_hasher.verify(stored_hash, password)
            except (InvalidHash, VerifyMismatchError):
                pass
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    async def _dispatch(self, kind: str, send, email: str, raw_token: str) -> None:
        # SMTP is blocking; keep it off the event loop
        delivered = await asyncio.to_thread(send, email, raw_token)
        if not delivered:
            self.logger.warning("notification_dispatch_failed", kind=kind)

    # registration and verification
    async def register(self, email: str, username: str, password: str) -> Dict[str, str]:
        email = email.lower()
        if self.store.get_user_by_email(email) or self.store.get_user_by_username(username):
            self.logger.info("register_conflict", username=username)
            raise ConflictError("User already exists")
        token = self.verification_tokens.generate()
        try:
            user = self.store.create_user(
                email=email,
                username=username,
                password_hash=self._hash_password(password),
                is_verified=False,
                is_active=True,
                email_verification_token_hash=token.token_hash,
                email_verification_expires_at=token.expires_at,
            )
        except ConstraintViolation as exc:
            raise ConflictError("User already exists", detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=user.id)
        await self._dispatch(
            "verification", self.notifier.send_verification_email, user.email, token.raw_token
        )
        return {"username": user.username, "email": user.email}

    async def resend_verification(self, email: str) -> None:
        user = self.store.get_user_by_email(email)
        if not user or user.is_verified:
            return None
        token = self.verification_tokens.generate()
        user.set_verification_token(token.token_hash, token.expires_at)
        self.store.save_user(user)
        self.logger.info("email_verification_reissued", user_id=user.id)
        await self._dispatch(
            "verification", self.notifier.send_verification_email, user.email, token.raw_token
        )
        return None

    async def verify_email(self, raw_token: str) -> None:
        token_hash = self.verification_tokens.hash_token(raw_token or "")
        user = self.store.get_user_by_verification_token(token_hash, self._now())
        if not user:
            self.logger.warning("email_verification_invalid_token")
            raise InvalidOrExpiredTokenError()
        user.is_verified = True
        user.clear_verification_token()
        self.store.save_user(user)
        self.logger.info("email_verified", user_id=user.id)

    # sessions
    async def login(self, identifier: str, password: str) -> LoginResult:
        user = self.store.get_user_by_identifier(identifier)
        if not self._verify_password(user.password_hash if user else None, password):
            self.logger.info("login_failed", reason="invalid_credentials")
            raise InvalidCredentialsError()
        if not user.is_verified:
            self.logger.info("login_failed", reason="not_verified", user_id=user.id)
            raise NotVerifiedError()
        if not user.is_active:
            self.logger.info("login_failed", reason="disabled", user_id=user.id)
            raise AccountDisabledError()
        access_token = self.codec.issue_access_token(user.id)
        refresh_token = self.codec.issue_refresh_token(user.id)
        # Overwrite: any earlier session's refresh token stops matching
        if not self.store.set_refresh_token(user.id, refresh_token):
            raise InvalidCredentialsError()
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(
            user=user.to_login(), access_token=access_token, refresh_token=refresh_token
        )

    async def refresh(self, presented_token: Optional[str]) -> str:
        if not presented_token:
            raise AuthenticationError("Unauthorized")
        claims = self.codec.verify(presented_token, REFRESH)
        if not claims:
            raise ForbiddenError("Forbidden: Expired or Invalid Refresh Token")
        user = self.store.get_user(claims.user_id)
        if not user or not user.is_active:
            raise AuthenticationError("Unauthorized")
        if user.refresh_token != presented_token:
            self.logger.warning(
                "refresh_token_reuse_detected",
                user_id=user.id,
                jti=claims.jti,
                revoked=self.revoke_session_on_refresh_reuse,
            )
            if self.revoke_session_on_refresh_reuse and user.refresh_token:
                self.store.clear_refresh_token(user.id, expected=user.refresh_token)
            raise ForbiddenError("Forbidden: Invalid Token")
        return self.codec.issue_access_token(user.id)

    async def logout(self, presented_token: Optional[str]) -> None:
        if not presented_token:
            return None
        user = self.store.get_user_by_refresh_token(presented_token)
        if not user:
            return None
        # Conditional clear so a newer login is not wiped by a stale logout
        if self.store.clear_refresh_token(user.id, expected=presented_token):
            self.logger.info("logout", user_id=user.id)
        return None

    # password reset
    async def forgot_password(self, email: str) -> None:
        user = self.store.get_user_by_email(email)
        if not user:
            return None
        token = self.reset_tokens.generate()
        user.set_reset_token(token.token_hash, token.expires_at)
        self.store.save_user(user)
        self.logger.info("password_reset_requested", user_id=user.id)
        await self._dispatch(
            "password_reset", self.notifier.send_password_reset_email, user.email, token.raw_token
        )
        return None

    async def reset_password(self, raw_token: str, new_password: str) -> None:
        token_hash = self.reset_tokens.hash_token(raw_token or "")
        user = self.store.get_user_by_reset_token(token_hash, self._now())
        if not user:
            self.logger.warning("password_reset_invalid_token")
            raise InvalidOrExpiredTokenError()
        user.password_hash = self._hash_password(new_password)
        user.clear_reset_token()
        if self.revoke_sessions_on_password_reset:
            user.refresh_token = None
        self.store.save_user(user)
        self.logger.info(
            "password_reset_completed",
            user_id=user.id,
            sessions_revoked=self.revoke_sessions_on_password_reset,
        )

    # authorization gate
    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Unauthorized")
        claims = self.codec.verify(token, ACCESS)
        if not claims:
            raise ForbiddenError("Forbidden")
        user = self.store.get_user(claims.user_id)
        if not user:
            self.logger.warning("access_token_user_missing", user_id=claims.user_id)
            raise ForbiddenError("Forbidden")
        if not user.is_active:
            raise AccountDisabledError()
        return AuthContext(user_id=user.id, role=user.role)

    @staticmethod
    def role_allows(role: str, allowed: Tuple[str, ...]) -> bool:
        return role in allowed

    # account management
    def list_users(self, *, page: int = 1, limit: int = 10, sort: str = "newest") -> UserPage:
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        users, total = self.store.list_users(
            offset=(page - 1) * limit, limit=limit, sort=sort
        )
        return UserPage(
            items=[u.to_public() for u in users], total=total, page=page, limit=limit
        )

    def get_user(self, target_id: str, principal: AuthContext) -> Dict[str, Any]:
        user = self.store.get_user(target_id)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": target_id})
        if principal.user_id != target_id and not principal.is_admin:
            raise ForbiddenError("You do not have permission to view this user")
        return user.to_profile() if principal.user_id == target_id else user.to_public()

    def update_profile(self, principal: AuthContext, changes: Dict[str, Any]) -> Dict[str, Any]:
        user = self.store.get_user(principal.user_id)
        if not user:
            raise NotFoundError("User not found")
        if "email" in changes:
            raise ValidationError("Email cannot be changed")
        if "role" in changes or "is_active" in changes:
            raise ForbiddenError("Forbidden")
        username = changes.get("username")
        if username and username != user.username:
            existing = self.store.get_user_by_username(username)
            if existing and existing.id != user.id:
                raise ConflictError("Username already taken")
            user.username = username
        password = changes.get("password")
        if password:
            user.password_hash = self._hash_password(password)
        try:
            saved = self.store.save_user(user)
        except ConstraintViolation as exc:
            raise ConflictError("Username already taken", detail=exc.detail) from exc
        self.logger.info(
            "profile_updated", user_id=user.id, fields=sorted(k for k in changes if changes[k])
        )
        return saved.to_profile()

    def admin_update_user(
        self, target_id: str, changes: Dict[str, Any], principal: AuthContext
    ) -> Dict[str, Any]:
        for key in changes:
            if key not in ADMIN_UPDATABLE_FIELDS:
                raise ValidationError(f"Field '{key}' cannot be updated by admin")
        admin = self.store.get_user(principal.user_id)
        if not admin or not admin.is_admin:
            raise ForbiddenError("Admin privileges required")
        if target_id == principal.user_id and changes.get("role") == "user":
            raise ValidationError("Admin cannot demote themselves")
        user = self.store.get_user(target_id)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": target_id})
        if "role" in changes:
            if changes["role"] not in ROLES:
                raise ValidationError(f"Invalid role '{changes['role']}'")
            user.role = changes["role"]
        if "is_active" in changes:
            if not isinstance(changes["is_active"], bool):
                raise ValidationError("Field 'is_active' must be true or false")
            user.is_active = changes["is_active"]
            if not user.is_active:
                user.refresh_token = None
        saved = self.store.save_user(user)
        self.logger.info(
            "admin_updated_user",
            admin_id=principal.user_id,
            user_id=target_id,
            role=saved.role,
            is_active=saved.is_active,
        )
        return saved.to_public()

    def delete_user(self, target_id: str, principal: AuthContext) -> Dict[str, Any]:
        if principal.user_id != target_id and not principal.is_admin:
            raise ForbiddenError("You do not have permission to delete this account")
        user = self.store.get_user(target_id)
        if not user or not self.store.delete_user(target_id):
            raise NotFoundError("User not found", detail={"user_id": target_id})
        self.logger.info("user_deleted", user_id=target_id, actor_id=principal.user_id)
        return user.to_public()
