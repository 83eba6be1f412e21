from __future__ import annotations

import asyncio
from typing import Literal, Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Request, Response

from storefront.api.schemas import (
    AdminUpdateUserRequest,
    EmailRequest,
    Envelope,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UpdateProfileRequest,
    UserListResponse,
)
from storefront.logging import get_logger
from storefront.service.auth import AuthContext
from storefront.service.errors import ForbiddenError
from storefront.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")

REFRESH_COOKIE = "jwt"
REFRESH_COOKIE_MAX_AGE = 24 * 60 * 60


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def as_headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        response.headers.update(self.as_headers())


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token for ``key``; raise 429 once the bucket is empty.

    Headers are applied to ``response`` on success and attached to the 429
    otherwise.
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if not allowed:
        logger.warning("rate_limited", key=key.split(":", 1)[0], reset_seconds=reset_seconds)
        exc = _http_error(
            "rate_limited",
            "Too many login attempts, please try again later",
            status_code=429,
        )
        exc.headers = {**info.as_headers(), "Retry-After": str(reset_seconds)}
        raise exc
    if response is not None:
        info.apply_headers(response)
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _set_refresh_cookie(response: Response, refresh_token: str, *, production: bool) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        httponly=True,
        secure=production,
        samesite="none" if production else "lax",
        max_age=REFRESH_COOKIE_MAX_AGE,
        path="/",
    )


def _clear_refresh_cookie(response: Response, *, production: bool) -> None:
    response.delete_cookie(
        REFRESH_COOKIE,
        path="/",
        httponly=True,
        secure=production,
        samesite="none" if production else "lax",
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    return get_runtime().auth.authenticate(authorization)


def require_role(*roles: str):
    """Dependency factory: authenticate, then require one of ``roles``."""

    async def _dependency(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        if not get_runtime().auth.role_allows(principal.role, roles):
            raise ForbiddenError("You do not have permission to perform this action")
        return principal

    return _dependency


def _message(message: str, **data) -> Envelope:
    return Envelope(status="ok", data={"message": message, **data})


# auth
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an unverified account and mail a verification link."""
    runtime = get_runtime()
    user = await runtime.auth.register(body.email, body.username, body.password)
    return _message("User registered successfully", user=user)


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.resend_verification(body.email)
    return _message("Verification email sent if the account exists and is unverified")


@router.get("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(token: str = Query("", max_length=256)):
    runtime = get_runtime()
    await runtime.auth.verify_email(token)
    return _message("Email verified successfully")


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange credentials for an access token and a refresh cookie.

    Rate limited per client IP. Unknown identifiers and wrong passwords
    produce the same 401.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_ip(request)}",
        runtime.settings.login_rate_limit,
        runtime.settings.login_rate_limit_window_seconds,
        response=response,
    )
    result = await runtime.auth.login(body.identifier, body.password)
    _set_refresh_cookie(
        response, result.refresh_token, production=runtime.settings.is_production
    )
    return _message("Logged in", user=result.user, access_token=result.access_token)


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.email)
    return _message("Password reset email sent if account exists")


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password)
    return _message("Password reset successfully")


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(jwt: Optional[str] = Cookie(None)):
    """Mint a new access token from the refresh cookie.

    The refresh token itself is not rotated.
    """
    runtime = get_runtime()
    access_token = await runtime.auth.refresh(jwt)
    return Envelope(status="ok", data={"access_token": access_token})


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, jwt: Optional[str] = Cookie(None)):
    runtime = get_runtime()
    await runtime.auth.logout(jwt)
    _clear_refresh_cookie(response, production=runtime.settings.is_production)
    return _message("Logged out")


# users
@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort: Literal["asc", "desc", "newest"] = Query("newest"),
    principal: AuthContext = Depends(require_role("admin")),
):
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.auth.list_users, page=page, limit=limit, sort=sort
    )
    return Envelope(
        status="ok",
        data=UserListResponse(
            users=result.items,
            total=result.total,
            page=result.page,
            limit=result.limit,
            total_pages=result.total_pages,
        ),
    )


@router.patch("/users/me", response_model=Envelope, tags=["users"])
async def update_profile(
    body: UpdateProfileRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    user = runtime.auth.update_profile(principal, body.model_dump(exclude_unset=True))
    return _message("Profile updated", user=user)


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(user_id: str, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    return Envelope(status="ok", data={"user": runtime.auth.get_user(user_id, principal)})


@router.patch("/users/{user_id}/admin", response_model=Envelope, tags=["users"])
async def admin_update_user(
    user_id: str,
    body: AdminUpdateUserRequest,
    principal: AuthContext = Depends(require_role("admin")),
):
    runtime = get_runtime()
    user = runtime.auth.admin_update_user(
        user_id, body.model_dump(exclude_unset=True), principal
    )
    return _message("User updated", user=user)


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(
    user_id: str, response: Response, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    runtime.auth.delete_user(user_id, principal)
    if user_id == principal.user_id:
        _clear_refresh_cookie(response, production=runtime.settings.is_production)
    return _message("User deleted")
