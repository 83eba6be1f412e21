from __future__ import annotations

import asyncio
import math
import threading
import time
from datetime import timedelta
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from storefront.config import get_settings, reset_settings_cache
from storefront.logging import get_logger
from storefront.service.auth import AuthService
from storefront.service.email import EmailService
from storefront.service.ephemeral import EphemeralTokenGenerator
from storefront.service.tokens import TokenCodec, TokenConfig
from storefront.storage.memory import MemoryStore
from storefront.storage.postgres import PostgresStore
from storefront.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

# Bound on distinct keys held by the in-process limiter
LOCAL_RATE_LIMIT_MAX_KEYS = 10_000


def _monotonic() -> float:
    return time.monotonic()


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            environment=self.settings.environment.value,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )

        self.tokens = TokenCodec(TokenConfig.from_settings(self.settings))
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            client_url=self.settings.client_url,
            verification_ttl_hours=self.settings.email_verification_ttl_hours,
            reset_ttl_minutes=self.settings.password_reset_ttl_minutes,
        )
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.email,
            verification_tokens=EphemeralTokenGenerator(
                timedelta(hours=self.settings.email_verification_ttl_hours)
            ),
            reset_tokens=EphemeralTokenGenerator(
                timedelta(minutes=self.settings.password_reset_ttl_minutes)
            ),
            revoke_session_on_refresh_reuse=self.settings.revoke_session_on_refresh_reuse,
            revoke_sessions_on_password_reset=self.settings.revoke_sessions_on_password_reset,
        )
        # key -> (hits, monotonic time the window closes)
        self._local_rate_limits: Dict[str, Tuple[int, float]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store:
            await asyncio.to_thread(close_store)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


_pending_cache_closes: set[asyncio.Task] = set()


def _on_cache_closed(task: asyncio.Task) -> None:
    _pending_cache_closes.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("runtime_cache_close_failed", error=str(exc))


def _close_cache(cache) -> Optional[asyncio.Task]:
    """Close ``cache``; inside a running loop the close is scheduled and returned."""
    if isinstance(cache, SyncRedisCache):
        cache.client.close()
        return None
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
        return None
    task = loop.create_task(cache.close())
    _pending_cache_closes.add(task)
    task.add_done_callback(_on_cache_closed)
    return task


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _close_cache(runtime.cache)
            except (RedisError, OSError) as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Fixed-window rate limit returning ``(allowed, remaining, reset_seconds)``.

    The first hit on ``key`` opens a window of ``window_seconds``; at most
    ``limit`` hits are allowed until it closes. Uses Redis when available so
    limits hold across workers; otherwise an in-process counter guarded by
    an asyncio lock.
    """
    if limit <= 0:
        return (True, limit, 0)
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)
    now = _monotonic()
    async with runtime._local_rate_limit_lock:
        windows = runtime._local_rate_limits
        if len(windows) >= LOCAL_RATE_LIMIT_MAX_KEYS and key not in windows:
            _prune_local_windows(windows, now)
        count, closes_at = windows.get(key, (0, now + window_seconds))
        if closes_at <= now:
            count, closes_at = 0, now + window_seconds
        count += max(1, cost)
        windows[key] = (count, closes_at)
    allowed = count <= limit
    remaining = max(0, limit - count)
    reset_seconds = max(1, math.ceil(closes_at - now))
    return (allowed, remaining, reset_seconds)


def _prune_local_windows(windows: Dict[str, Tuple[int, float]], now: float) -> None:
    for stale in [k for k, (_, closes_at) in windows.items() if closes_at <= now]:
        del windows[stale]
    overflow = len(windows) - LOCAL_RATE_LIMIT_MAX_KEYS + 1
    if overflow > 0:
        # Still full of live windows: drop the ones closest to expiry
        for k, _ in sorted(windows.items(), key=lambda item: item[1][1])[:overflow]:
            del windows[k]
        logger.warning("rate_limit_local_windows_evicted", evicted=overflow)
