from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from tokenward.config import get_settings, reset_settings_cache
from tokenward.logging import get_logger
from tokenward.service.accounts import AccountService
from tokenward.service.cascade import RevocationCascade
from tokenward.service.email import EmailService
from tokenward.service.one_time import OneTimeTokenManager
from tokenward.service.passwords import CredentialHasher
from tokenward.service.refresh_store import RefreshTokenStore
from tokenward.service.sessions import SessionService
from tokenward.service.signer import AccessTokenSigner
from tokenward.storage.memory import MemoryStore
from tokenward.storage.models import TokenKind, utcnow
from tokenward.storage.postgres import PostgresStore
from tokenward.storage.redis_cache import RedisRateLimiter

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.rate_limiter: Optional[RedisRateLimiter] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                limiter = RedisRateLimiter.from_url(self.settings.redis_url)
                limiter.verify_connection()
                self.rate_limiter = limiter
            except Exception as exc:
                redis_error = exc

        if self.rate_limiter is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        self.hasher = CredentialHasher()
        self.signer = AccessTokenSigner.from_settings(self.settings)
        self.refresh_store = RefreshTokenStore(
            self.store, ttl_minutes=self.settings.refresh_token_ttl_minutes
        )
        self.one_time = OneTimeTokenManager(
            self.store,
            ttl_minutes={
                TokenKind.VERIFY_EMAIL: self.settings.verify_email_token_ttl_minutes,
                TokenKind.RESET_PASSWORD: self.settings.reset_password_token_ttl_minutes,
            },
        )
        self.cascade = RevocationCascade(self.refresh_store, self.one_time)
        self.email = EmailService.from_settings(self.settings)
        self.sessions = SessionService(
            self.store, self.refresh_store, self.signer, self.hasher
        )
        self.accounts = AccountService(
            self.store,
            self.hasher,
            self.one_time,
            self.cascade,
            self.email,
            audit_log_max_entries=self.settings.audit_log_max_entries,
            verify_ttl_minutes=self.settings.verify_email_token_ttl_minutes,
            reset_ttl_minutes=self.settings.reset_password_token_ttl_minutes,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.rate_limiter is not None,
            email_configured=self.email.is_configured,
        )

    async def close(self) -> None:
        if self.rate_limiter is not None:
            await self.rate_limiter.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
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
    return_remaining: bool = False,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit in Redis, or in process when Redis is absent.

    Returns a bool, or ``(allowed, remaining, reset_seconds)`` when
    ``return_remaining`` is set.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.rate_limiter is not None:
        state = await runtime.rate_limiter.take(key, limit, window_seconds)
        if return_remaining:
            return (state.allowed, state.remaining, state.retry_after)
        return state.allowed
    now = utcnow()
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= 1
        if allowed:
            tokens -= 1
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((1 - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests", "check_rate_limit"]
