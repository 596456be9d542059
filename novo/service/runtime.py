from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from novo.config import get_settings, reset_settings_cache
from novo.logging import get_logger
from novo.service.auth import AuthService
from novo.service.oauth import OAuthService
from novo.storage.memory import MemoryStore
from novo.storage.postgres import PostgresStore
from novo.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    persist=not self.settings.test_mode,
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, SyncRedisCache, None] = None
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
                    "Redis is required for OAuth state and rate limits across workers; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        self.oauth = OAuthService(self.settings, self.cache)
        self.auth = AuthService(self.store, self.settings, oauth=self.oauth)
        # key -> (tokens, last update, time the bucket is full again)
        self._local_rate_limits: Dict[str, Tuple[float, datetime, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
            redis_enabled=self.cache is not None,
            google_oauth=self.oauth.is_configured("google"),
            github_oauth=self.oauth.is_configured("github"),
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


LOCAL_RATE_LIMIT_SWEEP_THRESHOLD = 1024


def _sweep_refilled_buckets(runtime: Runtime, now: datetime) -> None:
    """Drop buckets that have refilled completely; they behave like absent keys."""
    stale = [key for key, (_, _, full_at) in runtime._local_rate_limits.items() if full_at <= now]
    for key in stale:
        del runtime._local_rate_limits[key]
    if stale:
        logger.debug("rate_limit_buckets_swept", removed=len(stale))


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit, Redis-backed when available.

    Returns ``allowed`` or, with ``return_remaining``, ``(allowed, remaining, reset_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        if len(runtime._local_rate_limits) >= LOCAL_RATE_LIMIT_SWEEP_THRESHOLD:
            _sweep_refilled_buckets(runtime, now)
        tokens, last_ts, _ = runtime._local_rate_limits.get(key, (float(limit), now, now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        full_at = now + timedelta(seconds=(float(limit) - tokens) / refill_rate)
        runtime._local_rate_limits[key] = (tokens, now, full_at)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
