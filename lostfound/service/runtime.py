from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from lostfound.config import get_settings, reset_settings_cache
from lostfound.logging import get_logger
from lostfound.service.activity import ActivityService
from lostfound.service.auth import AuthService
from lostfound.service.claims import ClaimWorkflow, ProcessingGuard
from lostfound.service.coordination import (
    CrossTabCoordinator,
    LocalBroadcastChannel,
    LocalFlagStore,
    RedisBroadcastChannel,
    RedisFlagStore,
)
from lostfound.service.email import EmailService
from lostfound.service.identity import IdentityClient
from lostfound.service.ledger import LoginAttemptLedger
from lostfound.service.navigation import LocalStorage
from lostfound.service.session import SessionOrchestrator
from lostfound.storage.memory import MemoryStore
from lostfound.storage.postgres import PostgresStore
from lostfound.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (
                    parsed.scheme,
                    netloc,
                    parsed.path,
                    parsed.params,
                    parsed.query,
                    parsed.fragment,
                )
            )
        return url
    except ValueError:
        return "***url_parse_error***"


def build_flow_backends(cache) -> Tuple[object, object]:
    """Flag store and broadcast channel for cross-tab auth flow coordination.

    With a cache the flag and channel span processes; without one they only
    reach tabs living in this process.
    """
    if cache is not None:
        return RedisFlagStore(cache), RedisBroadcastChannel(cache)
    return LocalFlagStore(), LocalBroadcastChannel()


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
                    encryption_key=self.settings.secret_key,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    encryption_key=self.settings.secret_key,
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding the pool to one event loop
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
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for sessions, rate limits, processing guards and auth flow flags; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits, tokens and "
                    "processing guards are in-memory only."
                ),
                mode=fallback_mode,
            )

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.ledger = LoginAttemptLedger(
            self.store,
            max_failures=self.settings.login_max_failures,
            window_seconds=self.settings.login_window_seconds,
            lockout_seconds=self.settings.login_lockout_seconds,
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            ledger=self.ledger,
            email_service=self.email,
        )
        self.claims = ClaimWorkflow(
            self.store,
            self.cache,
            self.settings,
            guard=ProcessingGuard(
                self.cache, ttl_seconds=self.settings.processing_guard_ttl_seconds
            ),
        )
        self.activity = ActivityService(self.store)
        self.flow_flags, self.flow_channel = build_flow_backends(self.cache)
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            signup_enabled=self.settings.allow_signup,
        )

    def identity_client(self, *, user_agent: Optional[str] = None) -> IdentityClient:
        """Provider handle for one browser profile; share it between that profile's tabs."""
        return IdentityClient(self.auth, user_agent=user_agent)

    async def open_tab(
        self,
        tab_id: str,
        identity: IdentityClient,
        storage: LocalStorage,
        *,
        url: Optional[str] = None,
    ) -> SessionOrchestrator:
        if isinstance(self.flow_channel, RedisBroadcastChannel):
            await self.flow_channel.start()
        coordinator = CrossTabCoordinator(
            tab_id,
            self.flow_flags,
            self.flow_channel,
            stale_after=self.settings.auth_flow_stale_seconds,
        )
        return SessionOrchestrator(
            tab_id,
            identity,
            coordinator,
            storage,
            url=url,
            boot_timeout=self.settings.session_boot_timeout_seconds,
        )

    async def close(self) -> None:
        if isinstance(self.flow_channel, RedisBroadcastChannel):
            await self.flow_channel.close()
        if self.cache is not None:
            await self.cache.close()
        pool = getattr(self.store, "pool", None)
        if pool is not None:
            pool.close()


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


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache._sync_client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
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
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit that still applies when Redis is unavailable.

    Returns ``allowed`` or, with ``return_remaining``, ``(allowed, remaining,
    reset_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
            runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = (
            int((cost - tokens) / refill_rate) if not allowed and refill_rate > 0 else 0
        )
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


__all__ = [
    "Runtime",
    "get_runtime",
    "reset_runtime_for_tests",
    "build_flow_backends",
    "check_rate_limit",
]
