from __future__ import annotations

from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from otcauth.config import Settings, get_settings
from otcauth.logging import get_logger
from otcauth.service.auth import AuthService
from otcauth.service.challenges import ChallengeManager
from otcauth.service.cleanup import CleanupScheduler
from otcauth.service.delivery import CodeSink, ConsoleCodeSink
from otcauth.service.rate_limit import RateLimiter
from otcauth.service.sessions import SessionManager
from otcauth.service.users import UserDirectory
from otcauth.storage.memory import MemoryCache, MemoryStore
from otcauth.storage.postgres import PostgresStore
from otcauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore]
Cache = Union[MemoryCache, RedisCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
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
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings) -> Store:
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        store = (
            MemoryStore()
            if settings.use_memory_store
            else PostgresStore(
                settings.database_url, timeout_seconds=settings.store_timeout_seconds
            )
        )
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            database_url=_mask_url_password(settings.database_url),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=store_type)
    return store


def build_cache(settings: Settings) -> Cache:
    """Connect to Redis, falling back to ``MemoryCache`` only when allowed."""
    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            cache = RedisCache(
                settings.redis_url, socket_timeout=settings.store_timeout_seconds
            )
            cache.verify_connection()
            logger.info("runtime_cache_initialized", cache_type="redis")
            return cache
        except Exception as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for rate limits and sessions; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message=(
            f"Running without Redis under {fallback_mode}; rate limits and sessions "
            "are held in process memory."
        ),
        mode=fallback_mode,
    )
    return MemoryCache()


class Runtime:
    """Owns the store handles and the services wired on top of them.

    Constructed explicitly by the app lifespan (or a test) and torn down with
    ``close()``; nothing here is a process-wide singleton.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[Store] = None,
        cache: Optional[Cache] = None,
        code_sink: Optional[CodeSink] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else build_store(self.settings)
        self.cache = cache if cache is not None else build_cache(self.settings)
        self.code_sink = code_sink or ConsoleCodeSink()

        self.rate_limiter = RateLimiter(self.cache, self.settings)
        self.challenges = ChallengeManager(self.store, self.code_sink, self.settings)
        self.users = UserDirectory(self.store, self.settings)
        self.sessions = SessionManager(self.cache, self.settings)
        self.auth = AuthService(self.rate_limiter, self.challenges, self.users, self.sessions)
        self.cleanup = CleanupScheduler(
            self.challenges,
            self.rate_limiter,
            interval_seconds=self.settings.cleanup_interval_seconds,
        )

    async def start(self) -> None:
        await self.cleanup.start()

    async def close(self) -> None:
        await self.cleanup.stop()
        await self.sessions.drain_touches()
        try:
            await self.cache.close()
        finally:
            self.store.close()
        logger.info("runtime_closed")
