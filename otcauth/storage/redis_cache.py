from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from otcauth.logging import get_logger
from otcauth.storage.errors import StoreUnavailable
from otcauth.storage.models import RateLimitDecision, RateLimitWindow, SessionRecord

logger = get_logger(__name__)


class RedisCache:
    """Redis-backed rate-limit windows and revocable session records."""

    RATE_KEY_PREFIX = "otc:rate:"
    SESSION_KEY_PREFIX = "otc:session:"
    USER_SESSIONS_KEY_PREFIX = "otc:user_sessions:"

    # Fixed-window counter: read, reset or increment, and re-arm the TTL in one
    # round trip. Timestamps are stored as the caller's string so they round-trip
    # without float formatting loss.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max_requests = tonumber(ARGV[3])
local min_ttl = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'count', 'window_start', 'last_request')
local count = tonumber(data[1])
local start = tonumber(data[2])

if count == nil or start == nil or (now - start) >= window then
  redis.call('HSET', key, 'count', 1, 'window_start', ARGV[1], 'last_request', ARGV[1])
  redis.call('EXPIRE', key, window)
  return {1, 1, ARGV[1], ARGV[1], 0}
end

local remaining = math.ceil(start + window - now)
if count >= max_requests then
  return {0, count, data[2], data[3] or data[2], math.max(remaining, 1)}
end

count = count + 1
redis.call('HSET', key, 'count', count, 'last_request', ARGV[1])
redis.call('EXPIRE', key, math.max(remaining, min_ttl))
return {1, count, data[2], ARGV[1], 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @classmethod
    def rate_key(cls, phone_number: str) -> str:
        """Hash the phone number so raw PII never appears in key names."""
        digest = hashlib.sha256(phone_number.encode()).hexdigest()
        return f"{cls.RATE_KEY_PREFIX}{digest}"

    @classmethod
    def session_key(cls, fingerprint: str) -> str:
        return f"{cls.SESSION_KEY_PREFIX}{fingerprint}"

    @classmethod
    def user_sessions_key(cls, user_id: str) -> str:
        return f"{cls.USER_SESSIONS_KEY_PREFIX}{user_id}"

    @contextlib.asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except (RedisError, asyncio.TimeoutError) as exc:
            logger.warning("redis_operation_failed", operation=operation, error=str(exc))
            raise StoreUnavailable("redis", f"{operation} failed: {exc}") from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a temporary loop.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    # ===== rate limiting =====

    async def record_rate_limit_request(
        self,
        phone_number: str,
        now: datetime,
        *,
        window_seconds: int,
        max_requests: int,
        min_ttl_seconds: int,
    ) -> RateLimitDecision:
        async with self._guard("rate_limit"):
            allowed, count, start, last, retry_after = await self._fixed_window(
                keys=[self.rate_key(phone_number)],
                args=[
                    repr(now.timestamp()),
                    int(window_seconds),
                    int(max_requests),
                    int(min_ttl_seconds),
                ],
            )
        window = RateLimitWindow(
            phone_number=phone_number,
            request_count=int(count),
            window_start_at=datetime.fromtimestamp(float(start), tz=timezone.utc),
            last_request_at=datetime.fromtimestamp(float(last), tz=timezone.utc),
        )
        return RateLimitDecision(
            allowed=bool(int(allowed)), window=window, retry_after=int(retry_after)
        )

    async def repair_rate_limit_ttls(self, window_seconds: int) -> int:
        """Give rate-limit keys lacking an expiry a full window TTL."""
        repaired = 0
        async with self._guard("rate_limit_repair"):
            async for key in self.client.scan_iter(
                match=f"{self.RATE_KEY_PREFIX}*", count=100
            ):
                if await self.client.ttl(key) == -1:
                    await self.client.expire(key, int(window_seconds))
                    repaired += 1
        return repaired

    # ===== sessions =====

    async def _expired_members(self, index_key: str) -> List[str]:
        fingerprints = sorted(await self.client.smembers(index_key))
        if not fingerprints:
            return []
        raws = await self.client.mget([self.session_key(fp) for fp in fingerprints])
        return [fp for fp, raw in zip(fingerprints, raws) if raw is None]

    async def save_session(
        self, record: SessionRecord, *, ttl_seconds: int, index_ttl_seconds: int
    ) -> None:
        index_key = self.user_sessions_key(record.user_id)
        async with self._guard("save_session"):
            stale = await self._expired_members(index_key)
            pipe = self.client.pipeline()
            if stale:
                pipe.srem(index_key, *stale)
            pipe.set(
                self.session_key(record.token_fingerprint),
                json.dumps(record.to_cache()),
                ex=max(1, int(ttl_seconds)),
            )
            pipe.sadd(index_key, record.token_fingerprint)
            pipe.expire(index_key, max(1, int(index_ttl_seconds)))
            await pipe.execute()

    async def get_session(self, fingerprint: str) -> Optional[SessionRecord]:
        async with self._guard("get_session"):
            raw = await self.client.get(self.session_key(fingerprint))
        if not raw:
            return None
        try:
            return SessionRecord.from_cache(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("session_record_corrupt", error=str(exc))
            return None

    async def touch_session(self, fingerprint: str, last_used_at: datetime) -> bool:
        """Update ``last_used_at`` keeping the remaining TTL.

        ``XX`` refuses to write a key that was deleted in the meantime, so a
        revoked session is never recreated.
        """
        record = await self.get_session(fingerprint)
        if record is None:
            return False
        record.last_used_at = last_used_at
        async with self._guard("touch_session"):
            written = await self.client.set(
                self.session_key(fingerprint),
                json.dumps(record.to_cache()),
                xx=True,
                keepttl=True,
            )
        return bool(written)

    async def delete_session(self, fingerprint: str, user_id: Optional[str] = None) -> None:
        async with self._guard("delete_session"):
            pipe = self.client.pipeline()
            pipe.delete(self.session_key(fingerprint))
            if user_id:
                pipe.srem(self.user_sessions_key(user_id), fingerprint)
            await pipe.execute()

    async def delete_user_sessions(self, user_id: str) -> int:
        index_key = self.user_sessions_key(user_id)
        async with self._guard("delete_user_sessions"):
            fingerprints = await self.client.smembers(index_key)
            pipe = self.client.pipeline()
            for fingerprint in fingerprints:
                pipe.delete(self.session_key(fingerprint))
            pipe.delete(index_key)
            deleted = await pipe.execute()
        # Index members whose session already expired delete nothing
        return sum(int(n) for n in deleted[:-1])

    async def list_user_sessions(self, user_id: str) -> List[SessionRecord]:
        async with self._guard("list_user_sessions"):
            fingerprints = sorted(await self.client.smembers(self.user_sessions_key(user_id)))
            if not fingerprints:
                return []
            raws = await self.client.mget([self.session_key(fp) for fp in fingerprints])
        records = []
        for raw in raws:
            if not raw:
                continue
            try:
                records.append(SessionRecord.from_cache(json.loads(raw)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("session_record_corrupt", error=str(exc))
        records.sort(key=lambda r: r.issued_at, reverse=True)
        return records

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down the runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
