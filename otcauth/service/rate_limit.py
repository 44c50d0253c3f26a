from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol

from otcauth.config import Settings
from otcauth.logging import get_logger
from otcauth.service.errors import InfrastructureError, RateLimitedError
from otcauth.service.phone import ensure_phone_number
from otcauth.storage.errors import StoreUnavailable
from otcauth.storage.models import RateLimitDecision, RateLimitWindow

logger = get_logger(__name__)


class RateLimitBackend(Protocol):
    async def record_rate_limit_request(
        self,
        phone_number: str,
        now: datetime,
        *,
        window_seconds: int,
        max_requests: int,
        min_ttl_seconds: int,
    ) -> RateLimitDecision: ...

    async def repair_rate_limit_ttls(self, window_seconds: int) -> int: ...


class RateLimiter:
    """Fixed-window send quota per phone number.

    The backend performs the load/reset/increment as a single atomic step, so
    concurrent sends for the same number cannot both take the last slot.
    Backend failures reject the request rather than allow an unmetered send.
    """

    def __init__(self, backend: RateLimitBackend, settings: Settings) -> None:
        self.backend = backend
        self.max_requests = settings.rate_limit_max_requests
        self.window_seconds = settings.rate_limit_window_seconds
        self.min_ttl_seconds = settings.rate_limit_min_ttl_seconds

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def check_and_record(self, phone_number: str) -> RateLimitWindow:
        ensure_phone_number(phone_number)
        try:
            decision = await self.backend.record_rate_limit_request(
                phone_number,
                self._now(),
                window_seconds=self.window_seconds,
                max_requests=self.max_requests,
                min_ttl_seconds=self.min_ttl_seconds,
            )
        except StoreUnavailable as exc:
            logger.error("rate_limit_backend_unavailable", error=str(exc))
            raise InfrastructureError("rate limiter unavailable") from exc
        if not decision.allowed:
            logger.info(
                "otp_rate_limited",
                phone_number=phone_number,
                request_count=decision.window.request_count,
                retry_after=decision.retry_after,
            )
            raise RateLimitedError(
                "too many code requests, try again later",
                retry_after=decision.retry_after,
            )
        return decision.window

    async def repair_missing_ttls(self) -> int:
        try:
            repaired = await self.backend.repair_rate_limit_ttls(self.window_seconds)
        except StoreUnavailable as exc:
            raise InfrastructureError("rate limiter unavailable") from exc
        if repaired:
            logger.info("rate_limit_ttls_repaired", count=repaired)
        return repaired
