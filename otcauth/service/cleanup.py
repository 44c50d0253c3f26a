from __future__ import annotations

import asyncio
import contextlib
from typing import Optional

from otcauth.logging import get_logger
from otcauth.service.challenges import ChallengeManager
from otcauth.service.rate_limit import RateLimiter

logger = get_logger(__name__)


class CleanupScheduler:
    """Periodic retention sweep for expired challenges and TTL-less rate windows.

    Neither step affects correctness: challenge expiry is checked at verify
    time and rate-limit keys normally expire on their own. Failures are logged
    and retried on the next tick.
    """

    def __init__(
        self,
        challenges: ChallengeManager,
        rate_limiter: RateLimiter,
        *,
        interval_seconds: float = 300,
    ) -> None:
        self.challenges = challenges
        self.rate_limiter = rate_limiter
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            logger.warning("cleanup_scheduler_already_running")
            return
        self._task = asyncio.create_task(self._run_loop())
        logger.info("cleanup_scheduler_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("cleanup_scheduler_stopped")

    async def run_once(self) -> dict[str, int]:
        """Run both steps; a failing step does not skip the other."""
        results = {"challenges_deleted": 0, "rate_limits_repaired": 0}
        try:
            results["challenges_deleted"] = await self.challenges.sweep_expired()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("challenge_sweep_failed", error=str(exc))
        try:
            results["rate_limits_repaired"] = await self.rate_limiter.repair_missing_ttls()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("rate_limit_repair_failed", error=str(exc))
        return results

    async def _run_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
        except asyncio.CancelledError:
            logger.info("cleanup_task_cancelled")
            raise
