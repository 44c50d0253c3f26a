from __future__ import annotations

import asyncio
import functools
from typing import Any, Callable, TypeVar

from otcauth.logging import get_logger
from otcauth.service.errors import InfrastructureError
from otcauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


async def call_store(
    func: Callable[..., T], *args: Any, timeout: float, **kwargs: Any
) -> T:
    """Run a blocking store call off the event loop with a hard deadline.

    ``StoreUnavailable`` and deadline overruns both surface as
    ``InfrastructureError``; business exceptions pass through untouched.
    The worker thread is not cancelled on timeout, so a write may still
    commit after the caller has seen ``InfrastructureError``.
    """
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(functools.partial(func, *args, **kwargs)), timeout
        )
    except asyncio.TimeoutError as exc:
        logger.error("store_call_timeout", operation=func.__name__, timeout=timeout)
        raise InfrastructureError("storage timed out") from exc
    except StoreUnavailable as exc:
        logger.error("store_call_failed", operation=func.__name__, error=str(exc))
        raise InfrastructureError("storage unavailable") from exc
