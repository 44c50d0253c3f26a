import asyncio
import io
import threading
import time
from datetime import datetime, timezone

import pytest

from otcauth.service.delivery import ConsoleCodeSink
from otcauth.service.errors import InfrastructureError, NotFoundError
from otcauth.service.store_calls import call_store
from otcauth.storage.errors import StoreUnavailable


def _lookup(user_id, *, suffix=""):
    return f"{user_id}{suffix}"


async def test_call_store_passes_arguments_through():
    assert await call_store(_lookup, "u1", suffix="-x", timeout=1.0) == "u1-x"


async def test_call_store_runs_off_the_event_loop():
    caller = threading.get_ident()
    worker = await call_store(threading.get_ident, timeout=1.0)
    assert worker != caller


async def test_slow_store_call_times_out():
    def _slow():
        time.sleep(0.5)

    with pytest.raises(InfrastructureError) as excinfo:
        await call_store(_slow, timeout=0.05)
    assert excinfo.value.status_code == 503


async def test_timed_out_write_still_finishes_in_worker():
    finished = threading.Event()

    def _slow_write():
        time.sleep(0.2)
        finished.set()

    with pytest.raises(InfrastructureError):
        await call_store(_slow_write, timeout=0.05)
    assert await asyncio.to_thread(finished.wait, 2.0)


async def test_unavailable_store_is_infrastructure_error():
    def _down():
        raise StoreUnavailable("postgres", "connection refused")

    with pytest.raises(InfrastructureError):
        await call_store(_down, timeout=1.0)


async def test_business_errors_pass_through():
    def _missing():
        raise NotFoundError("user not found")

    with pytest.raises(NotFoundError):
        await call_store(_missing, timeout=1.0)


def test_console_sink_writes_code_and_expiry():
    stream = io.StringIO()
    sink = ConsoleCodeSink(stream)

    sink.on_code_generated(
        "+1234567890", "042917", datetime(2026, 1, 1, 12, 2, 0, tzinfo=timezone.utc)
    )

    assert stream.getvalue() == "OTP for +1234567890: 042917 (expires at 12:02:00)\n"
