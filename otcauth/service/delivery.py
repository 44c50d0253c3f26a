from __future__ import annotations

import sys
from datetime import datetime
from typing import Protocol, TextIO

from otcauth.logging import get_logger

logger = get_logger(__name__)


class CodeSink(Protocol):
    def on_code_generated(self, phone_number: str, code: str, expires_at: datetime) -> None: ...


class ConsoleCodeSink:
    """Prints codes to a stream; stands in for an SMS gateway in development."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream or sys.stdout

    def on_code_generated(self, phone_number: str, code: str, expires_at: datetime) -> None:
        self.stream.write(
            f"OTP for {phone_number}: {code} (expires at {expires_at:%H:%M:%S})\n"
        )
        self.stream.flush()
        logger.info("otp_delivered", channel="console", phone_number=phone_number)
