from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from otcauth.config import Settings
from otcauth.logging import get_logger
from otcauth.service.delivery import CodeSink
from otcauth.service.errors import (
    InfrastructureError,
    InvalidOrExpiredChallengeError,
    ValidationError,
)
from otcauth.service.phone import ensure_phone_number
from otcauth.service.store_calls import call_store
from otcauth.storage.errors import ConstraintViolation
from otcauth.storage.models import IssuedChallenge, OTPChallenge

logger = get_logger(__name__)

_INVALID_CHALLENGE_MESSAGE = "invalid or expired code"


class ChallengeStore(Protocol):
    def create_challenge(
        self,
        phone_number: str,
        code: str,
        session_handle: str,
        expires_at: datetime,
        *,
        created_at: Optional[datetime] = None,
    ) -> OTPChallenge: ...

    def find_active_challenge(
        self, session_handle: str, code: str, now: datetime
    ) -> Optional[OTPChallenge]: ...

    def consume_challenge(self, challenge_id: int, used_at: datetime) -> bool: ...

    def delete_expired_challenges(self, now: datetime) -> int: ...


class ChallengeManager:
    """Issues one-time codes and consumes them at most once.

    The session handle returned by ``issue`` stands in for the phone number on
    the wire, so ``verify`` never echoes a number back to an unauthenticated
    caller. Wrong codes, unknown or spent handles, and expired challenges are
    all reported as the same ``InvalidOrExpiredChallengeError`` and leave the
    stored challenge untouched.
    """

    def __init__(self, store: ChallengeStore, sink: CodeSink, settings: Settings) -> None:
        self.store = store
        self.sink = sink
        self.code_length = settings.otp_length
        self.handle_bytes = settings.otp_handle_bytes
        self.ttl = timedelta(seconds=settings.otp_ttl_seconds)
        self.timeout = settings.store_timeout_seconds
        self._code_pattern = re.compile(rf"\d{{{self.code_length}}}")
        self._handle_pattern = re.compile(rf"[0-9a-f]{{{self.handle_bytes * 2}}}")

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def generate_code(self) -> str:
        return f"{secrets.randbelow(10 ** self.code_length):0{self.code_length}d}"

    def generate_handle(self) -> str:
        return secrets.token_hex(self.handle_bytes)

    async def issue(self, phone_number: str) -> IssuedChallenge:
        ensure_phone_number(phone_number)
        now = self._now()
        code = self.generate_code()
        handle = self.generate_handle()
        expires_at = now + self.ttl
        try:
            challenge = await call_store(
                self.store.create_challenge,
                phone_number,
                code,
                handle,
                expires_at,
                created_at=now,
                timeout=self.timeout,
            )
        except ConstraintViolation as exc:
            # Handle collisions are left to the UNIQUE constraint
            logger.error("otp_handle_collision", error=exc.message)
            raise InfrastructureError("could not create challenge") from exc
        self.sink.on_code_generated(phone_number, code, challenge.expires_at)
        logger.info(
            "otp_challenge_issued",
            phone_number=phone_number,
            challenge_id=challenge.id,
            expires_at=challenge.expires_at.isoformat(),
        )
        return IssuedChallenge(session_handle=handle, expires_at=challenge.expires_at)

    def _validate_inputs(self, session_handle: str, code: str) -> None:
        if not isinstance(session_handle, str) or not self._handle_pattern.fullmatch(
            session_handle
        ):
            raise ValidationError(
                "invalid session handle", detail={"field": "session_handle"}
            )
        if not isinstance(code, str) or not self._code_pattern.fullmatch(code):
            raise ValidationError(
                f"code must be {self.code_length} digits", detail={"field": "code"}
            )

    async def verify(self, session_handle: str, code: str) -> str:
        """Consume the matching challenge and return its phone number."""
        self._validate_inputs(session_handle, code)
        now = self._now()
        challenge = await call_store(
            self.store.find_active_challenge,
            session_handle,
            code,
            now,
            timeout=self.timeout,
        )
        if challenge is None:
            logger.info("otp_verify_rejected", reason="no_active_match")
            raise InvalidOrExpiredChallengeError(_INVALID_CHALLENGE_MESSAGE)
        consumed = await call_store(
            self.store.consume_challenge, challenge.id, now, timeout=self.timeout
        )
        if not consumed:
            # Lost the race against a concurrent verify of the same challenge
            logger.info(
                "otp_verify_rejected", reason="already_consumed", challenge_id=challenge.id
            )
            raise InvalidOrExpiredChallengeError(_INVALID_CHALLENGE_MESSAGE)
        logger.info("otp_challenge_consumed", challenge_id=challenge.id)
        return challenge.phone_number

    async def sweep_expired(self) -> int:
        deleted = await call_store(
            self.store.delete_expired_challenges, self._now(), timeout=self.timeout
        )
        if deleted:
            logger.info("otp_challenges_swept", count=deleted)
        return deleted
