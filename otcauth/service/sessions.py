from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Protocol, Set

from otcauth.config import Settings
from otcauth.logging import get_logger
from otcauth.service.errors import InfrastructureError, UnauthorizedError
from otcauth.storage.errors import StoreUnavailable
from otcauth.storage.models import IssuedToken, SessionClaims, SessionRecord, User

logger = get_logger(__name__)


class SessionBackend(Protocol):
    async def save_session(
        self, record: SessionRecord, *, ttl_seconds: int, index_ttl_seconds: int
    ) -> None: ...

    async def get_session(self, fingerprint: str) -> Optional[SessionRecord]: ...

    async def touch_session(self, fingerprint: str, last_used_at: datetime) -> bool: ...

    async def delete_session(self, fingerprint: str, user_id: Optional[str] = None) -> None: ...

    async def delete_user_sessions(self, user_id: str) -> int: ...

    async def list_user_sessions(self, user_id: str) -> List[SessionRecord]: ...


def token_fingerprint(token: str) -> str:
    """One-way fingerprint of the full bearer token string."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionManager:
    """HS256 bearer tokens backed by revocable server-side session records.

    A token is accepted only while its signature and time claims are valid
    *and* a record for its fingerprint still exists; deleting the record
    revokes the token before its ``exp``.
    """

    def __init__(self, backend: SessionBackend, settings: Settings) -> None:
        self.backend = backend
        self.settings = settings
        self.ttl = timedelta(minutes=settings.jwt_ttl_minutes)
        self.index_grace = timedelta(seconds=settings.session_index_grace_seconds)
        self._clock_skew_leeway = timedelta(seconds=settings.jwt_leeway_seconds)
        self._touch_tasks: Set[asyncio.Task] = set()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # ===== token encoding =====

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str, *, verify_time: bool = True) -> Optional[dict[str, Any]]:
        """Return the payload when the signature, issuer and time claims check out."""
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict) or payload.get("iss") != self.settings.jwt_issuer:
            return None
        if not verify_time:
            return payload
        try:
            exp = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
            nbf = datetime.fromtimestamp(int(payload["nbf"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            return None
        now = self._now()
        if exp <= now - self._clock_skew_leeway:
            return None
        if nbf > now + self._clock_skew_leeway:
            return None
        return payload

    @staticmethod
    def _claims_from_payload(payload: dict[str, Any], fingerprint: str) -> SessionClaims:
        return SessionClaims(
            user_id=str(payload["sub"]),
            phone_number=payload.get("phone_number", ""),
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
            not_before=datetime.fromtimestamp(int(payload["nbf"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            token_id=payload.get("jti", ""),
            issuer=payload["iss"],
            token_fingerprint=fingerprint,
        )

    # ===== lifecycle =====

    async def issue_token(self, user: User) -> IssuedToken:
        now = self._now().replace(microsecond=0)
        expires_at = now + self.ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "sub": user.id,
            "phone_number": user.phone_number,
            "iat": int(now.timestamp()),
            "nbf": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
        }
        token = self._encode_jwt(payload)
        fingerprint = token_fingerprint(token)
        record = SessionRecord(
            token_fingerprint=fingerprint,
            user_id=user.id,
            issued_at=now,
            expires_at=expires_at,
            last_used_at=now,
        )
        ttl_seconds = int(self.ttl.total_seconds())
        try:
            await self.backend.save_session(
                record,
                ttl_seconds=ttl_seconds,
                index_ttl_seconds=ttl_seconds + int(self.index_grace.total_seconds()),
            )
        except StoreUnavailable as exc:
            # Issuance still succeeds; validate() rejects the token while no record exists.
            logger.error(
                "session_record_persist_failed", user_id=user.id, error=str(exc)
            )
        logger.info("session_token_issued", user_id=user.id, expires_at=expires_at.isoformat())
        return IssuedToken(token=token, expires_at=expires_at, token_fingerprint=fingerprint)

    async def validate(self, token: str) -> SessionClaims:
        payload = self._decode_jwt(token)
        if payload is None or not payload.get("sub"):
            raise UnauthorizedError("invalid or expired token")
        fingerprint = token_fingerprint(token)
        try:
            record = await self.backend.get_session(fingerprint)
        except StoreUnavailable as exc:
            raise InfrastructureError("session store unavailable") from exc
        if record is None or record.user_id != str(payload["sub"]):
            raise UnauthorizedError("session revoked or not active")
        self._schedule_touch(fingerprint)
        return self._claims_from_payload(payload, fingerprint)

    def _schedule_touch(self, fingerprint: str) -> None:
        """Refresh ``last_used_at`` in a detached task.

        Best effort only: the task may not run before shutdown and its errors
        are logged and dropped. It never extends the record's TTL.
        """
        task = asyncio.create_task(self._touch(fingerprint, self._now()))
        self._touch_tasks.add(task)
        task.add_done_callback(self._touch_tasks.discard)

    async def _touch(self, fingerprint: str, at: datetime) -> None:
        try:
            await self.backend.touch_session(fingerprint, at)
        except Exception as exc:
            logger.warning("session_touch_failed", error=str(exc))

    async def drain_touches(self) -> None:
        """Wait for pending last-used refreshes; used on shutdown and in tests."""
        if self._touch_tasks:
            await asyncio.gather(*list(self._touch_tasks), return_exceptions=True)

    async def revoke(self, token: str) -> None:
        """Delete the session record for ``token``. Revoking twice is a no-op."""
        fingerprint = token_fingerprint(token)
        payload = self._decode_jwt(token, verify_time=False)
        user_id = str(payload["sub"]) if payload and payload.get("sub") else None
        try:
            await self.backend.delete_session(fingerprint, user_id)
        except StoreUnavailable as exc:
            raise InfrastructureError("session store unavailable") from exc
        logger.info("session_revoked", user_id=user_id)

    async def revoke_all(self, user_id: str) -> int:
        try:
            count = await self.backend.delete_user_sessions(user_id)
        except StoreUnavailable as exc:
            raise InfrastructureError("session store unavailable") from exc
        logger.info("sessions_revoked_all", user_id=user_id, count=count)
        return count

    async def list_sessions(self, user_id: str) -> List[SessionRecord]:
        try:
            return await self.backend.list_user_sessions(user_id)
        except StoreUnavailable as exc:
            raise InfrastructureError("session store unavailable") from exc
