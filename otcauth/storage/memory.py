from __future__ import annotations

import math
import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from otcauth.logging import get_logger
from otcauth.storage.errors import ConstraintViolation
from otcauth.storage.models import (
    OTPChallenge,
    RateLimitDecision,
    RateLimitWindow,
    SessionRecord,
    User,
    utcnow,
)


class MemoryStore:
    """In-process twin of ``PostgresStore`` for users and OTP challenges."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.challenges: Dict[int, OTPChallenge] = {}
        self._users_by_phone: Dict[str, str] = {}
        self._handles: Dict[str, int] = {}
        self._challenge_seq = 0
        # RLock for all data operations; conditional updates rely on it
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # ===== users =====

    def create_user(self, phone_number: str, *, now: Optional[datetime] = None) -> User:
        with self._data_lock:
            if phone_number in self._users_by_phone:
                raise ConstraintViolation(
                    "phone number already registered", {"field": "phone_number"}
                )
            user = User.new(phone_number, now=now)
            self.users[user.id] = user
            self._users_by_phone[phone_number] = user.id
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_phone(self, phone_number: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._users_by_phone.get(phone_number)
            if not user_id:
                return None
            return replace(self.users[user_id])

    def update_last_login(self, user_id: str, at: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.last_login_at = at
            return replace(user)

    def list_users(
        self, *, offset: int = 0, limit: int = 20, search: Optional[str] = None
    ) -> Tuple[List[User], int]:
        with self._data_lock:
            users = list(self.users.values())
        if search:
            users = [u for u in users if search in u.phone_number]
        users.sort(key=lambda u: u.registered_at, reverse=True)
        return [replace(u) for u in users[offset : offset + limit]], len(users)

    # ===== challenges =====

    def create_challenge(
        self,
        phone_number: str,
        code: str,
        session_handle: str,
        expires_at: datetime,
        *,
        created_at: Optional[datetime] = None,
    ) -> OTPChallenge:
        with self._data_lock:
            if session_handle in self._handles:
                raise ConstraintViolation(
                    "session handle already exists", {"field": "session_handle"}
                )
            self._challenge_seq += 1
            challenge = OTPChallenge(
                id=self._challenge_seq,
                phone_number=phone_number,
                code=code,
                session_handle=session_handle,
                expires_at=expires_at,
                created_at=created_at or utcnow(),
            )
            self.challenges[challenge.id] = challenge
            self._handles[session_handle] = challenge.id
            return replace(challenge)

    def find_active_challenge(
        self, session_handle: str, code: str, now: datetime
    ) -> Optional[OTPChallenge]:
        with self._data_lock:
            matches = [
                c
                for c in self.challenges.values()
                if c.session_handle == session_handle
                and c.code == code
                and not c.is_used
                and c.expires_at > now
            ]
            if not matches:
                return None
            newest = max(matches, key=lambda c: c.created_at)
            return replace(newest)

    def consume_challenge(self, challenge_id: int, used_at: datetime) -> bool:
        """Flip ``is_used`` if it is still false; False when nothing changed."""
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge or challenge.is_used:
                return False
            challenge.is_used = True
            challenge.used_at = used_at
            return True

    def delete_expired_challenges(self, now: datetime) -> int:
        with self._data_lock:
            expired = [cid for cid, c in self.challenges.items() if c.expires_at < now]
            for cid in expired:
                challenge = self.challenges.pop(cid)
                self._handles.pop(challenge.session_handle, None)
            return len(expired)


class MemoryCache:
    """In-process twin of ``RedisCache`` with TTL bookkeeping.

    Used when Redis is disabled for tests or local development. Entries carry
    an absolute deadline on ``clock()``; ``None`` means no expiry.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._lock = threading.Lock()
        self._rate_windows: Dict[str, Tuple[RateLimitWindow, Optional[float]]] = {}
        self._sessions: Dict[str, Tuple[SessionRecord, Optional[float]]] = {}
        self._user_sessions: Dict[str, Tuple[Set[str], Optional[float]]] = {}

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def _alive(self, deadline: Optional[float]) -> bool:
        return deadline is None or deadline > self._clock()

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
        window_delta = timedelta(seconds=window_seconds)
        with self._lock:
            entry = self._rate_windows.get(phone_number)
            current = entry[0] if entry and self._alive(entry[1]) else None
            if current is None or now - current.window_start_at >= window_delta:
                window = RateLimitWindow(
                    phone_number=phone_number,
                    request_count=1,
                    window_start_at=now,
                    last_request_at=now,
                )
                self._rate_windows[phone_number] = (window, self._clock() + window_seconds)
                return RateLimitDecision(allowed=True, window=replace(window))
            remaining = (current.window_start_at + window_delta - now).total_seconds()
            if current.request_count >= max_requests:
                return RateLimitDecision(
                    allowed=False,
                    window=replace(current),
                    retry_after=max(1, math.ceil(remaining)),
                )
            current.request_count += 1
            current.last_request_at = now
            ttl = max(math.ceil(remaining), min_ttl_seconds)
            self._rate_windows[phone_number] = (current, self._clock() + ttl)
            return RateLimitDecision(allowed=True, window=replace(current))

    async def repair_rate_limit_ttls(self, window_seconds: int) -> int:
        repaired = 0
        with self._lock:
            for key, (window, deadline) in list(self._rate_windows.items()):
                if deadline is None:
                    self._rate_windows[key] = (window, self._clock() + window_seconds)
                    repaired += 1
        return repaired

    # ===== sessions =====

    async def save_session(
        self, record: SessionRecord, *, ttl_seconds: int, index_ttl_seconds: int
    ) -> None:
        now = self._clock()
        with self._lock:
            self._sessions[record.token_fingerprint] = (replace(record), now + ttl_seconds)
            members, deadline = self._user_sessions.get(record.user_id, (set(), None))
            if not self._alive(deadline):
                members = set()
            # Drop fingerprints whose session already expired
            members = {
                fp for fp in members if fp in self._sessions and self._alive(self._sessions[fp][1])
            }
            members.add(record.token_fingerprint)
            self._user_sessions[record.user_id] = (members, now + index_ttl_seconds)

    async def get_session(self, fingerprint: str) -> Optional[SessionRecord]:
        with self._lock:
            entry = self._sessions.get(fingerprint)
            if not entry:
                return None
            if not self._alive(entry[1]):
                self._sessions.pop(fingerprint, None)
                return None
            return replace(entry[0])

    def session_ttl(self, fingerprint: str) -> Optional[float]:
        """Remaining lifetime in seconds, mirroring Redis TTL for tests."""
        with self._lock:
            entry = self._sessions.get(fingerprint)
            if not entry or entry[1] is None:
                return None
            return entry[1] - self._clock()

    async def touch_session(self, fingerprint: str, last_used_at: datetime) -> bool:
        with self._lock:
            entry = self._sessions.get(fingerprint)
            if not entry or not self._alive(entry[1]):
                return False
            record, deadline = entry
            self._sessions[fingerprint] = (replace(record, last_used_at=last_used_at), deadline)
            return True

    async def delete_session(self, fingerprint: str, user_id: Optional[str] = None) -> None:
        with self._lock:
            entry = self._sessions.pop(fingerprint, None)
            owner = user_id or (entry[0].user_id if entry else None)
            if owner and owner in self._user_sessions:
                self._user_sessions[owner][0].discard(fingerprint)

    async def delete_user_sessions(self, user_id: str) -> int:
        with self._lock:
            members, _ = self._user_sessions.pop(user_id, (set(), None))
            revoked = 0
            for fingerprint in members:
                entry = self._sessions.pop(fingerprint, None)
                if entry and self._alive(entry[1]):
                    revoked += 1
            return revoked

    async def list_user_sessions(self, user_id: str) -> List[SessionRecord]:
        with self._lock:
            entry = self._user_sessions.get(user_id)
            if not entry or not self._alive(entry[1]):
                return []
            records = []
            for fingerprint in entry[0]:
                session = self._sessions.get(fingerprint)
                if session and self._alive(session[1]):
                    records.append(replace(session[0]))
        records.sort(key=lambda r: r.issued_at, reverse=True)
        return records
