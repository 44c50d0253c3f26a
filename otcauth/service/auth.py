from __future__ import annotations

from typing import Optional

from otcauth.logging import get_logger
from otcauth.service.challenges import ChallengeManager
from otcauth.service.errors import UnauthorizedError
from otcauth.service.phone import ensure_phone_number
from otcauth.service.rate_limit import RateLimiter
from otcauth.service.sessions import SessionManager
from otcauth.service.users import UserDirectory
from otcauth.storage.models import IssuedChallenge, LoginResult, LogoutResult, SessionClaims

logger = get_logger(__name__)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthService:
    """Phone-number login: send a code, verify it, log out."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        challenges: ChallengeManager,
        users: UserDirectory,
        sessions: SessionManager,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.challenges = challenges
        self.users = users
        self.sessions = sessions

    async def send(self, phone_number: str) -> IssuedChallenge:
        ensure_phone_number(phone_number)
        await self.rate_limiter.check_and_record(phone_number)
        return await self.challenges.issue(phone_number)

    async def verify(self, session_handle: str, code: str) -> LoginResult:
        phone_number = await self.challenges.verify(session_handle, code)
        user = await self.users.resolve_login(phone_number)
        if not user.is_active:
            logger.warning("login_rejected_inactive_user", user_id=user.id)
            raise UnauthorizedError("account is disabled")
        issued = await self.sessions.issue_token(user)
        logger.info("login_succeeded", user_id=user.id)
        return LoginResult(bearer_token=issued.token, user=user, expires_at=issued.expires_at)

    async def logout(self, bearer_token: str, logout_all: bool = False) -> LogoutResult:
        claims = await self.sessions.validate(bearer_token)
        if logout_all:
            count = await self.sessions.revoke_all(claims.user_id)
        else:
            await self.sessions.revoke(bearer_token)
            count = 1
        logger.info("logout_completed", user_id=claims.user_id, logout_all=logout_all)
        return LogoutResult(tokens_revoked=count)

    async def authenticate(self, authorization: Optional[str]) -> SessionClaims:
        token = extract_bearer(authorization)
        if not token:
            raise UnauthorizedError("missing bearer token")
        return await self.sessions.validate(token)
