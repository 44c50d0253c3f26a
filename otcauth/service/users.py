from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Protocol, Tuple

from otcauth.config import Settings
from otcauth.logging import get_logger
from otcauth.service.errors import ConflictError, NotFoundError
from otcauth.service.phone import ensure_phone_number
from otcauth.service.store_calls import call_store
from otcauth.storage.errors import ConstraintViolation
from otcauth.storage.models import User, UserPage

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


class UserStore(Protocol):
    def create_user(self, phone_number: str, *, now: Optional[datetime] = None) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_phone(self, phone_number: str) -> Optional[User]: ...

    def update_last_login(self, user_id: str, at: datetime) -> Optional[User]: ...

    def list_users(
        self, *, offset: int = 0, limit: int = 20, search: Optional[str] = None
    ) -> Tuple[List[User], int]: ...


class UserDirectory:
    """Phone-number keyed user accounts."""

    def __init__(self, store: UserStore, settings: Settings) -> None:
        self.store = store
        self.timeout = settings.store_timeout_seconds

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def get_by_phone(self, phone_number: str) -> Optional[User]:
        return await call_store(self.store.get_user_by_phone, phone_number, timeout=self.timeout)

    async def get(self, user_id: str) -> User:
        user = await call_store(self.store.get_user, user_id, timeout=self.timeout)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def create(self, phone_number: str) -> User:
        ensure_phone_number(phone_number)
        try:
            user = await call_store(
                self.store.create_user, phone_number, now=self._now(), timeout=self.timeout
            )
        except ConstraintViolation as exc:
            # Lost a registration race for the same number
            existing = await self.get_by_phone(phone_number)
            if existing is None:
                raise ConflictError(exc.message, detail=exc.detail) from exc
            return existing
        logger.info("user_registered", user_id=user.id, phone_number=phone_number)
        return user

    async def update_last_login(self, user_id: str, at: Optional[datetime] = None) -> User:
        user = await call_store(
            self.store.update_last_login, user_id, at or self._now(), timeout=self.timeout
        )
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def resolve_login(self, phone_number: str) -> User:
        """Return the account for ``phone_number``, creating it on first login."""
        user = await self.get_by_phone(phone_number)
        if user is None:
            return await self.create(phone_number)
        return await self.update_last_login(user.id)

    async def list_users(
        self,
        *,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        search: Optional[str] = None,
    ) -> UserPage:
        page = max(1, page)
        page_size = min(max(1, page_size), MAX_PAGE_SIZE)
        users, total = await call_store(
            self.store.list_users,
            offset=(page - 1) * page_size,
            limit=page_size,
            search=search or None,
            timeout=self.timeout,
        )
        return UserPage(users=users, total=total, page=page, page_size=page_size)
