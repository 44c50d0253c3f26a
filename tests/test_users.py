"""User directory over the in-process store."""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from otcauth.service.errors import (
    ConflictError,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)
from otcauth.service.users import UserDirectory
from otcauth.storage.errors import ConstraintViolation, StoreUnavailable
from otcauth.storage.models import User


@pytest.fixture
def directory(memory_store, settings):
    return UserDirectory(memory_store, settings)


class TestCreateAndResolve:
    async def test_create_sets_last_login_to_registration(self, directory):
        user = await directory.create("+1234567890")
        assert user.last_login_at == user.registered_at
        assert user.registered_at.tzinfo is not None

    async def test_create_rejects_invalid_phone(self, directory, memory_store):
        with pytest.raises(ValidationError):
            await directory.create("+12")
        assert memory_store.users == {}

    async def test_create_race_returns_existing_user(self, settings):
        existing = User.new("+1234567890")
        store = MagicMock()
        store.create_user.side_effect = ConstraintViolation("phone number already registered")
        store.get_user_by_phone.return_value = existing
        directory = UserDirectory(store, settings)

        assert await directory.create("+1234567890") is existing

    async def test_create_race_without_readable_row_is_conflict(self, settings):
        store = MagicMock()
        store.create_user.side_effect = ConstraintViolation(
            "phone number already registered", {"field": "phone_number"}
        )
        store.get_user_by_phone.return_value = None
        directory = UserDirectory(store, settings)

        with pytest.raises(ConflictError) as excinfo:
            await directory.create("+1234567890")
        assert excinfo.value.status_code == 409
        assert excinfo.value.detail == {"field": "phone_number"}

    async def test_resolve_login_updates_existing_user(self, directory):
        created = await directory.create("+1234567890")
        later = created.registered_at + timedelta(hours=1)
        directory._now = lambda: later

        resolved = await directory.resolve_login("+1234567890")

        assert resolved.id == created.id
        assert resolved.last_login_at == later
        assert resolved.registered_at == created.registered_at

    async def test_update_last_login_for_missing_user(self, directory):
        with pytest.raises(NotFoundError):
            await directory.update_last_login("missing", datetime.now(timezone.utc))

    async def test_get_missing_user(self, directory):
        with pytest.raises(NotFoundError):
            await directory.get("missing")

    async def test_store_outage_is_infrastructure_error(self, settings):
        store = MagicMock()
        store.get_user_by_phone.side_effect = StoreUnavailable("postgres", "timeout")
        with pytest.raises(InfrastructureError):
            await UserDirectory(store, settings).resolve_login("+1234567890")


class TestListUsers:
    async def _seed(self, directory, count):
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for i in range(count):
            directory._now = lambda i=i: base + timedelta(minutes=i)
            await directory.create(f"+1555000{i:04d}")

    async def test_paginates_newest_first(self, directory):
        await self._seed(directory, 5)

        page = await directory.list_users(page=1, page_size=2)
        assert page.total == 5
        assert page.total_pages == 3
        assert [u.phone_number for u in page.users] == ["+15550000004", "+15550000003"]

        last = await directory.list_users(page=3, page_size=2)
        assert [u.phone_number for u in last.users] == ["+15550000000"]

    async def test_search_matches_substring(self, directory):
        await self._seed(directory, 3)
        await directory.create("+449876543210")

        page = await directory.list_users(search="98765")
        assert [u.phone_number for u in page.users] == ["+449876543210"]
        assert page.total == 1

    async def test_page_bounds_are_clamped(self, directory):
        await self._seed(directory, 1)
        page = await directory.list_users(page=0, page_size=1000)
        assert page.page == 1
        assert page.page_size == 100

    async def test_empty_directory(self, directory):
        page = await directory.list_users()
        assert page.users == []
        assert page.total_pages == 0
