"""Bearer tokens backed by revocable session records."""
import base64
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from otcauth.service.errors import InfrastructureError, UnauthorizedError
from otcauth.service.sessions import SessionManager, token_fingerprint
from otcauth.storage.errors import StoreUnavailable
from otcauth.storage.models import SessionRecord, User


@pytest.fixture
def sessions(memory_cache, settings):
    return SessionManager(memory_cache, settings)


@pytest.fixture
def user():
    return User.new("+1234567890")


def _payload(token):
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestIssueToken:
    async def test_token_carries_identity_and_time_claims(self, sessions, user):
        issued = await sessions.issue_token(user)
        payload = _payload(issued.token)

        assert payload["sub"] == user.id
        assert payload["phone_number"] == user.phone_number
        assert payload["iss"] == "otp-auth-service"
        assert payload["nbf"] == payload["iat"]
        assert payload["exp"] - payload["iat"] == 24 * 3600
        assert payload["jti"]
        assert int(issued.expires_at.timestamp()) == payload["exp"]

    async def test_persists_record_keyed_by_fingerprint(self, sessions, memory_cache, user):
        issued = await sessions.issue_token(user)
        fingerprint = token_fingerprint(issued.token)

        record = await memory_cache.get_session(fingerprint)
        assert issued.token_fingerprint == fingerprint
        assert record.user_id == user.id
        assert record.expires_at == issued.expires_at
        assert memory_cache.session_ttl(fingerprint) == pytest.approx(24 * 3600)
        members, index_deadline = memory_cache._user_sessions[user.id]
        assert fingerprint in members
        assert index_deadline - memory_cache._clock() == 24 * 3600 + 3600

    async def test_tokens_issued_together_are_distinct(self, sessions, user):
        first = await sessions.issue_token(user)
        second = await sessions.issue_token(user)
        assert first.token != second.token
        assert first.token_fingerprint != second.token_fingerprint

    async def test_store_failure_still_returns_token(self, settings, user):
        backend = AsyncMock()
        backend.save_session.side_effect = StoreUnavailable("redis", "timeout")
        backend.get_session.return_value = None
        sessions = SessionManager(backend, settings)

        with patch("otcauth.service.sessions.logger") as mock_logger:
            issued = await sessions.issue_token(user)

        assert issued.token.count(".") == 2
        assert mock_logger.error.call_args[0][0] == "session_record_persist_failed"
        with pytest.raises(UnauthorizedError):
            await sessions.validate(issued.token)


class TestValidate:
    async def test_accepts_active_session(self, sessions, user):
        issued = await sessions.issue_token(user)
        claims = await sessions.validate(issued.token)
        await sessions.drain_touches()

        assert claims.user_id == user.id
        assert claims.phone_number == user.phone_number
        assert claims.token_fingerprint == issued.token_fingerprint

    async def test_rejects_tampered_signature(self, sessions, user):
        issued = await sessions.issue_token(user)
        header, payload, signature = issued.token.split(".")
        forged_signature = sessions._encode_segment(b"\x00" * 32)
        assert forged_signature != signature
        forged = f"{header}.{payload}.{forged_signature}"
        with pytest.raises(UnauthorizedError):
            await sessions.validate(forged)

    async def test_rejects_tampered_claims(self, sessions, user):
        issued = await sessions.issue_token(user)
        header, _, signature = issued.token.split(".")
        claims = _payload(issued.token)
        claims["sub"] = "someone-else"
        body = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
        with pytest.raises(UnauthorizedError):
            await sessions.validate(f"{header}.{body}.{signature}")

    async def test_rejects_other_algorithms(self, sessions, user):
        issued = await sessions.issue_token(user)
        _, payload, signature = issued.token.split(".")
        none_header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        with pytest.raises(UnauthorizedError):
            await sessions.validate(f"{none_header}.{payload}.{signature}")

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "x.y.z"])
    async def test_rejects_garbage(self, sessions, token):
        with pytest.raises(UnauthorizedError):
            await sessions.validate(token)

    async def test_rejects_token_from_other_issuer(self, memory_cache, settings_factory, user):
        foreign = SessionManager(memory_cache, settings_factory(jwt_issuer="someone-else"))
        issued = await foreign.issue_token(user)
        local = SessionManager(memory_cache, settings_factory())
        with pytest.raises(UnauthorizedError):
            await local.validate(issued.token)

    async def test_rejects_expired_token(self, sessions, user):
        issued = await sessions.issue_token(user)
        later = datetime.now(timezone.utc) + timedelta(hours=25)
        sessions._now = lambda: later
        with pytest.raises(UnauthorizedError):
            await sessions.validate(issued.token)

    async def test_rejects_token_before_not_before(self, sessions, user):
        sessions._now = lambda: datetime.now(timezone.utc) + timedelta(hours=1)
        issued = await sessions.issue_token(user)
        sessions._now = lambda: datetime.now(timezone.utc)
        with pytest.raises(UnauthorizedError):
            await sessions.validate(issued.token)

    async def test_rejects_when_record_missing(self, sessions, memory_cache, user):
        issued = await sessions.issue_token(user)
        await memory_cache.delete_session(issued.token_fingerprint, user.id)
        with pytest.raises(UnauthorizedError):
            await sessions.validate(issued.token)

    async def test_store_failure_is_infrastructure_error(self, settings, user):
        backend = AsyncMock()
        sessions = SessionManager(backend, settings)
        issued = await sessions.issue_token(user)
        backend.get_session.side_effect = StoreUnavailable("redis", "timeout")
        with pytest.raises(InfrastructureError):
            await sessions.validate(issued.token)


class TestLastUsedRefresh:
    async def test_refresh_keeps_remaining_ttl(self, sessions, memory_cache, fake_clock, user):
        issued = await sessions.issue_token(user)
        fake_clock.advance(100)
        used_at = datetime.now(timezone.utc) + timedelta(minutes=5)
        sessions._now = lambda: used_at

        await sessions.validate(issued.token)
        await sessions.drain_touches()

        record = await memory_cache.get_session(issued.token_fingerprint)
        assert record.last_used_at == used_at
        assert memory_cache.session_ttl(issued.token_fingerprint) == pytest.approx(24 * 3600 - 100)

    async def test_refresh_does_not_resurrect_revoked_session(self, sessions, memory_cache, user):
        issued = await sessions.issue_token(user)
        await sessions.revoke(issued.token)

        await sessions._touch(issued.token_fingerprint, datetime.now(timezone.utc))

        assert await memory_cache.get_session(issued.token_fingerprint) is None

    async def test_refresh_failure_is_logged_not_raised(self, settings, user):
        backend = AsyncMock()
        sessions = SessionManager(backend, settings)
        issued = await sessions.issue_token(user)
        backend.get_session.return_value = _record_for(issued, user)
        backend.touch_session.side_effect = StoreUnavailable("redis", "timeout")

        with patch("otcauth.service.sessions.logger") as mock_logger:
            claims = await sessions.validate(issued.token)
            await sessions.drain_touches()

        assert claims.user_id == user.id
        assert mock_logger.warning.call_args[0][0] == "session_touch_failed"


class TestRevocation:
    async def test_revoked_token_is_rejected(self, sessions, user):
        issued = await sessions.issue_token(user)
        await sessions.validate(issued.token)
        await sessions.revoke(issued.token)
        with pytest.raises(UnauthorizedError):
            await sessions.validate(issued.token)
        await sessions.drain_touches()

    async def test_revoke_is_idempotent(self, sessions, memory_cache, user):
        issued = await sessions.issue_token(user)
        await sessions.revoke(issued.token)
        await sessions.revoke(issued.token)
        assert issued.token_fingerprint not in memory_cache._user_sessions[user.id][0]

    async def test_revoke_of_garbage_is_harmless(self, sessions):
        await sessions.revoke("not-a-token")

    async def test_revoke_leaves_other_sessions(self, sessions, user):
        first = await sessions.issue_token(user)
        second = await sessions.issue_token(user)
        await sessions.revoke(first.token)
        assert (await sessions.validate(second.token)).user_id == user.id
        await sessions.drain_touches()

    async def test_revoke_all_invalidates_every_token(self, sessions, user):
        tokens = [await sessions.issue_token(user) for _ in range(3)]
        other_user = User.new("+449876543210")
        other = await sessions.issue_token(other_user)

        assert await sessions.revoke_all(user.id) == 3

        for issued in tokens:
            with pytest.raises(UnauthorizedError):
                await sessions.validate(issued.token)
        assert (await sessions.validate(other.token)).user_id == other_user.id
        await sessions.drain_touches()

    async def test_revoke_all_without_sessions_returns_zero(self, sessions):
        assert await sessions.revoke_all("missing-user") == 0

    async def test_login_prunes_expired_fingerprints_from_index(
        self, sessions, memory_cache, fake_clock, user
    ):
        await sessions.issue_token(user)
        fake_clock.advance(24 * 3600 + 10)
        live = await sessions.issue_token(user)

        assert memory_cache._user_sessions[user.id][0] == {live.token_fingerprint}
        assert len(await sessions.list_sessions(user.id)) == 1
        assert await sessions.revoke_all(user.id) == 1

    async def test_revoke_all_ignores_sessions_expired_since_login(
        self, sessions, fake_clock, user
    ):
        await sessions.issue_token(user)
        fake_clock.advance(12 * 3600)
        await sessions.issue_token(user)
        fake_clock.advance(12 * 3600 + 10)

        assert len(await sessions.list_sessions(user.id)) == 1
        assert await sessions.revoke_all(user.id) == 1

    async def test_revoke_store_failure_is_infrastructure_error(self, settings, user):
        backend = AsyncMock()
        backend.delete_session.side_effect = StoreUnavailable("redis", "down")
        sessions = SessionManager(backend, settings)
        with pytest.raises(InfrastructureError):
            await sessions.revoke("a.b.c")

    async def test_list_sessions_returns_active_records(self, sessions, user):
        first = await sessions.issue_token(user)
        second = await sessions.issue_token(user)
        await sessions.revoke(first.token)
        records = await sessions.list_sessions(user.id)
        assert [r.token_fingerprint for r in records] == [second.token_fingerprint]


def _record_for(issued, user):
    now = datetime.now(timezone.utc)
    return SessionRecord(
        token_fingerprint=issued.token_fingerprint,
        user_id=user.id,
        issued_at=now,
        expires_at=issued.expires_at,
        last_used_at=now,
    )
