from datetime import timedelta

import fakeredis.aioredis
import pytest

from bff_gateway.models import AccessToken, AuthorizedCredential, PKCEContext, PendingAuthorization, utcnow
from bff_gateway.sessions import SessionStore, build_cookie


def make_credential() -> AuthorizedCredential:
    return AuthorizedCredential(
        access_token=AccessToken(value="at", expires_at=utcnow() + timedelta(minutes=5)),
        refresh_token="rt",
    )


def make_pending(session_id: str, state: str = "state-1", ttl: int = 600) -> PendingAuthorization:
    now = utcnow()
    return PendingAuthorization(
        state=state,
        session_id=session_id,
        nonce="n",
        pkce=PKCEContext(code_verifier="v" * 43, code_challenge="c"),
        created_at=now,
        expires_at=now + timedelta(seconds=ttl),
    )


@pytest.fixture(params=["memory", "redis"])
def store(request, settings):
    if request.param == "memory":
        return SessionStore.create(settings)
    return SessionStore.create(
        settings.model_copy(update={"storage_backend": "redis"}),
        fakeredis.aioredis.FakeRedis(decode_responses=True),
    )


class TestSessionStore:

    async def test_new_session_is_not_persisted_until_saved(self, store):
        session = store.new_session()
        assert await store.load(session.id) is None

        session["k"] = "v"
        await store.save(session)

        loaded = await store.load(session.id)
        assert loaded.get("k") == "v"
        assert not loaded.is_new

    async def test_regenerate_moves_session_and_drops_old_id(self, store):
        session = store.new_session()
        session["k"] = "v"
        await store.save(session)
        old_id = session.id
        await store.put_credential(old_id, make_credential())

        loaded = await store.load(old_id)
        loaded.regenerate()
        await store.save(loaded)

        assert loaded.id != old_id
        assert await store.load(old_id) is None
        assert await store.get_credential(old_id) is None
        assert (await store.load(loaded.id)).get("k") == "v"

    async def test_destroy_removes_session_and_credential(self, store):
        session = store.new_session()
        await store.save(session)
        await store.put_credential(session.id, make_credential())

        await store.destroy(session.id)

        assert await store.load(session.id) is None
        assert await store.get_credential(session.id) is None

    async def test_expired_session_is_not_loaded(self, store):
        session = store.new_session()
        await store.save(session)
        session.data.expires_at = utcnow() - timedelta(seconds=1)
        await store.sessions.set(session.id, session.data)

        assert await store.load(session.id) is None

    async def test_pending_authorization_is_taken_once(self, store):
        await store.put_pending(make_pending("sid"))

        first = await store.take_pending("state-1")
        second = await store.take_pending("state-1")

        assert first.session_id == "sid"
        assert second is None

    async def test_session_attribute_tracking(self, store):
        session = store.new_session()
        assert not session.modified
        session.pop("missing")
        assert not session.modified
        session["a"] = 1
        assert session.modified and "a" in session


class TestBuildCookie:

    def test_session_cookie_attributes(self):
        cookie = build_cookie("BFFSESSIONID", "abc")
        assert cookie.startswith("BFFSESSIONID=abc")
        assert "HttpOnly" in cookie
        assert "Secure" in cookie
        assert "SameSite=lax" in cookie
        assert "Path=/" in cookie

    def test_expiring_cookie(self):
        cookie = build_cookie("XSRF-TOKEN", "", max_age=0, httponly=False, secure=False)
        assert "Max-Age=0" in cookie
        assert "HttpOnly" not in cookie
        assert "Secure" not in cookie
