import secrets
from datetime import timedelta
from typing import Any, Optional

from redis.asyncio import Redis
from starlette.datastructures import MutableHeaders
from starlette.requests import HTTPConnection, Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .config import GatewaySettings
from .logging_util import get_logger
from .models import AuthorizedCredential, PendingAuthorization, SessionData, ensure_aware_utc, utcnow
from .persistence import PersistenceFactory, PersistenceProvider

logger = get_logger(__name__)

# --- Session attribute keys ---
FRONTEND_URL_KEY = "original_frontend_url"
RETURN_TO_KEY = "redirect_after_login"
CSRF_TOKEN_KEY = "csrf_token"
SUBJECT_KEY = "sub"


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


def build_cookie(
    name: str,
    value: str,
    *,
    max_age: Optional[int] = None,
    httponly: bool = True,
    secure: bool = True,
    samesite: str = "lax",
    path: str = "/",
) -> str:
    parts = [f"{name}={value}", f"Path={path}", f"SameSite={samesite}"]
    if max_age is not None:
        parts.append(f"Max-Age={max_age}")
    if httponly:
        parts.append("HttpOnly")
    if secure:
        parts.append("Secure")
    return "; ".join(parts)


class Session:
    """
    Mutable view of one session for the duration of a request.

    Writes only mark the session dirty; `SessionMiddleware` persists it once,
    right before the response starts.
    """

    def __init__(self, data: SessionData, is_new: bool = False):
        self._data = data
        self.is_new = is_new
        self.modified = False
        self.invalidated = False
        self.previous_id: Optional[str] = None

    @property
    def id(self) -> str:
        return self._data.id

    @property
    def data(self) -> SessionData:
        return self._data

    @property
    def is_authenticated(self) -> bool:
        return bool(self._data.attributes.get(SUBJECT_KEY))

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.attributes.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self._data.attributes[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._data.attributes[key] = value
        self.modified = True

    def __contains__(self, key: str) -> bool:
        return key in self._data.attributes

    def pop(self, key: str, default: Any = None) -> Any:
        if key in self._data.attributes:
            self.modified = True
        return self._data.attributes.pop(key, default)

    def regenerate(self) -> None:
        """Issue a new session id, keeping attributes. The old id is deleted on save."""
        if not self.is_new and self.previous_id is None:
            self.previous_id = self._data.id
        self._data.id = new_session_id()
        self.modified = True

    def invalidate(self) -> None:
        self._data.attributes.clear()
        self.invalidated = True


class SessionStore:
    """
    Narrow interface to the shared keyed store: sessions, the credential of
    each authenticated session, and pending login transactions.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        sessions: PersistenceProvider[SessionData],
        credentials: PersistenceProvider[AuthorizedCredential],
        pending: PersistenceProvider[PendingAuthorization],
    ):
        self.settings = settings
        self.ttl = settings.session_ttl_seconds
        self.sessions = sessions
        self.credentials = credentials
        self.pending = pending

    @classmethod
    def create(cls, settings: GatewaySettings, redis_client: Optional[Redis] = None) -> "SessionStore":
        return cls(
            settings,
            sessions=PersistenceFactory.create(SessionData, "session", settings, redis_client),
            credentials=PersistenceFactory.create(AuthorizedCredential, "credential", settings, redis_client),
            pending=PersistenceFactory.create(PendingAuthorization, "pending_auth", settings, redis_client),
        )

    def new_session(self) -> Session:
        now = utcnow()
        data = SessionData(
            id=new_session_id(),
            created_at=now,
            expires_at=now + timedelta(seconds=self.ttl),
        )
        return Session(data, is_new=True)

    async def load(self, session_id: str) -> Optional[Session]:
        data = await self.sessions.get(session_id)
        if data is None:
            return None
        if ensure_aware_utc(data.expires_at) <= utcnow():
            await self.destroy(session_id)
            return None
        return Session(data)

    async def save(self, session: Session) -> None:
        session.data.expires_at = utcnow() + timedelta(seconds=self.ttl)
        await self.sessions.set(session.id, session.data, ttl_in_sec=self.ttl)
        if session.previous_id:
            await self.sessions.delete(session.previous_id)
            await self.credentials.delete(session.previous_id)
            session.previous_id = None
        await self.credentials.touch(session.id, self.ttl)

    async def touch(self, session: Session) -> None:
        await self.sessions.touch(session.id, self.ttl)
        await self.credentials.touch(session.id, self.ttl)

    async def destroy(self, session_id: str) -> None:
        await self.sessions.delete(session_id)
        await self.credentials.delete(session_id)

    # --- Credentials ---

    async def get_credential(self, session_id: str) -> Optional[AuthorizedCredential]:
        return await self.credentials.get(session_id)

    async def put_credential(self, session_id: str, credential: AuthorizedCredential) -> None:
        await self.credentials.set(session_id, credential, ttl_in_sec=self.ttl)

    async def delete_credential(self, session_id: str) -> None:
        await self.credentials.delete(session_id)

    def refresh_lock(self, session_id: str):
        return self.credentials.lock(f"refresh:{session_id}", self.settings.refresh_lock_timeout_seconds)

    # --- Pending logins ---

    async def put_pending(self, pending: PendingAuthorization) -> None:
        await self.pending.set(
            pending.state, pending, ttl_in_sec=self.settings.login_transaction_ttl_seconds
        )

    async def take_pending(self, state: str) -> Optional[PendingAuthorization]:
        return await self.pending.pop(state)


class SessionMiddleware:
    """
    Loads the session named by the session cookie into `request.state.session`
    and writes it back when the handler changed it.
    """

    def __init__(self, app: ASGIApp, store: SessionStore, settings: GatewaySettings):
        self.app = app
        self.store = store
        self.cookie_name = settings.session_cookie_name
        self.secure = settings.session_cookie_secure

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        connection = HTTPConnection(scope)
        cookie_id = connection.cookies.get(self.cookie_name)
        session = await self.store.load(cookie_id) if cookie_id else None
        if session is None:
            session = self.store.new_session()
        scope.setdefault("state", {})["session"] = session

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                if session.invalidated:
                    await self.store.destroy(session.id)
                    if session.previous_id:
                        await self.store.destroy(session.previous_id)
                    if cookie_id:
                        headers.append(
                            "Set-Cookie",
                            build_cookie(self.cookie_name, "", max_age=0, secure=self.secure),
                        )
                elif session.modified:
                    await self.store.save(session)
                    headers.append("Set-Cookie", build_cookie(self.cookie_name, session.id, secure=self.secure))
                elif not session.is_new:
                    await self.store.touch(session)
            await send(message)

        await self.app(scope, receive, send_wrapper)


def get_session(request: Request) -> Session:
    return request.state.session
