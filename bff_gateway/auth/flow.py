import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode

from ..config import GatewaySettings
from ..logging_util import get_correlation_id, get_logger
from ..models import AuthorizedCredential, PendingAuthorization, utcnow
from ..oidc import OIDCClient, decode_jwt_claims
from ..sessions import CSRF_TOKEN_KEY, FRONTEND_URL_KEY, RETURN_TO_KEY, SUBJECT_KEY, Session, SessionStore
from ..utils.exceptions import GatewayError, ProviderError, UnsafeRedirect
from .pkce import PKCEGenerator
from .redirects import RedirectValidator

logger = get_logger(__name__)

CALLBACK_PAGE = "/auth-callback"
LOGIN_FAILED = "login_failed"


@dataclass(frozen=True)
class LogoutResult:
    message: str = "success"
    warning: Optional[str] = None


class LoginFailed(GatewayError):
    error_code = "LOGIN_FAILED"
    default_message = "Login could not be completed."


class AuthorizationFlowCoordinator:
    """
    Drives the authorization code + PKCE flow between the browser, the
    gateway and the identity provider, and the reverse path at logout.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        store: SessionStore,
        oidc: OIDCClient,
        redirects: RedirectValidator,
        pkce: Optional[PKCEGenerator] = None,
    ):
        self.settings = settings
        self.store = store
        self.oidc = oidc
        self.redirects = redirects
        self.pkce = pkce or PKCEGenerator()

    def _callback_url(self, frontend_url: str, return_to: Optional[str]) -> str:
        url = frontend_url.rstrip("/") + CALLBACK_PAGE
        if not return_to:
            return url
        try:
            return url + "?" + urlencode({"return_to": self.redirects.ensure_safe(return_to)})
        except UnsafeRedirect:
            return url

    def _failure_url(self) -> str:
        return self.redirects.default_frontend_url + CALLBACK_PAGE + "?" + urlencode({"error": LOGIN_FAILED})

    async def initiate(
        self,
        session: Session,
        return_to: Optional[str] = None,
        referer: Optional[str] = None,
        origin: Optional[str] = None,
    ) -> str:
        frontend_url = self.redirects.resolve_frontend_url(session, referer, origin)

        if await self.store.get_credential(session.id) is not None:
            logger.info("Login requested for an already authenticated session")
            return self._callback_url(frontend_url, return_to)

        if return_to:
            session[RETURN_TO_KEY] = return_to

        now = utcnow()
        pending = PendingAuthorization(
            state=secrets.token_urlsafe(32),
            session_id=session.id,
            nonce=secrets.token_urlsafe(32),
            pkce=self.pkce.generate(),
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.login_transaction_ttl_seconds),
        )
        await self.store.put_pending(pending)
        # the session must exist in the store before the provider sends the browser back
        session.modified = True

        logger.info(f"Starting authorization code flow, frontend={frontend_url}")
        return await self.oidc.authorization_url(pending.state, pending.nonce, pending.pkce)

    async def handle_callback(
        self,
        session: Session,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
    ) -> str:
        try:
            credential = await self._complete_login(session, code, state, error)
        except GatewayError as e:
            logger.warning(f"Login failed [{get_correlation_id()}]: {e.message}")
            session.pop(RETURN_TO_KEY)
            session.pop(FRONTEND_URL_KEY)
            return self._failure_url()

        session.regenerate()
        await self.store.put_credential(session.id, credential)
        session[SUBJECT_KEY] = credential.subject or "unknown"
        # a new token for the new session id
        session.pop(CSRF_TOKEN_KEY)

        frontend_url = session.pop(FRONTEND_URL_KEY) or self.redirects.default_frontend_url
        return_to = session.pop(RETURN_TO_KEY)
        logger.info(f"Login completed for subject {session[SUBJECT_KEY]}")
        return self._callback_url(frontend_url, return_to)

    async def _complete_login(
        self,
        session: Session,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str],
    ) -> AuthorizedCredential:
        pending = await self.store.take_pending(state) if state else None

        if error:
            raise LoginFailed(f"provider returned error={error}")
        if pending is None:
            raise LoginFailed("unknown or already used state")
        if pending.is_expired():
            raise LoginFailed("login transaction expired")
        if not secrets.compare_digest(pending.session_id, session.id):
            raise LoginFailed("state belongs to a different session")
        if not code:
            raise LoginFailed("authorization code missing")

        tokens = await self.oidc.exchange_code(code, pending.pkce.code_verifier)
        claims = decode_jwt_claims(tokens.id_token)
        if tokens.id_token and claims.get("nonce") not in (None, pending.nonce):
            raise LoginFailed("ID token nonce mismatch")

        return AuthorizedCredential.from_token_response(
            tokens,
            default_lifetime_seconds=self.settings.default_token_lifetime_seconds,
            subject=claims.get("sub"),
            issuer=claims.get("iss") or self.settings.oidc_issuer_url,
        )

    async def logout(self, session: Session, complete: bool = False) -> LogoutResult:
        credential = await self.store.get_credential(session.id)
        await self.store.destroy(session.id)
        session.invalidate()

        if not complete:
            logger.info("Local logout completed")
            return LogoutResult()

        if credential is None or not credential.id_token:
            logger.info("No ID token available; skipping provider logout")
            return LogoutResult()

        try:
            await self.oidc.end_session(credential.id_token)
        except ProviderError as e:
            logger.warning(f"Provider logout failed: {e.message}")
            return LogoutResult(warning="Provider logout failed; local session was cleared.")

        logger.info("Complete logout (local + provider) completed")
        return LogoutResult()

