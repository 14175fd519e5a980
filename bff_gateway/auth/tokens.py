import asyncio
from typing import Dict, Optional

from ..config import GatewaySettings
from ..logging_util import get_logger
from ..models import AuthorizedCredential
from ..oidc import OIDCClient
from ..persistence import LockNotAcquired
from ..sessions import SessionStore
from ..utils.exceptions import ProviderError, TokenRefreshFailed

logger = get_logger(__name__)


class TokenLifecycleManager:
    """
    Hands out a usable access token for a session, refreshing it when it is
    about to expire.

    Refreshes are single-flight: concurrent callers for the same session in
    this process share one refresh task, and a store-level lock serialises
    refreshes across gateway instances sharing the same store.
    """

    def __init__(self, store: SessionStore, oidc: OIDCClient, settings: GatewaySettings):
        self.store = store
        self.oidc = oidc
        self.skew_seconds = settings.token_skew_seconds
        self.default_lifetime_seconds = settings.default_token_lifetime_seconds
        self.max_attempts = max(1, settings.token_refresh_max_attempts)
        self._inflight: Dict[str, asyncio.Task] = {}

    async def get_valid_access_token(self, session_id: str) -> Optional[str]:
        credential = await self.store.get_credential(session_id)
        if credential is None:
            return None
        if not credential.needs_refresh(self.skew_seconds):
            return credential.access_token.value

        task = self._inflight.get(session_id)
        if task is None:
            task = asyncio.create_task(self._refresh_once(session_id))
            self._inflight[session_id] = task
            task.add_done_callback(lambda _: self._inflight.pop(session_id, None))

        # a caller going away must not cancel the refresh the others wait on
        credential = await asyncio.shield(task)
        return credential.access_token.value if credential else None

    async def _refresh_once(self, session_id: str) -> Optional[AuthorizedCredential]:
        try:
            async with self.store.refresh_lock(session_id):
                current = await self.store.get_credential(session_id)
                if current is None:
                    return None
                if not current.needs_refresh(self.skew_seconds):
                    logger.debug(f"Credential for session {session_id[:8]} already refreshed elsewhere")
                    return current
                return await self._refresh(session_id, current)
        except TokenRefreshFailed as e:
            logger.warning(f"Dropping credential of session {session_id[:8]}: {e.message}")
            await self.store.delete_credential(session_id)
            return None
        except LockNotAcquired:
            logger.error(f"Timed out waiting for refresh lock of session {session_id[:8]}")
            return None

    async def _refresh(self, session_id: str, current: AuthorizedCredential) -> AuthorizedCredential:
        if not current.refresh_token:
            raise TokenRefreshFailed("access token expired and no refresh token was issued")

        for attempt in range(1, self.max_attempts + 1):
            try:
                tokens = await self.oidc.refresh(current.refresh_token)
            except ProviderError as e:
                if e.is_invalid_grant or attempt == self.max_attempts:
                    raise TokenRefreshFailed(
                        f"refresh rejected after {attempt}/{self.max_attempts} attempt(s): {e.oauth_error or e.message}"
                    ) from e
                logger.info(f"Retrying token refresh for session {session_id[:8]} after {e.oauth_error}")
                continue

            refreshed = AuthorizedCredential.from_token_response(
                tokens,
                default_lifetime_seconds=self.default_lifetime_seconds,
                previous=current,
            )
            await self.store.put_credential(session_id, refreshed)
            logger.info(
                f"Refreshed access token for session {session_id[:8]}"
                f"{' (refresh token rotated)' if tokens.refresh_token else ''}"
            )
            return refreshed
        raise TokenRefreshFailed()
