from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with aware ones."""
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class SessionData(BaseModel):
    """
    Server-side session state. Only the session id is stored in the browser
    cookie.
    """
    id: str
    created_at: datetime
    expires_at: datetime
    attributes: Dict[str, Any] = Field(default_factory=dict)


class PKCEContext(BaseModel):
    code_verifier: str
    code_challenge: str
    code_challenge_method: str = "S256"


class PendingAuthorization(BaseModel):
    """Login transaction between /auth/login and /auth/callback, keyed by `state`."""
    state: str
    session_id: str
    nonce: str
    pkce: PKCEContext
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return ensure_aware_utc(self.expires_at) <= (now or utcnow())


class TokenResponse(BaseModel):
    """Successful token endpoint response (RFC 6749 section 5.1)."""
    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    scope: Optional[str] = None


class AccessToken(BaseModel):
    value: str
    expires_at: datetime
    scope: Optional[str] = None


class AuthorizedCredential(BaseModel):
    """
    Everything the gateway holds for an authenticated session. Stored as a
    single value so that a refresh replaces access and refresh token together.
    """
    access_token: AccessToken
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    subject: Optional[str] = None
    issuer: Optional[str] = None

    def remaining_seconds(self, now: Optional[datetime] = None) -> float:
        return (ensure_aware_utc(self.access_token.expires_at) - (now or utcnow())).total_seconds()

    def needs_refresh(self, skew_seconds: int, now: Optional[datetime] = None) -> bool:
        return self.remaining_seconds(now) <= skew_seconds

    @classmethod
    def from_token_response(
        cls,
        tokens: TokenResponse,
        *,
        default_lifetime_seconds: int,
        subject: Optional[str] = None,
        issuer: Optional[str] = None,
        previous: Optional["AuthorizedCredential"] = None,
        now: Optional[datetime] = None,
    ) -> "AuthorizedCredential":
        """
        Build a credential from a token response. On refresh, `previous`
        supplies what the provider is allowed to omit (refresh token when it
        does not rotate, id token, subject).
        """
        now = now or utcnow()
        lifetime = tokens.expires_in if tokens.expires_in is not None else default_lifetime_seconds
        return cls(
            access_token=AccessToken(
                value=tokens.access_token,
                expires_at=now + timedelta(seconds=lifetime),
                scope=tokens.scope or (previous.access_token.scope if previous else None),
            ),
            refresh_token=tokens.refresh_token or (previous.refresh_token if previous else None),
            id_token=tokens.id_token or (previous.id_token if previous else None),
            subject=subject or (previous.subject if previous else None),
            issuer=issuer or (previous.issuer if previous else None),
        )
