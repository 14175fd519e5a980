"""
Back-channel client for the OpenID Connect provider.

Covers discovery, the authorization URL, the two token grants the gateway
uses (authorization_code with PKCE, refresh_token) and RP-initiated logout.
Provider responses are mapped onto ProviderError / ProviderUnavailable so
callers never see raw httpx exceptions or provider error bodies.
"""

import base64
import json
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import httpx
from pydantic import BaseModel, ValidationError

from .config import GatewaySettings
from .logging_util import get_logger
from .models import PKCEContext, TokenResponse
from .utils.exceptions import ProviderError, ProviderUnavailable

logger = get_logger(__name__)

DISCOVERY_PATH = ".well-known/openid-configuration"


class ProviderMetadata(BaseModel):
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: Optional[str] = None
    end_session_endpoint: Optional[str] = None


def build_url_with_params(base_uri: str, params: Dict[str, Optional[str]]) -> str:
    """
    Append or merge query parameters into base_uri.
    """
    url = urlparse(base_uri)
    query = dict(parse_qsl(url.query))
    query.update({k: v for k, v in params.items() if v is not None})
    return urlunparse(url._replace(query=urlencode(query)))


def decode_jwt_claims(token: Optional[str]) -> Dict[str, Any]:
    """
    Payload of a JWT without signature verification. Only used on ID tokens
    received directly from the token endpoint over the back channel.
    """
    if not token:
        return {}
    try:
        payload = token.split(".")[1]
        payload += "=" * (-len(payload) % 4)
        claims = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except (IndexError, ValueError, UnicodeDecodeError):
        logger.warning("Could not decode ID token claims")
        return {}
    return claims if isinstance(claims, dict) else {}


class OIDCClient:
    def __init__(self, settings: GatewaySettings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.http = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.provider_timeout_seconds),
            transport=transport,
        )
        self._metadata: Optional[ProviderMetadata] = None
        if settings.oidc_authorization_endpoint and settings.oidc_token_endpoint:
            self._metadata = ProviderMetadata(
                issuer=settings.oidc_issuer_url,
                authorization_endpoint=settings.oidc_authorization_endpoint,
                token_endpoint=settings.oidc_token_endpoint,
                jwks_uri=settings.oidc_jwks_uri,
                end_session_endpoint=settings.oidc_end_session_endpoint,
            )

    async def aclose(self) -> None:
        await self.http.aclose()

    async def metadata(self) -> ProviderMetadata:
        """Discovery document, fetched once and cached for the process lifetime."""
        if self._metadata is not None:
            return self._metadata

        url = self.settings.oidc_issuer_url.rstrip("/") + "/" + DISCOVERY_PATH
        logger.info(f"Fetching OIDC discovery document from {url}")
        try:
            response = await self.http.get(url)
            response.raise_for_status()
            document = response.json()
        except httpx.HTTPError as e:
            logger.error(f"OIDC discovery failed: {e}")
            raise ProviderUnavailable(message="OIDC discovery failed") from e

        try:
            metadata = ProviderMetadata.model_validate(document)
        except ValidationError as e:
            raise ProviderUnavailable(message="OIDC discovery document is incomplete") from e

        # explicit settings win over discovery
        self._metadata = metadata.model_copy(update={
            k: v for k, v in {
                "end_session_endpoint": self.settings.oidc_end_session_endpoint,
                "jwks_uri": self.settings.oidc_jwks_uri,
            }.items() if v
        })
        return self._metadata

    async def authorization_url(self, state: str, nonce: str, pkce: PKCEContext) -> str:
        metadata = await self.metadata()
        return build_url_with_params(metadata.authorization_endpoint, {
            "response_type": "code",
            "client_id": self.settings.oidc_client_id,
            "redirect_uri": self.settings.oidc_redirect_uri,
            "scope": " ".join(self.settings.oidc_scopes),
            "state": state,
            "nonce": nonce,
            "code_challenge": pkce.code_challenge,
            "code_challenge_method": pkce.code_challenge_method,
        })

    async def exchange_code(self, code: str, code_verifier: str) -> TokenResponse:
        return await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.oidc_redirect_uri,
            "code_verifier": code_verifier,
        })

    async def refresh(self, refresh_token: str) -> TokenResponse:
        return await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })

    async def _token_request(self, payload: Dict[str, str]) -> TokenResponse:
        metadata = await self.metadata()
        data = {**payload, "client_id": self.settings.oidc_client_id}
        if self.settings.oidc_client_secret:
            data["client_secret"] = self.settings.oidc_client_secret

        grant_type = payload["grant_type"]
        try:
            response = await self.http.post(
                metadata.token_endpoint,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Token endpoint unreachable for {grant_type}: {e!r}")
            raise ProviderUnavailable() from e

        if response.status_code >= 500:
            logger.error(f"Token endpoint returned {response.status_code} for {grant_type}")
            raise ProviderUnavailable()

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code != 200 or "error" in body:
            oauth_error = body.get("error") if isinstance(body, dict) else None
            logger.warning(
                f"Token endpoint rejected {grant_type}: status={response.status_code} "
                f"error={oauth_error} description={body.get('error_description') if isinstance(body, dict) else None}"
            )
            raise ProviderError(oauth_error=oauth_error or "invalid_response")

        try:
            return TokenResponse.model_validate(body)
        except ValidationError as e:
            logger.error(f"Malformed token response for {grant_type}")
            raise ProviderError(oauth_error="invalid_response") from e

    async def end_session(self, id_token: str) -> None:
        """
        RP-initiated logout over the back channel. Raises ProviderUnavailable
        when the provider has no end-session endpoint or the call fails.
        """
        metadata = await self.metadata()
        if not metadata.end_session_endpoint:
            raise ProviderUnavailable(message="Provider does not advertise an end_session_endpoint")

        params = {
            "id_token_hint": id_token,
            "client_id": self.settings.oidc_client_id,
        }
        if self.settings.post_logout_redirect_uri:
            params["post_logout_redirect_uri"] = self.settings.post_logout_redirect_uri

        try:
            response = await self.http.get(metadata.end_session_endpoint, params=params)
        except httpx.HTTPError as e:
            logger.error(f"End-session call failed: {e!r}")
            raise ProviderUnavailable() from e
        if response.status_code >= 400:
            logger.error(f"End-session endpoint returned {response.status_code}")
            raise ProviderUnavailable()
