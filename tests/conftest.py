import asyncio
import base64
import json
from typing import Dict, List, Optional
from urllib.parse import parse_qs, parse_qsl, urlsplit

import httpx
import pytest

from bff_gateway.auth.pkce import verify_pkce
from bff_gateway.config import GatewaySettings, RouteEntry
from bff_gateway.http_server import create_app

ISSUER = "https://idp.example/realms/test"
FRONTEND = "http://localhost:3000"
GATEWAY = "http://gateway.test"


def make_settings(**overrides) -> GatewaySettings:
    values = dict(
        oidc_issuer_url=ISSUER,
        oidc_client_id="bff-client",
        oidc_client_secret="s3cret",
        oidc_redirect_uri=f"{GATEWAY}/auth/callback",
        post_logout_redirect_uri=FRONTEND,
        frontend_default_url=FRONTEND,
        allowed_origins=(FRONTEND, "https://*.example.com"),
        routes=(
            RouteEntry(service="my-books", base_url="http://books.internal:8081", path_prefix="/my-books"),
            RouteEntry(service="my-musics", base_url="http://musics.internal:8082", path_prefix="/my-musics"),
        ),
        session_cookie_secure=False,
    )
    values.update(overrides)
    return GatewaySettings(**values)


def make_jwt(claims: dict) -> str:
    def enc(obj) -> str:
        return base64.urlsafe_b64encode(json.dumps(obj).encode()).rstrip(b"=").decode()
    return f"{enc({'alg': 'none', 'typ': 'JWT'})}.{enc(claims)}.sig"


class FakeIdentityProvider:
    """
    Just enough of an OpenID Connect provider: discovery, authorization codes
    bound to a PKCE challenge, refresh token rotation with reuse detection,
    and end-session.
    """

    def __init__(self, expires_in: Optional[int] = 300, refresh_delay: float = 0.0):
        self.expires_in = expires_in
        self.refresh_delay = refresh_delay
        self.codes: Dict[str, dict] = {}
        self.active_refresh_tokens = set()
        self.refresh_calls = 0
        self.token_requests: List[dict] = []
        self.end_session_calls: List[dict] = []
        self.end_session_status = 200
        self.token_endpoint_down = False
        self._counter = 0

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    def authorize(self, authorization_url: str, sub: str = "user-123") -> str:
        """What the provider does when the user signs in: returns a code."""
        params = dict(parse_qsl(urlsplit(authorization_url).query))
        code = self._next("code")
        self.codes[code] = {**params, "sub": sub}
        return code

    def issue_refresh_token(self) -> str:
        token = self._next("rt")
        self.active_refresh_tokens.add(token)
        return token

    def _tokens(self, sub: str, nonce: Optional[str] = None) -> dict:
        body = {
            "access_token": self._next("at"),
            "token_type": "Bearer",
            "refresh_token": self.issue_refresh_token(),
            "id_token": make_jwt({"iss": ISSUER, "sub": sub, "aud": "bff-client", "nonce": nonce}),
            "scope": "openid profile",
        }
        if self.expires_in is not None:
            body["expires_in"] = self.expires_in
        return body

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/.well-known/openid-configuration"):
            return httpx.Response(200, json={
                "issuer": ISSUER,
                "authorization_endpoint": f"{ISSUER}/protocol/openid-connect/auth",
                "token_endpoint": f"{ISSUER}/protocol/openid-connect/token",
                "jwks_uri": f"{ISSUER}/protocol/openid-connect/certs",
                "end_session_endpoint": f"{ISSUER}/protocol/openid-connect/logout",
            })
        if path.endswith("/token"):
            return await self._token(dict(parse_qsl(request.content.decode())))
        if path.endswith("/logout"):
            self.end_session_calls.append(dict(request.url.params))
            return httpx.Response(self.end_session_status)
        return httpx.Response(404)

    async def _token(self, form: dict) -> httpx.Response:
        self.token_requests.append(form)
        if self.token_endpoint_down:
            raise httpx.ConnectError("connection refused")

        if form.get("grant_type") == "authorization_code":
            grant = self.codes.pop(form.get("code"), None)
            if grant is None or not verify_pkce(form.get("code_verifier", ""), grant["code_challenge"]):
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(200, json=self._tokens(grant["sub"], grant.get("nonce")))

        if form.get("grant_type") == "refresh_token":
            self.refresh_calls += 1
            if self.refresh_delay:
                await asyncio.sleep(self.refresh_delay)
            token = form.get("refresh_token")
            if token not in self.active_refresh_tokens:
                return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Token is not active"})
            self.active_refresh_tokens.discard(token)
            return httpx.Response(200, json=self._tokens("user-123"))

        return httpx.Response(400, json={"error": "unsupported_grant_type"})


class FakeBackend:
    """Records proxied requests and answers with a canned response."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.error: Optional[Exception] = None
        self.respond_with(200, {"content-type": "application/json"}, b'{"ok": true}')

    def respond_with(self, status_code: int, headers=None, content: bytes = b"") -> None:
        self.status_code = status_code
        self.headers = headers or {}
        self.content = content

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, headers=self.headers, content=self.content)


@pytest.fixture
def settings() -> GatewaySettings:
    return make_settings()


@pytest.fixture
def provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def app(settings, provider, backend):
    return create_app(
        settings,
        provider_transport=httpx.MockTransport(provider.handler),
        proxy_transport=httpx.MockTransport(backend.handler),
    )


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url=GATEWAY) as c:
        yield c
    await app.state.proxy.aclose()
    await app.state.oidc.aclose()


def csrf_headers(client: httpx.AsyncClient) -> dict:
    return {"X-XSRF-TOKEN": client.cookies.get("XSRF-TOKEN", "")}


async def login(client: httpx.AsyncClient, provider: FakeIdentityProvider, **params) -> httpx.Response:
    """Runs the browser side of the login flow; returns the callback response."""
    response = await client.get("/auth/login", params=params)
    assert response.status_code == 302
    location = response.headers["location"]
    code = provider.authorize(location)
    state = parse_qs(urlsplit(location).query)["state"][0]
    return await client.get("/auth/callback", params={"code": code, "state": state})
