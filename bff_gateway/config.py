import os
from typing import Mapping, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .utils.exceptions import ConfigurationError


def _csv(value: Optional[str]) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class RouteEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    service: str
    base_url: str
    path_prefix: str
    timeout_seconds: float = 30

    @field_validator("path_prefix")
    @classmethod
    def _normalize_prefix(cls, v: str) -> str:
        if not v.startswith("/"):
            v = "/" + v
        if len(v) > 1:
            v = v.rstrip("/")
        return v

    @field_validator("base_url")
    @classmethod
    def _check_url(cls, v: str) -> str:
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"base_url must be an absolute http(s) URL, got {v!r}")
        return v.rstrip("/")


class RateLimitPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    capacity: int = Field(gt=0)
    window_seconds: int = Field(gt=0)

    @property
    def refill_rate(self) -> float:
        """Tokens added per second."""
        return self.capacity / self.window_seconds


class GatewaySettings(BaseModel):
    """
    Immutable gateway configuration.

    Built once at startup (see `from_env`) and handed to every component that
    needs it. Nothing in the package reads the environment after that.
    """

    model_config = ConfigDict(frozen=True)

    # OIDC provider
    oidc_issuer_url: str
    oidc_client_id: str
    oidc_client_secret: Optional[str] = None
    oidc_redirect_uri: str
    oidc_scopes: tuple[str, ...] = ("openid", "profile", "email", "offline_access")
    # Explicit endpoints override the discovery document
    oidc_authorization_endpoint: Optional[str] = None
    oidc_token_endpoint: Optional[str] = None
    oidc_jwks_uri: Optional[str] = None
    oidc_end_session_endpoint: Optional[str] = None
    provider_timeout_seconds: float = 10
    post_logout_redirect_uri: Optional[str] = None

    # Frontend
    frontend_default_url: str
    allowed_origins: tuple[str, ...] = ()

    # Routing
    routes: tuple[RouteEntry, ...]

    # Storage
    storage_backend: str = "memory"
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None

    # Sessions
    session_cookie_name: str = "BFFSESSIONID"
    session_ttl_seconds: int = 1800
    session_cookie_secure: bool = True
    login_transaction_ttl_seconds: int = 600

    # CSRF
    csrf_cookie_name: str = "XSRF-TOKEN"
    csrf_header_name: str = "X-XSRF-TOKEN"
    csrf_exempt_paths: tuple[str, ...] = ("/health",)

    # Tokens
    token_skew_seconds: int = 30
    default_token_lifetime_seconds: int = 300
    token_refresh_max_attempts: int = Field(default=1, ge=1)
    refresh_lock_timeout_seconds: float = 30

    # Rate limiting
    rate_limit_enabled: bool = True
    rate_limit_auth: RateLimitPolicy = RateLimitPolicy(name="auth", capacity=30, window_seconds=60)
    rate_limit_api_authenticated: RateLimitPolicy = RateLimitPolicy(
        name="api-authenticated", capacity=200, window_seconds=60
    )
    rate_limit_api_anonymous: RateLimitPolicy = RateLimitPolicy(
        name="api-anonymous", capacity=100, window_seconds=60
    )
    rate_limit_exempt_paths: tuple[str, ...] = ("/health", "/auth/callback", "/auth/logout")
    behind_proxy: bool = False
    trusted_proxies: tuple[str, ...] = ()

    # Requests
    max_request_body_bytes: int = Field(default=10_000_000, gt=0)

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None
    port: int = 8080

    @field_validator("oidc_issuer_url", "oidc_client_id", "oidc_redirect_uri", "frontend_default_url")
    @classmethod
    def _required(cls, v: str, info) -> str:
        if not v or not v.strip():
            raise ValueError(f"{info.field_name} is required")
        return v.strip()

    @field_validator("routes")
    @classmethod
    def _check_routes(cls, routes: tuple[RouteEntry, ...]) -> tuple[RouteEntry, ...]:
        if not routes:
            raise ValueError("at least one resource server route is required")
        prefixes = [r.path_prefix for r in routes]
        duplicates = {p for p in prefixes if prefixes.count(p) > 1}
        if duplicates:
            raise ValueError(f"duplicate route path prefixes: {sorted(duplicates)}")
        return routes

    @field_validator("storage_backend")
    @classmethod
    def _check_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("memory", "redis"):
            raise ValueError(f"storage_backend must be 'memory' or 'redis', got {v!r}")
        return v

    @property
    def frontend_default_origin(self) -> str:
        parsed = urlparse(self.frontend_default_url)
        return f"{parsed.scheme}://{parsed.netloc}"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "GatewaySettings":
        """
        Build settings from environment variables (and `.env`, if present).

        Raises ConfigurationError for anything that would leave the gateway
        unable to route or authenticate; these are fatal at startup.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ
        env = environ.get

        def policy(name: str, prefix: str, capacity: int, window: int) -> RateLimitPolicy:
            return RateLimitPolicy(
                name=name,
                capacity=int(env(f"{prefix}_CAPACITY") or capacity),
                window_seconds=int(env(f"{prefix}_WINDOW_SECONDS") or window),
            )

        try:
            return cls(
                oidc_issuer_url=env("OIDC_ISSUER_URL", ""),
                oidc_client_id=env("OIDC_CLIENT_ID", ""),
                oidc_client_secret=env("OIDC_CLIENT_SECRET") or None,
                oidc_redirect_uri=env("OIDC_REDIRECT_URI", ""),
                oidc_scopes=_csv(env("OIDC_SCOPES")) or ("openid", "profile", "email", "offline_access"),
                oidc_authorization_endpoint=env("OIDC_AUTHORIZATION_ENDPOINT") or None,
                oidc_token_endpoint=env("OIDC_TOKEN_ENDPOINT") or None,
                oidc_jwks_uri=env("OIDC_JWKS_URI") or None,
                oidc_end_session_endpoint=env("OIDC_END_SESSION_ENDPOINT") or None,
                provider_timeout_seconds=float(env("OIDC_PROVIDER_TIMEOUT") or 10),
                post_logout_redirect_uri=env("POST_LOGOUT_REDIRECT_URI") or None,
                frontend_default_url=env("FRONTEND_DEFAULT_URL", ""),
                allowed_origins=_csv(env("CORS_ALLOWED_ORIGINS")),
                routes=load_routes(environ),
                storage_backend=env("STORAGE_BACKEND", "memory"),
                redis_host=env("REDIS_HOST", "localhost"),
                redis_port=int(env("REDIS_PORT") or 6379),
                redis_password=env("REDIS_PASSWORD") or None,
                session_ttl_seconds=int(env("SESSION_TTL_SECONDS") or 1800),
                session_cookie_secure=_bool(env("SESSION_COOKIE_SECURE"), True),
                token_skew_seconds=int(env("TOKEN_SKEW_SECONDS") or 30),
                token_refresh_max_attempts=int(env("TOKEN_REFRESH_MAX_ATTEMPTS") or 1),
                rate_limit_enabled=_bool(env("RATE_LIMIT_ENABLED"), True),
                rate_limit_auth=policy("auth", "RATE_LIMIT_AUTH", 30, 60),
                rate_limit_api_authenticated=policy(
                    "api-authenticated", "RATE_LIMIT_API_AUTHENTICATED", 200, 60
                ),
                rate_limit_api_anonymous=policy("api-anonymous", "RATE_LIMIT_API_ANONYMOUS", 100, 60),
                behind_proxy=_bool(env("BEHIND_PROXY"), False),
                trusted_proxies=_csv(env("TRUSTED_PROXY_LIST")),
                max_request_body_bytes=int(env("MAX_REQUEST_BODY_BYTES") or 10_000_000),
                log_level=env("LOG_LEVEL", "INFO"),
                log_file=env("LOG_FILE") or None,
                port=int(env("PORT") or 8080),
            )
        except ValueError as e:
            # pydantic's ValidationError is a ValueError
            raise ConfigurationError(str(e)) from e


def load_routes(environ: Mapping[str, str]) -> tuple[RouteEntry, ...]:
    """
    Load the resource server table.

    RESOURCE_SERVERS=my-books,my-musics
    MY_BOOKS_URL=http://my-books-api:8080
    MY_BOOKS_PATH_PREFIX=/my-books
    MY_BOOKS_TIMEOUT=30
    """
    names = _csv(environ.get("RESOURCE_SERVERS"))
    if not names:
        raise ConfigurationError("RESOURCE_SERVERS is not set; no routes can be configured.")

    routes = []
    for name in names:
        key = name.upper().replace("-", "_")
        url = environ.get(f"{key}_URL")
        prefix = environ.get(f"{key}_PATH_PREFIX")
        if not url:
            raise ConfigurationError(f"Route '{name}': {key}_URL is not set.")
        if not prefix:
            raise ConfigurationError(f"Route '{name}': {key}_PATH_PREFIX is not set.")
        routes.append(RouteEntry(
            service=name,
            base_url=url,
            path_prefix=prefix,
            timeout_seconds=float(environ.get(f"{key}_TIMEOUT") or 30),
        ))
    return tuple(routes)
