import pytest

from bff_gateway.config import GatewaySettings, RouteEntry, load_routes
from bff_gateway.utils.exceptions import ConfigurationError

BASE_ENV = {
    "OIDC_ISSUER_URL": "https://idp.example/realms/test",
    "OIDC_CLIENT_ID": "bff-client",
    "OIDC_REDIRECT_URI": "http://localhost:8080/auth/callback",
    "FRONTEND_DEFAULT_URL": "http://localhost:3000",
    "RESOURCE_SERVERS": "my-books,my-musics",
    "MY_BOOKS_URL": "http://my-books-api:8080/",
    "MY_BOOKS_PATH_PREFIX": "my-books/",
    "MY_MUSICS_URL": "http://my-musics-api:8080",
    "MY_MUSICS_PATH_PREFIX": "/my-musics",
    "MY_MUSICS_TIMEOUT": "5",
}


def env(**overrides):
    values = dict(BASE_ENV)
    for key, value in overrides.items():
        if value is None:
            values.pop(key, None)
        else:
            values[key] = value
    return values


class TestLoadRoutes:

    def test_routes_are_normalised(self):
        books, musics = load_routes(BASE_ENV)
        assert books == RouteEntry(
            service="my-books", base_url="http://my-books-api:8080", path_prefix="/my-books", timeout_seconds=30
        )
        assert musics.timeout_seconds == 5

    def test_missing_resource_servers(self):
        with pytest.raises(ConfigurationError):
            load_routes(env(RESOURCE_SERVERS=None))

    def test_missing_url(self):
        with pytest.raises(ConfigurationError):
            load_routes(env(MY_BOOKS_URL=None))

    def test_missing_prefix(self):
        with pytest.raises(ConfigurationError):
            load_routes(env(MY_MUSICS_PATH_PREFIX=None))


class TestGatewaySettings:

    def test_defaults(self):
        settings = GatewaySettings.from_env(BASE_ENV)
        assert settings.session_cookie_name == "BFFSESSIONID"
        assert settings.csrf_cookie_name == "XSRF-TOKEN"
        assert settings.csrf_header_name == "X-XSRF-TOKEN"
        assert settings.token_refresh_max_attempts == 1
        assert settings.storage_backend == "memory"
        assert settings.frontend_default_origin == "http://localhost:3000"
        assert settings.rate_limit_auth.capacity == 30

    def test_overrides(self):
        settings = GatewaySettings.from_env(env(
            CORS_ALLOWED_ORIGINS="http://localhost:3000, https://*.example.com",
            RATE_LIMIT_AUTH_CAPACITY="5",
            RATE_LIMIT_AUTH_WINDOW_SECONDS="10",
            STORAGE_BACKEND="REDIS",
            SESSION_COOKIE_SECURE="false",
        ))
        assert settings.allowed_origins == ("http://localhost:3000", "https://*.example.com")
        assert settings.rate_limit_auth.refill_rate == 0.5
        assert settings.storage_backend == "redis"
        assert settings.session_cookie_secure is False

    def test_settings_are_immutable(self):
        settings = GatewaySettings.from_env(BASE_ENV)
        with pytest.raises(Exception):
            settings.port = 1

    @pytest.mark.parametrize("missing", ["OIDC_ISSUER_URL", "OIDC_CLIENT_ID", "FRONTEND_DEFAULT_URL"])
    def test_required_values(self, missing):
        with pytest.raises(ConfigurationError):
            GatewaySettings.from_env(env(**{missing: None}))

    def test_duplicate_prefixes(self):
        with pytest.raises(ConfigurationError):
            GatewaySettings.from_env(env(MY_MUSICS_PATH_PREFIX="/my-books"))

    def test_malformed_backend_url(self):
        with pytest.raises(ConfigurationError):
            GatewaySettings.from_env(env(MY_BOOKS_URL="my-books-api:8080"))

    def test_unknown_storage_backend(self):
        with pytest.raises(ConfigurationError):
            GatewaySettings.from_env(env(STORAGE_BACKEND="postgres"))
