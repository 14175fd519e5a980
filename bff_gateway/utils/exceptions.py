from datetime import datetime, timezone
from typing import Optional

from fastapi import status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from ..logging_util import get_logger


logger = get_logger(__name__)


class GatewayError(Exception):
    """Base class for failures the gateway turns into an HTTP response."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "INTERNAL_ERROR"
    default_message = "An unexpected error occurred."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ConfigurationError(GatewayError):
    """Invalid or missing configuration. Fatal at startup."""
    error_code = "CONFIGURATION_ERROR"


class TokenRefreshFailed(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = "TOKEN_REFRESH_FAILED"
    default_message = "The session has expired. Please log in again."


class RouteNotFound(GatewayError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "ROUTE_NOT_FOUND"
    default_message = "No backend service is configured for this path."


class RateLimited(GatewayError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_code = "TOO_MANY_REQUESTS"
    default_message = "Too many requests. Please try again later."


class UpstreamTimeout(GatewayError):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    error_code = "UPSTREAM_TIMEOUT"
    default_message = "The backend service did not respond in time."


class UpstreamUnavailable(GatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = "UPSTREAM_UNAVAILABLE"
    default_message = "The backend service is unavailable."


class CSRFTokenInvalid(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    error_code = "CSRF_TOKEN_INVALID"
    default_message = "Missing or invalid CSRF token."


class UnsafeRedirect(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "UNSAFE_REDIRECT"
    default_message = "Redirect target is not allowed."


class ProviderError(GatewayError):
    """
    The identity provider rejected a token request.

    `oauth_error` keeps the provider's error code (e.g. invalid_grant) for
    logging and control flow; it is never sent to the browser.
    """
    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = "AUTHENTICATION_FAILED"
    default_message = "Authentication with the identity provider failed."

    def __init__(self, oauth_error: Optional[str] = None, message: Optional[str] = None):
        self.oauth_error = oauth_error
        super().__init__(message)

    @property
    def is_invalid_grant(self) -> bool:
        return self.oauth_error == "invalid_grant"


class ProviderUnavailable(ProviderError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = "PROVIDER_UNAVAILABLE"
    default_message = "The identity provider is unavailable."


def error_body(request: Request, status_code: int, error: str, message: str) -> dict:
    return {
        "error": error,
        "message": message,
        "status": status_code,
        "path": request.url.path,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def error_response(request: Request, exc: GatewayError, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(request, exc.status_code, exc.error_code, exc.message),
        headers=headers,
    )


async def gateway_exception_handler(request: Request, exc: GatewayError):
    level = logger.error if exc.status_code >= 500 else logger.warning
    level(f"{exc.error_code} for {request.method} {request.url.path}: {exc.message}")
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError):

    invalid_params = []
    for error in exc.errors():
        invalid_params.append({
            "field": ".".join(map(str, error["loc"])),
            "reason": error["msg"],
            "type": error["type"]
        })

    logger.warning(f"Validation failed for {request.method} {request.url.path}: {invalid_params}")

    body = error_body(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "VALIDATION_ERROR",
        "The data provided is invalid. Please check the 'details' field.",
    )
    body["details"] = invalid_params
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=body)
