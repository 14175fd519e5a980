import re
from typing import Iterable, Optional
from urllib.parse import urlsplit

from ..config import GatewaySettings
from ..logging_util import get_logger
from ..sessions import FRONTEND_URL_KEY, Session
from ..utils.exceptions import UnsafeRedirect

logger = get_logger(__name__)

# First path segments that belong to the gateway itself, never to a frontend app
RESERVED_SEGMENTS = frozenset({"auth", "proxy", "auth-callback", "bff", "api", "health"})

_UNSAFE_CHARS_RE = re.compile(r"[\\\x00-\x1f\x7f]")


def _compile_origin_pattern(allowed: str) -> re.Pattern:
    # "https://*.example.com" or "http://localhost:*"
    return re.compile(".*".join(re.escape(part) for part in allowed.split("*")))


def origin_of(url: str) -> Optional[str]:
    try:
        parsed = urlsplit(url)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc or "@" in parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


def extract_app_base_path(path: Optional[str]) -> Optional[str]:
    """
    First path segment of a frontend URL.

    /my-books/reviews -> /my-books
    /login            -> /login
    /                 -> None
    /auth-callback    -> None (reserved)
    """
    if not path or path == "/":
        return None
    first = path.lstrip("/").split("/", 1)[0]
    if not first or first in RESERVED_SEGMENTS:
        return None
    return "/" + first


class RedirectValidator:
    """
    Allow-list checks for anything the gateway redirects a browser to.

    Absolute URLs are accepted only when their origin matches an allowed
    origin pattern (`*` matches any run of characters). With no allow-list
    configured, only the default frontend origin is accepted.
    """

    def __init__(self, allowed_origins: Iterable[str], default_frontend_url: str):
        self.allowed_origins = tuple(o.strip().rstrip("/") for o in allowed_origins if o.strip())
        self._patterns = [_compile_origin_pattern(o) for o in self.allowed_origins]
        self.default_frontend_url = default_frontend_url.rstrip("/")
        self.default_origin = origin_of(self.default_frontend_url)

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> "RedirectValidator":
        if not settings.allowed_origins:
            logger.warning("CORS_ALLOWED_ORIGINS not configured; only the default frontend origin is trusted")
        return cls(settings.allowed_origins, settings.frontend_default_url)

    @property
    def origin_regex(self) -> str:
        """The allow-list as one regex, for CORS."""
        if not self._patterns:
            return re.escape(self.default_origin or "")
        return "|".join(f"(?:{p.pattern})" for p in self._patterns)

    def is_origin_allowed(self, origin: str) -> bool:
        origin = origin.rstrip("/")
        if not self._patterns:
            return origin == self.default_origin
        if any(p.fullmatch(origin) for p in self._patterns):
            return True
        logger.warning(f"Origin not allowed: {origin}")
        return False

    def is_safe(self, candidate: Optional[str]) -> bool:
        """
        True for a host-less relative reference, or an absolute http(s) URL on
        an allowed origin. Everything else, including scheme-only URLs such as
        `javascript:` and protocol-relative `//host`, is rejected.
        """
        if not candidate or _UNSAFE_CHARS_RE.search(candidate):
            logger.warning(f"Unsafe redirect attempt blocked: {candidate!r}")
            return False
        try:
            parsed = urlsplit(candidate)
        except ValueError:
            logger.warning(f"Invalid redirect URL format: {candidate!r}")
            return False

        if not parsed.scheme and not parsed.netloc:
            # "///host" parses with an empty netloc but browsers read it as "//host"
            if candidate.lstrip().startswith("//"):
                logger.warning(f"Unsafe redirect attempt blocked: {candidate!r}")
                return False
            return True

        origin = origin_of(candidate)
        if parsed.scheme in ("http", "https") and origin and self.is_origin_allowed(origin):
            return True

        logger.warning(f"Unsafe redirect attempt blocked: {candidate!r}")
        return False

    def ensure_safe(self, candidate: Optional[str]) -> str:
        if not self.is_safe(candidate):
            raise UnsafeRedirect()
        return candidate

    def frontend_from_referer(self, referer: Optional[str]) -> Optional[str]:
        if not referer or not referer.strip():
            return None
        base_origin = origin_of(referer.strip())
        if base_origin is None:
            logger.warning(f"Invalid Referer: {referer}")
            return None
        if not self.is_origin_allowed(base_origin):
            return None
        app_base_path = extract_app_base_path(urlsplit(referer.strip()).path)
        return base_origin + app_base_path if app_base_path else base_origin

    def resolve_frontend_url(
        self,
        session: Session,
        referer: Optional[str],
        origin: Optional[str],
    ) -> str:
        """
        Frontend base URL the login flow returns to. Priority:

        1. value saved in the session by an earlier resolution
        2. Referer, reduced to origin + first path segment, if allow-listed
        3. Origin header, if allow-listed
        4. configured default

        Results of 2 and 3 are saved in the session so the provider callback
        (which carries neither header) lands on the same frontend.
        """
        saved = session.get(FRONTEND_URL_KEY)
        if saved:
            logger.debug(f"Using saved frontend URL from session: {saved}")
            return saved

        from_referer = self.frontend_from_referer(referer)
        if from_referer:
            session[FRONTEND_URL_KEY] = from_referer
            logger.debug(f"Extracted frontend URL from Referer: {from_referer}")
            return from_referer

        if origin and origin.strip() and self.is_origin_allowed(origin.strip()):
            session[FRONTEND_URL_KEY] = origin.strip().rstrip("/")
            logger.debug(f"Using Origin header: {origin}")
            return session[FRONTEND_URL_KEY]

        logger.debug(f"Using default frontend URL: {self.default_frontend_url}")
        return self.default_frontend_url
