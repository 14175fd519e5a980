from dataclasses import dataclass
from typing import Iterable

from ..config import RouteEntry
from ..logging_util import get_logger
from ..utils.exceptions import RouteNotFound

logger = get_logger(__name__)


@dataclass(frozen=True)
class ResolvedRoute:
    route: RouteEntry
    backend_path: str


class RequestRouter:
    """
    Maps a proxied path onto a backend service.

    The longest matching prefix wins, and a prefix only matches at a path
    segment boundary: `/my-books` matches `/my-books` and `/my-books/1`,
    never `/my-booksx`.
    """

    def __init__(self, routes: Iterable[RouteEntry]):
        self.routes = tuple(sorted(routes, key=lambda r: len(r.path_prefix), reverse=True))

    def resolve(self, path: str) -> ResolvedRoute:
        if not path.startswith("/"):
            path = "/" + path
        for route in self.routes:
            prefix = route.path_prefix
            if prefix == "/":
                return ResolvedRoute(route, path)
            if path == prefix or path.startswith(prefix + "/"):
                return ResolvedRoute(route, path[len(prefix):] or "/")
        logger.warning(f"No route found for path: {path}")
        raise RouteNotFound()
