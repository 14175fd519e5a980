from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

from ..config import RouteEntry
from ..logging_util import get_correlation_id, get_logger
from ..utils.exceptions import UpstreamTimeout, UpstreamUnavailable
from .router import RequestRouter

logger = get_logger(__name__)

# Hop-by-hop headers and headers the ASGI server sets itself
EXCLUDED_RESPONSE_HEADERS = frozenset({
    "transfer-encoding",
    "connection",
    "keep-alive",
    "upgrade",
    "server",
    "content-length",
})

BODYLESS_METHODS = frozenset({"GET", "HEAD", "DELETE", "OPTIONS"})


@dataclass
class ProxyResponse:
    status_code: int
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b""


class ProxyExecutor:
    """
    Forwards an API request to the backend chosen by the router, attaching
    the session's access token. Every route gets its own pooled client with
    the route's timeout.
    """

    def __init__(self, router: RequestRouter, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.router = router
        self._clients: Dict[str, httpx.AsyncClient] = {
            route.path_prefix: self._build_client(route, transport) for route in router.routes
        }

    @staticmethod
    def _build_client(route: RouteEntry, transport: Optional[httpx.AsyncBaseTransport]) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=route.base_url,
            timeout=httpx.Timeout(route.timeout_seconds),
            # backend redirects go back to the browser untouched
            follow_redirects=False,
            transport=transport,
        )

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()

    async def forward(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        query_params: Sequence[Tuple[str, str]] = (),
        body: bytes = b"",
        access_token: Optional[str] = None,
    ) -> ProxyResponse:
        resolved = self.router.resolve(path)
        route = resolved.route
        client = self._clients[route.path_prefix]
        method = method.upper()

        outbound_headers = {"X-Request-ID": get_correlation_id()}
        content_type = headers.get("content-type")
        if content_type:
            outbound_headers["Content-Type"] = content_type
        accept = headers.get("accept")
        if accept:
            outbound_headers["Accept"] = accept
        if access_token:
            outbound_headers["Authorization"] = f"Bearer {access_token}"

        content = body if body and method not in BODYLESS_METHODS else None

        logger.debug(f"Proxying {method} {path} -> {route.service}{resolved.backend_path}")
        request = client.build_request(
            method,
            resolved.backend_path,
            params=list(query_params),
            headers=outbound_headers,
            content=content,
        )

        try:
            response = await client.send(request, stream=True)
            try:
                # raw bytes, so Content-Encoding still describes the body
                payload = b"".join([chunk async for chunk in response.aiter_raw()])
            finally:
                await response.aclose()
        except httpx.TimeoutException as e:
            logger.error(f"Timeout calling {route.service} for {method} {path}: {e!r}")
            raise UpstreamTimeout() from e
        except httpx.HTTPError as e:
            logger.error(f"Error calling {route.service} for {method} {path}: {e!r}")
            raise UpstreamUnavailable() from e

        response_headers = [
            (name, value)
            for name, value in response.headers.multi_items()
            if name.lower() not in EXCLUDED_RESPONSE_HEADERS
        ]
        logger.debug(f"{route.service} responded {response.status_code} for {method} {path}")
        return ProxyResponse(response.status_code, response_headers, payload)
