import asyncio
import contextlib
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from .auth.flow import AuthorizationFlowCoordinator
from .auth.rate_limiter import RateLimiterRegistry, rate_limiter_cleanup_task
from .auth.redirects import RedirectValidator
from .auth.tokens import TokenLifecycleManager
from .config import GatewaySettings
from .logging_util import configure_logging, get_logger
from .oidc import OIDCClient
from .persistence import InMemoryProvider, ttl_cleanup_task
from .proxy.executor import ProxyExecutor
from .proxy.router import RequestRouter
from .routes import gatewayRouter
from .sdk.redis_client import RedisClientSingleton
from .sessions import SessionMiddleware, SessionStore
from .utils.exceptions import GatewayError, gateway_exception_handler, validation_exception_handler
from .utils.security import CorrelationIdMiddleware, CSRFMiddleware, MaxBodySizeMiddleware, RateLimitMiddleware

logger = get_logger(__name__)


def create_app(
    settings: GatewaySettings,
    *,
    redis_client: Optional[Redis] = None,
    provider_transport: Optional[httpx.AsyncBaseTransport] = None,
    proxy_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Wire the gateway together. Every component is built here, once, from
    `settings`; request handlers find them on `app.state`.

    The transports exist so tests can stand in for the identity provider and
    the backend services.
    """
    owns_redis = False
    if settings.storage_backend == "redis" and redis_client is None:
        redis_client = RedisClientSingleton.get_client(settings)
        owns_redis = True

    store = SessionStore.create(settings, redis_client)
    oidc = OIDCClient(settings, transport=provider_transport)
    redirects = RedirectValidator.from_settings(settings)
    router = RequestRouter(settings.routes)
    proxy = ProxyExecutor(router, transport=proxy_transport)
    rate_limiters = RateLimiterRegistry(settings, redis_client)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        background = []
        if redis_client is not None:
            await redis_client.ping()
            logger.info(f"Connected to Redis at {settings.redis_host}:{settings.redis_port}")
        else:
            for provider in (store.sessions, store.credentials, store.pending):
                if isinstance(provider, InMemoryProvider):
                    background.append(asyncio.create_task(ttl_cleanup_task(provider)))
            background.append(asyncio.create_task(rate_limiter_cleanup_task(rate_limiters)))

        logger.info(
            f"Gateway started: {len(settings.routes)} route(s) "
            f"[{', '.join(r.path_prefix + ' -> ' + r.service for r in router.routes)}], "
            f"storage={settings.storage_backend}"
        )
        try:
            yield
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            await proxy.aclose()
            await oidc.aclose()
            if owns_redis:
                await RedisClientSingleton.close()
            logger.info("Gateway stopped")

    app = FastAPI(title="bff-gateway", lifespan=lifespan)

    app.state.settings = settings
    app.state.store = store
    app.state.oidc = oidc
    app.state.router = router
    app.state.proxy = proxy
    app.state.rate_limiters = rate_limiters
    app.state.tokens = TokenLifecycleManager(store, oidc, settings)
    app.state.flow = AuthorizationFlowCoordinator(settings, store, oidc, redirects)

    app.add_exception_handler(GatewayError, gateway_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # Request path, outermost first: correlation id, CORS, body limit, session, rate limit, CSRF
    app.add_middleware(CSRFMiddleware, settings=settings)
    app.add_middleware(RateLimitMiddleware, registry=rate_limiters, settings=settings)
    app.add_middleware(SessionMiddleware, store=store, settings=settings)
    app.add_middleware(MaxBodySizeMiddleware, max_body_size=settings.max_request_body_bytes)
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=redirects.origin_regex,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)

    app.include_router(gatewayRouter, prefix="")
    return app


def main():
    settings = GatewaySettings.from_env()
    configure_logging(
        level=settings.log_level,
        log_file=settings.log_file,
        max_bytes=5 * 1024 * 1024,  # 5 MB
        backup_count=3,
    )
    app = create_app(settings)
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
