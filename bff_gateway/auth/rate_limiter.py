from abc import ABC, abstractmethod
from dataclasses import dataclass
import math
import time
import asyncio
from typing import Dict, Iterable, Optional
from ipaddress import ip_address, ip_network

from redis.asyncio import Redis
from starlette.requests import HTTPConnection

from ..config import GatewaySettings, RateLimitPolicy
from ..logging_util import get_logger


logger = get_logger(__name__)


class RateLimiter(ABC):
    capacity: int
    window_seconds: int

    @abstractmethod
    async def allow(self, key: str) -> bool:
        pass

    @property
    def retry_after_seconds(self) -> int:
        """Time for one token to come back, rounded up."""
        return max(1, math.ceil(self.window_seconds / self.capacity))


@dataclass(slots=True)
class _Bucket:
    tokens: float
    last_refill: float
    last_access: float


class InMemoryTokenBucket(RateLimiter):
    """
    Single-process token bucket. Buckets are created on first use and
    dropped by `cleanup` once idle for `entry_ttl_seconds`.
    """

    __slots__ = (
        "capacity",
        "window_seconds",
        "refill_rate",
        "entry_ttl_seconds",
        "buckets",
    )

    def __init__(
        self,
        capacity: int,
        window_seconds: int,
        entry_ttl_seconds: Optional[int] = None,
    ):
        self.capacity = capacity
        self.window_seconds = window_seconds
        self.refill_rate = capacity / window_seconds
        # an idle bucket is full again after one window anyway
        self.entry_ttl_seconds = entry_ttl_seconds or window_seconds
        self.buckets: Dict[str, _Bucket] = {}

    async def allow(self, key: str) -> bool:
        now = time.monotonic()
        bucket = self.buckets.get(key)
        if bucket is None or now - bucket.last_access > self.entry_ttl_seconds:
            self.buckets[key] = _Bucket(
                tokens=self.capacity - 1,
                last_refill=now,
                last_access=now,
            )
            return True

        delta = now - bucket.last_refill
        if delta > 0:
            bucket.tokens = min(
                self.capacity,
                bucket.tokens + delta * self.refill_rate,
            )
            bucket.last_refill = now

        # denied requests do not keep an idle bucket alive
        if bucket.tokens < 1:
            return False

        bucket.last_access = now
        bucket.tokens -= 1
        return True

    def cleanup(self) -> int:
        now = time.monotonic()
        to_delete = [
            key
            for key, bucket in self.buckets.items()
            if now - bucket.last_access > self.entry_ttl_seconds
        ]

        for key in to_delete:
            del self.buckets[key]

        return len(to_delete)


TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]

local capacity = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2]) -- tokens per millisecond
local requested = tonumber(ARGV[3])

-- Redis server time, so instances with skewed clocks agree
local now_data = redis.call("TIME")
local now = now_data[1] * 1000 + math.floor(now_data[2] / 1000)

local bucket = redis.call("HMGET", key, "tokens", "last_refill")
local tokens = tonumber(bucket[1])
local last_refill = tonumber(bucket[2])

if tokens == nil then
    tokens = capacity
else
    local delta = math.max(0, now - last_refill)
    tokens = math.min(capacity, tokens + delta * refill_rate)
end

local allowed = 0
if tokens >= requested then
    tokens = tokens - requested
    allowed = 1
end

redis.call("HSET", key, "tokens", tostring(tokens), "last_refill", now)

-- Idle buckets expire once they would be full again
redis.call("PEXPIRE", key, math.ceil(capacity / refill_rate))

return allowed
"""


class RedisTokenBucketRateLimiter(RateLimiter):
    """
    Token bucket shared by every gateway instance. The whole
    refill-check-decrement runs inside one Lua script, so it is atomic.
    """

    def __init__(self, redis_client: Redis, capacity: int, window_seconds: int, prefix: str = "rl"):
        self.redis = redis_client
        self.capacity = capacity
        self.window_seconds = window_seconds
        self.prefix = prefix

        # refill_rate = tokens per millisecond
        self.refill_rate = capacity / (window_seconds * 1000)

        self.script = self.redis.register_script(TOKEN_BUCKET_SCRIPT)

    async def allow_tokens(self, key: str, tokens: int = 1) -> bool:
        allowed = await self.script(
            keys=[f"{self.prefix}:{key}"],
            args=[self.capacity, self.refill_rate, tokens],
        )
        return bool(allowed)

    async def allow(self, key: str) -> bool:
        return await self.allow_tokens(key)


class RateLimiterRegistry:
    """One limiter per policy, backed by the configured storage."""

    def __init__(self, settings: GatewaySettings, redis_client: Optional[Redis] = None):
        self.settings = settings
        self.redis_client = redis_client
        self._limiters: Dict[str, RateLimiter] = {}

    def _build(self, policy: RateLimitPolicy) -> RateLimiter:
        if self.settings.storage_backend == "redis":
            if self.redis_client is None:
                raise ValueError("redis storage backend requires a Redis client")
            return RedisTokenBucketRateLimiter(
                redis_client=self.redis_client,
                capacity=policy.capacity,
                window_seconds=policy.window_seconds,
                prefix=f"rl:{policy.name}",
            )
        return InMemoryTokenBucket(
            capacity=policy.capacity,
            window_seconds=policy.window_seconds,
        )

    def limiter_for(self, policy: RateLimitPolicy) -> RateLimiter:
        limiter = self._limiters.get(policy.name)
        if limiter is None:
            limiter = self._limiters[policy.name] = self._build(policy)
        return limiter

    def in_memory_limiters(self) -> Iterable[InMemoryTokenBucket]:
        return [limiter for limiter in self._limiters.values() if isinstance(limiter, InMemoryTokenBucket)]


def classify_request(path: str, authenticated: bool, settings: GatewaySettings) -> Optional[RateLimitPolicy]:
    """
    Rate limit policy for a request path, or None when the path is exempt.

    /auth/*  -> auth (per client IP)
    /proxy/* -> api-authenticated (per session) or api-anonymous (per client IP)
    """
    if path in settings.rate_limit_exempt_paths:
        return None
    if path == "/auth" or path.startswith("/auth/"):
        return settings.rate_limit_auth
    if path == "/proxy" or path.startswith("/proxy/"):
        if authenticated:
            return settings.rate_limit_api_authenticated
        return settings.rate_limit_api_anonymous
    return None


def get_client_ip(connection: HTTPConnection, settings: GatewaySettings) -> str | None:
    """
    Extracts the client IP address based on application settings.

    - behind_proxy=False (default): Use the connecting peer directly.
    - behind_proxy=True: Trust X-Forwarded-For only if the immediate
      connecting IP is in trusted_proxies, then walk the XFF chain
      from the right to find the first non-trusted IP (the real client).
    """

    def _is_trusted_proxy(ip: str) -> bool:
        try:
            addr = ip_address(ip)
            for net in settings.trusted_proxies:
                if addr in ip_network(net, strict=False):
                    return True
        except ValueError:
            pass
        return False

    connecting_ip: str | None = connection.client.host if connection.client else None

    if not connecting_ip:
        return None

    if not settings.behind_proxy:
        return connecting_ip

    if not _is_trusted_proxy(connecting_ip):
        return connecting_ip

    # "client, proxy1, proxy2": leftmost is the original client
    xff = connection.headers.get("X-Forwarded-For")
    if xff:
        ips = [ip.strip() for ip in xff.split(",") if ip.strip()]
        for ip in reversed(ips):
            if not _is_trusted_proxy(ip):
                return ip

    x_real_ip = connection.headers.get("X-Real-IP")
    if x_real_ip:
        return x_real_ip

    return connecting_ip


async def rate_limiter_cleanup_task(registry: RateLimiterRegistry, interval_seconds: int = 60):
    logger.debug(f"Starting rate limiter cleanup task with interval {interval_seconds} seconds.")
    try:
        while True:
            removed = sum(limiter.cleanup() for limiter in registry.in_memory_limiters())
            if removed:
                logger.debug(f"Rate limiter cleanup: removed {removed} expired buckets.")
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.debug("Rate limiter cleanup task cancelled.")
