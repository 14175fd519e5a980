from unittest.mock import patch

import pytest
from starlette.requests import Request

from bff_gateway.auth.rate_limiter import (
    InMemoryTokenBucket,
    RateLimiterRegistry,
    _Bucket,
    classify_request,
    get_client_ip,
)

SESSION = "session:4f1c"


class TestInMemoryTokenBucket:

    def make_limiter(self, capacity=5, window_seconds=10, ttl=3600):
        return InMemoryTokenBucket(capacity=capacity, window_seconds=window_seconds, entry_ttl_seconds=ttl)

    async def test_burst_up_to_capacity_then_deny(self):
        limiter = self.make_limiter(capacity=3)
        assert [await limiter.allow(SESSION) for _ in range(4)] == [True, True, True, False]

    async def test_identities_are_isolated(self):
        limiter = self.make_limiter(capacity=1)
        await limiter.allow(SESSION)
        assert await limiter.allow(SESSION) is False
        assert await limiter.allow("ip:198.51.100.1") is True

    async def test_partial_refill(self):
        limiter = self.make_limiter(capacity=4, window_seconds=10)  # 0.4 tokens/s

        with patch("time.monotonic") as clock:
            clock.return_value = 1000.0
            for _ in range(4):
                await limiter.allow(SESSION)
            assert await limiter.allow(SESSION) is False

            clock.return_value = 1005.0
            assert [await limiter.allow(SESSION) for _ in range(3)] == [True, True, False]

    async def test_refill_is_capped_and_tokens_never_negative(self):
        limiter = self.make_limiter(capacity=3, window_seconds=10)
        with patch("time.monotonic") as clock:
            clock.return_value = 1000.0
            for _ in range(10):
                await limiter.allow(SESSION)
            assert limiter.buckets[SESSION].tokens >= 0

            clock.return_value = 2000.0
            assert [await limiter.allow(SESSION) for _ in range(4)] == [True, True, True, False]

    async def test_idle_bucket_starts_over(self):
        limiter = self.make_limiter(capacity=2, window_seconds=10, ttl=30)

        with patch("time.monotonic") as clock:
            clock.return_value = 1000.0
            await limiter.allow(SESSION)
            await limiter.allow(SESSION)

            clock.return_value = 1031.0
            assert await limiter.allow(SESSION) is True
            assert limiter.buckets[SESSION].tokens == 1

    def test_cleanup_removes_only_idle_buckets(self):
        limiter = self.make_limiter(ttl=30)
        limiter.buckets["idle"] = _Bucket(tokens=5, last_refill=1000.0, last_access=1000.0)
        limiter.buckets["active"] = _Bucket(tokens=5, last_refill=1000.0, last_access=1031.0)

        with patch("time.monotonic", return_value=1031.0):
            assert limiter.cleanup() == 1
            assert limiter.cleanup() == 0

        assert set(limiter.buckets) == {"active"}

    def test_default_entry_ttl_is_one_window(self):
        assert InMemoryTokenBucket(capacity=5, window_seconds=60).entry_ttl_seconds == 60

    async def test_rejected_requests_do_not_keep_bucket_alive(self):
        limiter = InMemoryTokenBucket(capacity=1, window_seconds=60, entry_ttl_seconds=1)

        with patch("time.monotonic", return_value=1000.0):
            await limiter.allow(SESSION)
        with patch("time.monotonic", return_value=1000.5):
            assert await limiter.allow(SESSION) is False
            assert limiter.buckets[SESSION].last_access == 1000.0
        with patch("time.monotonic", return_value=1002.0):
            assert limiter.cleanup() == 1

    def test_retry_after_is_time_for_one_token(self):
        assert self.make_limiter(capacity=30, window_seconds=60).retry_after_seconds == 2
        assert self.make_limiter(capacity=200, window_seconds=60).retry_after_seconds == 1


class TestRateLimiterRegistry:

    def test_one_limiter_per_policy(self, settings):
        registry = RateLimiterRegistry(settings)
        auth = registry.limiter_for(settings.rate_limit_auth)
        assert registry.limiter_for(settings.rate_limit_auth) is auth
        assert registry.limiter_for(settings.rate_limit_api_anonymous) is not auth

    def test_limiter_uses_policy_capacity(self, settings):
        registry = RateLimiterRegistry(settings)
        limiter = registry.limiter_for(settings.rate_limit_auth)
        assert isinstance(limiter, InMemoryTokenBucket)
        assert limiter.capacity == settings.rate_limit_auth.capacity

    def test_redis_backend_requires_client(self, settings):
        registry = RateLimiterRegistry(settings.model_copy(update={"storage_backend": "redis"}))
        with pytest.raises(ValueError):
            registry.limiter_for(settings.rate_limit_auth)


class TestClassifyRequest:

    @pytest.mark.parametrize("path", ["/health", "/auth/callback", "/auth/logout"])
    def test_exempt_paths(self, settings, path):
        assert classify_request(path, False, settings) is None

    def test_login_uses_auth_policy(self, settings):
        assert classify_request("/auth/login", False, settings).name == "auth"
        assert classify_request("/auth/user", True, settings).name == "auth"

    def test_proxy_policy_depends_on_authentication(self, settings):
        assert classify_request("/proxy/my-books/1", True, settings).name == "api-authenticated"
        assert classify_request("/proxy/my-books/1", False, settings).name == "api-anonymous"

    def test_other_paths_are_not_limited(self, settings):
        assert classify_request("/docs", False, settings) is None
        assert classify_request("/proxyx", False, settings) is None


def make_request(client_host="10.0.0.1", headers=None) -> Request:
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": raw_headers,
        "client": (client_host, 12345) if client_host else None,
    })


class TestGetClientIp:

    def test_uses_peer_when_not_behind_proxy(self, settings):
        request = make_request("203.0.113.9", {"X-Forwarded-For": "1.2.3.4"})
        assert get_client_ip(request, settings) == "203.0.113.9"

    def test_untrusted_peer_cannot_spoof_forwarded_for(self, settings):
        proxied = settings.model_copy(update={"behind_proxy": True, "trusted_proxies": ("10.0.0.0/8",)})
        request = make_request("203.0.113.9", {"X-Forwarded-For": "1.2.3.4"})
        assert get_client_ip(request, proxied) == "203.0.113.9"

    def test_trusted_peer_walks_forwarded_for_from_the_right(self, settings):
        proxied = settings.model_copy(update={"behind_proxy": True, "trusted_proxies": ("10.0.0.0/8",)})
        request = make_request("10.0.0.1", {"X-Forwarded-For": "6.6.6.6, 198.51.100.7, 10.0.0.2"})
        assert get_client_ip(request, proxied) == "198.51.100.7"

    def test_falls_back_to_x_real_ip(self, settings):
        proxied = settings.model_copy(update={"behind_proxy": True, "trusted_proxies": ("10.0.0.1",)})
        request = make_request("10.0.0.1", {"X-Real-IP": "198.51.100.8"})
        assert get_client_ip(request, proxied) == "198.51.100.8"

    def test_no_client(self, settings):
        assert get_client_ip(make_request(client_host=None), settings) is None
