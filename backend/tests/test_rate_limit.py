"""
Tests for the in-memory rate limiter guarding the public validate endpoint.

Tests: RateLimiter sliding window, rate_limit dependency, 429 over HTTP.
"""
import time
from types import SimpleNamespace

import pytest

from domain.errors import RateLimitError
from middleware.rate_limit import RateLimiter, rate_limit


def _request(ip: str, path: str = "/control-numbers/{code}/validate"):
    return SimpleNamespace(
        client=SimpleNamespace(host=ip),
        scope={"route": SimpleNamespace(path=path)},
        url=SimpleNamespace(path=path),
    )


class TestRateLimiter:

    @pytest.mark.unit
    def test_blocks_requests_over_limit(self):
        limiter = RateLimiter()
        for _ in range(3):
            assert limiter.check("ip:route", max_requests=3, window_seconds=60) is True
        assert limiter.check("ip:route", max_requests=3, window_seconds=60) is False

    @pytest.mark.unit
    def test_different_keys_independent(self):
        limiter = RateLimiter()
        for _ in range(3):
            limiter.check("key1", max_requests=3, window_seconds=60)
        assert limiter.check("key1", max_requests=3, window_seconds=60) is False
        assert limiter.check("key2", max_requests=3, window_seconds=60) is True

    @pytest.mark.unit
    def test_window_expiry(self):
        limiter = RateLimiter()
        for _ in range(2):
            limiter.check("testkey", max_requests=2, window_seconds=1)
        assert limiter.check("testkey", max_requests=2, window_seconds=1) is False
        time.sleep(1.1)
        assert limiter.check("testkey", max_requests=2, window_seconds=1) is True

    @pytest.mark.unit
    def test_remaining_never_negative(self):
        limiter = RateLimiter()
        assert limiter.remaining("testkey", max_requests=2, window_seconds=60) == 2
        for _ in range(4):
            limiter.check("testkey", max_requests=2, window_seconds=60)
        assert limiter.remaining("testkey", max_requests=2, window_seconds=60) == 0

    @pytest.mark.unit
    def test_reset_clears_all_keys(self):
        limiter = RateLimiter()
        limiter.check("a", max_requests=1, window_seconds=60)
        limiter.reset()
        assert limiter.check("a", max_requests=1, window_seconds=60) is True


class TestRateLimitDependency:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_raises_429_when_exhausted(self):
        check = rate_limit(max_requests=2, window_seconds=60)
        await check(_request("10.0.0.1"))
        await check(_request("10.0.0.1"))

        with pytest.raises(RateLimitError) as exc_info:
            await check(_request("10.0.0.1"))
        assert exc_info.value.status_code == 429
        assert exc_info.value.details == {"limit": 2, "window_seconds": 60}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_keyed_per_client_ip(self):
        check = rate_limit(max_requests=1, window_seconds=60)
        await check(_request("10.0.0.1"))
        await check(_request("10.0.0.2"))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_keyed_per_route_template(self):
        check = rate_limit(max_requests=1, window_seconds=60)
        await check(_request("10.0.0.1", "/control-numbers/{code}/validate"))
        await check(_request("10.0.0.1", "/other/{code}"))


class TestValidateEndpointThrottle:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_guessing_codes_hits_429(self, client):
        """Different codes share one budget: the key is the route template."""
        from config import settings

        limit = settings.validate_rate_limit_per_minute
        for i in range(limit):
            response = await client.get(f"/control-numbers/CN000000GUESS{i:02d}/validate")
            assert response.status_code == 200

        response = await client.get("/control-numbers/CN000000GUESSXX/validate")
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "ratelimit"
