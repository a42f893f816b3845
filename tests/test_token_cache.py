import asyncio

import pytest

from ifilm_proxy.errors import AuthFailureError
from ifilm_proxy.schemas import UpstreamConfig
from ifilm_proxy.utils.token_cache import SessionTokenCache

CONFIG = UpstreamConfig(server_url="http://jellyfin.local:8096/", api_key="static-key")


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class CountingAuthenticator:
    def __init__(self, tokens=None, fail=False, delay=0.0):
        self.tokens = list(tokens or ["token-1", "token-2", "token-3"])
        self.fail = fail
        self.delay = delay
        self.calls = 0

    async def __call__(self, config):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise AuthFailureError("rejected", upstream_status=401)
        return self.tokens.pop(0)


@pytest.mark.asyncio
async def test_token_is_cached_until_ttl():
    clock = FakeClock()
    authenticator = CountingAuthenticator()
    cache = SessionTokenCache(authenticator, ttl=3600, clock=clock)

    first = await cache.get_token(CONFIG)
    clock.now += 3599
    second = await cache.get_token(CONFIG)
    clock.now += 1
    third = await cache.get_token(CONFIG)

    assert first.token == second.token == "token-1"
    assert third.token == "token-2"
    assert authenticator.calls == 2


@pytest.mark.asyncio
async def test_failed_authentication_falls_back_to_api_key_without_caching():
    authenticator = CountingAuthenticator(fail=True)
    cache = SessionTokenCache(authenticator, ttl=3600, clock=FakeClock())

    credential = await cache.get_token(CONFIG)
    assert credential.token == "static-key"
    assert credential.is_fallback
    assert cache.cached is None

    authenticator.fail = False
    credential = await cache.get_token(CONFIG)
    assert credential.token == "token-1"
    assert not credential.is_fallback


@pytest.mark.asyncio
async def test_invalidate_only_drops_matching_token():
    cache = SessionTokenCache(CountingAuthenticator(), ttl=3600, clock=FakeClock())
    await cache.get_token(CONFIG)

    cache.invalidate("some-older-token")
    assert cache.cached.token == "token-1"

    cache.invalidate("token-1")
    assert cache.cached is None
    assert (await cache.get_token(CONFIG)).token == "token-2"


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_authentication():
    authenticator = CountingAuthenticator(delay=0.01)
    cache = SessionTokenCache(authenticator, ttl=3600, clock=FakeClock())

    credentials = await asyncio.gather(*(cache.get_token(CONFIG) for _ in range(5)))

    assert authenticator.calls == 1
    assert {c.token for c in credentials} == {"token-1"}


@pytest.mark.asyncio
async def test_refresh_in_flight_serves_stale_token():
    clock = FakeClock()
    authenticator = CountingAuthenticator(delay=0.05)
    cache = SessionTokenCache(authenticator, ttl=10, clock=clock)
    await cache.get_token(CONFIG)
    clock.now += 11

    refresh = asyncio.create_task(cache.get_token(CONFIG))
    await asyncio.sleep(0.01)
    stale = await cache.get_token(CONFIG)

    assert stale.token == "token-1"
    assert (await refresh).token == "token-2"
    assert authenticator.calls == 2


@pytest.mark.asyncio
async def test_other_server_is_not_served_from_cache():
    cache = SessionTokenCache(CountingAuthenticator(), ttl=3600, clock=FakeClock())
    await cache.get_token(CONFIG)

    other = UpstreamConfig(server_url="http://other:8096", api_key="k")
    assert (await cache.get_token(other)).token == "token-2"
