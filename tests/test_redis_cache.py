"""Redis-backed OAuth state, hand-off codes and MFA ticket tracking.

The mocked tests always run. The live tests need a disposable Redis and run
only when HOMEOPS_TEST_REDIS_URL points at one.
"""

import asyncio
import json
import os
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

from homeops.service import totp
from homeops.storage import redis_cache
from homeops.storage.redis_cache import RedisCache, SyncRedisCache

LIVE_REDIS_URL = os.environ.get("HOMEOPS_TEST_REDIS_URL", "")
requires_redis = pytest.mark.skipif(not LIVE_REDIS_URL, reason="HOMEOPS_TEST_REDIS_URL not set")

MFA_SECRET = "JBSWY3DPEHPK3PXP"


@pytest.fixture
def sync_client(monkeypatch):
    client = MagicMock()
    redis_cls = MagicMock()
    redis_cls.from_url.return_value = client
    monkeypatch.setattr(redis_cache, "Redis", redis_cls)
    return client


@pytest.fixture
def async_client(monkeypatch):
    client = AsyncMock()
    monkeypatch.setattr(redis_cache.aioredis, "from_url", lambda *args, **kwargs: client)
    return client


class TestSyncCacheCommands:
    async def test_pop_oauth_state_uses_getdel(self, sync_client):
        expires = datetime.now(timezone.utc) + timedelta(minutes=10)
        sync_client.getdel.return_value = json.dumps(
            {"intent": "signup", "expires_at": expires.isoformat()}
        )
        cache = SyncRedisCache("redis://cache.test/0")
        intent, expires_at = await cache.pop_oauth_state("abc")
        sync_client.getdel.assert_called_once_with("auth:oauth:state:abc")
        assert intent == "signup"
        assert expires_at == expires

    async def test_corrupt_entries_read_as_missing(self, sync_client):
        cache = SyncRedisCache("redis://cache.test/0")
        sync_client.getdel.return_value = "{not json"
        assert await cache.pop_oauth_state("abc") is None
        sync_client.getdel.return_value = "[1, 2]"
        assert await cache.pop_oauth_handoff("code") is None

    async def test_failure_script_gets_both_keys(self, sync_client):
        script = sync_client.register_script.return_value
        script.return_value = [1, 3]
        cache = SyncRedisCache("redis://cache.test/0")

        assert await cache.record_mfa_ticket_failure("j1", 3, 0) == (True, 3)
        sync_client.register_script.assert_called_once_with(
            redis_cache._MFA_TICKET_FAILURE_SCRIPT
        )
        script.assert_called_once_with(
            keys=["mfa:ticket:burned:j1", "mfa:ticket:attempts:j1"], args=[3, 1]
        )

    async def test_burn_is_set_if_absent(self, sync_client):
        sync_client.set.return_value = None
        cache = SyncRedisCache("redis://cache.test/0")
        assert await cache.burn_mfa_ticket("j1", 30) is False
        sync_client.set.assert_called_once_with("mfa:ticket:burned:j1", "1", ex=30, nx=True)
        sync_client.delete.assert_called_once_with("mfa:ticket:attempts:j1")


class TestAsyncCacheCommands:
    async def test_failure_script_is_evaluated_atomically(self, async_client):
        async_client.eval.return_value = [0, 1]
        cache = RedisCache("redis://cache.test/0")
        assert await cache.record_mfa_ticket_failure("j2", 3, 60) == (False, 1)
        async_client.eval.assert_awaited_once_with(
            redis_cache._MFA_TICKET_FAILURE_SCRIPT,
            2,
            "mfa:ticket:burned:j2",
            "mfa:ticket:attempts:j2",
            3,
            60,
        )

    async def test_handoff_round_trip_uses_getdel(self, async_client):
        cache = RedisCache("redis://cache.test/0")
        await cache.set_oauth_handoff("code", {"user_id": 7}, 60)
        async_client.set.assert_awaited_once_with(
            "auth:oauth:code:code", json.dumps({"user_id": 7}), ex=60
        )
        async_client.getdel.return_value = json.dumps({"user_id": 7})
        assert await cache.pop_oauth_handoff("code") == {"user_id": 7}
        async_client.getdel.assert_awaited_once_with("auth:oauth:code:code")


def test_ttl_is_clamped_to_one_second():
    past = datetime.now(timezone.utc) - timedelta(minutes=5)
    assert redis_cache._ttl_seconds(past) == 1
    naive_soon = (datetime.now(timezone.utc) + timedelta(seconds=90)).replace(tzinfo=None)
    assert redis_cache._ttl_seconds(naive_soon) >= 80


@pytest.fixture
def live_cache(runtime):
    cache = SyncRedisCache(LIVE_REDIS_URL)
    cache.verify_connection()
    runtime.auth.cache = cache
    yield cache
    runtime.auth.cache = None
    asyncio.run(cache.close())


@requires_redis
class TestLiveRedis:
    async def test_failure_script_burns_at_limit(self, live_cache):
        jti = uuid.uuid4().hex
        results = [await live_cache.record_mfa_ticket_failure(jti, 3, 60) for _ in range(3)]
        assert results == [(False, 1), (False, 2), (True, 3)]
        assert await live_cache.is_mfa_ticket_burned(jti)
        assert await live_cache.record_mfa_ticket_failure(jti, 3, 60) == (True, -1)
        assert await live_cache.burn_mfa_ticket(jti, 60) is False

    async def test_state_and_handoff_pop_once(self, live_cache):
        state = uuid.uuid4().hex
        expires = datetime.now(timezone.utc) + timedelta(minutes=10)
        await live_cache.set_oauth_state(state, "signup", expires)
        assert (await live_cache.pop_oauth_state(state))[0] == "signup"
        assert await live_cache.pop_oauth_state(state) is None

        code = uuid.uuid4().hex
        await live_cache.set_oauth_handoff(code, {"user_id": 3}, 60)
        assert await live_cache.pop_oauth_handoff(code) == {"user_id": 3}
        assert await live_cache.pop_oauth_handoff(code) is None

    def test_bad_codes_burn_the_ticket(self, client, runtime, make_user, live_cache):
        user, _ = make_user("mfa@x.io")
        runtime.store.set_user_mfa(
            user.id, enabled=True, secret=runtime.cipher.encrypt(MFA_SECRET), key_id="k1"
        )
        login = client.post("/auth/token", json={"email": "mfa@x.io", "password": "hunter22"})
        ticket = login.json()["mfaTicket"]
        good = totp.generate_code(MFA_SECRET)
        bad = str((int(good) + 500_000) % 1_000_000).zfill(6)

        codes = [
            client.post("/auth/mfa/verify", json={"mfaTicket": ticket, "code": bad}).json()[
                "error"
            ]["code"]
            for _ in range(3)
        ]
        assert codes == ["INVALID_CODE", "INVALID_CODE", "INVALID_MFA_TICKET"]
        late = client.post("/auth/mfa/verify", json={"mfaTicket": ticket, "code": good})
        assert late.json()["error"]["code"] == "INVALID_MFA_TICKET"

    def test_google_sign_in_round_trip(self, client, runtime, live_cache):
        begin = client.get("/auth/google/begin", params={"intent": "signup"})
        state = parse_qs(urlparse(begin.json()["url"]).query)["state"][0]
        runtime.auth.register_oauth_code(
            "live-code",
            {
                "iss": "https://accounts.google.com",
                "sub": "google-live-1",
                "email": "live@x.io",
                "email_verified": True,
                "name": "Live",
            },
        )
        callback = client.get(
            "/auth/google/callback",
            params={"code": "live-code", "state": state},
            follow_redirects=False,
        )
        handoff = parse_qs(urlparse(callback.headers["location"]).query)["code"][0]

        assert client.post("/auth/google/exchange", json={"code": handoff}).status_code == 200
        assert client.post("/auth/google/exchange", json={"code": handoff}).status_code == 401
