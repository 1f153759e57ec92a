from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

# Atomically count a failed MFA-ticket attempt and burn the ticket at the limit
_MFA_TICKET_FAILURE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])

if attempts >= tonumber(ARGV[1]) then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end

return {0, attempts}
"""


def _ttl_seconds(expires_at: datetime) -> int:
    """Compute a safe TTL from an absolute expiry timestamp, clamped to >= 1s."""

    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = expires_at.astimezone(timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


def _decode_state(cached: Optional[str]) -> Optional[Tuple[str, datetime]]:
    if cached is None:
        return None
    try:
        data = json.loads(cached)
    except (json.JSONDecodeError, TypeError):
        # Corrupted data - already deleted
        return None
    expires_at = datetime.now(timezone.utc)
    expires_raw = data.get("expires_at")
    if isinstance(expires_raw, str):
        try:
            expires_at = datetime.fromisoformat(expires_raw)
        except (ValueError, TypeError):
            pass
    return data.get("intent") or "signin", expires_at


def _decode_payload(cached: Optional[str]) -> Optional[dict]:
    if cached is None:
        return None
    try:
        data = json.loads(cached)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


class RedisCache:
    """Thin Redis wrapper for OAuth state, OAuth hand-off codes and MFA tickets."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def set_oauth_state(self, state: str, intent: str, expires_at: datetime) -> None:
        payload = {"intent": intent, "expires_at": expires_at.isoformat()}
        await self.client.set(
            f"auth:oauth:state:{state}", json.dumps(payload), ex=_ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[Tuple[str, datetime]]:
        """Atomically get and delete OAuth state so it cannot be replayed."""
        cached = await self.client.getdel(f"auth:oauth:state:{state}")
        return _decode_state(cached)

    async def set_oauth_handoff(self, code: str, payload: dict, ttl_seconds: int) -> None:
        await self.client.set(f"auth:oauth:code:{code}", json.dumps(payload), ex=ttl_seconds)

    async def pop_oauth_handoff(self, code: str) -> Optional[dict]:
        cached = await self.client.getdel(f"auth:oauth:code:{code}")
        return _decode_payload(cached)

    async def is_mfa_ticket_burned(self, jti: str) -> bool:
        return bool(await self.client.exists(f"mfa:ticket:burned:{jti}"))

    async def burn_mfa_ticket(self, jti: str, ttl_seconds: int) -> bool:
        """Mark a ticket consumed. Returns False when it was already burned."""
        created = await self.client.set(
            f"mfa:ticket:burned:{jti}", "1", ex=max(1, ttl_seconds), nx=True
        )
        await self.client.delete(f"mfa:ticket:attempts:{jti}")
        return bool(created)

    async def record_mfa_ticket_failure(
        self, jti: str, max_attempts: int, ttl_seconds: int
    ) -> tuple[bool, int]:
        """Record a wrong code against a ticket.

        Returns:
            Tuple of (ticket_is_now_burned, attempts_so_far)
        """
        result = await self.client.eval(
            _MFA_TICKET_FAILURE_SCRIPT,
            2,
            f"mfa:ticket:burned:{jti}",
            f"mfa:ticket:attempts:{jti}",
            max_attempts,
            max(1, ttl_seconds),
        )
        return bool(result[0]), int(result[1])

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes async methods so it can be awaited like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._failure_script = self._sync_client.register_script(_MFA_TICKET_FAILURE_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def ping(self) -> bool:
        return bool(self._sync_client.ping())

    async def set_oauth_state(self, state: str, intent: str, expires_at: datetime) -> None:
        payload = {"intent": intent, "expires_at": expires_at.isoformat()}
        self._sync_client.set(
            f"auth:oauth:state:{state}", json.dumps(payload), ex=_ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[Tuple[str, datetime]]:
        return _decode_state(self._sync_client.getdel(f"auth:oauth:state:{state}"))

    async def set_oauth_handoff(self, code: str, payload: dict, ttl_seconds: int) -> None:
        self._sync_client.set(f"auth:oauth:code:{code}", json.dumps(payload), ex=ttl_seconds)

    async def pop_oauth_handoff(self, code: str) -> Optional[dict]:
        return _decode_payload(self._sync_client.getdel(f"auth:oauth:code:{code}"))

    async def is_mfa_ticket_burned(self, jti: str) -> bool:
        return bool(self._sync_client.exists(f"mfa:ticket:burned:{jti}"))

    async def burn_mfa_ticket(self, jti: str, ttl_seconds: int) -> bool:
        created = self._sync_client.set(
            f"mfa:ticket:burned:{jti}", "1", ex=max(1, ttl_seconds), nx=True
        )
        self._sync_client.delete(f"mfa:ticket:attempts:{jti}")
        return bool(created)

    async def record_mfa_ticket_failure(
        self, jti: str, max_attempts: int, ttl_seconds: int
    ) -> tuple[bool, int]:
        result = self._failure_script(
            keys=[f"mfa:ticket:burned:{jti}", f"mfa:ticket:attempts:{jti}"],
            args=[max_attempts, max(1, ttl_seconds)],
        )
        return bool(result[0]), int(result[1])

    async def close(self) -> None:
        self._sync_client.close()
