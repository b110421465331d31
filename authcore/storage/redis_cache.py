from __future__ import annotations

import hashlib
import json
import uuid
from typing import List, Optional

import redis.asyncio as aioredis
from redis import Redis

# Mark the step-up hash verified only when the presented token matches and it
# is still pending, so two concurrent verifications cannot both consume it.
_CONSUME_STEP_UP_SCRIPT = """
local stored = redis.call('HGET', KEYS[1], 'token')
local verified = redis.call('HGET', KEYS[1], 'verified')
if stored and stored == ARGV[1] and verified ~= '1' then
  redis.call('HSET', KEYS[1], 'verified', '1')
  return 1
end
return 0
"""

# Prune attempts outside the window, add the new one and refresh the key TTL
_RECORD_ATTEMPT_SCRIPT = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now - window)
redis.call('ZADD', KEYS[1], now, ARGV[3])
redis.call('EXPIRE', KEYS[1], math.max(math.ceil(window), 1))
return redis.call('ZCARD', KEYS[1])
"""


def _scoped_key(prefix: str, scope: str, identifier: str) -> str:
    """Collision-resistant key for a guard identifier (emails are hashed)."""
    digest = hashlib.sha256(identifier.strip().lower().encode()).hexdigest()
    return f"{prefix}:{scope}:{digest}"


class RedisCache:
    """Thin Redis wrapper for step-up sessions, codes and guard state."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume_step_up = self.client.register_script(_CONSUME_STEP_UP_SCRIPT)
        self._record_attempt = self.client.register_script(_RECORD_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async client to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

    # step-up sessions

    async def set_step_up_session(self, user_id: str, payload: dict, ttl_seconds: int) -> None:
        key = f"auth:stepup:{user_id}"
        pipe = self.client.pipeline()
        pipe.delete(key)
        pipe.hset(key, mapping=payload)
        pipe.expire(key, max(1, ttl_seconds))
        await pipe.execute()

    async def get_step_up_session(self, user_id: str) -> Optional[dict]:
        data = await self.client.hgetall(f"auth:stepup:{user_id}")
        return data or None

    async def consume_step_up_session(self, user_id: str, token: str) -> bool:
        result = await self._consume_step_up(keys=[f"auth:stepup:{user_id}"], args=[token])
        return bool(int(result))

    async def delete_step_up_session(self, user_id: str) -> None:
        await self.client.delete(f"auth:stepup:{user_id}")

    # email two-factor codes

    async def add_two_factor_code(
        self, user_id: str, code_hash: str, issued_ts: float, ttl_seconds: int
    ) -> None:
        key = f"auth:2fa:codes:{user_id}"
        pipe = self.client.pipeline()
        pipe.hset(key, code_hash, issued_ts)
        pipe.expire(key, max(1, ttl_seconds))
        await pipe.execute()

    async def get_two_factor_code(self, user_id: str, code_hash: str) -> Optional[float]:
        raw = await self.client.hget(f"auth:2fa:codes:{user_id}", code_hash)
        return float(raw) if raw is not None else None

    async def clear_two_factor_codes(self, user_id: str) -> None:
        await self.client.delete(f"auth:2fa:codes:{user_id}")

    # freshness guard

    async def set_latest_timestamp(
        self, scope: str, identifier: str, ts: float, ttl_seconds: int
    ) -> None:
        await self.client.set(
            _scoped_key("guard:latest", scope, identifier), ts, ex=max(1, ttl_seconds)
        )

    async def get_latest_timestamp(self, scope: str, identifier: str) -> Optional[float]:
        raw = await self.client.get(_scoped_key("guard:latest", scope, identifier))
        return float(raw) if raw is not None else None

    async def clear_latest_timestamp(self, scope: str, identifier: str) -> None:
        await self.client.delete(_scoped_key("guard:latest", scope, identifier))

    # throttle guard

    async def record_throttle_attempt(
        self, scope: str, identifier: str, ts: float, window_seconds: float
    ) -> int:
        key = _scoped_key("guard:attempts", scope, identifier)
        count = await self._record_attempt(
            keys=[key], args=[ts, window_seconds, f"{ts}:{uuid.uuid4().hex[:8]}"]
        )
        return int(count)

    async def get_throttle_attempts(
        self, scope: str, identifier: str, since_ts: float
    ) -> List[float]:
        key = _scoped_key("guard:attempts", scope, identifier)
        pipe = self.client.pipeline()
        pipe.zremrangebyscore(key, "-inf", since_ts)
        pipe.zrangebyscore(key, f"({since_ts}", "+inf", withscores=True)
        _, rows = await pipe.execute()
        return [float(score) for _, score in rows]

    async def clear_throttle(self, scope: str, identifier: str) -> None:
        await self.client.delete(_scoped_key("guard:attempts", scope, identifier))

    # email confirmation tokens

    async def set_confirmation_token(self, token_hash: str, payload: dict, ttl_seconds: int) -> None:
        await self.client.set(
            f"auth:confirm:{token_hash}", json.dumps(payload), ex=max(1, ttl_seconds)
        )

    async def get_confirmation_token(self, token_hash: str) -> Optional[dict]:
        raw = await self.client.get(f"auth:confirm:{token_hash}")
        return json.loads(raw) if raw else None

    async def delete_confirmation_token(self, token_hash: str) -> None:
        await self.client.delete(f"auth:confirm:{token_hash}")


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume_step_up = self._sync_client.register_script(_CONSUME_STEP_UP_SCRIPT)
        self._record_attempt = self._sync_client.register_script(_RECORD_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def close(self) -> None:
        self._sync_client.close()

    async def set_step_up_session(self, user_id: str, payload: dict, ttl_seconds: int) -> None:
        key = f"auth:stepup:{user_id}"
        pipe = self._sync_client.pipeline()
        pipe.delete(key)
        pipe.hset(key, mapping=payload)
        pipe.expire(key, max(1, ttl_seconds))
        pipe.execute()

    async def get_step_up_session(self, user_id: str) -> Optional[dict]:
        data = self._sync_client.hgetall(f"auth:stepup:{user_id}")
        return data or None

    async def consume_step_up_session(self, user_id: str, token: str) -> bool:
        result = self._consume_step_up(keys=[f"auth:stepup:{user_id}"], args=[token])
        return bool(int(result))

    async def delete_step_up_session(self, user_id: str) -> None:
        self._sync_client.delete(f"auth:stepup:{user_id}")

    async def add_two_factor_code(
        self, user_id: str, code_hash: str, issued_ts: float, ttl_seconds: int
    ) -> None:
        key = f"auth:2fa:codes:{user_id}"
        pipe = self._sync_client.pipeline()
        pipe.hset(key, code_hash, issued_ts)
        pipe.expire(key, max(1, ttl_seconds))
        pipe.execute()

    async def get_two_factor_code(self, user_id: str, code_hash: str) -> Optional[float]:
        raw = self._sync_client.hget(f"auth:2fa:codes:{user_id}", code_hash)
        return float(raw) if raw is not None else None

    async def clear_two_factor_codes(self, user_id: str) -> None:
        self._sync_client.delete(f"auth:2fa:codes:{user_id}")

    async def set_latest_timestamp(
        self, scope: str, identifier: str, ts: float, ttl_seconds: int
    ) -> None:
        self._sync_client.set(
            _scoped_key("guard:latest", scope, identifier), ts, ex=max(1, ttl_seconds)
        )

    async def get_latest_timestamp(self, scope: str, identifier: str) -> Optional[float]:
        raw = self._sync_client.get(_scoped_key("guard:latest", scope, identifier))
        return float(raw) if raw is not None else None

    async def clear_latest_timestamp(self, scope: str, identifier: str) -> None:
        self._sync_client.delete(_scoped_key("guard:latest", scope, identifier))

    async def record_throttle_attempt(
        self, scope: str, identifier: str, ts: float, window_seconds: float
    ) -> int:
        key = _scoped_key("guard:attempts", scope, identifier)
        count = self._record_attempt(
            keys=[key], args=[ts, window_seconds, f"{ts}:{uuid.uuid4().hex[:8]}"]
        )
        return int(count)

    async def get_throttle_attempts(
        self, scope: str, identifier: str, since_ts: float
    ) -> List[float]:
        key = _scoped_key("guard:attempts", scope, identifier)
        pipe = self._sync_client.pipeline()
        pipe.zremrangebyscore(key, "-inf", since_ts)
        pipe.zrangebyscore(key, f"({since_ts}", "+inf", withscores=True)
        _, rows = pipe.execute()
        return [float(score) for _, score in rows]

    async def clear_throttle(self, scope: str, identifier: str) -> None:
        self._sync_client.delete(_scoped_key("guard:attempts", scope, identifier))

    async def set_confirmation_token(self, token_hash: str, payload: dict, ttl_seconds: int) -> None:
        self._sync_client.set(
            f"auth:confirm:{token_hash}", json.dumps(payload), ex=max(1, ttl_seconds)
        )

    async def get_confirmation_token(self, token_hash: str) -> Optional[dict]:
        raw = self._sync_client.get(f"auth:confirm:{token_hash}")
        return json.loads(raw) if raw else None

    async def delete_confirmation_token(self, token_hash: str) -> None:
        self._sync_client.delete(f"auth:confirm:{token_hash}")
