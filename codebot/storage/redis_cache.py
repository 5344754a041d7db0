from __future__ import annotations

import json
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

CredentialBlobs = Tuple[Optional[str], Optional[str]]


class RedisCache:
    """Thin Redis wrapper holding the shared credential cache tier.

    Only encrypted credential blobs are written here. Each user has a
    generation counter that is bumped on invalidation; fills carry the
    generation they observed before reading the store and are dropped if
    an invalidation happened in between.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic compare-generation-then-set
    _SET_IF_GENERATION_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[2]) or '0')
if current ~= tonumber(ARGV[1]) then
  return 0
end
redis.call('SET', KEYS[1], ARGV[2], 'EX', tonumber(ARGV[3]))
return 1
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._set_if_generation = self.client.register_script(
            self._SET_IF_GENERATION_SCRIPT
        )

    @staticmethod
    def _blob_key(user_id: str) -> str:
        return f"api_keys:{user_id}"

    @staticmethod
    def _generation_key(user_id: str) -> str:
        return f"api_keys_gen:{user_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async one is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def get_credential_blobs(self, user_id: str) -> Optional[CredentialBlobs]:
        raw = await self.client.get(self._blob_key(user_id))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            await self.client.delete(self._blob_key(user_id))
            return None
        return data.get("completion"), data.get("execution")

    async def credential_generation(self, user_id: str) -> int:
        raw = await self.client.get(self._generation_key(user_id))
        return int(raw) if raw else 0

    async def set_credential_blobs(
        self,
        user_id: str,
        blobs: CredentialBlobs,
        *,
        generation: int,
        ttl_seconds: int,
    ) -> bool:
        payload = json.dumps({"completion": blobs[0], "execution": blobs[1]})
        stored = await self._set_if_generation(
            keys=[self._blob_key(user_id), self._generation_key(user_id)],
            args=[generation, payload, max(1, int(ttl_seconds))],
        )
        return bool(stored)

    async def invalidate_credentials(self, user_id: str) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(self._generation_key(user_id))
            pipe.delete(self._blob_key(user_id))
            await pipe.execute()

    async def close(self) -> None:
        await self.client.aclose()
