from __future__ import annotations

import json
from typing import Any

from redis.asyncio.client import Redis

from mmcore.common import log_event, now_iso

from .helpers import serialize_for_redis as _serialize_for_redis

_REFRESH_IF_OWNER = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('expire', KEYS[1], ARGV[2])
end
return 0
"""

_DELETE_IF_OWNER = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
end
return 0
"""


class RedisStorageOps:
    @staticmethod
    def _wallet_guard_key(prefix: str, wallet_id: str) -> str:
        return f"{prefix}:{wallet_id}"

    async def sync_config_to_redis(self, config: dict[str, Any], *, source: str) -> None:
        redis_client = self._require_redis()

        mapping = {str(key): _serialize_for_redis(value) for key, value in config.items()}
        pipeline = redis_client.pipeline(transaction=True)
        pipeline.delete(self.settings.redis_config_key)
        if mapping:
            pipeline.hset(self.settings.redis_config_key, mapping=mapping)
        await pipeline.execute()
        log_event(
            self._logger,
            level="info",
            event="config_synced",
            message="Runtime config synced to Redis",
            items=len(mapping),
            source=source,
        )

    async def get_runtime_config(self) -> dict[str, str]:
        redis_client = self._require_redis()
        return await redis_client.hgetall(self.settings.redis_config_key)

    async def acquire_wallet_guard(self, *, wallet_id: str, owner_token: str, ttl_seconds: int) -> bool:
        redis_client = self._require_redis()
        guard_key = self._wallet_guard_key(self.settings.wallet_guard_prefix, wallet_id)
        acquired = await redis_client.set(guard_key, owner_token, ex=max(1, ttl_seconds), nx=True)
        return bool(acquired)

    async def refresh_wallet_guard(self, *, wallet_id: str, owner_token: str, ttl_seconds: int) -> bool:
        redis_client = self._require_redis()
        guard_key = self._wallet_guard_key(self.settings.wallet_guard_prefix, wallet_id)
        refreshed = await redis_client.eval(
            _REFRESH_IF_OWNER,
            1,
            guard_key,
            owner_token,
            str(max(1, ttl_seconds)),
        )
        return bool(refreshed)

    async def release_wallet_guard(self, *, wallet_id: str, owner_token: str) -> bool:
        redis_client = self._require_redis()
        guard_key = self._wallet_guard_key(self.settings.wallet_guard_prefix, wallet_id)
        deleted = await redis_client.eval(_DELETE_IF_OWNER, 1, guard_key, owner_token)
        return bool(deleted)

    async def record_price(self, *, symbol: str, price: float, timestamp: float) -> None:
        redis_client = self._require_redis()
        redis_key = f"{self.settings.price_prefix}:{symbol}"
        await redis_client.hset(
            redis_key,
            mapping={
                "symbol": symbol,
                "price": f"{price:.10f}",
                "observed_at": f"{timestamp:.3f}",
                "updated_at": now_iso(),
            },
        )

    async def record_job_state(self, job: dict[str, Any], *, ttl_seconds: int = 86400) -> None:
        redis_client = self._require_redis()
        record_key = f"jobs:{job['job_id']}"
        mapping = {
            "job_id": str(job["job_id"]),
            "state": str(job.get("state") or ""),
            "updated_at": now_iso(),
            "payload": json.dumps(job, ensure_ascii=False, separators=(",", ":"), default=str),
        }
        await redis_client.hset(record_key, mapping=mapping)
        await redis_client.expire(record_key, max(60, ttl_seconds))

    async def update_heartbeat(self) -> None:
        redis_client = self._require_redis()
        await redis_client.set(self.settings.heartbeat_key, now_iso())

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis
