from __future__ import annotations

from typing import Any

from redis.asyncio.client import Redis

from ..common import log_event
from .helpers import dump_json as _dump_json
from .helpers import load_json_object as _load_json_object


class RedisStorageOps:
    """Pending-operation ledger kept as one Redis hash per namespace.

    Field is the operation handle, value is the JSON-encoded entry.
    """

    async def load_all(self) -> list[dict[str, Any]]:
        redis_client = self._require_redis()
        raw_entries = await redis_client.hgetall(self.settings.ledger_key)

        entries: list[dict[str, Any]] = []
        for handle, raw in raw_entries.items():
            parsed = _load_json_object(raw)
            if parsed is None:
                log_event(
                    self._logger,
                    level="warning",
                    event="ledger_entry_unreadable",
                    message="Skipping unreadable ledger entry",
                    operation_handle=handle,
                )
                continue
            entries.append(parsed)
        return entries

    async def get(self, handle: str) -> dict[str, Any] | None:
        redis_client = self._require_redis()
        raw = await redis_client.hget(self.settings.ledger_key, handle)
        return _load_json_object(raw)

    async def put(self, entry: dict[str, Any]) -> None:
        redis_client = self._require_redis()
        handle = str(entry.get("operation_handle") or "")
        if not handle:
            raise ValueError("Ledger entry requires an operation_handle.")
        await redis_client.hset(self.settings.ledger_key, handle, _dump_json(entry))

    async def delete(self, handle: str) -> bool:
        redis_client = self._require_redis()
        deleted = await redis_client.hdel(self.settings.ledger_key, handle)
        return bool(deleted)

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis
