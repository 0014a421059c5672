from __future__ import annotations

import contextlib
import hashlib
import json
from typing import Any

from redis.asyncio.client import Redis

from .helpers import dumps_compact as _dumps_compact
from .helpers import now_iso as _now_iso


class RedisStorageOps:
    @staticmethod
    def _prefixed_key(prefix: str, suffix: str) -> str:
        return f"{prefix}:{suffix}"

    @staticmethod
    def _alert_fingerprint(subject: str, dedupe_key: str | None) -> str:
        source = dedupe_key or subject
        return hashlib.sha256(source.encode("utf-8")).hexdigest()[:24]

    async def acquire_alert_guard(self, *, subject: str, dedupe_key: str | None = None) -> bool:
        redis_client = self._require_redis()
        guard_key = self._prefixed_key(
            self.settings.alert_guard_prefix,
            self._alert_fingerprint(subject, dedupe_key),
        )
        acquired = await redis_client.set(
            guard_key,
            _now_iso(),
            ex=max(1, self.settings.alert_dedup_window_seconds),
            nx=True,
        )
        return bool(acquired)

    async def mark_order_executed(
        self,
        *,
        order_id: str,
        tx_signature: str,
        ttl_seconds: int,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        redis_client = self._require_redis()
        record_key = self._prefixed_key(self.settings.order_record_prefix, order_id)
        record: dict[str, Any] = {
            "order_id": order_id,
            "status": "executed",
            "tx_signature": tx_signature,
            "updated_at": _now_iso(),
        }
        if payload is not None:
            record["payload"] = payload

        written = await redis_client.set(
            record_key,
            _dumps_compact(record),
            ex=max(60, ttl_seconds),
            nx=True,
        )
        return bool(written)

    async def get_order_record(self, *, order_id: str) -> dict[str, Any] | None:
        redis_client = self._require_redis()
        record_key = self._prefixed_key(self.settings.order_record_prefix, order_id)
        raw = await redis_client.get(record_key)
        if raw is None:
            return None

        with contextlib.suppress(ValueError):
            candidate = json.loads(raw)
            if isinstance(candidate, dict):
                return candidate
        return {"order_id": order_id, "status": "unknown", "raw": raw}

    async def update_heartbeat(self) -> None:
        redis_client = self._require_redis()
        await redis_client.set(self.settings.heartbeat_key, _now_iso())

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis
