from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone

from .helpers import to_int


def _sanitize_bot_id(value: str, default: str) -> str:
    normalized = (value.strip() or default).replace("/", "-")
    return normalized or default


@dataclass(slots=True)
class StorageSettings:
    redis_url: str
    firestore_project_id: str | None
    bot_collection: str
    bot_id: str
    bot_env: str
    bot_run_id: str
    bot_runs_collection: str
    bot_events_collection: str
    bot_fills_collection: str
    schema_version: int
    heartbeat_key: str
    alert_guard_prefix: str
    order_record_prefix: str
    alert_dedup_window_seconds: int

    @classmethod
    def from_env(cls) -> "StorageSettings":
        bot_collection = (os.getenv("BOT_COLLECTION", "bots").strip("/") or "bots")
        bot_id = _sanitize_bot_id(os.getenv("BOT_ID", "vault-fill-bot"), "vault-fill-bot")

        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
            firestore_project_id=os.getenv("FIRESTORE_PROJECT_ID") or None,
            bot_collection=bot_collection,
            bot_id=bot_id,
            bot_env=os.getenv("BOT_ENV", "dev"),
            bot_run_id=os.getenv("BOT_RUN_ID")
            or datetime.now(timezone.utc).strftime("run-%Y%m%dT%H%M%SZ"),
            bot_runs_collection=os.getenv("BOT_RUNS_COLLECTION", "runs"),
            bot_events_collection=os.getenv("BOT_EVENTS_COLLECTION", "events"),
            bot_fills_collection=os.getenv("BOT_FILLS_COLLECTION", "fills"),
            schema_version=max(1, to_int(os.getenv("SCHEMA_VERSION"), 1)),
            heartbeat_key=os.getenv("REDIS_HEARTBEAT_KEY", "fill_bot:heartbeat"),
            alert_guard_prefix=os.getenv("REDIS_ALERT_GUARD_PREFIX", "fill_bot:alerts:guard"),
            order_record_prefix=os.getenv("REDIS_ORDER_RECORD_PREFIX", "fill_bot:orders:record"),
            alert_dedup_window_seconds=max(
                1,
                to_int(os.getenv("ALERT_DEDUP_WINDOW_SECONDS"), 900),
            ),
        )
