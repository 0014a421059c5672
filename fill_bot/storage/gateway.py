from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from google.cloud import firestore
from redis import asyncio as redis
from redis.asyncio.client import Redis

from fill_bot.common import guarded_call, log_event

from .firestore_ops import FirestoreStorageOps
from .redis_ops import RedisStorageOps
from .settings import StorageSettings


class StorageGateway(FirestoreStorageOps, RedisStorageOps):
    def __init__(self, settings: StorageSettings, logger: logging.Logger) -> None:
        self.settings = settings
        self._logger = logger
        self._redis: Redis | None = None
        self._firestore: firestore.Client | None = None
        self._bot_doc_ref: Any | None = None
        self._run_doc_ref: Any | None = None
        self._events_collection_ref: Any | None = None
        self._fills_collection_ref: Any | None = None

    @property
    def bot_id(self) -> str:
        return self.settings.bot_id

    @property
    def run_id(self) -> str:
        return self.settings.bot_run_id

    async def connect(self) -> None:
        firebase_credentials = os.getenv("FIREBASE_CREDENTIALS")
        if firebase_credentials and not os.getenv("GOOGLE_APPLICATION_CREDENTIALS"):
            os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = firebase_credentials

        self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)
        await self._redis.ping()
        log_event(
            self._logger,
            level="info",
            event="redis_connected",
            message="Connected to Redis",
        )

        self._firestore = firestore.Client(project=self.settings.firestore_project_id)
        self._initialize_namespace_refs()
        await self._ensure_bot_namespace()

        log_event(
            self._logger,
            level="info",
            event="firestore_connected",
            message="Connected to Firestore",
            bot_id=self.settings.bot_id,
            run_id=self.settings.bot_run_id,
        )

    async def healthcheck(self) -> None:
        redis_client = self._require_redis()
        await redis_client.ping()

        if self._run_doc_ref is None:
            raise RuntimeError("Firestore run document reference is not initialized.")

        await asyncio.to_thread(self._run_doc_ref.get)

    async def send_alert(self, *, subject: str, message: str, dedupe_key: str | None = None) -> bool:
        """Deliver an operator alert at most once per dedup window.

        Returns True when the alert was published, False when it was dropped as
        a duplicate. A failing guard store does not suppress the alert.
        """
        acquired = await guarded_call(
            lambda: self.acquire_alert_guard(subject=subject, dedupe_key=dedupe_key),
            logger=self._logger,
            event="alert_guard_failed",
            message="Alert dedup guard unavailable; sending alert anyway",
            default=True,
            subject=subject,
        )
        if not acquired:
            log_event(
                self._logger,
                level="debug",
                event="alert_deduplicated",
                message="Alert suppressed inside dedup window",
                subject=subject,
                window_seconds=self.settings.alert_dedup_window_seconds,
            )
            return False

        log_event(
            self._logger,
            level="critical",
            event="operator_alert",
            message=subject,
            details=message,
        )
        await self.publish_event(
            level="ALERT",
            event="operator_alert",
            message=subject,
            details={"body": message, "dedupe_key": dedupe_key or subject},
        )
        return True

    async def close(self) -> None:
        if self._redis is not None:
            close = getattr(self._redis, "aclose", None)
            if close:
                await close()
            else:
                await self._redis.close()
            self._redis = None

        self._bot_doc_ref = None
        self._run_doc_ref = None
        self._events_collection_ref = None
        self._fills_collection_ref = None
        self._firestore = None
