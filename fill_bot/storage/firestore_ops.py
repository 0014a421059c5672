from __future__ import annotations

import asyncio
import hashlib
import os
from datetime import datetime, timezone
from typing import Any

from google.cloud import firestore

from fill_bot.common import guarded_call, log_event


class FirestoreStorageOps:
    @staticmethod
    def _doc_id_from_text(value: str) -> str:
        normalized = value.strip().replace("/", "_")
        if not normalized:
            raise ValueError("Cannot derive a Firestore document id from an empty value.")

        if len(normalized) <= 128:
            return normalized

        digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]
        return f"{normalized[:96]}-{digest}"

    def _stamp(self, payload: dict[str, Any]) -> dict[str, Any]:
        stamped = dict(payload)
        stamped["bot_id"] = self.settings.bot_id
        stamped["run_id"] = self.settings.bot_run_id
        stamped["env"] = self.settings.bot_env
        stamped["schema_version"] = self.settings.schema_version
        return stamped

    async def mark_run_stopped(self, *, reason: str) -> None:
        if self._run_doc_ref is None:
            return

        payload = {
            "status": "stopped",
            "stop_reason": reason,
            "stopped_at": firestore.SERVER_TIMESTAMP,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }
        await guarded_call(
            lambda: asyncio.to_thread(self._run_doc_ref.set, payload, merge=True),
            logger=self._logger,
            event="run_stop_write_failed",
            message="Failed to write run stop status",
        )

    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        if self._events_collection_ref is None:
            log_event(
                self._logger,
                level="warning",
                event="operator_event_skipped",
                message="Operator event dropped; Firestore is not connected",
                skipped_event=event,
            )
            return

        payload = self._stamp(
            {
                "timestamp": datetime.now(timezone.utc),
                "server_timestamp": firestore.SERVER_TIMESTAMP,
                "level": level,
                "event": event,
                "message": message,
            }
        )
        if details:
            payload["details"] = details

        async def write_event() -> None:
            if event_id:
                event_ref = self._events_collection_ref.document(self._doc_id_from_text(event_id))
                await asyncio.to_thread(event_ref.set, payload, merge=True)
            else:
                await asyncio.to_thread(self._events_collection_ref.add, payload)

        await guarded_call(
            write_event,
            logger=self._logger,
            event="operator_event_write_failed",
            message="Failed to write operator event",
            level="error",
        )

    async def record_fill(self, *, fill: dict[str, Any], fill_id: str) -> None:
        """Journal one resolved fill attempt and bump the run's per-kind counters."""
        if self._fills_collection_ref is None:
            log_event(
                self._logger,
                level="warning",
                event="fill_journal_skipped",
                message="Skipping fill journal because Firestore client is not ready",
                fill_id=fill_id,
            )
            return

        doc_id = self._doc_id_from_text(fill_id)
        payload = self._stamp(fill)
        payload["fill_id"] = doc_id
        payload["recorded_at"] = firestore.SERVER_TIMESTAMP

        fill_ref = self._fills_collection_ref.document(doc_id)
        await asyncio.to_thread(fill_ref.set, payload, merge=True)

        kind = str(fill.get("kind") or "unknown")
        status = str(fill.get("status") or "unknown")
        await guarded_call(
            lambda: self._increment_fill_counters(kind=kind, status=status, fill_id=doc_id),
            logger=self._logger,
            event="fill_counter_update_failed",
            message="Failed to update fill counters",
            fill_id=doc_id,
        )

    async def _increment_fill_counters(self, *, kind: str, status: str, fill_id: str) -> None:
        if self._run_doc_ref is None:
            return

        payload: dict[str, Any] = {
            "fill_counts": {kind: {status: firestore.Increment(1)}},
            "last_fill_id": fill_id,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }
        await asyncio.to_thread(self._run_doc_ref.set, payload, merge=True)

    async def update_run_heartbeat(self, *, details: dict[str, Any] | None = None) -> None:
        if self._run_doc_ref is None:
            return

        payload: dict[str, Any] = {
            "last_heartbeat_at": firestore.SERVER_TIMESTAMP,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }
        if details:
            payload["heartbeat"] = details
        await asyncio.to_thread(self._run_doc_ref.set, payload, merge=True)

    async def _ensure_bot_namespace(self) -> None:
        if self._bot_doc_ref is None or self._run_doc_ref is None:
            raise RuntimeError("Firestore namespace references are not initialized.")

        bot_payload = self._stamp({"kind": "vault_fill_bot", "updated_at": firestore.SERVER_TIMESTAMP})
        bot_payload.pop("run_id")
        run_payload = self._stamp(
            {
                "status": "running",
                "pid": os.getpid(),
                "started_at": firestore.SERVER_TIMESTAMP,
                "updated_at": firestore.SERVER_TIMESTAMP,
            }
        )

        await asyncio.gather(
            asyncio.to_thread(self._bot_doc_ref.set, bot_payload, merge=True),
            asyncio.to_thread(self._run_doc_ref.set, run_payload, merge=True),
        )

    def _initialize_namespace_refs(self) -> None:
        firestore_client = self._require_firestore()

        self._bot_doc_ref = firestore_client.document(f"{self.settings.bot_collection}/{self.settings.bot_id}")
        self._run_doc_ref = self._bot_doc_ref.collection(self.settings.bot_runs_collection).document(
            self.settings.bot_run_id
        )
        self._events_collection_ref = self._run_doc_ref.collection(self.settings.bot_events_collection)
        self._fills_collection_ref = self._bot_doc_ref.collection(self.settings.bot_fills_collection)

    def _require_firestore(self) -> firestore.Client:
        if self._firestore is None:
            raise RuntimeError("Firestore client is not initialized.")
        return self._firestore
