from __future__ import annotations

import asyncio
import contextlib
import hashlib
import os
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from mmcore.common import guarded_call, log_event
from mmcore.trading.types import AuditRecord, Bot, ClmmPosition, WalletRecord

from .settings import ConfigUpdateHandler

RecordT = TypeVar("RecordT")


class FirestoreStorageOps:
    @staticmethod
    def _normalize_doc_path(doc_path: str, leaf_doc_id: str) -> tuple[str, bool]:
        normalized = doc_path.strip("/")
        if not normalized:
            raise ValueError("FIRESTORE_CONFIG_DOC must not be empty.")

        segments = [part for part in normalized.split("/") if part]
        if len(segments) % 2 == 0:
            return normalized, False

        return f"{normalized}/{leaf_doc_id}", True

    @staticmethod
    def _doc_id_from_text(value: str) -> str:
        normalized = value.strip().replace("/", "_")
        if not normalized:
            raise ValueError("Document id source must not be empty.")

        if len(normalized) <= 128:
            return normalized

        digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]
        return f"{normalized[:96]}-{digest}"

    def _parse_records(
        self,
        snapshots: list[Any],
        *,
        id_field: str,
        parser: Callable[[dict[str, Any]], RecordT],
    ) -> list[RecordT]:
        records: list[RecordT] = []
        for snapshot in snapshots:
            payload = snapshot.to_dict() or {}
            payload.setdefault(id_field, snapshot.id)
            try:
                records.append(parser(payload))
            except (KeyError, TypeError, ValueError) as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="record_parse_failed",
                    message="Skipping malformed Firestore document",
                    doc_id=snapshot.id,
                    error=str(error),
                )
        return records

    async def _get_doc(self, collection_ref: Any, doc_id: str) -> dict[str, Any] | None:
        snapshot = await asyncio.to_thread(collection_ref.document(doc_id).get)
        if not snapshot.exists:
            return None
        payload = snapshot.to_dict() or {}
        return payload

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
            event="run_status_update_failed",
            message="Failed to update run status",
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
        if self._firestore is None or self._events_collection_ref is None:
            log_event(
                self._logger,
                level="warning",
                event="publish_skipped",
                message="Skipping Firestore event because client is not ready",
            )
            return

        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc),
            "server_timestamp": firestore.SERVER_TIMESTAMP,
            "level": level,
            "event": event,
            "message": message,
            "service_id": self.settings.service_id,
            "run_id": self.settings.bot_run_id,
            "env": self.settings.bot_env,
            "schema_version": self.settings.config_schema_version,
        }
        if details:
            payload["details"] = details

        async def write_event() -> None:
            if event_id:
                document_id = self._doc_id_from_text(event_id)
                event_ref = self._events_collection_ref.document(document_id)
                await asyncio.to_thread(event_ref.set, payload, merge=True)
                return

            await asyncio.to_thread(self._events_collection_ref.add, payload)

        await guarded_call(
            write_event,
            logger=self._logger,
            event="publish_failed",
            message="Failed to publish Firestore event",
            level="error",
        )

    def start_config_listener(
        self,
        loop: asyncio.AbstractEventLoop,
        on_update: ConfigUpdateHandler | None = None,
    ) -> None:
        if self._config_doc_ref is None:
            raise RuntimeError("StorageGateway is not connected.")
        if self._watch is not None:
            return

        def schedule(coro: Awaitable[None]) -> None:
            task = asyncio.create_task(coro)

            def on_done(done_task: asyncio.Task[None]) -> None:
                with contextlib.suppress(asyncio.CancelledError):
                    error = done_task.exception()
                    if error:
                        log_event(
                            self._logger,
                            level="error",
                            event="config_sync_failed",
                            message="Config sync task failed",
                            error=str(error),
                        )

            task.add_done_callback(on_done)

        def on_snapshot(doc_snapshot: list[Any], _changes: list[Any], _read_time: Any) -> None:
            if not doc_snapshot or loop.is_closed():
                return
            snapshot = doc_snapshot[0]
            data = snapshot.to_dict() if snapshot.exists else {}
            if data is None:
                data = {}
            loop.call_soon_threadsafe(schedule, self._handle_config_update(data, on_update))

        self._watch = self._config_doc_ref.on_snapshot(on_snapshot)
        log_event(
            self._logger,
            level="info",
            event="config_watch_started",
            message="Config watcher started",
        )

    async def _handle_config_update(
        self,
        config: dict[str, Any],
        on_update: ConfigUpdateHandler | None,
    ) -> None:
        await self.sync_config_to_redis(config, source="snapshot")
        if on_update:
            await on_update(config)

    async def load_active_bots(self) -> list[Bot]:
        collection_ref = self._require_ref(self._bots_collection_ref)
        query = collection_ref.where(filter=FieldFilter("status", "==", "active"))
        snapshots = await asyncio.to_thread(lambda: list(query.stream()))
        return self._parse_records(snapshots, id_field="bot_id", parser=Bot.from_dict)

    async def load_bot(self, bot_id: str) -> Bot | None:
        payload = await self._get_doc(self._require_ref(self._bots_collection_ref), bot_id)
        if payload is None:
            return None
        payload.setdefault("bot_id", bot_id)
        return Bot.from_dict(payload)

    async def load_wallet(self, wallet_id: str) -> WalletRecord | None:
        payload = await self._get_doc(self._require_ref(self._wallets_collection_ref), wallet_id)
        if payload is None:
            return None
        payload.setdefault("wallet_id", wallet_id)
        return WalletRecord.from_dict(payload)

    async def load_positions(self) -> list[ClmmPosition]:
        collection_ref = self._require_ref(self._positions_collection_ref)
        snapshots = await asyncio.to_thread(lambda: list(collection_ref.stream()))
        return self._parse_records(snapshots, id_field="position_id", parser=ClmmPosition.from_dict)

    async def load_position(self, position_id: str) -> ClmmPosition | None:
        payload = await self._get_doc(self._require_ref(self._positions_collection_ref), position_id)
        if payload is None:
            return None
        payload.setdefault("position_id", position_id)
        return ClmmPosition.from_dict(payload)

    async def load_encrypted_key(self, key_ref: str) -> str | None:
        payload = await self._get_doc(
            self._require_ref(self._wallet_keys_collection_ref),
            self._doc_id_from_text(key_ref),
        )
        if payload is None:
            return None
        return str(payload.get("ciphertext") or "") or None

    async def store_encrypted_key(self, key_ref: str, ciphertext: str) -> None:
        collection_ref = self._require_ref(self._wallet_keys_collection_ref)
        payload = {"ciphertext": ciphertext, "updated_at": firestore.SERVER_TIMESTAMP}
        doc_ref = collection_ref.document(self._doc_id_from_text(key_ref))
        await asyncio.to_thread(doc_ref.set, payload)

    async def append_audit(self, record: AuditRecord) -> None:
        collection_ref = self._require_ref(self._audit_collection_ref)
        payload = record.to_dict()
        payload["run_id"] = self.settings.bot_run_id
        payload["env"] = self.settings.bot_env
        payload["dry_run"] = self.settings.dry_run
        payload["created_at"] = firestore.SERVER_TIMESTAMP
        doc_ref = collection_ref.document(self._doc_id_from_text(record.job_id))
        await asyncio.to_thread(doc_ref.set, payload)
        await guarded_call(
            lambda: self.record_job_state(record.to_dict()),
            logger=self._logger,
            event="job_state_mirror_failed",
            message="Failed to mirror job outcome to Redis",
            job_id=record.job_id,
        )

    async def update_wallet(self, wallet: WalletRecord) -> None:
        collection_ref = self._require_ref(self._wallets_collection_ref)
        payload = wallet.to_dict()
        payload["updated_at"] = firestore.SERVER_TIMESTAMP
        doc_ref = collection_ref.document(wallet.wallet_id)
        await asyncio.to_thread(doc_ref.set, payload, merge=True)

    async def update_bot(self, bot_id: str, fields: dict[str, Any]) -> None:
        collection_ref = self._require_ref(self._bots_collection_ref)
        payload = dict(fields)
        payload["updated_at"] = firestore.SERVER_TIMESTAMP
        doc_ref = collection_ref.document(bot_id)
        await asyncio.to_thread(doc_ref.set, payload, merge=True)

    async def update_position(self, position: ClmmPosition) -> None:
        collection_ref = self._require_ref(self._positions_collection_ref)
        payload = position.to_dict()
        payload["updated_at"] = firestore.SERVER_TIMESTAMP
        doc_ref = collection_ref.document(position.position_id)
        await asyncio.to_thread(doc_ref.set, payload, merge=True)

    async def _ensure_service_namespace(self) -> None:
        if self._service_doc_ref is None or self._run_doc_ref is None:
            raise RuntimeError("Firestore namespace references are not initialized.")

        service_payload: dict[str, Any] = {
            "service_id": self.settings.service_id,
            "env": self.settings.bot_env,
            "schema_version": self.settings.config_schema_version,
            "config_doc": self._resolved_firestore_config_doc,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }

        run_payload: dict[str, Any] = {
            "run_id": self.settings.bot_run_id,
            "service_id": self.settings.service_id,
            "env": self.settings.bot_env,
            "dry_run": self.settings.dry_run,
            "status": "running",
            "pid": os.getpid(),
            "started_at": firestore.SERVER_TIMESTAMP,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }

        await asyncio.gather(
            asyncio.to_thread(self._service_doc_ref.set, service_payload, merge=True),
            asyncio.to_thread(self._run_doc_ref.set, run_payload, merge=True),
        )

    def _initialize_namespace_refs(self) -> None:
        firestore_client = self._require_firestore()

        service_doc_path = f"{self.settings.service_collection}/{self.settings.service_id}"
        self._service_doc_ref = firestore_client.document(service_doc_path)
        self._run_doc_ref = self._service_doc_ref.collection(self.settings.runs_collection).document(
            self.settings.bot_run_id
        )
        self._events_collection_ref = self._run_doc_ref.collection(self.settings.events_collection)
        self._bots_collection_ref = self._service_doc_ref.collection(self.settings.bots_collection)
        self._wallets_collection_ref = self._service_doc_ref.collection(self.settings.wallets_collection)
        self._wallet_keys_collection_ref = self._service_doc_ref.collection(self.settings.wallet_keys_collection)
        self._positions_collection_ref = self._service_doc_ref.collection(self.settings.positions_collection)
        self._audit_collection_ref = self._service_doc_ref.collection(self.settings.audit_collection)

    @staticmethod
    def _require_ref(ref: Any) -> Any:
        if ref is None:
            raise RuntimeError("StorageGateway is not connected.")
        return ref

    def _require_firestore(self) -> firestore.Client:
        if self._firestore is None:
            raise RuntimeError("Firestore client is not initialized.")
        return self._firestore
