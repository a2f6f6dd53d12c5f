from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from typing import Any

from google.cloud import firestore
from redis import asyncio as redis
from redis.asyncio.client import Redis

from mmcore.common import log_event

from .firestore_ops import FirestoreStorageOps
from .redis_ops import RedisStorageOps
from .settings import StorageSettings

_RECORD_REFS = (
    "_service_doc_ref",
    "_run_doc_ref",
    "_events_collection_ref",
    "_bots_collection_ref",
    "_wallets_collection_ref",
    "_wallet_keys_collection_ref",
    "_positions_collection_ref",
    "_audit_collection_ref",
    "_config_doc_ref",
)


class StorageGateway(FirestoreStorageOps, RedisStorageOps):
    """Persistence, wallet guard store and event publisher for the execution core.

    Bots, wallets, positions, encrypted keys and the audit trail live in
    Firestore under ``<service_collection>/<service_id>``. Redis carries the
    cross-process wallet guards, the runtime config hash, job state and the
    latest observed prices.
    """

    def __init__(self, settings: StorageSettings, logger: logging.Logger) -> None:
        self.settings = settings
        self._logger = logger
        self._redis: Redis | None = None
        self._firestore: firestore.Client | None = None
        self._watch: Any | None = None
        self._resolved_firestore_config_doc = settings.firestore_config_doc
        self._reset_refs()

    def _reset_refs(self) -> None:
        for name in _RECORD_REFS:
            setattr(self, name, None)

    @property
    def service_id(self) -> str:
        return self.settings.service_id

    @property
    def run_id(self) -> str:
        return self.settings.bot_run_id

    async def connect(self) -> None:
        await self._connect_redis()
        self._connect_firestore()
        await self._ensure_service_namespace()
        await self._load_startup_config()
        log_event(
            self._logger,
            level="info",
            event="storage_connected",
            message="Storage gateway connected",
            service_id=self.service_id,
            run_id=self.run_id,
            config_doc=self._resolved_firestore_config_doc,
        )

    async def _connect_redis(self) -> None:
        self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)
        await self._redis.ping()

    def _connect_firestore(self) -> None:
        firebase_credentials = os.getenv("FIREBASE_CREDENTIALS")
        if firebase_credentials and not os.getenv("GOOGLE_APPLICATION_CREDENTIALS"):
            os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = firebase_credentials

        self._firestore = firestore.Client(project=self.settings.firestore_project_id)
        self._resolved_firestore_config_doc, was_collection_path = self._normalize_doc_path(
            self.settings.firestore_config_doc,
            self.settings.firestore_config_leaf_doc_id,
        )
        if was_collection_path:
            log_event(
                self._logger,
                level="warning",
                event="config_doc_path_normalized",
                message="FIRESTORE_CONFIG_DOC named a collection; using its leaf document",
                doc_path=self._resolved_firestore_config_doc,
            )
        self._initialize_namespace_refs()
        self._config_doc_ref = self._firestore.document(self._resolved_firestore_config_doc)

    async def _load_startup_config(self) -> None:
        snapshot = await asyncio.to_thread(self._require_ref(self._config_doc_ref).get)
        if snapshot.exists:
            await self.sync_config_to_redis(snapshot.to_dict() or {}, source="startup")
            return

        # Trading stays on env defaults until the document is created.
        await self.sync_config_to_redis({}, source="startup_missing")
        log_event(
            self._logger,
            level="warning",
            event="config_missing",
            message="Runtime config document does not exist",
            doc_path=self._resolved_firestore_config_doc,
        )

    async def healthcheck(self) -> None:
        await self._require_redis().ping()
        await asyncio.to_thread(self._require_ref(self._config_doc_ref).get)

    async def close(self) -> None:
        if self._watch is not None:
            # The watch runs on its own callback thread and may already be closing.
            with contextlib.suppress(Exception):
                self._watch.unsubscribe()
            self._watch = None

        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

        self._reset_refs()
        self._firestore = None
