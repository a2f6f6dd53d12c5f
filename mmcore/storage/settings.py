from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from mmcore.common import to_bool, to_int

ConfigUpdateHandler = Callable[[dict[str, Any]], Awaitable[None]]


def _sanitize_service_id(value: str, default: str) -> str:
    normalized = (value.strip() or default).replace("/", "-")
    return normalized or default


@dataclass(slots=True)
class StorageSettings:
    redis_url: str
    redis_config_key: str
    firestore_project_id: str | None
    firestore_config_doc: str
    firestore_config_leaf_doc_id: str
    service_collection: str
    service_id: str
    dry_run: bool
    bot_env: str
    bot_run_id: str
    runs_collection: str
    events_collection: str
    bots_collection: str
    wallets_collection: str
    wallet_keys_collection: str
    positions_collection: str
    audit_collection: str
    config_schema_version: int
    heartbeat_key: str
    price_prefix: str
    wallet_guard_prefix: str

    @classmethod
    def from_env(cls) -> "StorageSettings":
        service_collection = os.getenv("SERVICE_COLLECTION", "services").strip("/") or "services"
        service_id = _sanitize_service_id(os.getenv("SERVICE_ID", "mm-core"), "mm-core")
        default_config_doc = f"{service_collection}/{service_id}/config/runtime"

        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
            redis_config_key=os.getenv("REDIS_CONFIG_KEY", "config"),
            firestore_project_id=os.getenv("FIRESTORE_PROJECT_ID") or None,
            firestore_config_doc=os.getenv("FIRESTORE_CONFIG_DOC") or default_config_doc,
            firestore_config_leaf_doc_id=os.getenv("FIRESTORE_CONFIG_LEAF_DOC_ID", "runtime"),
            service_collection=service_collection,
            service_id=service_id,
            dry_run=to_bool(os.getenv("DRY_RUN"), True),
            bot_env=os.getenv("BOT_ENV", "dev"),
            bot_run_id=os.getenv("BOT_RUN_ID")
            or datetime.now(timezone.utc).strftime("run-%Y%m%dT%H%M%SZ"),
            runs_collection=os.getenv("RUNS_COLLECTION", "runs"),
            events_collection=os.getenv("EVENTS_COLLECTION", "events"),
            bots_collection=os.getenv("BOTS_COLLECTION", "bots"),
            wallets_collection=os.getenv("WALLETS_COLLECTION", "wallets"),
            wallet_keys_collection=os.getenv("WALLET_KEYS_COLLECTION", "wallet_keys"),
            positions_collection=os.getenv("POSITIONS_COLLECTION", "positions"),
            audit_collection=os.getenv("AUDIT_COLLECTION", "audit"),
            config_schema_version=max(1, to_int(os.getenv("CONFIG_SCHEMA_VERSION"), 1)),
            heartbeat_key=os.getenv("REDIS_HEARTBEAT_KEY", "mmcore:heartbeat"),
            price_prefix=os.getenv("REDIS_PRICE_PREFIX", "prices"),
            wallet_guard_prefix=os.getenv("REDIS_WALLET_GUARD_PREFIX", "wallets:guard"),
        )
