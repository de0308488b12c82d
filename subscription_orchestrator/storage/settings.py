from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone


def _sanitize_segment(value: str, default: str) -> str:
    normalized = (value.strip() or default).replace("/", "-")
    return normalized or default


@dataclass(slots=True)
class StorageSettings:
    redis_url: str
    ledger_key_prefix: str
    ledger_namespace: str
    firestore_project_id: str | None
    record_collection: str
    events_collection: str
    env: str
    run_id: str

    @property
    def ledger_key(self) -> str:
        return f"{self.ledger_key_prefix}:{self.ledger_namespace}"

    @classmethod
    def from_env(cls) -> "StorageSettings":
        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
            ledger_key_prefix=(
                os.getenv("REDIS_LEDGER_PREFIX", "pending_operations").strip(":")
                or "pending_operations"
            ),
            ledger_namespace=_sanitize_segment(os.getenv("LEDGER_NAMESPACE", "default"), "default"),
            firestore_project_id=os.getenv("FIRESTORE_PROJECT_ID") or None,
            record_collection=(os.getenv("FIRESTORE_RECORD_COLLECTION", "assets").strip("/") or "assets"),
            events_collection=(os.getenv("FIRESTORE_EVENTS_COLLECTION", "events").strip("/") or "events"),
            env=os.getenv("ORCHESTRATOR_ENV", "dev"),
            run_id=os.getenv("ORCHESTRATOR_RUN_ID")
            or datetime.now(timezone.utc).strftime("run-%Y%m%dT%H%M%SZ"),
        )
