from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from google.cloud import firestore

from ..common import guarded_call, log_event
from .helpers import doc_id_from_text as _doc_id_from_text


class FirestoreStorageOps:
    async def sync_created_asset(self, asset_address: str, transaction_hash: str | None) -> str | None:
        """Upsert the created asset record; the lower-cased address is the document id."""
        records_ref = self._require_records_collection()
        document_id = _doc_id_from_text(asset_address.lower())
        payload: dict[str, Any] = {
            "asset_address": asset_address,
            "transaction_hash": transaction_hash,
            "env": self.settings.env,
            "run_id": self.settings.run_id,
            "synced_at": firestore.SERVER_TIMESTAMP,
        }

        document_ref = records_ref.document(document_id)
        await asyncio.to_thread(document_ref.set, payload, merge=True)
        log_event(
            self._logger,
            level="info",
            event="asset_record_synced",
            message="Created asset synced to record store",
            asset_address=asset_address,
            record_id=document_id,
        )
        return document_id

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
                level="debug",
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
            "run_id": self.settings.run_id,
            "env": self.settings.env,
            "ledger_namespace": self.settings.ledger_namespace,
        }
        if details:
            payload["details"] = details

        async def write_event() -> None:
            if event_id:
                event_ref = self._events_collection_ref.document(_doc_id_from_text(event_id))
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

    def _initialize_collection_refs(self) -> None:
        firestore_client = self._require_firestore()
        self._records_collection_ref = firestore_client.collection(self.settings.record_collection)
        self._events_collection_ref = firestore_client.collection(self.settings.events_collection)

    def _require_records_collection(self) -> Any:
        if self._records_collection_ref is None:
            raise RuntimeError("Firestore record collection is not initialized.")
        return self._records_collection_ref

    def _require_firestore(self) -> firestore.Client:
        if self._firestore is None:
            raise RuntimeError("Firestore client is not initialized.")
        return self._firestore
