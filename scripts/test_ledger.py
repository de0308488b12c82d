from __future__ import annotations

import json
import logging
import time
import unittest
from unittest.mock import AsyncMock, MagicMock

from orchestrator_fakes import ASSET, INITIATOR, OTHER_ASSET, TX_HASH, MemoryLedgerStore, make_entry
from subscription_orchestrator.creation import CreationParameters, PendingOperation, PendingOperationLedger
from subscription_orchestrator.storage import StorageGateway, StorageSettings


def _make_ledger(store: MemoryLedgerStore | None = None) -> tuple[PendingOperationLedger, MemoryLedgerStore]:
    store = store if store is not None else MemoryLedgerStore()
    return PendingOperationLedger(logger=logging.getLogger("test.ledger"), store=store), store


def _make_settings() -> StorageSettings:
    return StorageSettings(
        redis_url="redis://localhost:6379/0",
        ledger_key_prefix="pending_operations",
        ledger_namespace="test",
        firestore_project_id=None,
        record_collection="assets",
        events_collection="events",
        env="test",
        run_id="run-test",
    )


class PendingOperationLedgerTests(unittest.IsolatedAsyncioTestCase):
    async def test_save_and_get_round_trips_large_deposit(self) -> None:
        ledger, store = _make_ledger()
        entry = PendingOperation(
            operation_handle="0xop1",
            initiator=INITIATOR,
            parameters=CreationParameters(name="A", symbol="A", hub_id=2, deposit_amount=2**200),
            created_at=time.time(),
            status="confirming",
        )

        await ledger.save(entry)
        loaded = await ledger.get("0xop1")

        self.assertEqual(loaded, entry)
        self.assertIsInstance(store.entries["0xop1"]["parameters"]["deposit_amount"], str)

    async def test_status_never_moves_backwards(self) -> None:
        ledger, _ = _make_ledger()
        await ledger.save(make_entry("0xop1", created_at=time.time(), status="timeout"))

        updated = await ledger.update("0xop1", status="confirming")

        self.assertEqual(updated.status, "timeout")

    async def test_confirmed_cannot_become_failed(self) -> None:
        ledger, _ = _make_ledger()
        await ledger.save(make_entry("0xop1", created_at=time.time(), status="confirmed"))

        updated = await ledger.update("0xop1", status="failed")

        self.assertEqual(updated.status, "confirmed")

    async def test_failed_is_terminal(self) -> None:
        ledger, _ = _make_ledger()
        await ledger.save(make_entry("0xop1", created_at=time.time(), status="failed"))

        updated = await ledger.update("0xop1", status="confirmed")

        self.assertEqual(updated.status, "failed")

    async def test_result_address_is_set_once(self) -> None:
        ledger, _ = _make_ledger()
        await ledger.save(make_entry("0xop1", created_at=time.time(), status="confirmed", result_address=ASSET))

        updated = await ledger.update("0xop1", result_address=OTHER_ASSET)
        cleared = await ledger.update("0xop1", result_address=None)

        self.assertEqual(updated.result_address, ASSET)
        self.assertEqual(cleared.result_address, ASSET)

    async def test_merge_keeps_created_at_and_transaction_hash(self) -> None:
        ledger, _ = _make_ledger()
        original = make_entry("0xop1", created_at=1000.0)
        await ledger.save(original)
        await ledger.update("0xop1", status="confirmed", transaction_hash=TX_HASH)

        replacement = make_entry("0xop1", created_at=5000.0, status="confirmed")
        merged = await ledger.save(replacement)

        self.assertEqual(merged.created_at, 1000.0)
        self.assertEqual(merged.transaction_hash, TX_HASH)

    async def test_update_missing_entry_returns_none(self) -> None:
        ledger, store = _make_ledger()

        self.assertIsNone(await ledger.update("0xmissing", status="confirmed"))
        self.assertEqual(store.entries, {})

    async def test_entries_sorted_and_malformed_skipped(self) -> None:
        ledger, store = _make_ledger()
        await ledger.save(make_entry("0xnew", created_at=2000.0))
        await ledger.save(make_entry("0xold", created_at=1000.0))
        store.entries["broken"] = {"initiator": INITIATOR}

        handles = [entry.operation_handle for entry in await ledger.entries()]

        self.assertEqual(handles, ["0xold", "0xnew"])

    async def test_is_expired_uses_max_age(self) -> None:
        ledger, _ = _make_ledger()
        now = 100_000.0

        self.assertTrue(ledger.is_expired(make_entry("a", created_at=now - 25 * 3600), now))
        self.assertFalse(ledger.is_expired(make_entry("b", created_at=now - 3600), now))

    async def test_unknown_status_decodes_as_pending(self) -> None:
        entry = PendingOperation.from_dict({"operation_handle": "0xop1", "status": "mystery"})

        self.assertEqual(entry.status, "pending")


class RedisLedgerStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.gateway = StorageGateway(_make_settings(), logging.getLogger("test.storage"))
        self.redis = AsyncMock()
        self.gateway._redis = self.redis  # type: ignore[assignment]

    async def test_load_all_skips_unreadable_entries(self) -> None:
        good = make_entry("0xop1", created_at=1.0).to_dict()
        self.redis.hgetall.return_value = {"0xop1": json.dumps(good), "0xbad": "{not json"}

        entries = await self.gateway.load_all()

        self.redis.hgetall.assert_awaited_once_with("pending_operations:test")
        self.assertEqual(entries, [good])

    async def test_put_writes_hash_field_by_handle(self) -> None:
        entry = make_entry("0xop1", created_at=1.0).to_dict()

        await self.gateway.put(entry)

        key, field, raw = self.redis.hset.await_args.args
        self.assertEqual(key, "pending_operations:test")
        self.assertEqual(field, "0xop1")
        self.assertEqual(json.loads(raw), entry)

    async def test_put_requires_handle(self) -> None:
        with self.assertRaises(ValueError):
            await self.gateway.put({"initiator": INITIATOR})

    async def test_get_and_delete(self) -> None:
        self.redis.hget.return_value = None
        self.redis.hdel.return_value = 1

        self.assertIsNone(await self.gateway.get("0xop1"))
        self.assertTrue(await self.gateway.delete("0xop1"))

    async def test_requires_connection(self) -> None:
        self.gateway._redis = None

        with self.assertRaises(RuntimeError):
            await self.gateway.load_all()

    async def test_ledger_over_redis_store(self) -> None:
        stored: dict[str, str] = {}

        async def hset(key: str, field: str, value: str) -> int:
            stored[field] = value
            return 1

        async def hget(key: str, field: str) -> str | None:
            return stored.get(field)

        self.redis.hset.side_effect = hset
        self.redis.hget.side_effect = hget
        ledger = PendingOperationLedger(logger=logging.getLogger("test.ledger"), store=self.gateway)

        await ledger.save(make_entry("0xop1", created_at=1.0))
        updated = await ledger.update("0xop1", status="confirmed", result_address=ASSET)

        self.assertEqual(updated.result_address, ASSET)
        self.assertEqual(json.loads(stored["0xop1"])["status"], "confirmed")


class FirestoreRecordSyncTests(unittest.IsolatedAsyncioTestCase):
    async def test_sync_uses_lowercase_address_as_document_id(self) -> None:
        gateway = StorageGateway(_make_settings(), logging.getLogger("test.storage"))
        records = MagicMock()
        gateway._records_collection_ref = records

        record_id = await gateway.sync_created_asset(ASSET.upper().replace("0X", "0x"), TX_HASH)

        self.assertEqual(record_id, ASSET.lower())
        records.document.assert_called_once_with(ASSET.lower())
        payload = records.document.return_value.set.call_args.args[0]
        self.assertEqual(payload["transaction_hash"], TX_HASH)
        self.assertTrue(records.document.return_value.set.call_args.kwargs["merge"])

    async def test_publish_event_is_skipped_before_connect(self) -> None:
        gateway = StorageGateway(_make_settings(), logging.getLogger("test.storage"))

        await gateway.publish_event(level="INFO", event="noop", message="nothing to publish")

    async def test_publish_event_failure_is_swallowed(self) -> None:
        gateway = StorageGateway(_make_settings(), logging.getLogger("test.storage"))
        gateway._firestore = MagicMock()
        events = MagicMock()
        events.add.side_effect = RuntimeError("quota")
        gateway._events_collection_ref = events

        await gateway.publish_event(level="ERROR", event="boom", message="failed", details={"k": 1})

        events.add.assert_called_once()


if __name__ == "__main__":
    unittest.main()
