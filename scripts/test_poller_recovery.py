from __future__ import annotations

import asyncio
import logging
import unittest
from unittest.mock import AsyncMock, Mock

from orchestrator_fakes import (
    ASSET,
    HOUR,
    INITIATOR,
    OTHER_ASSET,
    OTHER_OWNER,
    FakeAccount,
    MemoryLedgerStore,
    make_entry,
)
from subscription_orchestrator.creation import (
    ConfirmationFallbackPoller,
    PendingOperationLedger,
    RecoveryReconciler,
)

NOW = 1_700_000_000.0


def _make_poller(account: FakeAccount, indexer: AsyncMock, *, max_attempts: int = 30) -> ConfirmationFallbackPoller:
    return ConfirmationFallbackPoller(
        logger=logging.getLogger("test.poller"),
        indexer=indexer,
        chain=account,
        interval_seconds=0,
        max_attempts=max_attempts,
    )


def _indexer(*pages: list[str]) -> AsyncMock:
    indexer = AsyncMock()
    indexer.list_assets = AsyncMock(side_effect=list(pages))
    return indexer


class ConfirmationFallbackPollerTests(unittest.IsolatedAsyncioTestCase):
    async def test_match_on_seventh_attempt_stops_polling(self) -> None:
        account = FakeAccount(owners={ASSET: INITIATOR, OTHER_ASSET: OTHER_OWNER})
        pages = [[] for _ in range(6)] + [[OTHER_ASSET, ASSET]] + [[ASSET] for _ in range(23)]
        indexer = _indexer(*pages)
        poller = _make_poller(account, indexer)

        result = await poller.poll("0xop1", INITIATOR)

        self.assertEqual(result, ASSET)
        self.assertEqual(indexer.list_assets.await_count, 7)
        self.assertFalse(poller.is_polling("0xop1"))

    async def test_exhaustion_returns_none(self) -> None:
        account = FakeAccount()
        indexer = AsyncMock()
        indexer.list_assets = AsyncMock(return_value=[OTHER_ASSET])
        poller = _make_poller(account, indexer)

        result = await poller.poll("0xop1", INITIATOR, max_attempts=3)

        self.assertIsNone(result)
        self.assertEqual(indexer.list_assets.await_count, 3)

    async def test_owner_match_is_case_insensitive(self) -> None:
        account = FakeAccount(owners={ASSET: INITIATOR.upper().replace("0X", "0x")})
        poller = _make_poller(account, _indexer([ASSET]))

        self.assertEqual(await poller.poll("0xop1", INITIATOR, max_attempts=1), ASSET)

    async def test_indexer_errors_count_as_attempts(self) -> None:
        account = FakeAccount(owners={ASSET: INITIATOR})
        indexer = _indexer(RuntimeError("subgraph 502"), [ASSET])  # type: ignore[arg-type]
        poller = _make_poller(account, indexer)

        self.assertEqual(await poller.poll("0xop1", INITIATOR, max_attempts=2), ASSET)

    async def test_owner_read_failures_skip_candidate(self) -> None:
        account = FakeAccount()
        owners = {ASSET: INITIATOR}

        async def read_owner(asset: str) -> str:
            if asset == OTHER_ASSET:
                raise RuntimeError("execution reverted")
            return owners[asset]

        account.read_asset_owner.side_effect = read_owner
        poller = _make_poller(account, _indexer([OTHER_ASSET, ASSET]))

        self.assertEqual(await poller.poll("0xop1", INITIATOR, max_attempts=1), ASSET)

    async def test_concurrent_polls_for_same_handle_share_one_run(self) -> None:
        account = FakeAccount(owners={ASSET: INITIATOR})
        gate = asyncio.Event()

        async def list_assets(page_size: int, offset: int) -> list[str]:
            await gate.wait()
            return [ASSET]

        indexer = AsyncMock()
        indexer.list_assets = AsyncMock(side_effect=list_assets)
        poller = _make_poller(account, indexer)

        first = asyncio.create_task(poller.poll("0xop1", INITIATOR))
        await asyncio.sleep(0)
        second = asyncio.create_task(poller.poll("0xop1", INITIATOR))
        await asyncio.sleep(0)
        self.assertTrue(poller.is_polling("0xop1"))
        gate.set()

        self.assertEqual(await first, ASSET)
        self.assertEqual(await second, ASSET)
        self.assertEqual(indexer.list_assets.await_count, 1)


def _make_reconciler(
    store: MemoryLedgerStore,
    poller: object,
) -> tuple[RecoveryReconciler, PendingOperationLedger]:
    ledger = PendingOperationLedger(logger=logging.getLogger("test.ledger"), store=store)
    reconciler = RecoveryReconciler(
        logger=logging.getLogger("test.recovery"),
        ledger=ledger,
        poller=poller,  # type: ignore[arg-type]
        attempts=3,
        clock=lambda: NOW,
    )
    return reconciler, ledger


class RecoveryReconcilerTests(unittest.IsolatedAsyncioTestCase):
    async def test_expired_entries_are_discarded_without_polling(self) -> None:
        store = MemoryLedgerStore()
        poller = AsyncMock()
        poller.poll = AsyncMock(return_value=None)
        poller.is_polling = Mock(return_value=False)
        reconciler, ledger = _make_reconciler(store, poller)
        await ledger.save(make_entry("0xstale", created_at=NOW - 25 * HOUR))
        await ledger.save(make_entry("0xfresh", created_at=NOW - HOUR))

        summary = await reconciler.reconcile()

        self.assertEqual(list(store.entries), ["0xfresh"])
        poller.poll.assert_awaited_once_with("0xfresh", INITIATOR, max_attempts=3)
        self.assertEqual(summary.expired, 1)
        self.assertEqual(summary.unresolved, 1)

    async def test_resolves_once_and_never_rewrites_result(self) -> None:
        store = MemoryLedgerStore()
        account = FakeAccount(owners={ASSET: INITIATOR, OTHER_ASSET: INITIATOR})
        indexer = AsyncMock()
        indexer.list_assets = AsyncMock(side_effect=[[ASSET], [OTHER_ASSET]])
        reconciler, ledger = _make_reconciler(store, _make_poller(account, indexer))
        await ledger.save(make_entry("0xop1", created_at=NOW - HOUR, status="timeout"))

        first = await reconciler.reconcile()
        second = await reconciler.reconcile()

        entry = await ledger.get("0xop1")
        self.assertEqual(entry.status, "confirmed")
        self.assertEqual(entry.result_address, ASSET)
        self.assertEqual(first.resolved, 1)
        self.assertEqual(second.skipped, 1)
        self.assertEqual(indexer.list_assets.await_count, 1)
        account.submit.assert_not_awaited()

    async def test_unresolved_entries_are_left_for_later(self) -> None:
        store = MemoryLedgerStore()
        account = FakeAccount()
        indexer = AsyncMock()
        indexer.list_assets = AsyncMock(return_value=[])
        reconciler, ledger = _make_reconciler(store, _make_poller(account, indexer))
        await ledger.save(make_entry("0xop1", created_at=NOW - HOUR))

        await reconciler.reconcile()
        await reconciler.reconcile()

        entry = await ledger.get("0xop1")
        self.assertEqual(entry.status, "confirming")
        self.assertIsNone(entry.result_address)
        self.assertEqual(indexer.list_assets.await_count, 6)
        account.submit.assert_not_awaited()

    async def test_entries_with_a_running_poll_are_not_polled_again(self) -> None:
        store = MemoryLedgerStore()
        account = FakeAccount(owners={ASSET: INITIATOR})
        gate = asyncio.Event()

        async def list_assets(page_size: int, offset: int) -> list[str]:
            await gate.wait()
            return [ASSET]

        indexer = AsyncMock()
        indexer.list_assets = AsyncMock(side_effect=list_assets)
        poller = _make_poller(account, indexer)
        reconciler, ledger = _make_reconciler(store, poller)
        await ledger.save(make_entry("0xop1", created_at=NOW - HOUR))

        running = asyncio.create_task(poller.poll("0xop1", INITIATOR))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        summary = await reconciler.reconcile()

        self.assertEqual(summary.skipped, 1)
        self.assertEqual(summary.unresolved, 0)
        self.assertEqual(indexer.list_assets.await_count, 1)
        gate.set()
        self.assertEqual(await running, ASSET)

    async def test_poll_errors_are_recorded_on_entry(self) -> None:
        store = MemoryLedgerStore()
        poller = AsyncMock()
        poller.poll = AsyncMock(side_effect=RuntimeError("indexer unavailable"))
        poller.is_polling = Mock(return_value=False)
        reconciler, ledger = _make_reconciler(store, poller)
        await ledger.save(make_entry("0xop1", created_at=NOW - HOUR))

        summary = await reconciler.reconcile()

        entry = await ledger.get("0xop1")
        self.assertEqual(entry.error_message, "indexer unavailable")
        self.assertEqual(summary.unresolved, 1)


if __name__ == "__main__":
    unittest.main()
