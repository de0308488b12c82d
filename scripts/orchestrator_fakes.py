from __future__ import annotations

import asyncio
import copy
import itertools
import logging
from typing import Any
from unittest.mock import AsyncMock

from subscription_orchestrator.creation import (
    AllowanceManager,
    ConfirmationFallbackPoller,
    CreationOrchestrator,
    CreationParameters,
    GasPaymentStrategySelector,
    PendingOperation,
    PendingOperationLedger,
    PreflightChecker,
    RecoveryReconciler,
)
from subscription_orchestrator.creation.types import ZERO_ADDRESS

INITIATOR = "0x" + "aa" * 20
OTHER_OWNER = "0x" + "bb" * 20
ASSET = "0x" + "cc" * 20
OTHER_ASSET = "0x" + "dd" * 20
VAULT = "0x" + "ee" * 20
DEPOSIT_TOKEN = "0x" + "11" * 20
CREATION_CONTRACT = "0x" + "22" * 20
PAYMASTER_TOKEN = "0x" + "33" * 20
TX_HASH = "0x" + "ab" * 32

HOUR = 3600.0


async def hang(*_args: Any, **_kwargs: Any) -> Any:
    await asyncio.Event().wait()


class MemoryLedgerStore:
    """Dict-backed ledger store that copies on every read and write."""

    def __init__(self) -> None:
        self.entries: dict[str, dict[str, Any]] = {}

    async def load_all(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(entry) for entry in self.entries.values()]

    async def get(self, handle: str) -> dict[str, Any] | None:
        entry = self.entries.get(handle)
        return copy.deepcopy(entry) if entry is not None else None

    async def put(self, entry: dict[str, Any]) -> None:
        self.entries[entry["operation_handle"]] = copy.deepcopy(entry)

    async def delete(self, handle: str) -> bool:
        return self.entries.pop(handle, None) is not None


class FakeAccount:
    """Every chain capability the orchestrator needs, backed by AsyncMocks."""

    def __init__(
        self,
        *,
        token_balance: int = 10**24,
        native_balance: int = 10**18,
        allowance: int = 0,
        vault: str | None = None,
        owners: dict[str, str] | None = None,
        created_asset: str | None = None,
    ) -> None:
        handles = itertools.count(1)
        self.read_token_balance = AsyncMock(return_value=token_balance)
        self.read_native_balance = AsyncMock(return_value=native_balance)
        self.read_allowance = AsyncMock(return_value=allowance)
        self.submit = AsyncMock(side_effect=lambda request, context: f"0xop{next(handles)}")
        self.wait_for_receipt = AsyncMock(return_value=TX_HASH)
        self.read_hub_vault = AsyncMock(return_value=vault)
        self.read_created_asset = AsyncMock(return_value=created_asset)
        owner_map = {key.lower(): value for key, value in (owners or {}).items()}
        self.read_asset_owner = AsyncMock(side_effect=lambda asset: owner_map.get(asset.lower(), ZERO_ADDRESS))


def make_parameters(deposit_amount: int = 0) -> CreationParameters:
    return CreationParameters(name="Alice", symbol="ALICE", hub_id=1, deposit_amount=deposit_amount)


def make_entry(
    handle: str,
    *,
    created_at: float,
    status: str = "confirming",
    initiator: str = INITIATOR,
    result_address: str | None = None,
) -> PendingOperation:
    return PendingOperation(
        operation_handle=handle,
        initiator=initiator,
        parameters=make_parameters(),
        created_at=created_at,
        status=status,  # type: ignore[arg-type]
        result_address=result_address,
    )


def build_orchestrator(
    account: FakeAccount,
    *,
    indexer: Any | None = None,
    store: MemoryLedgerStore | None = None,
    eligibility: Any | None = None,
    record_sync: Any | None = None,
    sponsored_policy_id: str | None = None,
    token_paymaster_policy_id: str | None = None,
    min_self_funded_gas_wei: int = 10**15,
    poll_attempts: int = 3,
    submit_timeout_seconds: float = 1.0,
    confirm_timeout_seconds: float = 1.0,
) -> tuple[CreationOrchestrator, PendingOperationLedger, MemoryLedgerStore]:
    logger = logging.getLogger("test.orchestrator")
    store = store if store is not None else MemoryLedgerStore()
    indexer = indexer if indexer is not None else AsyncMock(list_assets=AsyncMock(return_value=[]))

    ledger = PendingOperationLedger(logger=logger, store=store)
    gas = GasPaymentStrategySelector(
        logger=logger,
        submitter=account,
        balances=account,
        eligibility=eligibility,
        sponsored_policy_id=sponsored_policy_id,
        token_paymaster_policy_id=token_paymaster_policy_id,
        token_paymaster_token=PAYMASTER_TOKEN,
        min_self_funded_gas_wei=min_self_funded_gas_wei,
    )
    poller = ConfirmationFallbackPoller(
        logger=logger,
        indexer=indexer,
        chain=account,
        interval_seconds=0,
        max_attempts=poll_attempts,
    )
    orchestrator = CreationOrchestrator(
        logger=logger,
        ledger=ledger,
        preflight=PreflightChecker(logger=logger, balances=account, deposit_token=DEPOSIT_TOKEN),
        allowances=AllowanceManager(
            logger=logger,
            allowances=account,
            gas=gas,
            receipts=account,
            submit_timeout_seconds=submit_timeout_seconds,
            receipt_timeout_seconds=confirm_timeout_seconds,
            verify_delays=(0, 0),
        ),
        gas=gas,
        receipts=account,
        chain=account,
        poller=poller,
        reconciler=RecoveryReconciler(logger=logger, ledger=ledger, poller=poller, attempts=3),
        deposit_token=DEPOSIT_TOKEN,
        creation_contract=CREATION_CONTRACT,
        record_sync=record_sync,
        initiator=INITIATOR,
        submit_timeout_seconds=submit_timeout_seconds,
        confirm_timeout_seconds=confirm_timeout_seconds,
        indexing_grace_seconds=0,
        recovery_attempts=3,
    )
    return orchestrator, ledger, store
