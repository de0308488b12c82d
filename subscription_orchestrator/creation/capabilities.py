from __future__ import annotations

from typing import Any, Protocol

from .types import OperationRequest, PaymentContext


class BalanceReader(Protocol):
    async def read_token_balance(self, token: str, account: str) -> int: ...

    async def read_native_balance(self, account: str) -> int: ...


class AllowanceReader(Protocol):
    async def read_allowance(self, token: str, owner: str, spender: str) -> int: ...


class OperationSubmitter(Protocol):
    """Raises DeploymentRequiredError, SponsorshipFailureError or SubmissionFailedError."""

    async def submit(self, request: OperationRequest, context: PaymentContext | None) -> str: ...


class ReceiptWaiter(Protocol):
    """Resolves to the transaction hash; may never return.

    Raises OperationRevertedError when the receipt reports failure.
    """

    async def wait_for_receipt(self, handle: str) -> str: ...


class AssetIndexer(Protocol):
    async def list_assets(self, page_size: int, offset: int) -> list[str]: ...


class ChainStateReader(Protocol):
    async def read_asset_owner(self, asset: str) -> str: ...

    async def read_hub_vault(self, hub_id: int) -> str | None: ...

    async def read_created_asset(self, transaction_hash: str) -> str | None: ...


class RecordSync(Protocol):
    async def sync_created_asset(self, asset_address: str, transaction_hash: str | None) -> str | None: ...


class EligibilityPredicate(Protocol):
    async def is_eligible(self, account: str) -> bool: ...


class LedgerStore(Protocol):
    async def load_all(self) -> list[dict[str, Any]]: ...

    async def get(self, handle: str) -> dict[str, Any] | None: ...

    async def put(self, entry: dict[str, Any]) -> None: ...

    async def delete(self, handle: str) -> bool: ...
