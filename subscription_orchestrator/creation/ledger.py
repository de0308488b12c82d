from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from ..common import log_event
from .capabilities import LedgerStore
from .types import STATUS_RANK, PendingOperation, same_address

DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60


def _status_allowed(current: str, proposed: str) -> bool:
    if current == proposed:
        return True
    if current == "failed":
        return False
    if proposed == "failed":
        return current != "confirmed"
    if current == "confirmed":
        return False
    return STATUS_RANK.get(proposed, 0) >= STATUS_RANK.get(current, 0)


class PendingOperationLedger:
    """Durable map of operation handle to pending creation.

    Every write is a read-modify-write of a single entry. Status never moves
    backwards and a recorded result address is never replaced.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        store: LedgerStore,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
    ) -> None:
        self._logger = logger
        self._store = store
        self._max_age_seconds = max_age_seconds

    def is_expired(self, entry: PendingOperation, now: float | None = None) -> bool:
        return entry.age_seconds(now) > self._max_age_seconds

    async def get(self, handle: str) -> PendingOperation | None:
        raw = await self._store.get(handle)
        if raw is None:
            return None
        return self._decode(raw)

    async def entries(self) -> list[PendingOperation]:
        decoded: list[PendingOperation] = []
        for raw in await self._store.load_all():
            entry = self._decode(raw)
            if entry is not None:
                decoded.append(entry)
        decoded.sort(key=lambda item: item.created_at)
        return decoded

    async def save(self, entry: PendingOperation) -> PendingOperation:
        existing = await self.get(entry.operation_handle)
        merged = self._merge(existing, entry) if existing is not None else entry
        await self._store.put(merged.to_dict())
        return merged

    async def update(self, handle: str, **changes: Any) -> PendingOperation | None:
        existing = await self.get(handle)
        if existing is None:
            log_event(
                self._logger,
                level="warning",
                event="ledger_update_missing",
                message="Ledger entry to update does not exist",
                operation_handle=handle,
                changes=sorted(changes),
            )
            return None
        return await self.save(replace(existing, **changes))

    async def remove(self, handle: str) -> bool:
        removed = await self._store.delete(handle)
        log_event(
            self._logger,
            level="info",
            event="ledger_entry_removed",
            message="Ledger entry removed",
            operation_handle=handle,
            removed=removed,
        )
        return removed

    def _merge(self, existing: PendingOperation, proposed: PendingOperation) -> PendingOperation:
        status = proposed.status
        if not _status_allowed(existing.status, proposed.status):
            log_event(
                self._logger,
                level="warning",
                event="ledger_status_regression_ignored",
                message="Ignoring backward ledger status transition",
                operation_handle=existing.operation_handle,
                stored_status=existing.status,
                proposed_status=proposed.status,
            )
            status = existing.status

        result_address = proposed.result_address or existing.result_address
        if existing.result_address and not same_address(existing.result_address, proposed.result_address):
            if proposed.result_address:
                log_event(
                    self._logger,
                    level="warning",
                    event="ledger_result_overwrite_ignored",
                    message="Ignoring attempt to replace a recorded result address",
                    operation_handle=existing.operation_handle,
                    stored_result=existing.result_address,
                    proposed_result=proposed.result_address,
                )
            result_address = existing.result_address

        return replace(
            proposed,
            created_at=existing.created_at,
            status=status,
            transaction_hash=proposed.transaction_hash or existing.transaction_hash,
            result_address=result_address,
        )

    def _decode(self, raw: dict[str, Any]) -> PendingOperation | None:
        try:
            return PendingOperation.from_dict(raw)
        except (KeyError, TypeError, ValueError) as error:
            log_event(
                self._logger,
                level="warning",
                event="ledger_entry_invalid",
                message="Skipping malformed ledger entry",
                error=str(error),
                operation_handle=str(raw.get("operation_handle", "")),
            )
            return None
