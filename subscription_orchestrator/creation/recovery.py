from __future__ import annotations

import asyncio
import logging
from typing import Callable

from ..common import guarded_call, log_event
from .ledger import PendingOperationLedger
from .poller import ConfirmationFallbackPoller
from .types import RecoverySummary, now_epoch_seconds


class RecoveryReconciler:
    """Resolves ledger entries left behind by an earlier process. Never submits."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        ledger: PendingOperationLedger,
        poller: ConfirmationFallbackPoller,
        attempts: int = 3,
        clock: Callable[[], float] = now_epoch_seconds,
    ) -> None:
        self._logger = logger
        self._ledger = ledger
        self._poller = poller
        self._attempts = max(1, attempts)
        self._clock = clock

    async def reconcile(self) -> RecoverySummary:
        entries = await self._ledger.entries()
        now = self._clock()

        expired = 0
        skipped = 0
        resolved = 0
        unresolved = 0

        for entry in entries:
            handle = entry.operation_handle
            if self._ledger.is_expired(entry, now):
                expired += 1
                await guarded_call(
                    lambda: self._ledger.remove(handle),
                    logger=self._logger,
                    event="recovery_expire_failed",
                    message="Failed to remove expired ledger entry",
                    operation_handle=handle,
                )
                continue

            if entry.status == "confirmed" and entry.result_address:
                skipped += 1
                continue

            if self._poller.is_polling(handle):
                skipped += 1
                log_event(
                    self._logger,
                    level="info",
                    event="recovery_poll_in_progress",
                    message="Status poll already running for entry; leaving it to that poll",
                    operation_handle=handle,
                )
                continue

            try:
                result_address = await self._poller.poll(handle, entry.initiator, max_attempts=self._attempts)
            except asyncio.CancelledError:
                raise
            except Exception as error:
                unresolved += 1
                log_event(
                    self._logger,
                    level="warning",
                    event="recovery_poll_failed",
                    message="Status poll failed while reconciling",
                    operation_handle=handle,
                    error=str(error),
                )
                await guarded_call(
                    lambda: self._ledger.update(handle, error_message=str(error)),
                    logger=self._logger,
                    event="recovery_error_record_failed",
                    message="Failed to record reconciliation error on ledger entry",
                    operation_handle=handle,
                )
                continue

            if result_address is None:
                unresolved += 1
                continue

            resolved += 1
            await guarded_call(
                lambda: self._ledger.update(handle, status="confirmed", result_address=result_address),
                logger=self._logger,
                event="recovery_confirm_record_failed",
                message="Failed to mark recovered entry confirmed",
                level="error",
                operation_handle=handle,
            )

        summary = RecoverySummary(
            scanned=len(entries),
            expired=expired,
            skipped=skipped,
            resolved=resolved,
            unresolved=unresolved,
        )
        log_event(
            self._logger,
            level="info",
            event="recovery_completed",
            message="Pending operation reconciliation finished",
            **summary.to_dict(),
        )
        return summary
