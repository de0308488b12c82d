from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable

from ..chain.contracts import encode_subscribe
from ..common import guarded_call, log_event, race_with_timeout
from .allowance import AllowanceManager
from .capabilities import ChainStateReader, ReceiptWaiter, RecordSync
from .errors import (
    OperationRevertedError,
    SponsorshipMisconfiguredError,
    SubmissionTimeoutError,
    UnknownOperationError,
    WalletNotConnectedError,
    describe_error,
)
from .gas import SELF_FUNDED, GasPaymentStrategySelector, SubmissionOutcome
from .ledger import PendingOperationLedger
from .poller import ConfirmationFallbackPoller
from .preflight import PreflightChecker
from .recovery import RecoveryReconciler
from .types import (
    CreationAttemptState,
    CreationParameters,
    OperationRequest,
    PendingOperation,
    RecoverySummary,
)

StateListener = Callable[[CreationAttemptState], None]
EventPublisher = Callable[..., Awaitable[None]]


class _ConfirmationTimeout(Exception):
    pass


class CreationOrchestrator:
    """Drives one asset creation from balance check to a known asset address.

    The ``confirming`` ledger write always happens before the receipt wait, so
    a process that dies mid-wait leaves a handle the reconciler can resolve.
    A confirmation timeout is not an error: the attempt moves to polling and,
    if that also runs out, is reported unresolved with its ledger entry kept.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        ledger: PendingOperationLedger,
        preflight: PreflightChecker,
        allowances: AllowanceManager,
        gas: GasPaymentStrategySelector,
        receipts: ReceiptWaiter,
        chain: ChainStateReader,
        poller: ConfirmationFallbackPoller,
        reconciler: RecoveryReconciler,
        deposit_token: str,
        creation_contract: str,
        record_sync: RecordSync | None = None,
        publish_event: EventPublisher | None = None,
        initiator: str | None = None,
        submit_timeout_seconds: float = 60.0,
        confirm_timeout_seconds: float = 120.0,
        indexing_grace_seconds: float = 5.0,
        recovery_attempts: int = 3,
    ) -> None:
        self._logger = logger
        self._ledger = ledger
        self._preflight = preflight
        self._allowances = allowances
        self._gas = gas
        self._receipts = receipts
        self._chain = chain
        self._poller = poller
        self._reconciler = reconciler
        self._deposit_token = deposit_token
        self._creation_contract = creation_contract
        self._record_sync = record_sync
        self._publish_event = publish_event
        self._initiator = initiator
        self._submit_timeout_seconds = submit_timeout_seconds
        self._confirm_timeout_seconds = confirm_timeout_seconds
        self._indexing_grace_seconds = max(0.0, indexing_grace_seconds)
        self._recovery_attempts = max(1, recovery_attempts)
        self._state = CreationAttemptState()
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> CreationAttemptState:
        return self._state

    @property
    def initiator(self) -> str | None:
        return self._initiator

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)
        listener(self._state)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def set_initiator(self, initiator: str | None) -> RecoverySummary | None:
        changed = initiator != self._initiator
        self._initiator = initiator
        if initiator and changed:
            return await self.reconcile()
        return None

    async def reconcile(self) -> RecoverySummary:
        return await self._reconciler.reconcile()

    async def pending_operations(self) -> list[PendingOperation]:
        return await self._ledger.entries()

    async def clear(self, handle: str) -> bool:
        return await self._ledger.remove(handle)

    async def retry(self, handle: str) -> CreationAttemptState:
        """Re-check a stored operation once; only when nothing is found, create it again."""
        entry = await self._ledger.get(handle)
        if entry is None:
            raise UnknownOperationError(handle)

        self._reset(operation_handle=handle, transaction_hash=entry.transaction_hash)
        if entry.result_address:
            confirmed = await self._mark(entry, status="confirmed")
            return await self._finish(confirmed, entry.result_address)

        self._emit(status="polling_status", message="Re-checking pending creation", progress=70)
        result_address = await self._poll_quietly(entry, max_attempts=self._recovery_attempts)
        if result_address is not None:
            confirmed = await self._mark(entry, status="confirmed", result_address=result_address)
            return await self._finish(confirmed, confirmed.result_address or result_address)

        log_event(
            self._logger,
            level="warning",
            event="retry_resubmitting",
            message="Pending creation not found on chain; starting a new creation",
            operation_handle=handle,
        )
        try:
            return await self.create(entry.parameters)
        finally:
            # the old entry stays until a replacement operation has been persisted
            replacement = self._state.operation_handle
            if replacement and replacement != handle:
                await guarded_call(
                    lambda: self._ledger.remove(handle),
                    logger=self._logger,
                    event="ledger_remove_failed",
                    message="Failed to remove superseded ledger entry",
                    operation_handle=handle,
                    replacement=replacement,
                )

    async def create(self, parameters: CreationParameters) -> CreationAttemptState:
        self._reset()
        try:
            initiator = self._require_initiator()
            return await self._create(initiator, parameters)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            self._emit(
                status="error",
                message=str(error),
                progress=0,
                error=describe_error(error),
                unresolved=False,
            )
            log_event(
                self._logger,
                level="error",
                event="creation_failed",
                message="Asset creation failed",
                error_code=getattr(error, "code", type(error).__name__),
                error=str(error),
                operation_handle=self._state.operation_handle,
            )
            await self._publish(
                "ERROR",
                "creation_failed",
                "Asset creation failed",
                {"error": str(error), "operation_handle": self._state.operation_handle},
            )
            raise

    async def _create(self, initiator: str, parameters: CreationParameters) -> CreationAttemptState:
        eligible = await self._gas.is_eligible(initiator)

        if parameters.deposit_amount > 0:
            self._emit(status="checking_balance", message="Checking deposit balance", progress=10)
            await self._preflight.check(initiator, parameters.deposit_amount)

            vault = await guarded_call(
                lambda: self._chain.read_hub_vault(parameters.hub_id),
                logger=self._logger,
                event="hub_vault_read_failed",
                message="Failed to resolve hub vault; approving creation contract only",
                hub_id=parameters.hub_id,
            )
            spenders = AllowanceManager.spenders(vault, self._creation_contract)
            for index, spender in enumerate(spenders):
                self._emit(
                    status="approving",
                    message=f"Approving deposit token ({index + 1}/{len(spenders)})",
                    progress=min(40, 20 + 10 * index),
                )
                await self._allowances.ensure(
                    token=self._deposit_token,
                    owner=initiator,
                    spender=spender,
                    required=parameters.deposit_amount,
                    eligible=eligible,
                )

        self._emit(status="creating", message="Submitting asset creation", progress=50)
        request = OperationRequest(
            target=self._creation_contract,
            data=encode_subscribe(
                parameters.name,
                parameters.symbol,
                parameters.hub_id,
                parameters.deposit_amount,
            ),
            label="subscribe",
        )
        outcome = await self._submit_creation(request, account=initiator, eligible=eligible)

        entry = await self._ledger.save(
            PendingOperation(
                operation_handle=outcome.handle,
                initiator=initiator,
                parameters=parameters,
                status="confirming",
            )
        )
        log_event(
            self._logger,
            level="info",
            event="creation_submitted",
            message="Asset creation submitted",
            operation_handle=outcome.handle,
            payment_mode=outcome.context.mode,
        )
        self._emit(
            status="waiting_confirmation",
            message="Waiting for confirmation",
            progress=60,
            operation_handle=outcome.handle,
        )
        return await self._confirm(entry)

    async def _submit_creation(
        self,
        request: OperationRequest,
        *,
        account: str,
        eligible: bool,
    ) -> SubmissionOutcome:
        try:
            return await race_with_timeout(
                self._gas.submit(request, account=account, eligible=eligible),
                self._submit_timeout_seconds,
                lambda: SubmissionTimeoutError("Submission did not return an operation handle in time."),
            )
        except SubmissionTimeoutError as error:
            context = self._gas.select(eligible=eligible)
            log_event(
                self._logger,
                level="warning",
                event="submission_timeout",
                message="Submission did not return an operation handle in time",
                payment_mode=context.mode,
                account=account,
            )
            if context.mode == "sponsored":
                raise SponsorshipMisconfiguredError(address=account, cause=str(error)) from error

        if context.uses_paymaster:
            fallback = self._gas.self_funded_fallback(request, account=account)
        else:
            fallback = self._gas.submit(request, account=account, eligible=eligible, context=SELF_FUNDED)

        return await race_with_timeout(
            fallback,
            self._submit_timeout_seconds,
            lambda: SubmissionTimeoutError("Submission timed out again after gas fallback."),
        )

    async def _confirm(self, entry: PendingOperation) -> CreationAttemptState:
        handle = entry.operation_handle
        try:
            transaction_hash = await race_with_timeout(
                self._receipts.wait_for_receipt(handle),
                self._confirm_timeout_seconds,
                _ConfirmationTimeout,
            )
        except _ConfirmationTimeout:
            log_event(
                self._logger,
                level="warning",
                event="confirmation_timeout",
                message="Receipt wait timed out; falling back to status polling",
                operation_handle=handle,
            )
            entry = await self._mark(entry, status="timeout")
            return await self._poll_for_result(entry)
        except OperationRevertedError as error:
            await self._mark(entry, status="failed", error_message=str(error))
            raise
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="receipt_wait_failed",
                message="Receipt wait failed; falling back to status polling",
                operation_handle=handle,
                error=str(error),
            )
            entry = await self._mark(entry, status="timeout", error_message=str(error))
            return await self._poll_for_result(entry)

        entry = await self._mark(entry, status="confirmed", transaction_hash=transaction_hash)
        self._emit(
            status="waiting_confirmation",
            message="Confirmed, locating created asset",
            progress=65,
            transaction_hash=transaction_hash,
        )

        result_address = await guarded_call(
            lambda: self._chain.read_created_asset(transaction_hash),
            logger=self._logger,
            event="created_asset_read_failed",
            message="Failed to read created asset from receipt",
            operation_handle=handle,
            transaction_hash=transaction_hash,
        )
        if result_address:
            entry = await self._mark(entry, result_address=result_address)
            return await self._finish(entry, result_address)

        if self._indexing_grace_seconds:
            await asyncio.sleep(self._indexing_grace_seconds)
        return await self._poll_for_result(entry)

    async def _poll_for_result(self, entry: PendingOperation) -> CreationAttemptState:
        self._emit(
            status="polling_status",
            message="Checking the indexer for the created asset",
            progress=80 if entry.transaction_hash else 70,
        )
        result_address = await self._poll_quietly(entry)
        if result_address is not None:
            entry = await self._mark(entry, status="confirmed", result_address=result_address)
            return await self._finish(entry, result_address)

        if entry.transaction_hash:
            self._emit(
                status="success",
                message="Asset created; it should appear shortly",
                progress=100,
            )
            await self._publish(
                "WARNING",
                "creation_confirmed_unindexed",
                "Creation confirmed but asset not indexed yet",
                {"operation_handle": entry.operation_handle, "transaction_hash": entry.transaction_hash},
            )
            return self._state

        self._emit(
            status="polling_status",
            message="Creation is still processing; it will be checked again later",
            progress=90,
            unresolved=True,
        )
        await self._publish(
            "WARNING",
            "creation_unresolved",
            "Creation unresolved after status polling",
            {"operation_handle": entry.operation_handle},
        )
        return self._state

    async def _poll_quietly(
        self,
        entry: PendingOperation,
        *,
        max_attempts: int | None = None,
    ) -> str | None:
        try:
            return await self._poller.poll(entry.operation_handle, entry.initiator, max_attempts=max_attempts)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="status_poll_failed",
                message="Status poll failed",
                operation_handle=entry.operation_handle,
                error=str(error),
            )
            await self._mark(entry, error_message=str(error))
            return None

    async def _finish(self, entry: PendingOperation, result_address: str) -> CreationAttemptState:
        record_id: str | None = None
        if self._record_sync is not None:
            record_id = await guarded_call(
                lambda: self._record_sync.sync_created_asset(result_address, entry.transaction_hash),
                logger=self._logger,
                event="record_sync_failed",
                message="Failed to sync created asset record",
                operation_handle=entry.operation_handle,
                result_address=result_address,
            )

        await guarded_call(
            lambda: self._ledger.remove(entry.operation_handle),
            logger=self._logger,
            event="ledger_remove_failed",
            message="Failed to remove completed ledger entry",
            operation_handle=entry.operation_handle,
        )

        self._emit(
            status="success",
            message="Asset created",
            progress=100,
            operation_handle=entry.operation_handle,
            transaction_hash=entry.transaction_hash,
            result_address=result_address,
            record_id=record_id,
            unresolved=False,
        )
        log_event(
            self._logger,
            level="info",
            event="creation_completed",
            message="Asset creation completed",
            operation_handle=entry.operation_handle,
            result_address=result_address,
            record_id=record_id,
        )
        await self._publish(
            "INFO",
            "creation_completed",
            "Asset creation completed",
            {
                "operation_handle": entry.operation_handle,
                "result_address": result_address,
                "transaction_hash": entry.transaction_hash,
            },
        )
        return self._state

    async def _mark(self, entry: PendingOperation, **changes: Any) -> PendingOperation:
        updated = await guarded_call(
            lambda: self._ledger.save(replace(entry, **changes)),
            logger=self._logger,
            event="ledger_write_failed",
            message="Failed to update ledger entry",
            level="error",
            operation_handle=entry.operation_handle,
            changes=sorted(changes),
        )
        return updated if updated is not None else replace(entry, **changes)

    async def _publish(self, level: str, event: str, message: str, details: dict[str, Any]) -> None:
        if self._publish_event is None:
            return
        await guarded_call(
            lambda: self._publish_event(level=level, event=event, message=message, details=details),
            logger=self._logger,
            event="event_publish_failed",
            message="Failed to publish orchestrator event",
        )

    def _require_initiator(self) -> str:
        if not self._initiator:
            raise WalletNotConnectedError("No initiator account is connected.")
        return self._initiator

    def _reset(self, **fields: Any) -> None:
        self._set_state(CreationAttemptState(**fields))

    def _emit(self, **changes: Any) -> None:
        self._set_state(self._state.evolve(**changes))

    def _set_state(self, state: CreationAttemptState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="state_listener_failed",
                    message="State listener raised",
                    error=str(error),
                )
