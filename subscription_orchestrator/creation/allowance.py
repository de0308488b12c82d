from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from ..chain.contracts import MAX_UINT256, encode_approve
from ..common import log_event, race_with_timeout
from .capabilities import AllowanceReader, ReceiptWaiter
from .errors import (
    ApprovalFailedError,
    ApprovalVerificationFailedError,
    FundingError,
    SubmissionTimeoutError,
)
from .gas import GasPaymentStrategySelector
from .types import ZERO_ADDRESS, OperationRequest, same_address

DEFAULT_VERIFY_DELAYS = (2.0, 3.0, 4.0, 5.0, 6.0)


class AllowanceManager:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        allowances: AllowanceReader,
        gas: GasPaymentStrategySelector,
        receipts: ReceiptWaiter,
        submit_timeout_seconds: float = 60.0,
        receipt_timeout_seconds: float = 120.0,
        verify_delays: Sequence[float] = DEFAULT_VERIFY_DELAYS,
    ) -> None:
        self._logger = logger
        self._allowances = allowances
        self._gas = gas
        self._receipts = receipts
        self._submit_timeout_seconds = submit_timeout_seconds
        self._receipt_timeout_seconds = receipt_timeout_seconds
        self._verify_delays = tuple(verify_delays)

    @staticmethod
    def spenders(*candidates: str | None) -> list[str]:
        """Drop unknown and zero spenders, keep first occurrence order."""
        ordered: list[str] = []
        for candidate in candidates:
            if not candidate or same_address(candidate, ZERO_ADDRESS):
                continue
            if any(same_address(candidate, existing) for existing in ordered):
                continue
            ordered.append(candidate)
        return ordered

    async def ensure(
        self,
        *,
        token: str,
        owner: str,
        spender: str,
        required: int,
        eligible: bool,
    ) -> bool:
        """Make sure ``spender`` may pull ``required`` of ``token``; True when an approval was sent."""
        current = await self._allowances.read_allowance(token, owner, spender)
        if current >= required:
            log_event(
                self._logger,
                level="info",
                event="allowance_sufficient",
                message="Existing allowance covers the deposit",
                spender=spender,
                allowance=str(current),
                required=str(required),
            )
            return False

        request = OperationRequest(
            target=token,
            data=encode_approve(spender, MAX_UINT256),
            label=f"approve:{spender}",
        )
        handle = await self._submit_approval(request, owner=owner, spender=spender, eligible=eligible)
        await self._await_approval_receipt(handle, spender=spender)
        await self._verify(token=token, owner=owner, spender=spender, required=required)
        return True

    async def _submit_approval(
        self,
        request: OperationRequest,
        *,
        owner: str,
        spender: str,
        eligible: bool,
    ) -> str:
        try:
            outcome = await race_with_timeout(
                self._gas.submit(request, account=owner, eligible=eligible),
                self._submit_timeout_seconds,
                lambda: SubmissionTimeoutError(f"Approval for {spender} was not accepted in time."),
            )
        except FundingError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="error",
                event="approval_submit_failed",
                message="Approval submission failed",
                spender=spender,
                error=str(error),
            )
            raise ApprovalFailedError(f"Approval for {spender} failed: {error}", spender=spender) from error

        log_event(
            self._logger,
            level="info",
            event="approval_submitted",
            message="Approval submitted",
            spender=spender,
            operation_handle=outcome.handle,
            payment_mode=outcome.context.mode,
        )
        return outcome.handle

    async def _await_approval_receipt(self, handle: str, *, spender: str) -> None:
        try:
            transaction_hash = await race_with_timeout(
                self._receipts.wait_for_receipt(handle),
                self._receipt_timeout_seconds,
                lambda: SubmissionTimeoutError(f"Approval receipt for {handle} timed out."),
            )
        except SubmissionTimeoutError:
            log_event(
                self._logger,
                level="warning",
                event="approval_receipt_timeout",
                message="Approval receipt wait timed out; verifying allowance on chain",
                spender=spender,
                operation_handle=handle,
            )
            return
        except asyncio.CancelledError:
            raise
        except Exception as error:
            raise ApprovalFailedError(f"Approval for {spender} did not succeed: {error}", spender=spender) from error

        log_event(
            self._logger,
            level="info",
            event="approval_confirmed",
            message="Approval confirmed",
            spender=spender,
            operation_handle=handle,
            transaction_hash=transaction_hash,
        )

    async def _verify(self, *, token: str, owner: str, spender: str, required: int) -> None:
        observed = 0
        for attempt, delay in enumerate(self._verify_delays, start=1):
            await asyncio.sleep(delay)
            try:
                observed = await self._allowances.read_allowance(token, owner, spender)
            except asyncio.CancelledError:
                raise
            except Exception as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="allowance_read_failed",
                    message="Allowance read failed during verification",
                    spender=spender,
                    attempt=attempt,
                    error=str(error),
                )
                continue
            if observed >= required:
                log_event(
                    self._logger,
                    level="info",
                    event="allowance_verified",
                    message="Allowance verified",
                    spender=spender,
                    attempt=attempt,
                )
                return

        raise ApprovalVerificationFailedError(spender=spender, required=required, observed=observed)
