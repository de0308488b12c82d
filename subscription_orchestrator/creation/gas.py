from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from ..common import guarded_call, log_event
from .capabilities import BalanceReader, EligibilityPredicate, OperationSubmitter
from .errors import (
    DeploymentFailedError,
    DeploymentFundingRequiredError,
    DeploymentRequiredError,
    InsufficientGasError,
    SponsorshipFailureError,
    SponsorshipMisconfiguredError,
)
from .types import OperationRequest, PaymentContext

SELF_FUNDED = PaymentContext(mode="self_funded")
DEFAULT_MIN_SELF_FUNDED_GAS_WEI = 10**15


@dataclass(slots=True, frozen=True)
class SubmissionOutcome:
    handle: str
    context: PaymentContext


class GasPaymentStrategySelector:
    """Chooses who pays gas and recovers from paymaster rejections.

    Only submissions made with a paymaster context are recovered; a rejected
    self-funded submission propagates unchanged.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        submitter: OperationSubmitter,
        balances: BalanceReader,
        eligibility: EligibilityPredicate | None = None,
        sponsored_policy_id: str | None = None,
        token_paymaster_policy_id: str | None = None,
        token_paymaster_token: str | None = None,
        min_self_funded_gas_wei: int = DEFAULT_MIN_SELF_FUNDED_GAS_WEI,
    ) -> None:
        self._logger = logger
        self._submitter = submitter
        self._balances = balances
        self._eligibility = eligibility
        self._sponsored_policy_id = sponsored_policy_id
        self._token_paymaster_policy_id = token_paymaster_policy_id
        self._token_paymaster_token = token_paymaster_token
        self._min_self_funded_gas_wei = max(0, min_self_funded_gas_wei)

    async def is_eligible(self, account: str) -> bool:
        if self._eligibility is None:
            return False
        eligible = await guarded_call(
            lambda: self._eligibility.is_eligible(account),
            logger=self._logger,
            event="eligibility_check_failed",
            message="Eligibility check failed; treating account as not eligible",
            default=False,
            account=account,
        )
        return bool(eligible)

    def select(self, *, eligible: bool) -> PaymentContext:
        if eligible and self._sponsored_policy_id:
            return PaymentContext(mode="sponsored", policy_id=self._sponsored_policy_id)
        if self._token_paymaster_policy_id:
            return PaymentContext(
                mode="token_paymaster",
                policy_id=self._token_paymaster_policy_id,
                token=self._token_paymaster_token,
            )
        return SELF_FUNDED

    async def submit(
        self,
        request: OperationRequest,
        *,
        account: str,
        eligible: bool,
        context: PaymentContext | None = None,
    ) -> SubmissionOutcome:
        payment = context or self.select(eligible=eligible)
        log_event(
            self._logger,
            level="info",
            event="operation_submit",
            message="Submitting operation",
            operation=request.label,
            payment_mode=payment.mode,
            account=account,
        )
        try:
            handle = await self._submitter.submit(request, payment)
        except (DeploymentRequiredError, SponsorshipFailureError) as error:
            if not payment.uses_paymaster:
                raise
            return await self._recover(error, request, account=account, eligible=eligible, context=payment)
        return SubmissionOutcome(handle=handle, context=payment)

    async def self_funded_fallback(self, request: OperationRequest, *, account: str) -> SubmissionOutcome:
        available = await self._balances.read_native_balance(account)
        if available < self._min_self_funded_gas_wei:
            raise InsufficientGasError(
                required=self._min_self_funded_gas_wei,
                available=available,
                address=account,
            )

        log_event(
            self._logger,
            level="info",
            event="self_funded_fallback",
            message="Resubmitting operation with self-funded gas",
            operation=request.label,
            account=account,
            available_wei=str(available),
        )
        handle = await self._submitter.submit(request, SELF_FUNDED)
        return SubmissionOutcome(handle=handle, context=SELF_FUNDED)

    async def _recover(
        self,
        error: Exception,
        request: OperationRequest,
        *,
        account: str,
        eligible: bool,
        context: PaymentContext,
    ) -> SubmissionOutcome:
        log_event(
            self._logger,
            level="warning",
            event="paymaster_submission_rejected",
            message="Paymaster submission rejected",
            operation=request.label,
            payment_mode=context.mode,
            error_code=getattr(error, "code", ""),
            error=str(error),
        )

        if isinstance(error, DeploymentRequiredError):
            return await self._deploy_self_funded(request, account=account, cause=error)

        if eligible:
            raise SponsorshipMisconfiguredError(address=account, cause=str(error)) from error
        return await self.self_funded_fallback(request, account=account)

    async def _deploy_self_funded(
        self,
        request: OperationRequest,
        *,
        account: str,
        cause: Exception,
    ) -> SubmissionOutcome:
        available = await self._balances.read_native_balance(account)
        if available < self._min_self_funded_gas_wei:
            raise DeploymentFundingRequiredError(
                required=self._min_self_funded_gas_wei,
                available=available,
                address=account,
            ) from cause

        try:
            handle = await self._submitter.submit(request, SELF_FUNDED)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            raise DeploymentFailedError(
                required=self._min_self_funded_gas_wei,
                available=available,
                address=account,
                cause=str(error),
            ) from error

        log_event(
            self._logger,
            level="info",
            event="account_deployed_self_funded",
            message="Smart account deployment submitted with self-funded gas",
            operation=request.label,
            account=account,
        )
        return SubmissionOutcome(handle=handle, context=SELF_FUNDED)
