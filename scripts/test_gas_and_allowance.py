from __future__ import annotations

import logging
import unittest
from unittest.mock import AsyncMock

from orchestrator_fakes import CREATION_CONTRACT, DEPOSIT_TOKEN, INITIATOR, PAYMASTER_TOKEN, VAULT, FakeAccount, hang
from subscription_orchestrator.chain.contracts import MAX_UINT256, encode_approve
from subscription_orchestrator.creation import (
    AllowanceManager,
    ApprovalFailedError,
    ApprovalVerificationFailedError,
    DeploymentFailedError,
    DeploymentFundingRequiredError,
    DeploymentRequiredError,
    GasPaymentStrategySelector,
    InsufficientGasError,
    OperationRequest,
    SponsorshipFailureError,
    SponsorshipMisconfiguredError,
    SubmissionFailedError,
)
from subscription_orchestrator.creation.gas import SELF_FUNDED
from subscription_orchestrator.creation.types import ZERO_ADDRESS

REQUEST = OperationRequest(target=CREATION_CONTRACT, data=b"\x01", label="subscribe")


def _make_selector(
    account: FakeAccount,
    *,
    sponsored: str | None = "sponsor-policy",
    token_policy: str | None = "token-policy",
    eligibility: object | None = None,
) -> GasPaymentStrategySelector:
    return GasPaymentStrategySelector(
        logger=logging.getLogger("test.gas"),
        submitter=account,
        balances=account,
        eligibility=eligibility,
        sponsored_policy_id=sponsored,
        token_paymaster_policy_id=token_policy,
        token_paymaster_token=PAYMASTER_TOKEN,
        min_self_funded_gas_wei=1_000,
    )


class GasPaymentStrategySelectorTests(unittest.IsolatedAsyncioTestCase):
    def test_select_prefers_sponsorship_for_eligible_accounts(self) -> None:
        selector = _make_selector(FakeAccount())

        sponsored = selector.select(eligible=True)
        token = selector.select(eligible=False)

        self.assertEqual(sponsored.mode, "sponsored")
        self.assertEqual(sponsored.policy_id, "sponsor-policy")
        self.assertEqual(token.mode, "token_paymaster")
        self.assertEqual(token.token, PAYMASTER_TOKEN)

    def test_select_falls_back_to_self_funded(self) -> None:
        selector = _make_selector(FakeAccount(), sponsored=None, token_policy=None)

        self.assertEqual(selector.select(eligible=True), SELF_FUNDED)
        self.assertFalse(SELF_FUNDED.uses_paymaster)

    async def test_eligibility_errors_mean_not_eligible(self) -> None:
        eligibility = AsyncMock()
        eligibility.is_eligible = AsyncMock(side_effect=RuntimeError("rpc down"))
        selector = _make_selector(FakeAccount(), eligibility=eligibility)

        self.assertFalse(await selector.is_eligible(INITIATOR))
        self.assertFalse(await _make_selector(FakeAccount()).is_eligible(INITIATOR))

    async def test_submit_records_context_used(self) -> None:
        account = FakeAccount()
        selector = _make_selector(account)

        outcome = await selector.submit(REQUEST, account=INITIATOR, eligible=True)

        self.assertEqual(outcome.handle, "0xop1")
        self.assertEqual(outcome.context.mode, "sponsored")
        self.assertEqual(account.submit.await_args.args[1].mode, "sponsored")

    async def test_sponsorship_rejection_falls_back_to_self_funded(self) -> None:
        account = FakeAccount(native_balance=5_000)
        account.submit.side_effect = [SponsorshipFailureError("AA31 paymaster deposit too low"), "0xself"]
        selector = _make_selector(account)

        outcome = await selector.submit(REQUEST, account=INITIATOR, eligible=False)

        self.assertEqual(outcome.handle, "0xself")
        self.assertEqual(outcome.context, SELF_FUNDED)
        self.assertEqual(account.submit.await_args_list[1].args[1], SELF_FUNDED)

    async def test_sponsorship_rejection_without_gas_raises(self) -> None:
        account = FakeAccount(native_balance=10)
        account.submit.side_effect = SponsorshipFailureError("paymaster rejected")
        selector = _make_selector(account)

        with self.assertRaises(InsufficientGasError) as raised:
            await selector.submit(REQUEST, account=INITIATOR, eligible=False)

        self.assertEqual(raised.exception.shortfall, 990)
        account.submit.assert_awaited_once()

    async def test_eligible_sponsorship_rejection_is_misconfiguration(self) -> None:
        account = FakeAccount()
        account.submit.side_effect = SponsorshipFailureError("policy not found")
        selector = _make_selector(account)

        with self.assertRaises(SponsorshipMisconfiguredError):
            await selector.submit(REQUEST, account=INITIATOR, eligible=True)

        account.submit.assert_awaited_once()

    async def test_deployment_required_deploys_self_funded(self) -> None:
        account = FakeAccount(native_balance=5_000)
        account.submit.side_effect = [DeploymentRequiredError("AA20 account not deployed"), "0xdeployed"]
        selector = _make_selector(account)

        outcome = await selector.submit(REQUEST, account=INITIATOR, eligible=True)

        self.assertEqual(outcome.handle, "0xdeployed")
        self.assertEqual(outcome.context, SELF_FUNDED)

    async def test_deployment_required_with_low_balance(self) -> None:
        account = FakeAccount(native_balance=0)
        account.submit.side_effect = DeploymentRequiredError("AA20 account not deployed")
        selector = _make_selector(account)

        with self.assertRaises(DeploymentFundingRequiredError):
            await selector.submit(REQUEST, account=INITIATOR, eligible=True)

        account.submit.assert_awaited_once()

    async def test_self_funded_deployment_failure(self) -> None:
        account = FakeAccount(native_balance=5_000)
        account.submit.side_effect = [
            DeploymentRequiredError("AA13 initCode failed"),
            SubmissionFailedError("AA21 didn't pay prefund"),
        ]
        selector = _make_selector(account)

        with self.assertRaises(DeploymentFailedError) as raised:
            await selector.submit(REQUEST, account=INITIATOR, eligible=False)

        self.assertIn("AA21", str(raised.exception))

    async def test_self_funded_rejection_propagates_unchanged(self) -> None:
        account = FakeAccount()
        account.submit.side_effect = SponsorshipFailureError("weird")
        selector = _make_selector(account, sponsored=None, token_policy=None)

        with self.assertRaises(SponsorshipFailureError):
            await selector.submit(REQUEST, account=INITIATOR, eligible=False)

        account.read_native_balance.assert_not_awaited()


def _make_manager(account: FakeAccount, **overrides: object) -> AllowanceManager:
    options: dict[str, object] = {
        "submit_timeout_seconds": 1.0,
        "receipt_timeout_seconds": 1.0,
        "verify_delays": (0, 0),
    }
    options.update(overrides)
    return AllowanceManager(
        logger=logging.getLogger("test.allowance"),
        allowances=account,
        gas=_make_selector(account, sponsored=None, token_policy=None),
        receipts=account,
        **options,  # type: ignore[arg-type]
    )


class AllowanceManagerTests(unittest.IsolatedAsyncioTestCase):
    def test_spenders_drop_unknown_zero_and_duplicates(self) -> None:
        spenders = AllowanceManager.spenders(None, ZERO_ADDRESS, VAULT, VAULT.upper().replace("0X", "0x"), CREATION_CONTRACT)

        self.assertEqual(spenders, [VAULT, CREATION_CONTRACT])

    async def test_exact_allowance_is_sufficient(self) -> None:
        account = FakeAccount(allowance=100)

        approved = await _make_manager(account).ensure(
            token=DEPOSIT_TOKEN, owner=INITIATOR, spender=VAULT, required=100, eligible=False
        )

        self.assertFalse(approved)
        account.submit.assert_not_awaited()

    async def test_approves_unlimited_amount_and_verifies(self) -> None:
        account = FakeAccount()
        account.read_allowance.side_effect = [0, 0, MAX_UINT256]

        approved = await _make_manager(account).ensure(
            token=DEPOSIT_TOKEN, owner=INITIATOR, spender=VAULT, required=100, eligible=False
        )

        self.assertTrue(approved)
        request = account.submit.await_args.args[0]
        self.assertEqual(request.target, DEPOSIT_TOKEN)
        self.assertEqual(request.data, encode_approve(VAULT, MAX_UINT256))
        account.wait_for_receipt.assert_awaited_once_with("0xop1")
        self.assertEqual(account.read_allowance.await_count, 3)

    async def test_verification_gives_up_after_all_delays(self) -> None:
        account = FakeAccount(allowance=0)

        with self.assertRaises(ApprovalVerificationFailedError) as raised:
            await _make_manager(account).ensure(
                token=DEPOSIT_TOKEN, owner=INITIATOR, spender=VAULT, required=100, eligible=False
            )

        self.assertEqual(raised.exception.observed, 0)
        self.assertEqual(account.read_allowance.await_count, 3)

    async def test_receipt_timeout_still_verifies(self) -> None:
        account = FakeAccount()
        account.read_allowance.side_effect = [0, MAX_UINT256]
        account.wait_for_receipt.side_effect = hang

        approved = await _make_manager(account, receipt_timeout_seconds=0.05).ensure(
            token=DEPOSIT_TOKEN, owner=INITIATOR, spender=VAULT, required=100, eligible=False
        )

        self.assertTrue(approved)

    async def test_receipt_failure_is_approval_failure(self) -> None:
        account = FakeAccount()
        account.wait_for_receipt.side_effect = RuntimeError("reverted")

        with self.assertRaises(ApprovalFailedError):
            await _make_manager(account).ensure(
                token=DEPOSIT_TOKEN, owner=INITIATOR, spender=VAULT, required=100, eligible=False
            )

    async def test_submission_errors_are_wrapped(self) -> None:
        account = FakeAccount()
        account.submit.side_effect = SubmissionFailedError("AA25 invalid account nonce")

        with self.assertRaises(ApprovalFailedError) as raised:
            await _make_manager(account).ensure(
                token=DEPOSIT_TOKEN, owner=INITIATOR, spender=VAULT, required=100, eligible=False
            )

        self.assertEqual(raised.exception.spender, VAULT)
        account.wait_for_receipt.assert_not_awaited()

    async def test_submission_timeout_is_wrapped(self) -> None:
        account = FakeAccount()
        account.submit.side_effect = hang

        with self.assertRaises(ApprovalFailedError):
            await _make_manager(account, submit_timeout_seconds=0.05).ensure(
                token=DEPOSIT_TOKEN, owner=INITIATOR, spender=VAULT, required=100, eligible=False
            )

    async def test_funding_errors_propagate(self) -> None:
        account = FakeAccount(native_balance=0)
        account.submit.side_effect = SponsorshipFailureError("paymaster rejected")
        manager = AllowanceManager(
            logger=logging.getLogger("test.allowance"),
            allowances=account,
            gas=_make_selector(account, sponsored=None),
            receipts=account,
            verify_delays=(0,),
        )

        with self.assertRaises(InsufficientGasError):
            await manager.ensure(token=DEPOSIT_TOKEN, owner=INITIATOR, spender=VAULT, required=100, eligible=False)


if __name__ == "__main__":
    unittest.main()
