from __future__ import annotations

import re
from dataclasses import dataclass

WEI_PER_ETH = 10**18


def format_eth(wei: int) -> str:
    return f"{wei / WEI_PER_ETH:.6f} ETH"


class OrchestratorError(RuntimeError):
    code = "orchestrator_error"
    suggestion = ""

    def __init__(self, message: str, *, suggestion: str | None = None) -> None:
        super().__init__(message)
        if suggestion is not None:
            self.suggestion = suggestion

    @property
    def user_message(self) -> str:
        if not self.suggestion:
            return str(self)
        return f"{self} {self.suggestion}"


class WalletNotConnectedError(OrchestratorError):
    code = "wallet_not_connected"
    suggestion = "Connect an account before creating an asset."


class UnknownOperationError(OrchestratorError):
    code = "unknown_operation"
    suggestion = "List pending operations to see which handles can be retried."

    def __init__(self, handle: str) -> None:
        super().__init__(f"No pending operation with handle {handle}.")
        self.handle = handle


class InsufficientFundsError(OrchestratorError):
    code = "insufficient_funds"
    suggestion = "Top up the deposit token or lower the deposit amount."

    def __init__(self, *, required: int, available: int, address: str) -> None:
        super().__init__(
            f"Insufficient deposit balance for {address}: required {required}, available {available}."
        )
        self.required = required
        self.available = available
        self.shortfall = max(0, required - available)
        self.address = address


class ApprovalFailedError(OrchestratorError):
    code = "approval_failed"
    suggestion = "Approve the deposit token manually and retry."

    def __init__(self, message: str, *, spender: str | None = None) -> None:
        super().__init__(message)
        self.spender = spender


class ApprovalVerificationFailedError(OrchestratorError):
    code = "approval_verification_failed"
    suggestion = "The approval may still be propagating. Wait a few seconds and retry."

    def __init__(self, *, spender: str, required: int, observed: int) -> None:
        super().__init__(
            f"Allowance for {spender} did not reach {required} after approval (last read {observed})."
        )
        self.spender = spender
        self.required = required
        self.observed = observed


class FundingError(OrchestratorError):
    code = "funding_error"

    def __init__(
        self,
        message: str,
        *,
        required: int,
        available: int,
        address: str,
        suggestion: str | None = None,
    ) -> None:
        super().__init__(message, suggestion=suggestion)
        self.required = required
        self.available = available
        self.shortfall = max(0, required - available)
        self.address = address


class DeploymentFundingRequiredError(FundingError):
    code = "deployment_funding_required"

    def __init__(self, *, required: int, available: int, address: str) -> None:
        super().__init__(
            f"Smart account {address} must be deployed before sponsored operations. "
            f"Deployment needs at least {format_eth(required)}; the account holds {format_eth(available)}.",
            required=required,
            available=available,
            address=address,
            suggestion=f"Send at least {format_eth(required)} to {address} and retry.",
        )


class DeploymentFailedError(FundingError):
    code = "deployment_failed"

    def __init__(self, *, required: int, available: int, address: str, cause: str = "") -> None:
        detail = f" ({cause})" if cause else ""
        super().__init__(
            f"Self-funded deployment of smart account {address} failed{detail}.",
            required=required,
            available=available,
            address=address,
            suggestion=f"Make sure {address} holds at least {format_eth(required)} and retry.",
        )


class InsufficientGasError(FundingError):
    code = "insufficient_gas"

    def __init__(self, *, required: int, available: int, address: str) -> None:
        super().__init__(
            f"Gas sponsorship is unavailable and {address} holds {format_eth(available)}, "
            f"short by {format_eth(max(0, required - available))}.",
            required=required,
            available=available,
            address=address,
            suggestion=f"Send at least {format_eth(required)} to {address} to pay gas yourself.",
        )


class SponsorshipMisconfiguredError(FundingError):
    code = "sponsorship_misconfigured"
    suggestion = "Gas sponsorship for members is misconfigured. Contact support."

    def __init__(self, *, address: str, cause: str = "") -> None:
        detail = f": {cause}" if cause else ""
        super().__init__(
            f"Sponsored submission for eligible account {address} was rejected{detail}",
            required=0,
            available=0,
            address=address,
        )


class SubmissionError(OrchestratorError):
    code = "submission_error"


class DeploymentRequiredError(SubmissionError):
    code = "deployment_required"


class SponsorshipFailureError(SubmissionError):
    code = "sponsorship_failure"


class SubmissionFailedError(SubmissionError):
    code = "submission_failed"


class SubmissionTimeoutError(SubmissionError):
    code = "submission_timeout"
    suggestion = "The network is congested. Check pending operations before retrying."


class OperationRevertedError(OrchestratorError):
    code = "operation_reverted"
    suggestion = "The creation call reverted on chain. Check the parameters and retry."


class SigningSupersededError(OrchestratorError):
    code = "signing_superseded"


@dataclass(slots=True, frozen=True)
class ParsedBundlerError:
    message: str
    suggestion: str
    should_retry: bool
    code: str | None = None
    retry_delay_seconds: float | None = None


# (message, suggestion, retryable)
AA_ERRORS: dict[str, tuple[str, str, bool]] = {
    "AA10": ("Account already exists", "Remove initCode when re-submitting for an existing account.", False),
    "AA13": (
        "Account creation failed or ran out of gas",
        "Fund the account for deployment or raise verificationGasLimit.",
        True,
    ),
    "AA14": ("Account creation returned wrong address", "Check the factory returns the sender address.", False),
    "AA15": ("Account creation did not deploy contract", "Check initCode deploys code at the sender.", False),
    "AA20": (
        "Account not deployed and no initCode provided",
        "Include initCode for the first operation.",
        False,
    ),
    "AA21": (
        "Insufficient native token for prefund",
        "Fund the smart account with ETH for gas or use a paymaster.",
        True,
    ),
    "AA22": ("UserOp expired or not yet valid", "Check validAfter and validUntil.", False),
    "AA23": ("Account validation reverted", "Check validateUserOp and verificationGasLimit.", True),
    "AA24": ("Invalid signature", "Check the signing key, entry point and chain id.", False),
    "AA25": ("Invalid account nonce", "Refresh the nonce from the entry point and retry.", True),
    "AA26": ("Verification gas limit exceeded", "Raise verificationGasLimit.", True),
    "AA30": ("Paymaster not deployed", "Check the paymaster address for this network.", False),
    "AA31": ("Paymaster deposit too low", "The paymaster needs more funds deposited in the entry point.", False),
    "AA32": ("Paymaster expired or not yet valid", "Submit within the paymaster validity window.", False),
    "AA33": ("Paymaster validation reverted", "Check validatePaymasterUserOp and gas limits.", True),
    "AA34": ("Paymaster signature error", "Check the paymaster signature and authorization.", False),
    "AA36": ("Paymaster verification gas limit exceeded", "Raise paymasterVerificationGasLimit.", True),
    "AA40": ("Verification gas limit exceeded", "Raise verificationGasLimit.", True),
    "AA41": ("Too little verification gas", "Raise verificationGasLimit.", True),
    "AA50": ("Paymaster postOp reverted", "Contact the paymaster provider.", False),
    "AA51": ("Prefund below actual gas cost", "Bundler accounting issue; retry later.", False),
    "AA90": ("Invalid beneficiary address", "Bundler configuration issue.", False),
    "AA91": ("Failed to send fees to beneficiary", "Bundler configuration issue.", False),
    "AA92": ("Internal call only", "Do not call entry point internals directly.", False),
    "AA93": ("Invalid paymasterAndData format", "paymasterAndData must be empty or at least 20 bytes.", False),
    "AA94": ("Gas values overflow", "Reduce gas limits to fit 120 bits.", False),
    "AA95": ("Out of gas", "Raise the gas limits for the operation.", True),
    "AA96": ("Invalid aggregator address", "Use an aggregator implementing IAggregator.", False),
}

AA_CODE_RE = re.compile(r"AA(\d{2})")
MAX_RETRY_DELAY_SECONDS = 60.0


def parse_bundler_error(error: BaseException | str) -> ParsedBundlerError:
    text = str(error)
    match = AA_CODE_RE.search(text)
    code = f"AA{match.group(1)}" if match else None
    if code and code in AA_ERRORS:
        message, suggestion, retryable = AA_ERRORS[code]
        return ParsedBundlerError(
            message=message,
            suggestion=suggestion,
            should_retry=retryable,
            code=code,
            retry_delay_seconds=10.0 if retryable else None,
        )

    lowered = text.lower()
    if "allowance" in lowered or "erc20" in lowered:
        return ParsedBundlerError(
            message="Insufficient allowance",
            suggestion="The bundler may not see the approval yet. Wait a few seconds and retry.",
            should_retry=True,
            retry_delay_seconds=15.0,
        )
    if any(marker in lowered for marker in ("gas", "estimation", "simulation")):
        return ParsedBundlerError(
            message="Gas estimation failed",
            suggestion="Simulation of the operation failed. Try again shortly.",
            should_retry=True,
            retry_delay_seconds=5.0,
        )
    if any(marker in lowered for marker in ("state", "propagation", "sync")):
        return ParsedBundlerError(
            message="State synchronization issue",
            suggestion="The bundler may not have synced state yet. Wait a few seconds and retry.",
            should_retry=True,
            retry_delay_seconds=10.0,
        )
    return ParsedBundlerError(
        message=text,
        suggestion="Check the error details. If the issue persists, contact support.",
        should_retry=False,
    )


def retry_delay_for(error: BaseException | str, *, attempt: int, max_attempts: int) -> float | None:
    """Exponential backoff seeded by the parsed delay; None when the error should not be retried."""
    parsed = parse_bundler_error(error)
    if not parsed.should_retry or attempt >= max_attempts:
        return None
    base = parsed.retry_delay_seconds or 10.0
    return min(base * (2 ** max(0, attempt - 1)), MAX_RETRY_DELAY_SECONDS)


def describe_error(error: BaseException) -> str:
    if isinstance(error, OrchestratorError):
        return error.user_message
    parsed = parse_bundler_error(error)
    return f"{parsed.message}. {parsed.suggestion}"
