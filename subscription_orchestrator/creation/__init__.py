from .allowance import AllowanceManager
from .errors import (
    ApprovalFailedError,
    ApprovalVerificationFailedError,
    DeploymentFailedError,
    DeploymentFundingRequiredError,
    DeploymentRequiredError,
    FundingError,
    InsufficientFundsError,
    InsufficientGasError,
    OperationRevertedError,
    OrchestratorError,
    SigningSupersededError,
    SponsorshipFailureError,
    SponsorshipMisconfiguredError,
    SubmissionFailedError,
    SubmissionTimeoutError,
    UnknownOperationError,
    WalletNotConnectedError,
    parse_bundler_error,
)
from .gas import GasPaymentStrategySelector, SubmissionOutcome
from .ledger import PendingOperationLedger
from .orchestrator import CreationOrchestrator
from .poller import ConfirmationFallbackPoller
from .preflight import PreflightChecker
from .recovery import RecoveryReconciler
from .types import (
    CreationAttemptState,
    CreationParameters,
    OperationRequest,
    PaymentContext,
    PendingOperation,
    RecoverySummary,
)

__all__ = [
    "AllowanceManager",
    "ApprovalFailedError",
    "ApprovalVerificationFailedError",
    "ConfirmationFallbackPoller",
    "CreationAttemptState",
    "CreationOrchestrator",
    "CreationParameters",
    "DeploymentFailedError",
    "DeploymentFundingRequiredError",
    "DeploymentRequiredError",
    "FundingError",
    "GasPaymentStrategySelector",
    "InsufficientFundsError",
    "InsufficientGasError",
    "OperationRequest",
    "OperationRevertedError",
    "OrchestratorError",
    "PaymentContext",
    "PendingOperation",
    "PendingOperationLedger",
    "PreflightChecker",
    "RecoveryReconciler",
    "RecoverySummary",
    "SigningSupersededError",
    "SponsorshipFailureError",
    "SponsorshipMisconfiguredError",
    "SubmissionFailedError",
    "SubmissionOutcome",
    "SubmissionTimeoutError",
    "UnknownOperationError",
    "WalletNotConnectedError",
    "parse_bundler_error",
]
