from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Literal

OperationStatus = Literal["pending", "confirming", "confirmed", "failed", "timeout"]
AttemptStatus = Literal[
    "idle",
    "checking_balance",
    "approving",
    "creating",
    "waiting_confirmation",
    "polling_status",
    "success",
    "error",
]
PaymentMode = Literal["sponsored", "token_paymaster", "self_funded"]

OPERATION_STATUSES: tuple[str, ...] = ("pending", "confirming", "confirmed", "failed", "timeout")

# failed is terminal and handled separately
STATUS_RANK: dict[str, int] = {
    "pending": 0,
    "confirming": 1,
    "timeout": 2,
    "confirmed": 3,
}

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def now_epoch_seconds() -> float:
    return time.time()


def same_address(left: str | None, right: str | None) -> bool:
    if not left or not right:
        return False
    return left.strip().lower() == right.strip().lower()


@dataclass(slots=True, frozen=True)
class CreationParameters:
    name: str
    symbol: str
    hub_id: int
    deposit_amount: int

    def to_dict(self) -> dict[str, Any]:
        # amounts can exceed JSON-safe integers
        return {
            "name": self.name,
            "symbol": self.symbol,
            "hub_id": self.hub_id,
            "deposit_amount": str(self.deposit_amount),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CreationParameters":
        return cls(
            name=str(payload.get("name", "")),
            symbol=str(payload.get("symbol", "")),
            hub_id=int(payload.get("hub_id") or 0),
            deposit_amount=int(str(payload.get("deposit_amount") or 0)),
        )


@dataclass(slots=True)
class PendingOperation:
    operation_handle: str
    initiator: str
    parameters: CreationParameters
    created_at: float = field(default_factory=now_epoch_seconds)
    status: OperationStatus = "pending"
    transaction_hash: str | None = None
    result_address: str | None = None
    error_message: str | None = None

    def age_seconds(self, now: float | None = None) -> float:
        return (now if now is not None else now_epoch_seconds()) - self.created_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_handle": self.operation_handle,
            "initiator": self.initiator,
            "parameters": self.parameters.to_dict(),
            "created_at": self.created_at,
            "status": self.status,
            "transaction_hash": self.transaction_hash,
            "result_address": self.result_address,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PendingOperation":
        status = str(payload.get("status") or "pending")
        if status not in OPERATION_STATUSES:
            status = "pending"
        return cls(
            operation_handle=str(payload["operation_handle"]),
            initiator=str(payload.get("initiator", "")),
            parameters=CreationParameters.from_dict(payload.get("parameters") or {}),
            created_at=float(payload.get("created_at") or 0.0),
            status=status,  # type: ignore[arg-type]
            transaction_hash=payload.get("transaction_hash") or None,
            result_address=payload.get("result_address") or None,
            error_message=payload.get("error_message") or None,
        )


@dataclass(slots=True, frozen=True)
class CreationAttemptState:
    status: AttemptStatus = "idle"
    message: str = ""
    progress: int = 0
    operation_handle: str | None = None
    transaction_hash: str | None = None
    result_address: str | None = None
    record_id: str | None = None
    error: str | None = None
    unresolved: bool = False

    def evolve(self, **changes: Any) -> "CreationAttemptState":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class OperationRequest:
    target: str
    data: bytes
    value: int = 0
    label: str = ""


@dataclass(slots=True, frozen=True)
class PaymentContext:
    mode: PaymentMode
    policy_id: str | None = None
    token: str | None = None

    @property
    def uses_paymaster(self) -> bool:
        return self.mode != "self_funded"


@dataclass(slots=True, frozen=True)
class RecoverySummary:
    scanned: int
    expired: int
    skipped: int
    resolved: int
    unresolved: int

    def to_dict(self) -> dict[str, int]:
        return asdict(self)
