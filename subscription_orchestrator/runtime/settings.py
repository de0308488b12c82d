from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

DEFAULT_ENTRY_POINT = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"
DEFAULT_CREATION_CONTRACT = "0xba5502db2aC2cBff189965e991C07109B14eB3f5"
DEFAULT_DEPOSIT_TOKEN = "0x50c5725949A6F0c72E6C4a641F24049A917DB0Cb"
DEFAULT_PAYMASTER_TOKEN = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
DEFAULT_VERIFY_DELAYS = (2.0, 3.0, 4.0, 5.0, 6.0)


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_delays(value: Any, default: tuple[float, ...]) -> tuple[float, ...]:
    if value is None or str(value).strip() == "":
        return default
    delays: list[float] = []
    for part in str(value).split(","):
        parsed = to_float(part, -1.0)
        if parsed < 0:
            return default
        delays.append(parsed)
    return tuple(delays) or default


def _optional(name: str) -> str | None:
    return os.getenv(name, "").strip() or None


@dataclass(slots=True)
class AppSettings:
    rpc_url: str
    bundler_url: str
    entry_point: str
    chain_id: int
    private_key: str
    account_address: str | None
    account_factory_address: str | None
    deposit_token_address: str
    creation_contract_address: str
    sponsored_policy_id: str | None
    token_paymaster_policy_id: str | None
    token_paymaster_token: str
    membership_lock_address: str | None
    subgraph_url: str
    min_self_funded_gas_wei: int
    submit_timeout_seconds: float
    confirm_timeout_seconds: float
    approval_timeout_seconds: float
    approval_verify_delays: tuple[float, ...]
    poll_interval_seconds: float
    poll_max_attempts: int
    recovery_poll_attempts: int
    indexer_page_size: int
    indexing_grace_seconds: float
    ledger_max_age_seconds: float
    reconcile_interval_seconds: float
    error_backoff_seconds: float

    @classmethod
    def from_env(cls) -> "AppSettings":
        rpc_url = os.getenv("RPC_URL", "https://mainnet.base.org").strip()
        return cls(
            rpc_url=rpc_url,
            bundler_url=os.getenv("BUNDLER_URL", "").strip() or rpc_url,
            entry_point=os.getenv("ENTRY_POINT", DEFAULT_ENTRY_POINT).strip(),
            chain_id=max(1, to_int(os.getenv("CHAIN_ID"), 8453)),
            private_key=os.getenv("PRIVATE_KEY", ""),
            account_address=_optional("ACCOUNT_ADDRESS"),
            account_factory_address=_optional("ACCOUNT_FACTORY_ADDRESS"),
            deposit_token_address=os.getenv("DEPOSIT_TOKEN_ADDRESS", DEFAULT_DEPOSIT_TOKEN).strip(),
            creation_contract_address=os.getenv(
                "CREATION_CONTRACT_ADDRESS",
                DEFAULT_CREATION_CONTRACT,
            ).strip(),
            sponsored_policy_id=_optional("SPONSORED_POLICY_ID"),
            token_paymaster_policy_id=_optional("TOKEN_PAYMASTER_POLICY_ID"),
            token_paymaster_token=os.getenv("TOKEN_PAYMASTER_TOKEN", DEFAULT_PAYMASTER_TOKEN).strip(),
            membership_lock_address=_optional("MEMBERSHIP_LOCK_ADDRESS"),
            subgraph_url=os.getenv("SUBGRAPH_URL", "").strip(),
            min_self_funded_gas_wei=max(0, to_int(os.getenv("MIN_SELF_FUNDED_GAS_WEI"), 10**15)),
            submit_timeout_seconds=max(1.0, to_float(os.getenv("SUBMIT_TIMEOUT_SECONDS"), 60.0)),
            confirm_timeout_seconds=max(1.0, to_float(os.getenv("CONFIRM_TIMEOUT_SECONDS"), 120.0)),
            approval_timeout_seconds=max(1.0, to_float(os.getenv("APPROVAL_TIMEOUT_SECONDS"), 120.0)),
            approval_verify_delays=to_delays(os.getenv("APPROVAL_VERIFY_DELAYS"), DEFAULT_VERIFY_DELAYS),
            poll_interval_seconds=max(0.5, to_float(os.getenv("POLL_INTERVAL_SECONDS"), 10.0)),
            poll_max_attempts=max(1, to_int(os.getenv("POLL_MAX_ATTEMPTS"), 30)),
            recovery_poll_attempts=max(1, to_int(os.getenv("RECOVERY_POLL_ATTEMPTS"), 3)),
            indexer_page_size=max(1, to_int(os.getenv("INDEXER_PAGE_SIZE"), 50)),
            indexing_grace_seconds=max(0.0, to_float(os.getenv("INDEXING_GRACE_SECONDS"), 5.0)),
            ledger_max_age_seconds=max(60.0, to_float(os.getenv("LEDGER_MAX_AGE_SECONDS"), 86_400.0)),
            reconcile_interval_seconds=max(5.0, to_float(os.getenv("RECONCILE_INTERVAL_SECONDS"), 60.0)),
            error_backoff_seconds=max(0.2, to_float(os.getenv("ERROR_BACKOFF_SECONDS"), 2.0)),
        )
