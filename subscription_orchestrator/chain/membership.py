from __future__ import annotations

import logging

from ..common import log_event
from .contracts import decode_uint, encode_balance_of, hex_data
from .rpc import JsonRpcClient


class MembershipEligibility:
    """Eligible for sponsored gas when the account holds a key of the membership lock."""

    def __init__(self, *, logger: logging.Logger, rpc: JsonRpcClient, lock_address: str | None) -> None:
        self._logger = logger
        self._rpc = rpc
        self._lock_address = (lock_address or "").strip() or None

    async def is_eligible(self, account: str) -> bool:
        if self._lock_address is None:
            return False

        raw = await self._rpc.call(
            "eth_call",
            [{"to": self._lock_address, "data": hex_data(encode_balance_of(account))}, "latest"],
        )
        keys = decode_uint(raw)
        log_event(
            self._logger,
            level="debug",
            event="membership_checked",
            message="Membership key balance read",
            account=account,
            keys=keys,
        )
        return keys > 0
