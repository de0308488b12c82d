from __future__ import annotations

import logging

from ..common import log_event
from .capabilities import BalanceReader
from .errors import InsufficientFundsError


class PreflightChecker:
    def __init__(self, *, logger: logging.Logger, balances: BalanceReader, deposit_token: str) -> None:
        self._logger = logger
        self._balances = balances
        self._deposit_token = deposit_token

    async def check(self, initiator: str, amount: int) -> int | None:
        """Return the observed deposit balance, or None when nothing is deposited."""
        if amount <= 0:
            return None

        available = await self._balances.read_token_balance(self._deposit_token, initiator)
        if available < amount:
            log_event(
                self._logger,
                level="warning",
                event="preflight_insufficient_funds",
                message="Deposit balance below requested amount",
                initiator=initiator,
                required=str(amount),
                available=str(available),
            )
            raise InsufficientFundsError(required=amount, available=available, address=initiator)
        return available
