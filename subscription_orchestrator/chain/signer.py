from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Protocol

from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak, to_checksum_address

from ..common import log_event
from ..creation.errors import SigningSupersededError
from .contracts import data_bytes

SuccessCallback = Callable[[str], None]
ErrorCallback = Callable[[BaseException], None]


class CallbackSigner(Protocol):
    """Signs out of band and reports through exactly one of the callbacks."""

    def request_signature(
        self,
        digest: bytes,
        on_success: SuccessCallback,
        on_error: ErrorCallback,
    ) -> Awaitable[None] | None: ...


class SigningSlot:
    """Awaitable bridge over a callback signer with a single live request.

    A new request rejects the unresolved previous one with
    ``SigningSupersededError``; a late callback from the old request is
    ignored and can never settle the new one.
    """

    def __init__(self) -> None:
        self._pending: asyncio.Future[Any] | None = None

    @property
    def busy(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def run(self, start: Callable[[SuccessCallback, ErrorCallback], Any]) -> Any:
        loop = asyncio.get_running_loop()
        previous = self._pending
        if previous is not None and not previous.done():
            previous.set_exception(SigningSupersededError("Signing request superseded by a newer request."))

        future: asyncio.Future[Any] = loop.create_future()
        self._pending = future

        def settle(apply: Callable[[], None]) -> None:
            if not future.done():
                apply()

        def on_success(result: Any) -> None:
            loop.call_soon_threadsafe(settle, lambda: future.set_result(result))

        def on_error(error: BaseException) -> None:
            loop.call_soon_threadsafe(settle, lambda: future.set_exception(error))

        try:
            started = start(on_success, on_error)
            if inspect.isawaitable(started):
                await started
        except asyncio.CancelledError:
            raise
        except Exception as error:
            settle(lambda: future.set_exception(error))

        try:
            return await future
        finally:
            if self._pending is future:
                self._pending = None


def user_operation_hash(user_op: dict[str, Any], *, entry_point: str, chain_id: int) -> bytes:
    """ERC-4337 v0.6 user operation hash."""
    packed = abi_encode(
        [
            "address",
            "uint256",
            "bytes32",
            "bytes32",
            "uint256",
            "uint256",
            "uint256",
            "uint256",
            "uint256",
            "bytes32",
        ],
        [
            to_checksum_address(user_op["sender"]),
            _quantity(user_op["nonce"]),
            keccak(data_bytes(user_op.get("initCode"))),
            keccak(data_bytes(user_op.get("callData"))),
            _quantity(user_op["callGasLimit"]),
            _quantity(user_op["verificationGasLimit"]),
            _quantity(user_op["preVerificationGas"]),
            _quantity(user_op["maxFeePerGas"]),
            _quantity(user_op["maxPriorityFeePerGas"]),
            keccak(data_bytes(user_op.get("paymasterAndData"))),
        ],
    )
    return keccak(
        abi_encode(
            ["bytes32", "address", "uint256"],
            [keccak(packed), to_checksum_address(entry_point), chain_id],
        )
    )


def _quantity(value: Any) -> int:
    if isinstance(value, int):
        return value
    text = str(value or "0").strip()
    return int(text, 16) if text.lower().startswith("0x") else int(text)


class LocalOwnerSigner:
    """Owner key held in process; signs the user-op hash as an EIP-191 message."""

    def __init__(self, *, logger: logging.Logger, private_key: str) -> None:
        self._logger = logger
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    async def request_signature(
        self,
        digest: bytes,
        on_success: SuccessCallback,
        on_error: ErrorCallback,
    ) -> None:
        try:
            signed = await asyncio.to_thread(self._account.sign_message, encode_defunct(primitive=digest))
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="error",
                event="owner_signature_failed",
                message="Owner key failed to sign user operation",
                error=str(error),
            )
            on_error(error)
            return

        signature = signed.signature.hex()
        on_success(signature if signature.startswith("0x") else f"0x{signature}")
