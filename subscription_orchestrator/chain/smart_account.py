from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

from eth_utils import to_checksum_address

from ..common import log_event
from ..creation.errors import (
    DeploymentRequiredError,
    OperationRevertedError,
    OrchestratorError,
    SponsorshipFailureError,
    SubmissionError,
    SubmissionFailedError,
    parse_bundler_error,
)
from ..creation.types import ZERO_ADDRESS, OperationRequest, PaymentContext
from .contracts import (
    data_bytes,
    decode_address,
    decode_hub_vault,
    decode_me_token_owner,
    decode_uint,
    encode_allowance,
    encode_balance_of,
    encode_create_account,
    encode_execute,
    encode_get_account_address,
    encode_get_hub_info,
    encode_get_me_token_info,
    encode_get_nonce,
    find_subscribe_asset,
    hex_data,
)
from .rpc import JsonRpcClient, RpcMethodError
from .signer import CallbackSigner, SigningSlot, user_operation_hash

# SimpleAccount-compatible placeholder used while estimating gas
DUMMY_SIGNATURE = (
    "0xfffffffffffffffffffffffffffffff0000000000000000000000000000000007"
    "aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa1c"
)

DEPLOYMENT_MARKERS = ("aa13", "aa20", "initcode", "account not deployed")
SPONSORSHIP_MARKERS = ("paymaster", "policy", "sponsor")
PAYMASTER_CODE_RE = re.compile(r"AA3\d")
GAS_FIELDS = (
    "callGasLimit",
    "verificationGasLimit",
    "preVerificationGas",
    "maxFeePerGas",
    "maxPriorityFeePerGas",
)


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    text = str(value or "0").strip()
    return int(text, 16) if text.lower().startswith("0x") else int(text or 0)


def classify_submission_error(error: BaseException, context: PaymentContext | None) -> SubmissionError:
    text = error.detail if isinstance(error, RpcMethodError) else str(error)
    lowered = text.lower()
    parsed = parse_bundler_error(text)

    if any(marker in lowered for marker in DEPLOYMENT_MARKERS):
        return DeploymentRequiredError(text, suggestion=parsed.suggestion)
    uses_paymaster = context is not None and context.uses_paymaster
    if uses_paymaster and (PAYMASTER_CODE_RE.search(text) or any(m in lowered for m in SPONSORSHIP_MARKERS)):
        return SponsorshipFailureError(text, suggestion=parsed.suggestion)
    return SubmissionFailedError(text, suggestion=parsed.suggestion)


class SmartAccountClient:
    """Reads chain state and sends ERC-4337 user operations for one owner."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: JsonRpcClient,
        bundler: JsonRpcClient,
        signer: CallbackSigner,
        owner: str,
        entry_point: str,
        chain_id: int,
        creation_contract: str,
        account_address: str | None = None,
        factory_address: str | None = None,
        receipt_poll_interval_seconds: float = 2.0,
    ) -> None:
        self._logger = logger
        self._rpc = rpc
        self._bundler = bundler
        self._signer = signer
        self._owner = to_checksum_address(owner)
        self._entry_point = to_checksum_address(entry_point)
        self._chain_id = chain_id
        self._creation_contract = to_checksum_address(creation_contract)
        self._account_address = to_checksum_address(account_address) if account_address else None
        self._factory_address = to_checksum_address(factory_address) if factory_address else None
        self._receipt_poll_interval_seconds = max(0.1, receipt_poll_interval_seconds)
        self._signing = SigningSlot()
        self._deployed = False

    async def connect(self) -> None:
        await self._rpc.connect()
        await self._bundler.connect()
        chain_id = _to_int(await self._rpc.call("eth_chainId"))
        if chain_id != self._chain_id:
            raise RuntimeError(f"RPC chain id {chain_id} does not match configured chain id {self._chain_id}.")
        account = await self.account_address()
        log_event(
            self._logger,
            level="info",
            event="smart_account_ready",
            message="Smart account client connected",
            account=account,
            chain_id=chain_id,
        )

    async def close(self) -> None:
        await self._rpc.close()
        await self._bundler.close()

    async def account_address(self) -> str:
        if self._account_address is None:
            if self._factory_address is None:
                raise RuntimeError("ACCOUNT_ADDRESS or ACCOUNT_FACTORY_ADDRESS must be configured.")
            raw = await self._eth_call(self._factory_address, encode_get_account_address(self._owner, 0))
            self._account_address = decode_address(raw)
        return self._account_address

    async def read_token_balance(self, token: str, account: str) -> int:
        return decode_uint(await self._eth_call(token, encode_balance_of(account)))

    async def read_native_balance(self, account: str) -> int:
        return _to_int(await self._rpc.call("eth_getBalance", [to_checksum_address(account), "latest"]))

    async def read_allowance(self, token: str, owner: str, spender: str) -> int:
        return decode_uint(await self._eth_call(token, encode_allowance(owner, spender)))

    async def read_asset_owner(self, asset: str) -> str:
        raw = await self._eth_call(self._creation_contract, encode_get_me_token_info(asset))
        return decode_me_token_owner(raw)

    async def read_hub_vault(self, hub_id: int) -> str | None:
        vault = decode_hub_vault(await self._eth_call(self._creation_contract, encode_get_hub_info(hub_id)))
        if vault.lower() == ZERO_ADDRESS:
            return None
        return vault

    async def read_created_asset(self, transaction_hash: str) -> str | None:
        receipt = await self._rpc.call("eth_getTransactionReceipt", [transaction_hash])
        if not isinstance(receipt, dict):
            return None
        return find_subscribe_asset(receipt.get("logs") or [], emitter=self._creation_contract)

    async def is_deployed(self, account: str) -> bool:
        if self._deployed:
            return True
        code = await self._rpc.call("eth_getCode", [account, "latest"])
        self._deployed = bool(data_bytes(code))
        return self._deployed

    async def submit(self, request: OperationRequest, context: PaymentContext | None) -> str:
        try:
            user_op = await self._build_user_operation(request, context)
            digest = user_operation_hash(user_op, entry_point=self._entry_point, chain_id=self._chain_id)
            user_op["signature"] = await self._signing.run(
                lambda on_success, on_error: self._signer.request_signature(digest, on_success, on_error)
            )
            handle = await self._bundler.call("eth_sendUserOperation", [user_op, self._entry_point])
        except OrchestratorError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as error:
            classified = classify_submission_error(error, context)
            log_event(
                self._logger,
                level="warning",
                event="user_operation_rejected",
                message="User operation submission failed",
                operation=request.label,
                payment_mode=context.mode if context else "self_funded",
                error_code=classified.code,
                error=str(error),
            )
            raise classified from error

        if not isinstance(handle, str) or not handle:
            raise SubmissionFailedError(f"Bundler returned an invalid user operation hash: {handle!r}")
        log_event(
            self._logger,
            level="info",
            event="user_operation_sent",
            message="User operation accepted by bundler",
            operation=request.label,
            operation_handle=handle,
        )
        return handle

    async def wait_for_receipt(self, handle: str) -> str:
        while True:
            try:
                receipt = await self._bundler.call("eth_getUserOperationReceipt", [handle])
            except asyncio.CancelledError:
                raise
            except Exception as error:
                log_event(
                    self._logger,
                    level="debug",
                    event="receipt_poll_failed",
                    message="User operation receipt lookup failed",
                    operation_handle=handle,
                    error=str(error),
                )
                receipt = None

            if isinstance(receipt, dict):
                if receipt.get("success") is False:
                    reason = str(receipt.get("reason") or "reverted")
                    raise OperationRevertedError(f"User operation {handle} reverted: {reason}")
                inner = receipt.get("receipt") or {}
                transaction_hash = inner.get("transactionHash") or receipt.get("transactionHash")
                if transaction_hash:
                    return str(transaction_hash)

            await asyncio.sleep(self._receipt_poll_interval_seconds)

    async def _eth_call(self, to: str, data: bytes) -> str:
        return await self._rpc.call("eth_call", [{"to": to_checksum_address(to), "data": hex_data(data)}, "latest"])

    async def _build_user_operation(
        self,
        request: OperationRequest,
        context: PaymentContext | None,
    ) -> dict[str, Any]:
        sender = await self.account_address()
        nonce = decode_uint(await self._eth_call(self._entry_point, encode_get_nonce(sender, 0)))

        init_code = "0x"
        if not await self.is_deployed(sender):
            if self._factory_address is None:
                raise DeploymentRequiredError(f"Account {sender} is not deployed and no factory is configured (AA20).")
            init_code = hex_data(data_bytes(self._factory_address) + encode_create_account(self._owner, 0))

        user_op: dict[str, Any] = {
            "sender": sender,
            "nonce": hex(nonce),
            "initCode": init_code,
            "callData": hex_data(encode_execute(request.target, request.value, request.data)),
            "paymasterAndData": "0x",
            "signature": DUMMY_SIGNATURE,
        }

        if context is not None and context.uses_paymaster:
            await self._apply_paymaster(user_op, context)
        else:
            await self._apply_self_funded_gas(user_op)
        return user_op

    async def _apply_paymaster(self, user_op: dict[str, Any], context: PaymentContext) -> None:
        params: dict[str, Any] = {
            "policyId": context.policy_id,
            "entryPoint": self._entry_point,
            "dummySignature": DUMMY_SIGNATURE,
            "userOperation": {
                "sender": user_op["sender"],
                "nonce": user_op["nonce"],
                "initCode": user_op["initCode"],
                "callData": user_op["callData"],
            },
        }
        if context.mode == "token_paymaster" and context.token:
            params["erc20Context"] = {"tokenAddress": context.token}

        sponsored = await self._bundler.call("alchemy_requestGasAndPaymasterAndData", [params])
        if not isinstance(sponsored, dict) or not sponsored.get("paymasterAndData"):
            raise SponsorshipFailureError(f"Paymaster returned no sponsorship data for policy {context.policy_id}.")
        user_op["paymasterAndData"] = sponsored["paymasterAndData"]
        for key in GAS_FIELDS:
            if key in sponsored:
                user_op[key] = sponsored[key]

    async def _apply_self_funded_gas(self, user_op: dict[str, Any]) -> None:
        block, priority_fee = await asyncio.gather(
            self._rpc.call("eth_getBlockByNumber", ["latest", False]),
            self._rpc.call("eth_maxPriorityFeePerGas"),
        )
        base_fee = _to_int((block or {}).get("baseFeePerGas"))
        priority = _to_int(priority_fee)
        user_op["maxPriorityFeePerGas"] = hex(priority)
        user_op["maxFeePerGas"] = hex(base_fee * 2 + priority)

        estimate = await self._bundler.call("eth_estimateUserOperationGas", [user_op, self._entry_point])
        for key in ("callGasLimit", "verificationGasLimit", "preVerificationGas"):
            user_op[key] = hex(_to_int((estimate or {}).get(key)))
