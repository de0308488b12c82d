from __future__ import annotations

from typing import Any, Sequence

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_utils import keccak, to_bytes, to_checksum_address

MAX_UINT256 = 2**256 - 1

ERC20_BALANCE_OF = "balanceOf(address)"
ERC20_ALLOWANCE = "allowance(address,address)"
ERC20_APPROVE = "approve(address,uint256)"
SUBSCRIBE = "subscribe(string,string,uint256,uint256)"
GET_HUB_INFO = "getHubInfo(uint256)"
GET_ME_TOKEN_INFO = "getMeTokenInfo(address)"
ACCOUNT_EXECUTE = "execute(address,uint256,bytes)"
FACTORY_CREATE_ACCOUNT = "createAccount(address,uint256)"
FACTORY_GET_ADDRESS = "getAddress(address,uint256)"
ENTRY_POINT_GET_NONCE = "getNonce(address,uint192)"

SUBSCRIBE_EVENT = "Subscribe(address,address,uint256,address,uint256,string,string,uint256)"
SUBSCRIBE_TOPIC = "0x" + keccak(text=SUBSCRIBE_EVENT).hex()

HUB_INFO_TYPES = [
    "uint256",
    "uint256",
    "uint256",
    "uint256",
    "uint256",
    "address",
    "address",
    "address",
    "bool",
    "bool",
    "bool",
]
HUB_INFO_VAULT_INDEX = 6

ME_TOKEN_INFO_TYPES = [
    "address",
    "uint256",
    "uint256",
    "uint256",
    "uint256",
    "uint256",
    "uint256",
    "address",
]


def selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


def _argument_types(signature: str) -> list[str]:
    inner = signature[signature.index("(") + 1 : signature.rindex(")")]
    return [part for part in inner.split(",") if part]


def encode_call(signature: str, args: Sequence[Any] = ()) -> bytes:
    return selector(signature) + abi_encode(_argument_types(signature), list(args))


def hex_data(data: bytes) -> str:
    return "0x" + data.hex()


def data_bytes(value: str | bytes | None) -> bytes:
    if value is None or value == "":
        return b""
    if isinstance(value, bytes):
        return value
    if value in {"0x", "0X"}:
        return b""
    return to_bytes(hexstr=value)


def encode_balance_of(account: str) -> bytes:
    return encode_call(ERC20_BALANCE_OF, [to_checksum_address(account)])


def encode_allowance(owner: str, spender: str) -> bytes:
    return encode_call(ERC20_ALLOWANCE, [to_checksum_address(owner), to_checksum_address(spender)])


def encode_approve(spender: str, amount: int = MAX_UINT256) -> bytes:
    return encode_call(ERC20_APPROVE, [to_checksum_address(spender), amount])


def encode_subscribe(name: str, symbol: str, hub_id: int, deposit_amount: int) -> bytes:
    return encode_call(SUBSCRIBE, [name, symbol, hub_id, deposit_amount])


def encode_get_hub_info(hub_id: int) -> bytes:
    return encode_call(GET_HUB_INFO, [hub_id])


def encode_get_me_token_info(asset: str) -> bytes:
    return encode_call(GET_ME_TOKEN_INFO, [to_checksum_address(asset)])


def encode_execute(target: str, value: int, data: bytes) -> bytes:
    return encode_call(ACCOUNT_EXECUTE, [to_checksum_address(target), value, data])


def encode_create_account(owner: str, salt: int = 0) -> bytes:
    return encode_call(FACTORY_CREATE_ACCOUNT, [to_checksum_address(owner), salt])


def encode_get_account_address(owner: str, salt: int = 0) -> bytes:
    return encode_call(FACTORY_GET_ADDRESS, [to_checksum_address(owner), salt])


def encode_get_nonce(sender: str, key: int = 0) -> bytes:
    return encode_call(ENTRY_POINT_GET_NONCE, [to_checksum_address(sender), key])


def decode_uint(raw: str | bytes) -> int:
    data = data_bytes(raw)
    if not data:
        return 0
    return int(abi_decode(["uint256"], data)[0])


def decode_address(raw: str | bytes) -> str:
    data = data_bytes(raw)
    return to_checksum_address(abi_decode(["address"], data)[0])


def decode_hub_vault(raw: str | bytes) -> str:
    values = abi_decode(HUB_INFO_TYPES, data_bytes(raw))
    return to_checksum_address(values[HUB_INFO_VAULT_INDEX])


def decode_me_token_owner(raw: str | bytes) -> str:
    values = abi_decode(ME_TOKEN_INFO_TYPES, data_bytes(raw))
    return to_checksum_address(values[0])


def topic_to_address(topic: str) -> str:
    return to_checksum_address("0x" + topic[-40:])


def find_subscribe_asset(logs: Sequence[dict[str, Any]], *, emitter: str | None = None) -> str | None:
    """Return the asset address from the first Subscribe event in ``logs``."""
    for entry in logs:
        topics = entry.get("topics") or []
        if not topics or str(topics[0]).lower() != SUBSCRIBE_TOPIC:
            continue
        if emitter and str(entry.get("address", "")).lower() != emitter.lower():
            continue
        if len(topics) < 2:
            continue
        return topic_to_address(str(topics[1]))
    return None
