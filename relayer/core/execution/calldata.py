"""
Calldata builders for the verifier contract.
"""

from __future__ import annotations

from eth_utils import keccak

from .models import IntentKind, SignedIntent


EXECUTE_META_TRANSACTION_SIGNATURE = "executeMetaTransaction(address,bytes,bytes32,bytes32,uint8)"
EXECUTE_NATIVE_TRANSFER_SIGNATURE = (
    "executeGaslessPOLTransfer(address,address,uint256,uint256,bytes32,bytes32,uint8)"
)
AUTHORIZED_RELAYERS_SIGNATURE = "authorizedRelayers(address)"
NONCES_SIGNATURE = "nonces(address)"


def _strip_0x(value: str) -> str:
    return value[2:] if value.startswith("0x") else value


def _encode_uint(value: int) -> str:
    if value < 0:
        raise ValueError("Value must be non-negative")
    if value >= 2**256:
        raise ValueError("Value does not fit in uint256")
    return format(value, "064x")


def _encode_address(address: str) -> str:
    addr = _strip_0x(address).lower()
    if len(addr) != 40:
        raise ValueError(f"Invalid address length: {address}")
    return addr.rjust(64, "0")


def _encode_bytes32(value: str) -> str:
    word = _strip_0x(value).lower()
    if len(word) != 64:
        raise ValueError(f"Expected 32 bytes, got {len(word) // 2}")
    return word


def _encode_bytes(data: str) -> str:
    hex_data = _strip_0x(data)
    if len(hex_data) % 2 != 0:
        raise ValueError("Byte data must have an even-length hex string")
    data_len = len(hex_data) // 2
    padded_len = ((data_len + 31) // 32) * 32
    padding = "0" * ((padded_len - data_len) * 2)
    return _encode_uint(data_len) + hex_data + padding


def selector(signature: str) -> str:
    """4-byte function or error selector, 0x-prefixed."""
    return "0x" + keccak(text=signature)[:4].hex()


def build_execute_meta_transaction(intent: SignedIntent) -> str:
    """
    Build calldata for executeMetaTransaction(address,bytes,bytes32,bytes32,uint8).
    """
    sig = intent.signature
    head = (
        _encode_address(intent.user_address)
        + _encode_uint(5 * 32)  # offset to bytes payload
        + _encode_bytes32(sig.r)
        + _encode_bytes32(sig.s)
        + _encode_uint(sig.v)
    )
    tail = _encode_bytes(intent.payload)
    return selector(EXECUTE_META_TRANSACTION_SIGNATURE) + head + tail


def build_execute_native_transfer(intent: SignedIntent) -> str:
    """
    Build calldata for executeGaslessPOLTransfer(address,address,uint256,uint256,bytes32,bytes32,uint8).
    """
    if intent.to_address is None or intent.amount is None or intent.deadline is None:
        raise ValueError("Native transfer intent is missing to, amount or deadline")
    sig = intent.signature
    return selector(EXECUTE_NATIVE_TRANSFER_SIGNATURE) + (
        _encode_address(intent.user_address)
        + _encode_address(intent.to_address)
        + _encode_uint(intent.amount)
        + _encode_uint(intent.deadline)
        + _encode_bytes32(sig.r)
        + _encode_bytes32(sig.s)
        + _encode_uint(sig.v)
    )


def build_intent_call(intent: SignedIntent) -> str:
    """Calldata that executes ``intent`` on the verifier contract."""
    if intent.kind is IntentKind.NATIVE_TRANSFER:
        return build_execute_native_transfer(intent)
    return build_execute_meta_transaction(intent)


def build_authorized_relayers_call(relayer: str) -> str:
    return selector(AUTHORIZED_RELAYERS_SIGNATURE) + _encode_address(relayer)


def build_nonces_call(owner: str) -> str:
    return selector(NONCES_SIGNATURE) + _encode_address(owner)


def decode_uint(result: str) -> int:
    """Decode a single uint256 return value."""
    body = _strip_0x(result or "")
    if not body:
        raise ValueError("Empty return data")
    return int(body[:64], 16)


def decode_bool(result: str) -> bool:
    return decode_uint(result) != 0
