"""
Decode verifier revert data into a closed set of failure reasons.

Decoding is best-effort: selectors outside the table come back as OPAQUE.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from .calldata import selector
from .models import ExecutionFailureReason


ERROR_STRING_SELECTOR = "0x08c379a0"  # Error(string)
PANIC_SELECTOR = "0x4e487b71"         # Panic(uint256)

# Custom errors raised by the verifier contract and its OpenZeppelin bases
CUSTOM_ERROR_SIGNATURES: Dict[ExecutionFailureReason, str] = {
    ExecutionFailureReason.UNAUTHORIZED_RELAYER: "UnauthorizedRelayer()",
    ExecutionFailureReason.EXPIRED_DEADLINE: "ExpiredDeadline()",
    ExecutionFailureReason.INSUFFICIENT_BALANCE: "InsufficientBalance()",
    ExecutionFailureReason.INVALID_SIGNATURE: "InvalidSignature()",
    ExecutionFailureReason.EXECUTION_FAILED: "ExecutionFailed()",
    ExecutionFailureReason.ERC20_INSUFFICIENT_BALANCE: "ERC20InsufficientBalance(address,uint256,uint256)",
    ExecutionFailureReason.OWNABLE_UNAUTHORIZED_ACCOUNT: "OwnableUnauthorizedAccount(address)",
}

SELECTOR_TABLE: Dict[str, ExecutionFailureReason] = {
    selector(signature): reason for reason, signature in CUSTOM_ERROR_SIGNATURES.items()
}

PANIC_CODES: Dict[int, str] = {
    0x01: "assertion failed",
    0x11: "arithmetic overflow or underflow",
    0x12: "division by zero",
    0x21: "invalid enum value",
    0x22: "invalid storage byte array",
    0x31: "pop on empty array",
    0x32: "array index out of bounds",
    0x41: "out of memory",
    0x51: "call to uninitialized function",
}


@dataclass(frozen=True)
class DecodedRevert:
    reason: ExecutionFailureReason
    message: str
    data: Optional[str] = None


def _decode_error_string(body: str) -> Optional[str]:
    # body is the ABI-encoded (string) argument, without the selector
    try:
        length = int(body[64:128], 16)
        raw = bytes.fromhex(body[128:128 + length * 2])
        return raw.decode("utf-8", errors="replace")
    except ValueError:
        return None


def decode_revert(data: Optional[str]) -> DecodedRevert:
    """
    Map raw revert data to an ExecutionFailureReason.

    Args:
        data: 0x-prefixed revert data, or None when the ledger gave none

    Returns:
        DecodedRevert with a human-readable message
    """
    if not data or not isinstance(data, str) or len(data) < 10:
        return DecodedRevert(
            reason=ExecutionFailureReason.OPAQUE,
            message="Execution reverted without reason data",
            data=data,
        )

    data = data.lower()
    head, body = data[:10], data[10:]

    if head == ERROR_STRING_SELECTOR:
        text = _decode_error_string(body)
        return DecodedRevert(
            reason=ExecutionFailureReason.REVERT_STRING,
            message=f"Execution reverted: {text}" if text else "Execution reverted",
            data=data,
        )

    if head == PANIC_SELECTOR:
        try:
            code = int(body[:64], 16)
        except ValueError:
            code = -1
        meaning = PANIC_CODES.get(code, "unknown panic")
        return DecodedRevert(
            reason=ExecutionFailureReason.PANIC,
            message=f"Execution panicked (0x{max(code, 0):02x}): {meaning}",
            data=data,
        )

    reason = SELECTOR_TABLE.get(head)
    if reason is not None:
        return DecodedRevert(reason=reason, message=f"Execution reverted: {reason.value}", data=data)

    return DecodedRevert(
        reason=ExecutionFailureReason.OPAQUE,
        message=f"Execution reverted with unknown error {head}",
        data=data,
    )
