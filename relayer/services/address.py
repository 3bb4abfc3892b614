"""Helpers for validating ledger addresses and hex-encoded byte strings."""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Optional

from eth_utils import to_checksum_address

_EVM_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_HEX_BYTES_RE = re.compile(r"^0x(?:[a-fA-F0-9]{2})*$")

ZERO_ADDRESS = "0x" + "0" * 40


@lru_cache(maxsize=1024)
def is_valid_address(address: str) -> bool:
    """Return True for a 0x-prefixed 20-byte hex address.

    Mixed-case input must carry a valid EIP-55 checksum; all-lowercase and
    all-uppercase input is accepted as is.
    """

    if not isinstance(address, str) or not _EVM_ADDRESS_RE.fullmatch(address):
        return False
    body = address[2:]
    if body.islower() or body.isupper() or body.isdigit():
        return True
    return to_checksum_address(address) == address


def normalize_address(address: str) -> str:
    return address.lower()


def addresses_equal(left: Optional[str], right: Optional[str]) -> bool:
    if not left or not right:
        return False
    return left.lower() == right.lower()


def is_hex_bytes(value: str, *, length: Optional[int] = None) -> bool:
    """Return True when ``value`` is 0x-prefixed, even-length hex.

    ``length`` pins the decoded byte length.
    """

    if not isinstance(value, str) or not _HEX_BYTES_RE.fullmatch(value):
        return False
    if length is not None:
        return len(value) == 2 + length * 2
    return True


def parse_uint(value: object) -> Optional[int]:
    """Parse a non-negative integer from an int, decimal string or 0x hex string."""

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str):
        text = value.strip()
        try:
            if text.lower().startswith("0x"):
                parsed = int(text, 16)
            elif text.isdigit():
                parsed = int(text)
            else:
                return None
        except ValueError:
            return None
        return parsed if parsed >= 0 else None
    return None


__all__ = [
    "ZERO_ADDRESS",
    "is_valid_address",
    "normalize_address",
    "addresses_equal",
    "is_hex_bytes",
    "parse_uint",
]
