"""
Intent validation.

Pure checks on an incoming request body; nothing here touches the network.
Checks run in a fixed order and stop at the first failure.
"""

import time
from typing import Any, Callable, Mapping, Optional

from relayer.services.address import (
    addresses_equal,
    is_hex_bytes,
    is_valid_address,
    normalize_address,
    parse_uint,
)

from .errors import (
    ExpiredDeadlineError,
    InvalidAddressError,
    InvalidFieldError,
    InvalidPayloadError,
    InvalidSignatureError,
    MissingFieldError,
    UnsupportedTargetError,
    ValidationError,
)
from .models import IntentKind, Signature, SignedIntent


# Field names used by the first relayer release and its SDK
LEGACY_ALIASES = {
    "functionSignature": "payload",
    "nonce": "declaredNonce",
    "contractAddress": "submitterContractAddress",
}

VALID_V = (27, 28)

UINT256_MAX = 2**256 - 1

ZERO_WORD = "0x" + "0" * 64

# Placeholder signature used when estimating without one
PLACEHOLDER_SIGNATURE = Signature(r=ZERO_WORD, s=ZERO_WORD, v=27)

_REQUIRED_BY_KIND = {
    IntentKind.META_TRANSACTION: ("userAddress", "payload"),
    IntentKind.NATIVE_TRANSFER: ("userAddress", "to", "amount", "deadline"),
}

_SIGNATURE_FIELDS = ("r", "s", "v")


def _canonical(request: Mapping[str, Any]) -> dict:
    body = dict(request)
    for legacy, current in LEGACY_ALIASES.items():
        if legacy in body and current not in body:
            body[current] = body.pop(legacy)
    return body


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _intent_kind(body: Mapping[str, Any]) -> IntentKind:
    raw = body.get("kind")
    if raw is None:
        return IntentKind.NATIVE_TRANSFER if "deadline" in body else IntentKind.META_TRANSACTION
    try:
        return IntentKind(raw)
    except ValueError:
        raise InvalidFieldError(f"Unknown intent kind: {raw}", field="kind")


def _check_required(body: Mapping[str, Any], kind: IntentKind, *, require_signature: bool) -> None:
    fields = _REQUIRED_BY_KIND[kind] + (_SIGNATURE_FIELDS if require_signature else ())
    for name in fields:
        if _is_missing(body.get(name)):
            raise MissingFieldError(name)


def _check_addresses(
    body: Mapping[str, Any],
    expected_contract: Optional[str],
    expected_network: Optional[str],
) -> None:
    for name in ("userAddress", "to", "submitterContractAddress"):
        value = body.get(name)
        if value is None:
            continue
        # The address helper is cached and only takes strings
        if not isinstance(value, str) or not is_valid_address(value):
            raise InvalidAddressError(f"{name} is not a valid address: {value}", field=name)

    contract = body.get("submitterContractAddress")
    if expected_contract and contract is not None and not addresses_equal(contract, expected_contract):
        raise UnsupportedTargetError(
            "Invalid contract address",
            field="submitterContractAddress",
        )

    network = body.get("network")
    if expected_network and network is not None and str(network).lower() != expected_network.lower():
        raise UnsupportedTargetError(f"Unsupported network: {network}", field="network")


def _check_payload(body: Mapping[str, Any], kind: IntentKind) -> str:
    payload = body.get("payload")
    if payload is None and kind is IntentKind.NATIVE_TRANSFER:
        return "0x"
    if not is_hex_bytes(payload):
        raise InvalidPayloadError(
            "payload must be 0x-prefixed hex with an even number of digits",
            field="payload",
        )
    return payload.lower()


def _parse_uint_field(body: Mapping[str, Any], name: str) -> Optional[int]:
    raw = body.get(name)
    if raw is None:
        return None
    parsed = parse_uint(raw)
    if parsed is None:
        raise InvalidFieldError(f"{name} must be a non-negative integer", field=name)
    if parsed > UINT256_MAX:
        raise InvalidFieldError(f"{name} does not fit in uint256", field=name)
    return parsed


def _check_signature(body: Mapping[str, Any]) -> Signature:
    r, s, v = body.get("r"), body.get("s"), body.get("v")
    if not is_hex_bytes(r, length=32):
        raise InvalidSignatureError("r must be exactly 32 bytes of hex", field="r")
    if not is_hex_bytes(s, length=32):
        raise InvalidSignatureError("s must be exactly 32 bytes of hex", field="s")
    parsed_v = parse_uint(v)
    if parsed_v not in VALID_V:
        raise InvalidSignatureError("v must be 27 or 28", field="v")
    return Signature(r=r.lower(), s=s.lower(), v=parsed_v)


def _validate(
    request: Mapping[str, Any],
    *,
    require_signature: bool,
    now: Optional[Callable[[], float]],
    expected_contract: Optional[str],
    expected_network: Optional[str],
) -> SignedIntent:
    if not isinstance(request, Mapping):
        raise ValidationError("Request body must be a JSON object")

    body = _canonical(request)
    kind = _intent_kind(body)

    # 1. Required fields
    _check_required(body, kind, require_signature=require_signature)

    # 2. Addresses and target
    _check_addresses(body, expected_contract, expected_network)

    # 3. Payload and numeric fields
    payload = _check_payload(body, kind)
    declared_nonce = _parse_uint_field(body, "declaredNonce")
    amount = _parse_uint_field(body, "amount")
    deadline = _parse_uint_field(body, "deadline")

    # 4. Signature
    if require_signature or any(not _is_missing(body.get(f)) for f in _SIGNATURE_FIELDS):
        signature = _check_signature(body)
    else:
        signature = PLACEHOLDER_SIGNATURE

    # 5. Deadline
    if kind is IntentKind.NATIVE_TRANSFER:
        clock = now or time.time
        if deadline is None or deadline <= int(clock()):
            raise ExpiredDeadlineError("Intent deadline has already passed", field="deadline")

    to_address = body.get("to")
    contract = body.get("submitterContractAddress")
    return SignedIntent(
        kind=kind,
        user_address=normalize_address(body["userAddress"]),
        payload=payload,
        signature=signature,
        declared_nonce=declared_nonce,
        to_address=normalize_address(to_address) if to_address else None,
        amount=amount,
        deadline=deadline,
        contract_address=normalize_address(contract) if contract else None,
        network=body.get("network"),
    )


def validate_intent(
    request: Mapping[str, Any],
    *,
    now: Optional[Callable[[], float]] = None,
    expected_contract: Optional[str] = None,
    expected_network: Optional[str] = None,
) -> SignedIntent:
    """
    Validate a signed-intent request body.

    Args:
        request: Decoded JSON body
        now: Clock returning unix seconds (default: time.time)
        expected_contract: Reject bodies naming a different verifier contract
        expected_network: Reject bodies naming a different network

    Returns:
        The validated SignedIntent

    Raises:
        ValidationError: On the first failed check
    """
    return _validate(
        request,
        require_signature=True,
        now=now,
        expected_contract=expected_contract,
        expected_network=expected_network,
    )


def validate_estimate_request(
    request: Mapping[str, Any],
    *,
    now: Optional[Callable[[], float]] = None,
    expected_contract: Optional[str] = None,
    expected_network: Optional[str] = None,
) -> SignedIntent:
    """Validate an estimate-fee body; the signature is optional."""
    return _validate(
        request,
        require_signature=False,
        now=now,
        expected_contract=expected_contract,
        expected_network=expected_network,
    )
