"""
Error Classification

Defines the relay's error taxonomy. Every error knows its category, whether the
pipeline may retry it, and the reason code written to the status store.
"""

from enum import Enum
from typing import Any, Dict, Optional

from .models import ExecutionFailureReason, FailureReason


class ErrorCategory(str, Enum):
    """Categories of errors for retry decisions."""

    VALIDATION = "validation"         # Malformed client input
    AUTHORIZATION = "authorization"   # Relay not permitted or underfunded
    CONTENTION = "contention"         # Stale nonce
    TRANSIENT = "transient"           # Timeouts, RPC hiccups, fee-query failures
    EXECUTION = "execution"           # Verifier rejected the call
    FATAL = "fatal"                   # Invariant violations, exhausted retries


class RelayError(Exception):
    """Base class for every error the relay reports to clients."""

    category: ErrorCategory = ErrorCategory.FATAL
    retryable: bool = False
    reason: str = FailureReason.INTERNAL_ERROR.value

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# Client input errors
class ValidationError(RelayError):
    """Request rejected before any network call."""

    category = ErrorCategory.VALIDATION
    reason = "InvalidRequest"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, details={"field": field} if field else None)
        self.field = field


class MissingFieldError(ValidationError):
    reason = "MissingField"

    def __init__(self, field: str):
        super().__init__(f"Missing required field: {field}", field=field)


class InvalidAddressError(ValidationError):
    reason = "InvalidAddress"


class InvalidPayloadError(ValidationError):
    reason = "InvalidPayload"


class InvalidFieldError(ValidationError):
    reason = "InvalidField"


class InvalidSignatureError(ValidationError):
    reason = "InvalidSignature"


class ExpiredDeadlineError(ValidationError):
    reason = "ExpiredDeadline"


class UnsupportedTargetError(ValidationError):
    """Contract address or network does not match this relay."""

    reason = "UnsupportedTarget"


# Authorization errors
class AuthorizationError(RelayError):
    category = ErrorCategory.AUTHORIZATION


class UnauthorizedSubmitterError(AuthorizationError):
    reason = FailureReason.UNAUTHORIZED_SUBMITTER.value

    def __init__(self, submitter: str):
        super().__init__(
            f"Relayer {submitter} is not authorized by the verifier contract",
            details={"submitter": submitter},
        )


class SubmitterUnderfundedError(AuthorizationError):
    reason = FailureReason.SUBMITTER_UNDERFUNDED.value

    def __init__(self, submitter: str, balance: Optional[int] = None, reserve: Optional[int] = None):
        if balance is not None and reserve is not None:
            message = (
                f"Relayer {submitter} balance {balance} wei is below "
                f"the operating reserve of {reserve} wei"
            )
        else:
            message = f"Relayer {submitter} cannot pay for execution"
        super().__init__(
            message,
            details={"submitter": submitter, "balance": balance, "reserve": reserve},
        )


# Contention errors
class StaleNonceError(RelayError):
    category = ErrorCategory.CONTENTION
    reason = FailureReason.STALE_NONCE.value

    def __init__(self, user: str, declared: int, current: int):
        super().__init__(
            f"Declared nonce {declared} does not match current nonce {current} for {user}",
            details={"user": user, "declared": declared, "current": current},
        )
        self.declared = declared
        self.current = current


# Transient errors
class TransientLedgerError(RelayError):
    """Base class for errors the pipeline retries."""

    category = ErrorCategory.TRANSIENT
    retryable = True
    reason = FailureReason.RETRIES_EXHAUSTED.value


class LedgerUnavailableError(TransientLedgerError):
    """The ledger endpoint could not be reached or answered with an RPC error."""


class FeeQueryError(TransientLedgerError):
    pass


class EstimationError(TransientLedgerError):
    pass


class SubmissionError(TransientLedgerError):
    pass


class SubmissionTimeoutError(TransientLedgerError):
    def __init__(self, timeout: float):
        super().__init__(f"Submission timed out after {timeout:g}s", details={"timeout": timeout})


class ConfirmationTimeoutError(TransientLedgerError):
    def __init__(self, handle: str, timeout: float):
        super().__init__(
            f"Confirmation of {handle} timed out after {timeout:g}s",
            details={"handle": handle, "timeout": timeout},
        )
        self.handle = handle


# Ledger execution errors
class ExecutionRevertedError(RelayError):
    """The verifier rejected the call; never retried."""

    category = ErrorCategory.EXECUTION
    reason = FailureReason.EXECUTION_REVERTED.value

    def __init__(
        self,
        failure: ExecutionFailureReason,
        message: Optional[str] = None,
        revert_data: Optional[str] = None,
        ledger_handle: Optional[str] = None,
    ):
        super().__init__(
            message or f"Execution reverted: {failure.value}",
            details={"failure": failure.value, "revertData": revert_data},
        )
        self.failure = failure
        self.revert_data = revert_data
        self.ledger_handle = ledger_handle


# Fatal errors
class FatalPipelineError(RelayError):
    category = ErrorCategory.FATAL


class ExecutionCostTooHighError(FatalPipelineError):
    reason = FailureReason.EXECUTION_COST_TOO_HIGH.value

    def __init__(self, gas_limit: int, ceiling: int):
        super().__init__(
            f"Gas limit {gas_limit} exceeds the ceiling of {ceiling}",
            details={"gasLimit": gas_limit, "ceiling": ceiling},
        )
        self.gas_limit = gas_limit
        self.ceiling = ceiling


class RetriesExhaustedError(FatalPipelineError):
    reason = FailureReason.RETRIES_EXHAUSTED.value

    def __init__(self, attempts: int, last_error: Optional[Exception]):
        detail = str(last_error) if last_error else "no attempt completed"
        super().__init__(
            f"Gave up after {attempts} attempts: {detail}",
            details={"attempts": attempts},
        )
        self.attempts = attempts
        self.last_error = last_error


_UNDERFUNDED_PATTERNS = (
    "insufficient funds for gas",
    "insufficient funds for intrinsic",
    "sender doesn't have enough funds",
)

_REVERT_PATTERNS = (
    "execution reverted",
    "revert",
)


def classify_rpc_error(message: str) -> ErrorCategory:
    """
    Classify a JSON-RPC error message returned by a node.

    Send-time node rejections such as "nonce too low" or "replacement
    transaction underpriced" are transient: the next attempt re-reads the
    sequence number and bids higher.
    """
    lowered = message.lower()
    if any(p in lowered for p in _UNDERFUNDED_PATTERNS):
        return ErrorCategory.AUTHORIZATION
    if any(p in lowered for p in _REVERT_PATTERNS):
        return ErrorCategory.EXECUTION
    return ErrorCategory.TRANSIENT
