"""
Relay execution models and types.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IntentKind(str, Enum):
    """Kinds of signed intents the relay can execute."""
    META_TRANSACTION = "meta_transaction"    # executeMetaTransaction(user, payload, r, s, v)
    NATIVE_TRANSFER = "native_transfer"      # executeGaslessPOLTransfer(from, to, amount, deadline, r, s, v)


class SubmissionStatus(str, Enum):
    """Client-visible lifecycle of a relayed intent."""
    PENDING = "pending"          # Accepted, nothing broadcast yet
    SUBMITTED = "submitted"      # Broadcast, waiting for confirmation
    SUCCEEDED = "succeeded"      # Confirmed and executed
    FAILED = "failed"            # Terminal failure

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: Set[SubmissionStatus] = {
    SubmissionStatus.SUCCEEDED,
    SubmissionStatus.FAILED,
}

# Allowed status transitions. SUBMITTED -> SUBMITTED covers a re-submission after
# a confirmation timeout; terminal states have no exits.
STATUS_TRANSITIONS: Dict[SubmissionStatus, Set[SubmissionStatus]] = {
    SubmissionStatus.PENDING: {
        SubmissionStatus.SUBMITTED,
        SubmissionStatus.FAILED,
    },
    SubmissionStatus.SUBMITTED: {
        SubmissionStatus.SUBMITTED,
        SubmissionStatus.SUCCEEDED,
        SubmissionStatus.FAILED,
    },
    SubmissionStatus.SUCCEEDED: set(),
    SubmissionStatus.FAILED: set(),
}


class PipelinePhase(str, Enum):
    """Internal pipeline phase, recorded alongside the status."""
    VALIDATING = "validating"
    CHECKING_AUTHORIZATION = "checking_authorization"
    ESTIMATING_GAS = "estimating_gas"
    SUBMITTING = "submitting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Reason codes stored on failed records."""
    UNAUTHORIZED_SUBMITTER = "UnauthorizedSubmitter"
    SUBMITTER_UNDERFUNDED = "SubmitterUnderfunded"
    STALE_NONCE = "StaleNonce"
    EXECUTION_COST_TOO_HIGH = "ExecutionCostTooHigh"
    EXECUTION_REVERTED = "ExecutionReverted"
    RETRIES_EXHAUSTED = "RetriesExhausted"
    INTERNAL_ERROR = "InternalError"


class ExecutionFailureReason(str, Enum):
    """Closed set of reasons decoded from the verifier's revert data."""
    UNAUTHORIZED_RELAYER = "UnauthorizedRelayer"
    EXPIRED_DEADLINE = "ExpiredDeadline"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    INVALID_SIGNATURE = "InvalidSignature"
    EXECUTION_FAILED = "ExecutionFailed"
    ERC20_INSUFFICIENT_BALANCE = "ERC20InsufficientBalance"
    OWNABLE_UNAUTHORIZED_ACCOUNT = "OwnableUnauthorizedAccount"
    REVERT_STRING = "RevertString"
    PANIC = "Panic"
    OPAQUE = "Opaque"


@dataclass(frozen=True)
class Signature:
    """ECDSA signature components as sent by the client."""
    r: str                                      # 0x + 64 hex chars
    s: str                                      # 0x + 64 hex chars
    v: int                                      # 27 or 28


@dataclass(frozen=True)
class SignedIntent:
    """A validated, immutable user intent."""
    kind: IntentKind
    user_address: str
    payload: str                                # Hex calldata, "0x" for native transfers
    signature: Signature
    declared_nonce: Optional[int] = None
    to_address: Optional[str] = None            # Native transfers only
    amount: Optional[int] = None                # Native transfers only (wei)
    deadline: Optional[int] = None              # Native transfers only (unix seconds)
    contract_address: Optional[str] = None
    network: Optional[str] = None


@dataclass(frozen=True)
class FeeSnapshot:
    """Fee conditions reported by the network."""
    gas_price: Optional[int] = None             # Legacy price (wei)
    base_fee: Optional[int] = None              # EIP-1559 base fee of the pending block
    max_priority_fee: Optional[int] = None      # Suggested tip

    @property
    def is_two_part(self) -> bool:
        return self.base_fee is not None


@dataclass(frozen=True)
class FeeSettings:
    """Price and limit used for one submission attempt."""
    limit: int
    unit_price: Optional[int] = None            # Legacy pricing
    max_fee: Optional[int] = None               # EIP-1559
    max_priority_fee: Optional[int] = None      # EIP-1559
    fallback: bool = False                      # Built without network conditions

    @property
    def is_two_part(self) -> bool:
        return self.max_fee is not None

    @property
    def max_price(self) -> int:
        """Worst-case price per unit of gas."""
        if self.max_fee is not None:
            return self.max_fee
        return self.unit_price or 0

    @property
    def total_cost(self) -> int:
        return self.limit * self.max_price

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"gasLimit": self.limit}
        if self.is_two_part:
            data["maxFee"] = self.max_fee
            data["maxPriorityFee"] = self.max_priority_fee
        else:
            data["unitPrice"] = self.unit_price
        if self.fallback:
            data["fallback"] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeeSettings":
        return cls(
            limit=int(data["gasLimit"]),
            unit_price=data.get("unitPrice"),
            max_fee=data.get("maxFee"),
            max_priority_fee=data.get("maxPriorityFee"),
            fallback=bool(data.get("fallback", False)),
        )


@dataclass(frozen=True)
class LedgerOutcome:
    """Result of waiting on a submitted transaction."""
    success: bool
    block_height: Optional[int] = None
    gas_used: Optional[int] = None
    effective_gas_price: Optional[int] = None
    revert_data: Optional[str] = None

    @property
    def cost_paid(self) -> Optional[int]:
        if self.gas_used is None or self.effective_gas_price is None:
            return None
        return self.gas_used * self.effective_gas_price


@dataclass
class AttemptRecord:
    """One pass through the retry loop that reached the submission stage."""
    attempt: int
    gas_limit: int
    fee_settings: Optional[FeeSettings] = None
    ledger_handle: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt": self.attempt,
            "gasLimit": self.gas_limit,
            "feeSettings": self.fee_settings.to_dict() if self.fee_settings else None,
            "ledgerHandle": self.ledger_handle,
            "error": self.error,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AttemptRecord":
        fee = data.get("feeSettings")
        finished = data.get("finishedAt")
        return cls(
            attempt=int(data["attempt"]),
            gas_limit=int(data["gasLimit"]),
            fee_settings=FeeSettings.from_dict(fee) if fee else None,
            ledger_handle=data.get("ledgerHandle"),
            error=data.get("error"),
            started_at=datetime.fromisoformat(data["startedAt"]),
            finished_at=datetime.fromisoformat(finished) if finished else None,
        )


class InvalidTransitionError(Exception):
    """Raised when a record would move backwards or leave a terminal state."""

    def __init__(self, from_status: SubmissionStatus, to_status: SubmissionStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid transition from {from_status.value} to {to_status.value}"
        )


@dataclass
class SubmissionRecord:
    """Durable status of one relayed intent, keyed by the relay's tx_id."""
    tx_id: str
    user_address: str
    intent_kind: IntentKind
    status: SubmissionStatus = SubmissionStatus.PENDING
    phase: PipelinePhase = PipelinePhase.VALIDATING
    ledger_handle: Optional[str] = None
    block_height: Optional[int] = None
    gas_used: Optional[int] = None
    execution_cost_paid: Optional[int] = None
    last_error: Optional[str] = None
    failure_reason: Optional[str] = None
    execution_failure: Optional[ExecutionFailureReason] = None  # Decoded revert, when the contract rejected it
    attempts: List[AttemptRecord] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def can_transition_to(self, to_status: SubmissionStatus) -> bool:
        return to_status in STATUS_TRANSITIONS[self.status]

    def transition_to(self, to_status: SubmissionStatus) -> None:
        if not self.can_transition_to(to_status):
            raise InvalidTransitionError(self.status, to_status)
        self.status = to_status
        self.touch()

    def enter_phase(self, phase: PipelinePhase) -> None:
        if self.is_terminal:
            raise InvalidTransitionError(self.status, self.status)
        self.phase = phase
        self.touch()

    def touch(self) -> None:
        self.updated_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txId": self.tx_id,
            "userAddress": self.user_address,
            "intentKind": self.intent_kind.value,
            "status": self.status.value,
            "phase": self.phase.value,
            "ledgerHandle": self.ledger_handle,
            "blockHeight": self.block_height,
            "gasUsed": self.gas_used,
            # Wei amounts exceed JSON's safe integer range, keep them as strings
            "executionCostPaid": (
                str(self.execution_cost_paid) if self.execution_cost_paid is not None else None
            ),
            "lastError": self.last_error,
            "failureReason": self.failure_reason,
            "executionFailure": self.execution_failure.value if self.execution_failure else None,
            "attempts": [a.to_dict() for a in self.attempts],
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubmissionRecord":
        cost = data.get("executionCostPaid")
        execution_failure = data.get("executionFailure")
        return cls(
            tx_id=data["txId"],
            user_address=data["userAddress"],
            intent_kind=IntentKind(data["intentKind"]),
            status=SubmissionStatus(data["status"]),
            phase=PipelinePhase(data["phase"]),
            ledger_handle=data.get("ledgerHandle"),
            block_height=data.get("blockHeight"),
            gas_used=data.get("gasUsed"),
            execution_cost_paid=int(cost) if cost is not None else None,
            last_error=data.get("lastError"),
            failure_reason=data.get("failureReason"),
            execution_failure=ExecutionFailureReason(execution_failure) if execution_failure else None,
            attempts=[AttemptRecord.from_dict(a) for a in data.get("attempts", [])],
            created_at=datetime.fromisoformat(data["createdAt"]),
            updated_at=datetime.fromisoformat(data["updatedAt"]),
        )


@dataclass(frozen=True)
class FeeQuote:
    """Answer to an estimate-fee request."""
    fee_settings: FeeSettings
    execution_cost: int                         # Raw estimate before the safety margin

    @property
    def estimated_total_cost(self) -> int:
        return self.fee_settings.total_cost


@dataclass(frozen=True)
class RelayerStatus:
    """Health of the relay account on the ledger."""
    submitter_address: str
    is_authorized: bool
    spendable_balance: int
    min_operating_reserve: int

    @property
    def below_reserve(self) -> bool:
        return self.spendable_balance < self.min_operating_reserve
