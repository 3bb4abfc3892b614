from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from relayer.core.execution.models import FeeQuote, RelayerStatus, SubmissionRecord


class ErrorResponse(BaseModel):
    error: str = Field(description="Human-readable error message")
    reason: Optional[str] = Field(default=None, description="Machine-readable reason code")
    txId: Optional[str] = Field(default=None, description="Relay transaction id, when a record exists")


class SubmitResponse(BaseModel):
    txId: str = Field(description="Relay transaction id")
    ledgerHandle: Optional[str] = Field(default=None, description="Ledger transaction hash of the latest attempt")
    status: str = Field(description="pending, submitted, succeeded or failed")

    @classmethod
    def from_record(cls, record: SubmissionRecord) -> "SubmitResponse":
        return cls(txId=record.tx_id, ledgerHandle=record.ledger_handle, status=record.status.value)


class FeeEstimateResponse(BaseModel):
    gasLimit: int = Field(description="Gas limit including the safety margin")
    executionCost: int = Field(description="Raw gas estimate before the margin")
    unitPrice: Optional[str] = Field(default=None, description="Gas price in wei (single-price networks)")
    maxFee: Optional[str] = Field(default=None, description="maxFeePerGas in wei")
    maxPriorityFee: Optional[str] = Field(default=None, description="maxPriorityFeePerGas in wei")
    estimatedTotalCost: str = Field(description="gasLimit x worst-case price, in wei")
    fallback: bool = Field(default=False, description="True when network fee conditions were unavailable")

    @classmethod
    def from_quote(cls, quote: FeeQuote) -> "FeeEstimateResponse":
        fee = quote.fee_settings
        return cls(
            gasLimit=fee.limit,
            executionCost=quote.execution_cost,
            unitPrice=str(fee.unit_price) if fee.unit_price is not None else None,
            maxFee=str(fee.max_fee) if fee.max_fee is not None else None,
            maxPriorityFee=str(fee.max_priority_fee) if fee.max_priority_fee is not None else None,
            estimatedTotalCost=str(quote.estimated_total_cost),
            fallback=fee.fallback,
        )


class AttemptResponse(BaseModel):
    attempt: int
    gasLimit: int
    feeSettings: Optional[Dict[str, Any]] = None
    ledgerHandle: Optional[str] = None
    error: Optional[str] = None
    startedAt: str
    finishedAt: Optional[str] = None


class TransactionResponse(BaseModel):
    txId: str
    userAddress: str
    intentKind: str
    status: str
    phase: str
    ledgerHandle: Optional[str] = None
    blockHeight: Optional[int] = None
    gasUsed: Optional[int] = None
    executionCostPaid: Optional[str] = None
    lastError: Optional[str] = None
    failureReason: Optional[str] = None
    executionFailure: Optional[str] = Field(default=None, description="Decoded contract error when the intent reverted")
    attempts: List[AttemptResponse] = Field(default_factory=list)
    createdAt: str
    updatedAt: str


class RelayerStatusResponse(BaseModel):
    submitterAddress: str = Field(description="Relay signing address")
    isAuthorized: bool = Field(description="Whether the verifier contract authorizes the relay")
    spendableBalance: str = Field(description="Relay balance in wei")
    minOperatingReserve: str = Field(description="Configured reserve in wei")
    belowReserve: bool = Field(description="True when submissions are refused for low balance")

    @classmethod
    def from_status(cls, status: RelayerStatus) -> "RelayerStatusResponse":
        return cls(
            submitterAddress=status.submitter_address,
            isAuthorized=status.is_authorized,
            spendableBalance=str(status.spendable_balance),
            minOperatingReserve=str(status.min_operating_reserve),
            belowReserve=status.below_reserve,
        )


class HealthResponse(BaseModel):
    status: str = Field(description="Always ok while the process serves requests")
    service: str
    version: str
    network: str
    chainId: int
    ledgerBackend: str
    inFlight: int = Field(description="Pipelines still running in the background")
