from .requests import IntentRequest, SubmitRequest, EstimateFeeRequest
from .responses import (
    ErrorResponse,
    SubmitResponse,
    FeeEstimateResponse,
    TransactionResponse,
    RelayerStatusResponse,
    HealthResponse,
)

__all__ = [
    "IntentRequest",
    "SubmitRequest",
    "EstimateFeeRequest",
    "ErrorResponse",
    "SubmitResponse",
    "FeeEstimateResponse",
    "TransactionResponse",
    "RelayerStatusResponse",
    "HealthResponse",
]
