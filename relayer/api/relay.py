import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from ..core.execution.context import RelayContext
from ..core.execution.errors import ErrorCategory, RelayError, ValidationError
from ..core.execution.models import FailureReason, SubmissionStatus
from ..core.execution.pipeline import SubmissionPipeline
from ..db.status_store import RecordNotFoundError
from ..types.requests import EstimateFeeRequest, SubmitRequest
from ..types.responses import (
    ErrorResponse,
    FeeEstimateResponse,
    RelayerStatusResponse,
    SubmitResponse,
    TransactionResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# HTTP status for each terminal failure reason
FAILURE_STATUS_CODES = {
    FailureReason.UNAUTHORIZED_SUBMITTER.value: 403,
    FailureReason.SUBMITTER_UNDERFUNDED.value: 403,
    FailureReason.STALE_NONCE.value: 409,
    FailureReason.EXECUTION_REVERTED.value: 422,
    FailureReason.EXECUTION_COST_TOO_HIGH.value: 500,
    FailureReason.RETRIES_EXHAUSTED.value: 500,
    FailureReason.INTERNAL_ERROR.value: 500,
}

CATEGORY_STATUS_CODES = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.AUTHORIZATION: 403,
    ErrorCategory.CONTENTION: 409,
    ErrorCategory.EXECUTION: 422,
    ErrorCategory.TRANSIENT: 503,
    ErrorCategory.FATAL: 500,
}

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def get_relay_context(request: Request) -> RelayContext:
    return request.app.state.relay_context


def get_pipeline(context: RelayContext = Depends(get_relay_context)) -> SubmissionPipeline:
    return SubmissionPipeline(context)


def _error(status_code: int, message: str, reason: Optional[str] = None, tx_id: Optional[str] = None) -> JSONResponse:
    body = ErrorResponse(error=message, reason=reason, txId=tx_id)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def _relay_error(e: RelayError) -> JSONResponse:
    return _error(CATEGORY_STATUS_CODES.get(e.category, 500), e.message, reason=e.reason)


@router.post("/submit", status_code=202, response_model=SubmitResponse, responses=ERROR_RESPONSES)
async def submit_intent(
    body: SubmitRequest,
    wait: Optional[bool] = Query(default=None, description="Wait for a terminal status before responding"),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """Accept a signed intent and relay it."""
    try:
        record, intent = await pipeline.accept(body.to_payload())
    except ValidationError as e:
        return _error(400, e.message, reason=e.reason)

    task = pipeline.launch(record, intent)

    should_wait = pipeline.settings.submit_wait_for_result if wait is None else wait
    if should_wait:
        # The pipeline keeps running if the client goes away
        record = await asyncio.shield(task)

    if record.status is SubmissionStatus.FAILED:
        status_code = FAILURE_STATUS_CODES.get(record.failure_reason, 500)
        return _error(
            status_code,
            record.last_error or "Relay failed",
            reason=record.failure_reason,
            tx_id=record.tx_id,
        )

    return SubmitResponse.from_record(record)


@router.post("/estimate-fee", response_model=FeeEstimateResponse, responses=ERROR_RESPONSES)
async def estimate_fee(
    body: EstimateFeeRequest,
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """Quote the gas limit and fee the first submission attempt would use."""
    try:
        quote = await pipeline.estimate_fee(body.to_payload())
    except RelayError as e:
        return _relay_error(e)
    return FeeEstimateResponse.from_quote(quote)


@router.get("/transaction/{tx_id}", response_model=TransactionResponse, responses={404: {"model": ErrorResponse}})
async def get_transaction(tx_id: str, context: RelayContext = Depends(get_relay_context)):
    try:
        record = await context.store.get(tx_id)
    except RecordNotFoundError as e:
        return _error(404, str(e), reason="NotFound", tx_id=tx_id)
    return record.to_dict()


@router.get("/relayer-status", response_model=RelayerStatusResponse, responses={503: {"model": ErrorResponse}})
async def relayer_status(pipeline: SubmissionPipeline = Depends(get_pipeline)):
    try:
        status = await pipeline.relayer_status()
    except RelayError as e:
        logger.warning(f"Relayer status unavailable: {e}")
        return _relay_error(e)
    return RelayerStatusResponse.from_status(status)
