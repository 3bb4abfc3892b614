"""
Submission pipeline for signed intents.

Handles the full lifecycle of a relayed intent:
- Validation and record creation
- Relay authorization and balance checks
- Declared nonce check
- Gas estimation with an escalating safety margin
- Serialized submission and confirmation monitoring
- Bounded retries with escalating fees

Every status or phase change is written to the status store before the next
ledger call.
"""

import asyncio
import logging
import math
import time
import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Any, List, Mapping, Optional, Tuple

import structlog

from .errors import (
    ConfirmationTimeoutError,
    ErrorCategory,
    ExecutionCostTooHighError,
    ExecutionRevertedError,
    FatalPipelineError,
    RelayError,
    RetriesExhaustedError,
    StaleNonceError,
    SubmitterUnderfundedError,
    TransientLedgerError,
    UnauthorizedSubmitterError,
)
from .models import (
    AttemptRecord,
    FailureReason,
    FeeQuote,
    LedgerOutcome,
    PipelinePhase,
    RelayerStatus,
    SignedIntent,
    SubmissionRecord,
    SubmissionStatus,
    utcnow,
)
from .revert_decoder import decode_revert
from .validator import validate_estimate_request, validate_intent

if TYPE_CHECKING:
    from .context import RelayContext


logger = logging.getLogger(__name__)
events = structlog.stdlib.get_logger("relayer.pipeline")


def new_tx_id() -> str:
    return f"tx_{uuid.uuid4().hex}"


class SubmissionPipeline:
    """
    Drives one signed intent from acceptance to a terminal status.

    The pipeline holds no per-request state; everything lives on the
    SubmissionRecord and in the shared RelayContext.
    """

    def __init__(self, context: "RelayContext", clock=None):
        self.context = context
        self.settings = context.settings
        self.ledger = context.ledger
        self.store = context.store
        self.fees = context.fee_estimator
        self.sequencer = context.sequencer
        self._clock = clock or time.time

    def _validation_kwargs(self) -> dict:
        return {
            "now": self._clock,
            "expected_contract": self.settings.contract_address or None,
            "expected_network": self.settings.network or None,
        }

    def gas_limit_for(self, estimate: int, attempt: int) -> int:
        """Apply the attempt's safety margin; raises ExecutionCostTooHighError above the ceiling."""
        multiplier = self.settings.gas_limit_multiplier_for(attempt)
        gas_limit = math.ceil(Decimal(estimate) * multiplier)
        if gas_limit > self.settings.gas_limit_ceiling:
            raise ExecutionCostTooHighError(gas_limit, self.settings.gas_limit_ceiling)
        return gas_limit

    async def _save(self, record: SubmissionRecord) -> None:
        await self.store.put(record)

    async def accept(self, request: Mapping[str, Any]) -> Tuple[SubmissionRecord, SignedIntent]:
        """
        Validate a request and persist its pending record.

        Raises:
            ValidationError: Nothing is recorded and the ledger is not called
        """
        intent = validate_intent(request, **self._validation_kwargs())
        record = SubmissionRecord(
            tx_id=new_tx_id(),
            user_address=intent.user_address,
            intent_kind=intent.kind,
        )
        await self._save(record)
        events.info(
            "intent_accepted",
            tx_id=record.tx_id,
            user=intent.user_address,
            kind=intent.kind.value,
        )
        return record, intent

    def launch(self, record: SubmissionRecord, intent: SignedIntent) -> asyncio.Task:
        """Run ``process`` in the background; the task outlives the request that started it."""
        return self.context.spawn(self.process(record, intent), name=f"relay-{record.tx_id}")

    async def submit(self, request: Mapping[str, Any]) -> SubmissionRecord:
        """Accept, launch and wait for the terminal record."""
        record, intent = await self.accept(request)
        task = self.launch(record, intent)
        return await asyncio.shield(task)

    async def process(self, record: SubmissionRecord, intent: SignedIntent) -> SubmissionRecord:
        """Run the pipeline for an accepted record until it is terminal."""
        with structlog.contextvars.bound_contextvars(tx_id=record.tx_id):
            try:
                await self._preflight(record, intent)
                await self._run_attempts(record, intent)
            except RelayError as e:
                await self._fail(record, e)
            except Exception as e:
                logger.exception(f"Unexpected error relaying {record.tx_id}")
                await self._fail(record, e)
        return record

    async def _preflight(self, record: SubmissionRecord, intent: SignedIntent) -> None:
        record.enter_phase(PipelinePhase.CHECKING_AUTHORIZATION)
        await self._save(record)

        relayer = self.ledger.relayer_address
        if not await self.ledger.check_authorization(relayer):
            raise UnauthorizedSubmitterError(relayer)

        balance = await self.ledger.spendable_balance(relayer)
        reserve = self.settings.min_operating_reserve_wei
        if balance < reserve:
            raise SubmitterUnderfundedError(relayer, balance, reserve)

        if self.settings.enforce_nonce_check and intent.declared_nonce is not None:
            current = await self.ledger.current_nonce(intent.user_address)
            if current != intent.declared_nonce:
                raise StaleNonceError(intent.user_address, intent.declared_nonce, current)

    async def _backoff(self, attempt: int) -> None:
        delay = self.settings.backoff_for(attempt)
        if delay > 0:
            await asyncio.sleep(delay)

    async def _record_attempt_error(self, record: SubmissionRecord, attempt: AttemptRecord, error: Exception) -> None:
        attempt.error = str(error)
        attempt.finished_at = utcnow()
        record.last_error = str(error)
        record.touch()
        await self._save(record)

    async def _run_attempts(self, record: SubmissionRecord, intent: SignedIntent) -> None:
        unconfirmed: List[str] = []
        try:
            await self._attempt_loop(record, intent, unconfirmed)
        except (ExecutionRevertedError, FatalPipelineError):
            # An earlier submission may have landed after its confirmation window
            if await self._resolve_earlier(record, unconfirmed):
                return
            raise

    async def _resolve_earlier(self, record: SubmissionRecord, handles: List[str]) -> bool:
        """Settle on the first earlier handle whose receipt shows success."""
        for handle in handles:
            try:
                outcome = await self.ledger.fetch_outcome(handle)
            except TransientLedgerError as e:
                events.warning("late_receipt_unavailable", ledger_handle=handle, error=str(e))
                continue
            if outcome is None or not outcome.success:
                continue
            events.info("late_receipt_found", ledger_handle=handle)
            record.ledger_handle = handle
            await self._succeed(record, outcome)
            return True
        return False

    async def _attempt_loop(self, record: SubmissionRecord, intent: SignedIntent, unconfirmed: List[str]) -> None:
        max_attempts = self.settings.max_attempts
        relayer = self.ledger.relayer_address
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            is_last = attempt == max_attempts

            # Gas estimation
            record.enter_phase(PipelinePhase.ESTIMATING_GAS)
            await self._save(record)
            try:
                estimate = await self.ledger.estimate_execution_cost(intent)
            except TransientLedgerError as e:
                last_error = e
                events.warning("estimate_failed", attempt=attempt, error=str(e))
                if is_last:
                    raise RetriesExhaustedError(attempt, e)
                await self._backoff(attempt)
                continue

            gas_limit = self.gas_limit_for(estimate, attempt)
            fee_settings = await self.fees.resolve(self.ledger, attempt=attempt, gas_limit=gas_limit)

            attempt_record = AttemptRecord(attempt=attempt, gas_limit=gas_limit, fee_settings=fee_settings)
            record.attempts.append(attempt_record)

            # Submission
            record.enter_phase(PipelinePhase.SUBMITTING)
            await self._save(record)
            events.info(
                "submitting",
                attempt=attempt,
                gas_limit=gas_limit,
                fee=fee_settings.to_dict(),
            )
            try:
                handle = await self.sequencer.run(
                    relayer,
                    lambda: self.ledger.submit(intent, fee_settings),
                    timeout=self.settings.submission_timeout_seconds,
                )
            except TransientLedgerError as e:
                last_error = e
                events.warning("submit_failed", attempt=attempt, error=str(e))
                await self._record_attempt_error(record, attempt_record, e)
                if not is_last:
                    await self._backoff(attempt)
                continue

            attempt_record.ledger_handle = handle
            record.ledger_handle = handle
            record.transition_to(SubmissionStatus.SUBMITTED)
            record.enter_phase(PipelinePhase.AWAITING_CONFIRMATION)
            await self._save(record)
            events.info("submitted", attempt=attempt, ledger_handle=handle)

            # Confirmation
            timeout = self.settings.confirmation_timeout_for(attempt)
            try:
                outcome = await self.ledger.await_outcome(handle, timeout)
            except ConfirmationTimeoutError as e:
                last_error = e
                events.warning("confirmation_timeout", attempt=attempt, ledger_handle=handle, timeout=timeout)
                unconfirmed.append(handle)
                await self._record_attempt_error(record, attempt_record, e)
                continue
            except TransientLedgerError as e:
                last_error = e
                events.warning("confirmation_failed", attempt=attempt, error=str(e))
                unconfirmed.append(handle)
                await self._record_attempt_error(record, attempt_record, e)
                if not is_last:
                    await self._backoff(attempt)
                continue

            attempt_record.finished_at = utcnow()
            if outcome.success:
                await self._succeed(record, outcome)
                return

            record.block_height = outcome.block_height
            record.gas_used = outcome.gas_used
            record.execution_cost_paid = outcome.cost_paid
            decoded = decode_revert(outcome.revert_data)
            raise ExecutionRevertedError(
                decoded.reason,
                decoded.message,
                revert_data=outcome.revert_data,
                ledger_handle=handle,
            )

        raise RetriesExhaustedError(max_attempts, last_error)

    async def _succeed(self, record: SubmissionRecord, outcome: LedgerOutcome) -> None:
        record.block_height = outcome.block_height
        record.gas_used = outcome.gas_used
        record.execution_cost_paid = outcome.cost_paid
        record.last_error = None
        record.enter_phase(PipelinePhase.SUCCEEDED)
        record.transition_to(SubmissionStatus.SUCCEEDED)
        await self._save(record)
        events.info(
            "relay_succeeded",
            ledger_handle=record.ledger_handle,
            block_height=record.block_height,
            attempts=len(record.attempts),
        )

    async def _fail(self, record: SubmissionRecord, error: Exception) -> None:
        if record.is_terminal:
            return

        if isinstance(error, RelayError):
            reason = error.reason
            message = error.message
            fatal = error.category is ErrorCategory.FATAL
        else:
            reason = FailureReason.INTERNAL_ERROR.value
            message = f"Internal error: {error}"
            fatal = True

        if record.attempts and record.attempts[-1].finished_at is None:
            record.attempts[-1].error = message
            record.attempts[-1].finished_at = utcnow()

        record.last_error = message
        record.failure_reason = reason
        if isinstance(error, ExecutionRevertedError):
            record.execution_failure = error.failure
        record.enter_phase(PipelinePhase.FAILED)
        record.transition_to(SubmissionStatus.FAILED)
        await self._save(record)

        log = events.error if fatal else events.warning
        log("relay_failed", reason=reason, error=message, attempts=len(record.attempts))

    async def estimate_fee(self, request: Mapping[str, Any]) -> FeeQuote:
        """Quote the fee settings the first attempt would use for ``request``."""
        intent = validate_estimate_request(request, **self._validation_kwargs())
        execution_cost = await self.ledger.estimate_execution_cost(intent)
        gas_limit = self.gas_limit_for(execution_cost, 1)
        fee_settings = await self.fees.resolve(self.ledger, attempt=1, gas_limit=gas_limit)
        return FeeQuote(fee_settings=fee_settings, execution_cost=execution_cost)

    async def relayer_status(self) -> RelayerStatus:
        relayer = self.ledger.relayer_address
        is_authorized = await self.ledger.check_authorization(relayer)
        balance = await self.ledger.spendable_balance(relayer)
        return RelayerStatus(
            submitter_address=relayer,
            is_authorized=is_authorized,
            spendable_balance=balance,
            min_operating_reserve=self.settings.min_operating_reserve_wei,
        )
