"""
Tests for the submission pipeline state machine.
"""

import asyncio

import pytest

from relayer.config import GWEI
from relayer.core.execution.calldata import selector
from relayer.core.execution.context import RelayContext
from relayer.core.execution.errors import (
    EstimationError,
    ExecutionRevertedError,
    ExpiredDeadlineError,
    SubmissionError,
)
from relayer.core.execution.models import (
    ExecutionFailureReason,
    FailureReason,
    LedgerOutcome,
    PipelinePhase,
    SubmissionStatus,
)
from relayer.core.execution.pipeline import SubmissionPipeline
from relayer.db.status_store import InMemoryStatusStore
from relayer.providers.mock_ledger import HANG, TIMEOUT, MockLedgerClient


USER = "0x1111111111111111111111111111111111111111"


def make_pipeline(make_settings, ledger=None, **overrides):
    ledger = ledger or MockLedgerClient()
    store = InMemoryStatusStore()
    context = RelayContext(make_settings(**overrides), ledger, store)
    return SubmissionPipeline(context), ledger, store


# =============================================================================
# Happy path and pre-flight failures
# =============================================================================

@pytest.mark.asyncio
async def test_success_on_first_attempt(pipeline, ledger, store, meta_request):
    record = await pipeline.submit(meta_request())

    assert record.status is SubmissionStatus.SUCCEEDED
    assert record.phase is PipelinePhase.SUCCEEDED
    assert record.tx_id.startswith("tx_") and len(record.tx_id) == 35
    assert len(record.attempts) == 1
    assert record.attempts[0].gas_limit == 120_000
    assert record.block_height is not None
    assert record.gas_used == 100_000
    assert record.execution_cost_paid == 100_000 * 45 * GWEI
    assert record.last_error is None
    assert ledger.call_count("submit") == 1

    stored = await store.get(record.tx_id)
    assert stored.to_dict() == record.to_dict()


@pytest.mark.asyncio
async def test_unauthorized_submitter_fails_without_attempts(pipeline, ledger, meta_request):
    ledger.authorized = False

    record = await pipeline.submit(meta_request())

    assert record.status is SubmissionStatus.FAILED
    assert record.failure_reason == FailureReason.UNAUTHORIZED_SUBMITTER.value
    assert record.attempts == []
    assert ledger.call_count("estimate_execution_cost") == 0
    assert ledger.call_count("submit") == 0


@pytest.mark.asyncio
async def test_underfunded_submitter(pipeline, ledger, meta_request):
    ledger.balance = 10**15

    record = await pipeline.submit(meta_request())

    assert record.status is SubmissionStatus.FAILED
    assert record.failure_reason == FailureReason.SUBMITTER_UNDERFUNDED.value
    assert "below the operating reserve" in record.last_error
    assert ledger.call_count("submit") == 0


@pytest.mark.asyncio
async def test_stale_nonce(pipeline, ledger, meta_request):
    ledger.nonces[USER] = 5

    record = await pipeline.submit(meta_request(declaredNonce="4"))

    assert record.status is SubmissionStatus.FAILED
    assert record.failure_reason == FailureReason.STALE_NONCE.value
    assert ledger.call_count("estimate_execution_cost") == 0


@pytest.mark.asyncio
async def test_matching_nonce_proceeds(pipeline, ledger, meta_request):
    ledger.nonces[USER] = 5

    record = await pipeline.submit(meta_request(declaredNonce="5"))

    assert record.status is SubmissionStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_nonce_check_can_be_disabled(make_settings, meta_request):
    pipeline, ledger, _ = make_pipeline(make_settings, enforce_nonce_check=False)
    ledger.nonces[USER] = 9

    record = await pipeline.submit(meta_request(declaredNonce="1"))

    assert record.status is SubmissionStatus.SUCCEEDED
    assert ledger.call_count("current_nonce") == 0


# =============================================================================
# Validation and record creation
# =============================================================================

@pytest.mark.asyncio
async def test_expired_deadline_creates_no_record(pipeline, ledger, store, native_request):
    with pytest.raises(ExpiredDeadlineError):
        await pipeline.submit(native_request(deadline=1))

    assert store.size() == 0
    assert ledger.calls == []


@pytest.mark.asyncio
async def test_record_is_pending_before_any_ledger_call(make_settings, meta_request):
    ledger = MockLedgerClient(call_delay=0.05)
    pipeline, _, store = make_pipeline(make_settings, ledger=ledger)

    record, intent = await pipeline.accept(meta_request())

    stored = await store.get(record.tx_id)
    assert stored.status is SubmissionStatus.PENDING
    assert ledger.calls == []

    task = pipeline.launch(record, intent)
    await asyncio.sleep(0.01)

    in_progress = await store.get(record.tx_id)
    assert in_progress.status is SubmissionStatus.PENDING
    assert in_progress.phase is PipelinePhase.CHECKING_AUTHORIZATION

    final = await task
    assert final.status is SubmissionStatus.SUCCEEDED


# =============================================================================
# Retry loop
# =============================================================================

@pytest.mark.asyncio
async def test_confirmation_timeouts_then_success(pipeline, ledger, meta_request):
    ledger.outcome_script = [TIMEOUT, TIMEOUT]

    record = await pipeline.submit(meta_request())

    assert record.status is SubmissionStatus.SUCCEEDED
    assert ledger.fee_conditions_calls == 3
    prices = [fee.unit_price for _, fee in ledger.submitted]
    assert prices == [45 * GWEI, 90 * GWEI, 135 * GWEI]
    assert ledger.outcome_timeouts == [5.0, 10.0, 15.0]
    assert [a.attempt for a in record.attempts] == [1, 2, 3]
    assert "timed out" in record.attempts[0].error
    assert record.ledger_handle == record.attempts[-1].ledger_handle


@pytest.mark.asyncio
async def test_gas_limit_margin_grows_per_attempt(pipeline, ledger, meta_request):
    ledger.outcome_script = [TIMEOUT, TIMEOUT]

    record = await pipeline.submit(meta_request())

    assert [a.gas_limit for a in record.attempts] == [120_000, 140_000, 160_000]


@pytest.mark.asyncio
async def test_submission_always_times_out(make_settings, meta_request):
    pipeline, ledger, store = make_pipeline(make_settings, submission_timeout_seconds=0.05)
    ledger.submit_script = [HANG, HANG, HANG]

    record = await pipeline.submit(meta_request())

    assert record.status is SubmissionStatus.FAILED
    assert record.failure_reason == FailureReason.RETRIES_EXHAUSTED.value
    assert len(record.attempts) == 3
    assert all("timed out" in a.error for a in record.attempts)
    assert record.ledger_handle is None

    first = ledger.submitted[0][1].max_price
    for k, (_, fee) in enumerate(ledger.submitted, start=1):
        assert fee.max_price >= k * first

    stored = await store.get(record.tx_id)
    assert stored.status is SubmissionStatus.FAILED


@pytest.mark.asyncio
async def test_submission_error_is_retried(pipeline, ledger, meta_request):
    ledger.submit_script = [SubmissionError("nonce too low")]

    record = await pipeline.submit(meta_request())

    assert record.status is SubmissionStatus.SUCCEEDED
    assert len(record.attempts) == 2
    assert record.attempts[0].error == "nonce too low"
    assert record.attempts[0].ledger_handle is None


@pytest.mark.asyncio
async def test_estimation_failure_moves_to_next_attempt(pipeline, ledger, meta_request):
    ledger.estimate_script = [EstimationError("node overloaded")]

    record = await pipeline.submit(meta_request())

    assert record.status is SubmissionStatus.SUCCEEDED
    assert len(record.attempts) == 1
    assert record.attempts[0].attempt == 2
    assert record.attempts[0].gas_limit == 140_000


@pytest.mark.asyncio
async def test_estimation_failure_on_every_attempt(pipeline, ledger, meta_request):
    ledger.estimate_script = [EstimationError("node overloaded")] * 3

    record = await pipeline.submit(meta_request())

    assert record.status is SubmissionStatus.FAILED
    assert record.failure_reason == FailureReason.RETRIES_EXHAUSTED.value
    assert record.attempts == []
    assert ledger.call_count("submit") == 0


@pytest.mark.asyncio
async def test_estimation_revert_is_terminal(pipeline, ledger, meta_request):
    ledger.estimate_script = [ExecutionRevertedError(ExecutionFailureReason.INVALID_SIGNATURE)]

    record = await pipeline.submit(meta_request())

    assert record.status is SubmissionStatus.FAILED
    assert record.failure_reason == FailureReason.EXECUTION_REVERTED.value
    assert ledger.call_count("estimate_execution_cost") == 1


@pytest.mark.asyncio
async def test_gas_ceiling_is_never_retried(pipeline, ledger, meta_request):
    ledger.execution_cost = 900_000

    record = await pipeline.submit(meta_request())

    assert record.status is SubmissionStatus.FAILED
    assert record.failure_reason == FailureReason.EXECUTION_COST_TOO_HIGH.value
    assert ledger.call_count("estimate_execution_cost") == 1
    assert ledger.call_count("submit") == 0


@pytest.mark.asyncio
async def test_gas_ceiling_reached_by_escalation(pipeline, ledger, meta_request):
    ledger.execution_cost = 700_000
    ledger.outcome_script = [TIMEOUT, TIMEOUT]

    record = await pipeline.submit(meta_request())

    assert record.status is SubmissionStatus.FAILED
    assert record.failure_reason == FailureReason.EXECUTION_COST_TOO_HIGH.value
    assert ledger.call_count("submit") == 2


@pytest.mark.asyncio
async def test_ledger_revert_is_decoded(pipeline, ledger, meta_request):
    ledger.outcome_script = [
        LedgerOutcome(
            success=False,
            block_height=7,
            gas_used=50_000,
            effective_gas_price=GWEI,
            revert_data=selector("InvalidSignature()"),
        )
    ]

    record = await pipeline.submit(meta_request())

    assert record.status is SubmissionStatus.FAILED
    assert record.failure_reason == FailureReason.EXECUTION_REVERTED.value
    assert "InvalidSignature" in record.last_error
    assert record.block_height == 7
    assert record.execution_cost_paid == 50_000 * GWEI
    assert ledger.call_count("submit") == 1
    assert record.execution_failure is ExecutionFailureReason.INVALID_SIGNATURE
    assert record.to_dict()["executionFailure"] == "InvalidSignature"


@pytest.mark.asyncio
async def test_non_revert_failures_carry_no_execution_failure(pipeline, ledger, meta_request):
    ledger.authorized = False

    record = await pipeline.submit(meta_request())

    assert record.status is SubmissionStatus.FAILED
    assert record.execution_failure is None


# =============================================================================
# Late receipts for timed-out submissions
# =============================================================================

FIRST_HANDLE = "0x" + "0" * 63 + "1"


def reverted(reason: str = "InvalidSignature()") -> LedgerOutcome:
    return LedgerOutcome(success=False, block_height=9, gas_used=40_000, revert_data=selector(reason))


@pytest.mark.asyncio
async def test_revert_after_timeout_resolves_to_earlier_success(pipeline, ledger, store, meta_request):
    # The retry reverts because the first submission already consumed the user's nonce
    ledger.outcome_script = [TIMEOUT, reverted()]
    ledger.late_outcomes[FIRST_HANDLE] = LedgerOutcome(success=True, block_height=8, gas_used=95_000)

    record = await pipeline.submit(meta_request())

    assert record.status is SubmissionStatus.SUCCEEDED
    assert record.ledger_handle == FIRST_HANDLE
    assert record.block_height == 8
    assert record.gas_used == 95_000
    assert record.failure_reason is None
    assert record.execution_failure is None
    assert ledger.calls[-1] == ("fetch_outcome", FIRST_HANDLE)
    assert (await store.get(record.tx_id)).status is SubmissionStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_revert_after_timeout_without_late_receipt_fails(pipeline, ledger, meta_request):
    ledger.outcome_script = [TIMEOUT, reverted()]

    record = await pipeline.submit(meta_request())

    assert record.status is SubmissionStatus.FAILED
    assert record.failure_reason == FailureReason.EXECUTION_REVERTED.value
    assert record.execution_failure is ExecutionFailureReason.INVALID_SIGNATURE
    assert ledger.call_count("fetch_outcome") == 1


@pytest.mark.asyncio
async def test_late_reverted_receipt_does_not_count_as_success(pipeline, ledger, meta_request):
    ledger.outcome_script = [TIMEOUT, reverted()]
    ledger.late_outcomes[FIRST_HANDLE] = reverted("ExpiredDeadline()")

    record = await pipeline.submit(meta_request())

    assert record.status is SubmissionStatus.FAILED
    assert record.execution_failure is ExecutionFailureReason.INVALID_SIGNATURE


@pytest.mark.asyncio
async def test_exhaustion_checks_every_timed_out_handle(pipeline, ledger, meta_request):
    ledger.outcome_script = [TIMEOUT, TIMEOUT, TIMEOUT]
    third = "0x" + "0" * 63 + "3"
    ledger.late_outcomes[FIRST_HANDLE] = EstimationError("node overloaded")
    ledger.late_outcomes[third] = LedgerOutcome(success=True, block_height=12, gas_used=100_000)

    record = await pipeline.submit(meta_request())

    assert record.status is SubmissionStatus.SUCCEEDED
    assert record.ledger_handle == third
    assert ledger.call_count("fetch_outcome") == 3


@pytest.mark.asyncio
async def test_estimation_revert_after_timeout_checks_earlier_handle(pipeline, ledger, meta_request):
    ledger.outcome_script = [TIMEOUT]
    ledger.estimate_script = [None, ExecutionRevertedError(ExecutionFailureReason.INVALID_SIGNATURE)]
    ledger.late_outcomes[FIRST_HANDLE] = LedgerOutcome(success=True, block_height=8, gas_used=95_000)

    record = await pipeline.submit(meta_request())

    assert record.status is SubmissionStatus.SUCCEEDED
    assert record.ledger_handle == FIRST_HANDLE
    assert ledger.call_count("submit") == 1


# =============================================================================
# Concurrency
# =============================================================================

@pytest.mark.asyncio
async def test_submissions_are_serialized(make_settings, meta_request):
    ledger = MockLedgerClient(submit_delay=0.02)
    pipeline, _, _ = make_pipeline(make_settings, ledger=ledger)

    records = await asyncio.gather(*(pipeline.submit(meta_request()) for _ in range(5)))

    assert all(r.status is SubmissionStatus.SUCCEEDED for r in records)
    assert len({r.tx_id for r in records}) == 5
    assert ledger.max_in_flight_submits == 1
    assert pipeline.sequencer.get_state(ledger.relayer_address).submissions == 5


@pytest.mark.asyncio
async def test_caller_cancellation_does_not_stop_pipeline(make_settings, meta_request):
    ledger = MockLedgerClient(call_delay=0.02)
    pipeline, _, _ = make_pipeline(make_settings, ledger=ledger)

    waiter = asyncio.create_task(pipeline.submit(meta_request()))
    await asyncio.sleep(0.01)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    assert pipeline.context.in_flight == 1
    cancelled = await pipeline.context.drain(timeout=5)

    assert cancelled == 0
    assert ledger.call_count("submit") == 1


@pytest.mark.asyncio
async def test_drain_cancels_stuck_pipelines(make_settings, meta_request):
    pipeline, ledger, _ = make_pipeline(make_settings, submission_timeout_seconds=30)
    ledger.submit_script = [HANG]

    record, intent = await pipeline.accept(meta_request())
    pipeline.launch(record, intent)
    await asyncio.sleep(0.01)

    cancelled = await pipeline.context.drain(timeout=0.05)

    assert cancelled == 1
    assert pipeline.context.in_flight == 0


# =============================================================================
# Fee quotes
# =============================================================================

@pytest.mark.asyncio
async def test_estimate_fee(pipeline, ledger, meta_request):
    quote = await pipeline.estimate_fee(meta_request(r=None, s=None, v=None))

    assert quote.execution_cost == 100_000
    assert quote.fee_settings.limit == 120_000
    assert quote.fee_settings.unit_price == 45 * GWEI
    assert quote.estimated_total_cost == 120_000 * 45 * GWEI
    assert ledger.call_count("submit") == 0


@pytest.mark.asyncio
async def test_relayer_status(pipeline, ledger):
    ledger.balance = 10**16

    status = await pipeline.relayer_status()

    assert status.submitter_address == ledger.relayer_address
    assert status.is_authorized is True
    assert status.below_reserve is True
