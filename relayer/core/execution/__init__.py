"""
Relay Execution Layer

Provides the infrastructure for relaying signed intents:
- SubmissionPipeline: Drives an intent from acceptance to a terminal status
- FeeEstimator: Turns network fee conditions into per-attempt fee settings
- SubmissionSequencer: Serializes submissions per signing identity
- validate_intent: Pure request validation

Usage:
    from relayer.core.execution import SubmissionPipeline
    from relayer.core.execution.context import build_relay_context

    pipeline = SubmissionPipeline(build_relay_context(settings))

    # Accept, run and wait for the terminal record
    record = await pipeline.submit(request_body)

    # Or accept now and let the pipeline run in the background
    record, intent = await pipeline.accept(request_body)
    pipeline.launch(record, intent)
"""

from .models import (
    IntentKind,
    SubmissionStatus,
    PipelinePhase,
    FailureReason,
    ExecutionFailureReason,
    Signature,
    SignedIntent,
    FeeSnapshot,
    FeeSettings,
    LedgerOutcome,
    AttemptRecord,
    SubmissionRecord,
    InvalidTransitionError,
    FeeQuote,
    RelayerStatus,
)

from .errors import (
    ErrorCategory,
    RelayError,
    ValidationError,
    AuthorizationError,
    StaleNonceError,
    TransientLedgerError,
    ExecutionRevertedError,
    FatalPipelineError,
    classify_rpc_error,
)

from .validator import (
    validate_intent,
    validate_estimate_request,
)

from .fee_estimator import (
    FeeEstimator,
    FALLBACK_GAS_PRICE_WEI,
)

from .sequencer import (
    SubmissionSequencer,
    SequencerState,
)

from .revert_decoder import (
    DecodedRevert,
    decode_revert,
)

from .pipeline import (
    SubmissionPipeline,
    new_tx_id,
)

__all__ = [
    # Models
    "IntentKind",
    "SubmissionStatus",
    "PipelinePhase",
    "FailureReason",
    "ExecutionFailureReason",
    "Signature",
    "SignedIntent",
    "FeeSnapshot",
    "FeeSettings",
    "LedgerOutcome",
    "AttemptRecord",
    "SubmissionRecord",
    "InvalidTransitionError",
    "FeeQuote",
    "RelayerStatus",
    # Errors
    "ErrorCategory",
    "RelayError",
    "ValidationError",
    "AuthorizationError",
    "StaleNonceError",
    "TransientLedgerError",
    "ExecutionRevertedError",
    "FatalPipelineError",
    "classify_rpc_error",
    # Validation
    "validate_intent",
    "validate_estimate_request",
    # Fees
    "FeeEstimator",
    "FALLBACK_GAS_PRICE_WEI",
    # Sequencer
    "SubmissionSequencer",
    "SequencerState",
    # Revert decoding
    "DecodedRevert",
    "decode_revert",
    # Pipeline
    "SubmissionPipeline",
    "new_tx_id",
]
