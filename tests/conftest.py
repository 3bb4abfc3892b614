"""
Shared fixtures for the relayer test suite.

Everything runs against MockLedgerClient and an in-memory status store; no
test reaches a real network.
"""

import time

import pytest

from relayer.config import Settings
from relayer.core.execution.context import RelayContext
from relayer.core.execution.pipeline import SubmissionPipeline
from relayer.db.status_store import InMemoryStatusStore
from relayer.providers.mock_ledger import MockLedgerClient


USER = "0x1111111111111111111111111111111111111111"
RECIPIENT = "0x3333333333333333333333333333333333333333"
CONTRACT = "0x2222222222222222222222222222222222222222"
SIG_R = "0x" + "ab" * 32
SIG_S = "0x" + "cd" * 32
TRANSFER_PAYLOAD = (
    "0xa9059cbb"
    "0000000000000000000000003333333333333333333333333333333333333333"
    "00000000000000000000000000000000000000000000000000000000000003e8"
)


def build_settings(**overrides) -> Settings:
    values = {
        "_env_file": None,
        "ledger_backend": "mock",
        "status_store_backend": "memory",
        "contract_address": CONTRACT,
        "network": "amoy",
        "backoff_base_seconds": 0,
        "submission_timeout_seconds": 1.0,
        "confirmation_timeout_seconds": 5.0,
        "rate_limit_enabled": False,
        "log_level": "WARNING",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def make_settings():
    return build_settings


@pytest.fixture
def meta_request():
    def _make(**overrides) -> dict:
        body = {
            "submitterContractAddress": CONTRACT,
            "userAddress": USER,
            "payload": TRANSFER_PAYLOAD,
            "r": SIG_R,
            "s": SIG_S,
            "v": 27,
            "declaredNonce": "0",
            "network": "amoy",
        }
        body.update(overrides)
        return {k: v for k, v in body.items() if v is not None}
    return _make


@pytest.fixture
def native_request():
    def _make(**overrides) -> dict:
        body = {
            "kind": "native_transfer",
            "submitterContractAddress": CONTRACT,
            "userAddress": USER,
            "to": RECIPIENT,
            "amount": str(10**17),
            "deadline": int(time.time()) + 3600,
            "r": SIG_R,
            "s": SIG_S,
            "v": 28,
            "network": "amoy",
        }
        body.update(overrides)
        return {k: v for k, v in body.items() if v is not None}
    return _make


@pytest.fixture
def ledger():
    return MockLedgerClient()


@pytest.fixture
def store():
    return InMemoryStatusStore()


@pytest.fixture
def relay_context(ledger, store):
    return RelayContext(build_settings(), ledger, store)


@pytest.fixture
def pipeline(relay_context):
    return SubmissionPipeline(relay_context)
