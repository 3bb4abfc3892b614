"""
HTTP tests for the relay API.

The app runs with a MockLedgerClient and an in-memory store injected through
create_app, so every test sees exactly the ledger it scripted.
"""

import time

import pytest
from fastapi.testclient import TestClient

from relayer.core.execution.context import RelayContext
from relayer.core.execution.errors import EstimationError
from relayer.core.execution.models import LedgerOutcome
from relayer.core.execution.calldata import selector
from relayer.db.status_store import InMemoryStatusStore
from relayer.main import create_app
from relayer.providers.mock_ledger import MockLedgerClient

USER = "0x1111111111111111111111111111111111111111"


@pytest.fixture
def mock_ledger():
    return MockLedgerClient()


@pytest.fixture
def make_client(make_settings, mock_ledger):
    clients = []

    def _make(**overrides) -> TestClient:
        context = RelayContext(make_settings(**overrides), mock_ledger, InMemoryStatusStore())
        client = TestClient(create_app(relay_context=context))
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


def wait_for_terminal(client: TestClient, tx_id: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/transaction/{tx_id}").json()
        if body["status"] in ("succeeded", "failed") or time.monotonic() > deadline:
            return body
        time.sleep(0.01)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["service"] == "gasless-relayer"
    assert body["ledgerBackend"] == "mock"
    assert body["chainId"] == 80002


def test_health_makes_no_ledger_calls(client, mock_ledger):
    client.get("/health")
    assert mock_ledger.calls == []


class TestSubmit:

    def test_success(self, client, meta_request):
        response = client.post("/submit", json=meta_request())

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "succeeded"
        assert body["txId"].startswith("tx_")
        assert body["ledgerHandle"] == "0x" + "0" * 63 + "1"

    def test_native_transfer(self, client, native_request):
        response = client.post("/submit", json=native_request())

        assert response.status_code == 202
        assert response.json()["status"] == "succeeded"

    def test_legacy_field_names(self, client, meta_request):
        body = meta_request(payload=None, declaredNonce=None, submitterContractAddress=None)
        body["functionSignature"] = meta_request()["payload"]
        body["nonce"] = "0"
        body["contractAddress"] = meta_request()["submitterContractAddress"]

        response = client.post("/submit", json=body)

        assert response.status_code == 202
        assert response.json()["status"] == "succeeded"

    def test_invalid_request_creates_no_record(self, client, mock_ledger, meta_request):
        response = client.post("/submit", json=meta_request(userAddress="0x1234"))

        assert response.status_code == 400
        body = response.json()
        assert body["reason"] == "InvalidAddress"
        assert "txId" not in body
        assert mock_ledger.calls == []

    @pytest.mark.parametrize("address", [["0x11"], {"a": 1}])
    def test_non_string_address(self, client, mock_ledger, meta_request, address):
        response = client.post("/submit", json=meta_request(userAddress=address))

        assert response.status_code == 400
        assert response.json()["reason"] == "InvalidAddress"
        assert mock_ledger.calls == []

    def test_amount_beyond_uint256(self, client, native_request):
        response = client.post("/submit", json=native_request(amount=str(2**256)))

        assert response.status_code == 400
        assert response.json()["reason"] == "InvalidField"

    def test_non_object_body(self, client):
        response = client.post("/submit", json=[1, 2, 3])

        assert response.status_code == 400
        assert response.json()["reason"] == "InvalidRequest"

    def test_unauthorized_relayer(self, client, mock_ledger, meta_request):
        mock_ledger.authorized = False

        response = client.post("/submit", json=meta_request())

        assert response.status_code == 403
        body = response.json()
        assert body["reason"] == "UnauthorizedSubmitter"
        assert body["txId"].startswith("tx_")
        assert mock_ledger.call_count("submit") == 0

    def test_underfunded_relayer(self, client, mock_ledger, meta_request):
        mock_ledger.balance = 0

        response = client.post("/submit", json=meta_request())

        assert response.status_code == 403
        assert response.json()["reason"] == "SubmitterUnderfunded"

    def test_stale_nonce(self, client, mock_ledger, meta_request):
        mock_ledger.nonces[USER.lower()] = 4

        response = client.post("/submit", json=meta_request(declaredNonce="3"))

        assert response.status_code == 409
        body = response.json()
        assert body["reason"] == "StaleNonce"
        assert client.get(f"/transaction/{body['txId']}").json()["failureReason"] == "StaleNonce"

    def test_execution_reverted(self, client, mock_ledger, meta_request):
        mock_ledger.outcome_script = [
            LedgerOutcome(success=False, block_height=7, gas_used=50_000, revert_data=selector("InvalidSignature()")),
        ]

        response = client.post("/submit", json=meta_request())

        assert response.status_code == 422
        body = response.json()
        assert body["reason"] == "ExecutionReverted"
        assert "InvalidSignature" in body["error"]
        record = client.get(f"/transaction/{body['txId']}").json()
        assert record["executionFailure"] == "InvalidSignature"
        assert record["failureReason"] == "ExecutionReverted"

    def test_retries_exhausted(self, client, mock_ledger, meta_request):
        mock_ledger.estimate_script = [EstimationError("header not found")] * 3

        response = client.post("/submit", json=meta_request())

        assert response.status_code == 500
        body = response.json()
        assert body["reason"] == "RetriesExhausted"
        record = client.get(f"/transaction/{body['txId']}").json()
        assert record["status"] == "failed"

    def test_without_waiting(self, client, meta_request):
        response = client.post("/submit", params={"wait": "false"}, json=meta_request())

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "pending"

        record = wait_for_terminal(client, body["txId"])
        assert record["status"] == "succeeded"
        assert record["ledgerHandle"] is not None
        assert len(record["attempts"]) == 1


class TestTransaction:

    def test_repeated_reads_are_identical(self, client, meta_request):
        tx_id = client.post("/submit", json=meta_request()).json()["txId"]

        first = client.get(f"/transaction/{tx_id}")
        second = client.get(f"/transaction/{tx_id}")

        assert first.status_code == 200
        assert first.json() == second.json()
        assert first.json()["phase"] == "succeeded"

    def test_unknown_transaction(self, client):
        response = client.get("/transaction/tx_unknown")

        assert response.status_code == 404
        assert response.json() == {
            "error": "Transaction tx_unknown not found",
            "reason": "NotFound",
            "txId": "tx_unknown",
        }


class TestEstimateFee:

    def test_quote(self, client, mock_ledger, meta_request):
        response = client.post("/estimate-fee", json=meta_request(r=None, s=None, v=None))

        assert response.status_code == 200
        body = response.json()
        assert body["gasLimit"] == 120_000
        assert body["executionCost"] == 100_000
        assert body["unitPrice"] == "45000000000"
        assert body["estimatedTotalCost"] == str(120_000 * 45_000_000_000)
        assert body["fallback"] is False
        assert mock_ledger.call_count("submit") == 0

    def test_invalid_request(self, client, meta_request):
        response = client.post("/estimate-fee", json=meta_request(userAddress="not-an-address"))

        assert response.status_code == 400
        assert response.json()["reason"] == "InvalidAddress"

    def test_ledger_unavailable(self, client, mock_ledger, meta_request):
        mock_ledger.estimate_script = [EstimationError("header not found")]

        response = client.post("/estimate-fee", json=meta_request())

        assert response.status_code == 503


def test_relayer_status(client, mock_ledger):
    response = client.get("/relayer-status")

    assert response.status_code == 200
    body = response.json()
    assert body["submitterAddress"] == mock_ledger.relayer_address
    assert body["isAuthorized"] is True
    assert body["spendableBalance"] == str(10**18)
    assert body["belowReserve"] is False


class TestRateLimiting:

    def test_limit_applies_per_client(self, make_client, meta_request):
        client = make_client(rate_limit_enabled=True, rate_limit_requests=2, rate_limit_window_seconds=60)

        first = client.get("/relayer-status")
        client.get("/relayer-status")
        limited = client.post("/submit", json=meta_request())

        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert limited.status_code == 429
        assert int(limited.headers["Retry-After"]) > 0
        assert limited.json()["error"] == "Too many requests, please try again later"

    def test_health_is_not_limited(self, make_client):
        client = make_client(rate_limit_enabled=True, rate_limit_requests=1, rate_limit_window_seconds=60)

        for _ in range(3):
            assert client.get("/health").status_code == 200


def test_openapi_documents_unavailable_ledger(client):
    schema = client.get("/openapi.json").json()

    assert "503" in schema["paths"]["/estimate-fee"]["post"]["responses"]
    assert "503" in schema["paths"]["/submit"]["post"]["responses"]
    assert "executionFailure" in schema["components"]["schemas"]["TransactionResponse"]["properties"]
