"""
JSON-RPC ledger client for EVM chains.

Reads go through eth_call against the verifier contract; submissions are
signed locally with the relay key and broadcast with eth_sendRawTransaction.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx
from eth_account import Account
from eth_utils import to_checksum_address, to_hex

from relayer.config import Settings
from relayer.core.execution.calldata import (
    build_authorized_relayers_call,
    build_intent_call,
    build_nonces_call,
    decode_bool,
    decode_uint,
)
from relayer.core.execution.errors import (
    ConfirmationTimeoutError,
    ErrorCategory,
    EstimationError,
    ExecutionRevertedError,
    FeeQueryError,
    LedgerUnavailableError,
    SubmissionError,
    SubmitterUnderfundedError,
    classify_rpc_error,
)
from relayer.core.execution.models import (
    FeeSettings,
    FeeSnapshot,
    LedgerOutcome,
    SignedIntent,
)
from relayer.core.execution.revert_decoder import decode_revert

from .base import LedgerClient


logger = logging.getLogger(__name__)


class RpcError(Exception):
    """Error object returned by the node in a JSON-RPC response."""

    def __init__(self, method: str, code: Optional[int], message: str, data: Any = None):
        super().__init__(f"{method} failed: {message}")
        self.method = method
        self.code = code
        self.message = message
        self.data = data

    @property
    def revert_data(self) -> Optional[str]:
        data = self.data
        if isinstance(data, dict):
            data = data.get("data") or data.get("result")
        if isinstance(data, str) and data.startswith("0x"):
            return data
        return None


def parse_quantity(value: Any, method: str) -> int:
    """Decode a hex QUANTITY from a node response; malformed values mean the node is unusable."""
    try:
        return int(value, 16)
    except (TypeError, ValueError):
        raise LedgerUnavailableError(f"{method} returned a malformed quantity: {value!r}")


class EvmLedgerClient(LedgerClient):
    """
    LedgerClient backed by a single JSON-RPC endpoint.

    Features:
    - Authorization and nonce reads against the verifier contract
    - EIP-1559 or legacy pricing, whichever FeeSettings carries
    - Sequence number read from the node's pending count per submission
    - Receipt polling with best-effort revert data recovery
    """

    name = "evm_rpc"

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        contract_address: str,
        chain_id: int,
        timeout_s: float = 20.0,
        poll_interval: float = 2.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not rpc_url:
            raise ValueError("rpc_url is required for the rpc ledger backend")
        if not private_key:
            raise ValueError("relayer_private_key is required for the rpc ledger backend")
        if not contract_address:
            raise ValueError("contract_address is required for the rpc ledger backend")

        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.contract_address = to_checksum_address(contract_address)
        self.timeout_s = timeout_s
        self.poll_interval = poll_interval
        self._account = Account.from_key(private_key)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._request_id = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "EvmLedgerClient":
        return cls(
            rpc_url=settings.rpc_url,
            private_key=settings.relayer_private_key,
            contract_address=settings.contract_address,
            chain_id=settings.chain_id,
            timeout_s=settings.rpc_timeout_seconds,
            poll_interval=settings.receipt_poll_interval_seconds,
        )

    @property
    def relayer_address(self) -> str:
        return self._account.address

    async def _rpc_call(self, method: str, params: List[Any]) -> Any:
        """Make an RPC call to the chain."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": self._request_id,
        }

        try:
            response = await self._client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPError as e:
            raise LedgerUnavailableError(f"{method} request failed: {e}")
        except ValueError as e:
            raise LedgerUnavailableError(f"{method} returned invalid JSON: {e}")

        if "error" in result:
            error = result["error"] or {}
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise RpcError(
                method,
                error.get("code"),
                str(error.get("message", "unknown error")),
                error.get("data"),
            )

        return result.get("result")

    async def _contract_call(self, data: str) -> str:
        try:
            return await self._rpc_call(
                "eth_call",
                [{"to": self.contract_address, "data": data}, "latest"],
            )
        except RpcError as e:
            raise LedgerUnavailableError(str(e))

    def _revert_error(self, error: RpcError, handle: Optional[str] = None) -> ExecutionRevertedError:
        decoded = decode_revert(error.revert_data)
        message = decoded.message
        if decoded.data is None and error.message:
            message = error.message
        return ExecutionRevertedError(
            decoded.reason,
            message,
            revert_data=error.revert_data,
            ledger_handle=handle,
        )

    async def check_authorization(self, submitter: str) -> bool:
        result = await self._contract_call(build_authorized_relayers_call(submitter))
        try:
            return decode_bool(result)
        except ValueError as e:
            raise LedgerUnavailableError(f"Unreadable authorizedRelayers result: {e}")

    async def current_nonce(self, user: str) -> int:
        result = await self._contract_call(build_nonces_call(user))
        try:
            return decode_uint(result)
        except ValueError as e:
            raise LedgerUnavailableError(f"Unreadable nonces result: {e}")

    async def estimate_execution_cost(self, intent: SignedIntent) -> int:
        call_obj = {
            "from": self.relayer_address,
            "to": self.contract_address,
            "data": build_intent_call(intent),
        }
        try:
            gas_hex = await self._rpc_call("eth_estimateGas", [call_obj])
            return parse_quantity(gas_hex, "eth_estimateGas")
        except RpcError as e:
            category = classify_rpc_error(e.message)
            if category is ErrorCategory.EXECUTION or e.revert_data:
                raise self._revert_error(e)
            if category is ErrorCategory.AUTHORIZATION:
                raise SubmitterUnderfundedError(self.relayer_address)
            raise EstimationError(f"Failed to estimate gas: {e.message}")
        except LedgerUnavailableError as e:
            raise EstimationError(f"Failed to estimate gas: {e}")

    def _build_transaction(self, intent: SignedIntent, fee_settings: FeeSettings, nonce: int) -> Dict[str, Any]:
        tx: Dict[str, Any] = {
            "to": self.contract_address,
            "data": build_intent_call(intent),
            "value": 0,
            "gas": fee_settings.limit,
            "nonce": nonce,
            "chainId": self.chain_id,
        }
        if fee_settings.is_two_part:
            tx["maxFeePerGas"] = fee_settings.max_fee
            tx["maxPriorityFeePerGas"] = fee_settings.max_priority_fee
        else:
            tx["gasPrice"] = fee_settings.unit_price
        return tx

    async def submit(self, intent: SignedIntent, fee_settings: FeeSettings) -> str:
        try:
            nonce_hex = await self._rpc_call(
                "eth_getTransactionCount",
                [self.relayer_address, "pending"],
            )
            nonce = parse_quantity(nonce_hex, "eth_getTransactionCount")
        except (RpcError, LedgerUnavailableError) as e:
            raise SubmissionError(f"Could not read relayer sequence number: {e}")

        tx = self._build_transaction(intent, fee_settings, nonce)
        signed = self._account.sign_transaction(tx)

        try:
            tx_hash = await self._rpc_call("eth_sendRawTransaction", [to_hex(signed.raw_transaction)])
        except RpcError as e:
            category = classify_rpc_error(e.message)
            if category is ErrorCategory.AUTHORIZATION:
                raise SubmitterUnderfundedError(self.relayer_address)
            if category is ErrorCategory.EXECUTION:
                raise self._revert_error(e)
            raise SubmissionError(f"Transaction rejected: {e.message}")
        except LedgerUnavailableError as e:
            raise SubmissionError(str(e))

        handle = tx_hash or to_hex(signed.hash)
        logger.info(f"Transaction submitted: {handle} (nonce={tx['nonce']}, gas={fee_settings.limit})")
        return handle

    async def _replay_revert_data(self, handle: str, block_number: str) -> Optional[str]:
        """Re-run a reverted transaction with eth_call to recover its revert data."""
        try:
            tx = await self._rpc_call("eth_getTransactionByHash", [handle])
            if not tx:
                return None
            call_obj = {"from": tx["from"], "to": tx["to"], "data": tx.get("input", "0x")}
            await self._rpc_call("eth_call", [call_obj, block_number])
        except RpcError as e:
            return e.revert_data
        except LedgerUnavailableError as e:
            logger.warning(f"Could not replay reverted transaction {handle}: {e}")
        return None

    async def fetch_outcome(self, handle: str) -> Optional[LedgerOutcome]:
        try:
            receipt = await self._rpc_call("eth_getTransactionReceipt", [handle])
        except RpcError as e:
            raise LedgerUnavailableError(str(e))
        if not receipt:
            return None

        try:
            block_hex = receipt["blockNumber"]
            success = parse_quantity(receipt.get("status", "0x1"), "eth_getTransactionReceipt") == 1
            block_height = parse_quantity(block_hex, "eth_getTransactionReceipt")
            gas_used = parse_quantity(receipt["gasUsed"], "eth_getTransactionReceipt")
            gas_price = parse_quantity(receipt.get("effectiveGasPrice", "0x0"), "eth_getTransactionReceipt")
        except (KeyError, TypeError, AttributeError) as e:
            raise LedgerUnavailableError(f"Unreadable receipt for {handle}: {e!r}")

        if success:
            logger.info(f"Transaction confirmed: {handle} (block {block_height})")
            revert_data = None
        else:
            revert_data = await self._replay_revert_data(handle, block_hex)
        return LedgerOutcome(
            success=success,
            block_height=block_height,
            gas_used=gas_used,
            effective_gas_price=gas_price,
            revert_data=revert_data,
        )

    async def await_outcome(self, handle: str, timeout: float) -> LedgerOutcome:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            try:
                outcome = await self.fetch_outcome(handle)
            except LedgerUnavailableError as e:
                logger.warning(f"Error checking transaction status: {e}")
                outcome = None

            if outcome is not None:
                return outcome

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ConfirmationTimeoutError(handle, timeout)
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def fee_conditions(self) -> FeeSnapshot:
        gas_price: Optional[int] = None
        base_fee: Optional[int] = None
        priority_fee: Optional[int] = None

        try:
            gas_price = parse_quantity(await self._rpc_call("eth_gasPrice", []), "eth_gasPrice")
        except (RpcError, LedgerUnavailableError) as e:
            logger.warning(f"eth_gasPrice unavailable: {e}")

        try:
            fee_history = await self._rpc_call("eth_feeHistory", [1, "latest", [50]])
            base_fee = parse_quantity(fee_history["baseFeePerGas"][-1], "eth_feeHistory")
            if fee_history.get("reward"):
                priority_fee = parse_quantity(fee_history["reward"][0][0], "eth_feeHistory")
        except (RpcError, LedgerUnavailableError, KeyError, IndexError, TypeError) as e:
            logger.debug(f"eth_feeHistory unavailable, using single-price model: {e}")

        if base_fee is not None:
            try:
                priority_fee = parse_quantity(
                    await self._rpc_call("eth_maxPriorityFeePerGas", []), "eth_maxPriorityFeePerGas"
                )
            except (RpcError, LedgerUnavailableError) as e:
                logger.debug(f"eth_maxPriorityFeePerGas unavailable: {e}")

        if gas_price is None and base_fee is None:
            raise FeeQueryError("Network fee conditions unavailable")

        return FeeSnapshot(gas_price=gas_price, base_fee=base_fee, max_priority_fee=priority_fee)

    async def spendable_balance(self, address: str) -> int:
        try:
            balance_hex = await self._rpc_call("eth_getBalance", [address, "latest"])
        except RpcError as e:
            raise LedgerUnavailableError(str(e))
        return parse_quantity(balance_hex, "eth_getBalance")

    async def health_check(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "relayerAddress": self.relayer_address,
            "contractAddress": self.contract_address,
            "chainId": self.chain_id,
        }

    async def close(self) -> None:
        """Close HTTP client."""
        if self._owns_client:
            await self._client.aclose()
