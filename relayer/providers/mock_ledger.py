"""
Deterministic in-process ledger.

Used by the test suite and selectable with LEDGER_BACKEND=mock for local
development. Every call is recorded and the outcome of estimate, submit and
confirmation can be scripted per call.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from relayer.config import ETHER, GWEI
from relayer.core.execution.errors import ConfirmationTimeoutError
from relayer.core.execution.models import (
    FeeSettings,
    FeeSnapshot,
    LedgerOutcome,
    SignedIntent,
)

from .base import LedgerClient


logger = logging.getLogger(__name__)


DEFAULT_RELAYER_ADDRESS = "0x00000000000000000000000000000000000000aa"

# Script entries
HANG = "hang"          # submit never returns
TIMEOUT = "timeout"    # await_outcome raises ConfirmationTimeoutError


class MockLedgerClient(LedgerClient):
    """
    Scriptable LedgerClient.

    Scripts are consumed front to back, one entry per call:
    - estimate_script: int gas units or an exception to raise
    - submit_script: None (succeed), HANG, or an exception to raise
    - outcome_script: LedgerOutcome, TIMEOUT, or an exception to raise
    - late_outcomes: handle -> LedgerOutcome or exception, read by fetch_outcome
    An empty script means the happy path.
    """

    name = "mock"

    def __init__(
        self,
        relayer_address: str = DEFAULT_RELAYER_ADDRESS,
        *,
        authorized: bool = True,
        balance: int = ETHER,
        nonces: Optional[Dict[str, int]] = None,
        execution_cost: int = 100_000,
        fee_snapshot: Optional[FeeSnapshot] = None,
        call_delay: float = 0.0,
        submit_delay: float = 0.0,
    ):
        self._relayer_address = relayer_address
        self.authorized = authorized
        self.balance = balance
        self.nonces: Dict[str, int] = {k.lower(): v for k, v in (nonces or {}).items()}
        self.execution_cost = execution_cost
        self.fee_snapshot = fee_snapshot or FeeSnapshot(gas_price=30 * GWEI)
        self.fee_conditions_error: Optional[Exception] = None
        self.call_delay = call_delay
        self.submit_delay = submit_delay

        self.estimate_script: List[Any] = []
        self.submit_script: List[Any] = []
        self.outcome_script: List[Any] = []
        self.late_outcomes: Dict[str, Any] = {}

        self.calls: List[Tuple[str, Any]] = []
        self.submitted: List[Tuple[SignedIntent, FeeSettings]] = []
        self.outcome_timeouts: List[float] = []
        self.fee_conditions_calls = 0
        self.in_flight_submits = 0
        self.max_in_flight_submits = 0
        self._handles = 0
        self._block_height = 1_000
        self.closed = False

    @property
    def relayer_address(self) -> str:
        return self._relayer_address

    async def _pause(self) -> None:
        if self.call_delay:
            await asyncio.sleep(self.call_delay)

    @staticmethod
    def _next(script: List[Any]) -> Any:
        return script.pop(0) if script else None

    def call_count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    async def check_authorization(self, submitter: str) -> bool:
        self.calls.append(("check_authorization", submitter))
        await self._pause()
        return self.authorized

    async def current_nonce(self, user: str) -> int:
        self.calls.append(("current_nonce", user))
        await self._pause()
        return self.nonces.get(user.lower(), 0)

    async def estimate_execution_cost(self, intent: SignedIntent) -> int:
        self.calls.append(("estimate_execution_cost", intent.user_address))
        await self._pause()
        step = self._next(self.estimate_script)
        if isinstance(step, Exception):
            raise step
        return self.execution_cost if step is None else int(step)

    async def submit(self, intent: SignedIntent, fee_settings: FeeSettings) -> str:
        self.calls.append(("submit", fee_settings))
        self.submitted.append((intent, fee_settings))
        self.in_flight_submits += 1
        self.max_in_flight_submits = max(self.max_in_flight_submits, self.in_flight_submits)
        try:
            if self.submit_delay:
                await asyncio.sleep(self.submit_delay)
            step = self._next(self.submit_script)
            if step == HANG:
                await asyncio.Event().wait()
            if isinstance(step, Exception):
                raise step
            self._handles += 1
            handle = "0x" + format(self._handles, "064x")
            logger.debug(f"Mock submission {handle} for {intent.user_address}")
            return handle
        finally:
            self.in_flight_submits -= 1

    async def await_outcome(self, handle: str, timeout: float) -> LedgerOutcome:
        self.calls.append(("await_outcome", handle))
        self.outcome_timeouts.append(timeout)
        await self._pause()
        step = self._next(self.outcome_script)
        if step == TIMEOUT:
            raise ConfirmationTimeoutError(handle, timeout)
        if isinstance(step, Exception):
            raise step
        if isinstance(step, LedgerOutcome):
            return step
        self._block_height += 1
        fee = self.submitted[-1][1] if self.submitted else None
        return LedgerOutcome(
            success=True,
            block_height=self._block_height,
            gas_used=self.execution_cost,
            effective_gas_price=fee.max_price if fee else 30 * GWEI,
        )

    async def fetch_outcome(self, handle: str) -> Optional[LedgerOutcome]:
        self.calls.append(("fetch_outcome", handle))
        await self._pause()
        step = self.late_outcomes.get(handle)
        if isinstance(step, Exception):
            raise step
        return step

    async def fee_conditions(self) -> FeeSnapshot:
        self.calls.append(("fee_conditions", None))
        self.fee_conditions_calls += 1
        await self._pause()
        if self.fee_conditions_error is not None:
            raise self.fee_conditions_error
        return self.fee_snapshot

    async def spendable_balance(self, address: str) -> int:
        self.calls.append(("spendable_balance", address))
        await self._pause()
        return self.balance

    async def close(self) -> None:
        self.closed = True
