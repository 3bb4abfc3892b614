from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from relayer.core.execution.models import FeeSettings, FeeSnapshot, LedgerOutcome, SignedIntent


class LedgerClient(ABC):
    """Capability interface over the ledger and the verifier contract"""

    name: str
    timeout_s: float = 20

    @property
    @abstractmethod
    def relayer_address(self) -> str:
        """Address of the account that signs and pays for submissions"""
        pass

    @abstractmethod
    async def check_authorization(self, submitter: str) -> bool:
        """Whether the verifier contract lets ``submitter`` relay intents"""
        pass

    @abstractmethod
    async def current_nonce(self, user: str) -> int:
        """The verifier's current meta-transaction nonce for ``user``"""
        pass

    @abstractmethod
    async def estimate_execution_cost(self, intent: SignedIntent) -> int:
        """Gas units needed to execute ``intent``, before any safety margin"""
        pass

    @abstractmethod
    async def submit(self, intent: SignedIntent, fee_settings: FeeSettings) -> str:
        """Sign and broadcast ``intent``; returns the ledger handle"""
        pass

    @abstractmethod
    async def await_outcome(self, handle: str, timeout: float) -> LedgerOutcome:
        """Wait for ``handle`` to be included; raises ConfirmationTimeoutError"""
        pass

    @abstractmethod
    async def fetch_outcome(self, handle: str) -> Optional[LedgerOutcome]:
        """Single receipt lookup for ``handle``; None while it is not included"""
        pass

    @abstractmethod
    async def fee_conditions(self) -> FeeSnapshot:
        """Current network fee snapshot"""
        pass

    @abstractmethod
    async def spendable_balance(self, address: str) -> int:
        """Native balance of ``address`` in wei"""
        pass

    async def health_check(self) -> Dict[str, Any]:
        return {"name": self.name, "relayerAddress": self.relayer_address}

    async def close(self) -> None:
        pass
