"""
Long-lived relay dependencies.

One RelayContext is built at startup and shared by every request: it owns the
ledger client, the status store, the sequencer and every pipeline task still
running in the background.
"""

import asyncio
import logging
from typing import Coroutine, Optional, Set

from relayer.config import Settings
from relayer.db.status_store import StatusStore, get_status_store
from relayer.providers.base import LedgerClient
from relayer.providers.evm_ledger import EvmLedgerClient
from relayer.providers.mock_ledger import MockLedgerClient

from .fee_estimator import FeeEstimator
from .sequencer import SubmissionSequencer


logger = logging.getLogger(__name__)


class RelayContext:
    """Container for the relay's shared clients and background tasks."""

    def __init__(
        self,
        settings: Settings,
        ledger: LedgerClient,
        store: StatusStore,
        fee_estimator: Optional[FeeEstimator] = None,
        sequencer: Optional[SubmissionSequencer] = None,
    ):
        self.settings = settings
        self.ledger = ledger
        self.store = store
        self.fee_estimator = fee_estimator or FeeEstimator.from_settings(settings)
        self.sequencer = sequencer or SubmissionSequencer()
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        """Run ``coro`` as a task the context keeps alive until it finishes."""
        if self._closed:
            coro.close()
            raise RuntimeError("Relay context is shutting down")
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self, timeout: float) -> int:
        """
        Wait up to ``timeout`` seconds for running tasks, then cancel the rest.

        Returns:
            Number of tasks that had to be cancelled
        """
        if not self._tasks:
            return 0

        pending_tasks = set(self._tasks)
        logger.info(f"Waiting for {len(pending_tasks)} in-flight submissions")
        _, still_running = await asyncio.wait(pending_tasks, timeout=timeout)

        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"Cancelled {len(still_running)} submissions still running at shutdown")
            await asyncio.gather(*still_running, return_exceptions=True)
        return len(still_running)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.drain(self.settings.shutdown_grace_seconds)
        await self.ledger.close()
        await self.store.close()


def build_ledger_client(settings: Settings) -> LedgerClient:
    if settings.ledger_backend == "mock":
        logger.warning("Using the mock ledger; nothing will reach a real network")
        return MockLedgerClient()
    return EvmLedgerClient.from_settings(settings)


def build_relay_context(
    settings: Settings,
    ledger: Optional[LedgerClient] = None,
    store: Optional[StatusStore] = None,
) -> RelayContext:
    """Build the context from settings; ``ledger`` and ``store`` override the configured backends."""
    return RelayContext(
        settings=settings,
        ledger=ledger or build_ledger_client(settings),
        store=store or get_status_store(settings),
    )
