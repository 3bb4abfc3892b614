"""
Sequence-slot serialization for the relay account.

Every submission from one signing identity consumes the next account sequence
number, so broadcasts from that identity must not overlap. Validation,
estimation and confirmation waits stay concurrent; only the submit call is
serialized.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

from .errors import SubmissionTimeoutError
from .models import utcnow


@dataclass
class SequencerState:
    """Submission bookkeeping for one signing identity."""
    identity: str
    submissions: int = 0
    failures: int = 0
    last_handle: Optional[str] = None
    last_submitted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


class SubmissionSequencer:
    """
    Serializes submissions per signing identity.

    Features:
    - One asyncio.Lock per identity, held only around the submit call
    - Submission timeout measured from lock acquisition, not from queueing
    - Per-identity counters for the status endpoints
    """

    def __init__(self):
        self._states: Dict[str, SequencerState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_key(self, identity: str) -> str:
        return identity.lower()

    def _get_lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def _get_state(self, key: str) -> SequencerState:
        if key not in self._states:
            self._states[key] = SequencerState(identity=key)
        return self._states[key]

    async def run(
        self,
        identity: str,
        submit: Callable[[], Awaitable[str]],
        timeout: Optional[float] = None,
    ) -> str:
        """
        Run ``submit`` while holding the identity's sequence slot.

        Args:
            identity: Signing identity whose sequence number is consumed
            submit: Zero-argument coroutine factory that broadcasts and returns the handle
            timeout: Wall-clock cap on the submit call itself

        Returns:
            The ledger handle returned by ``submit``

        Raises:
            SubmissionTimeoutError: If ``submit`` outlives ``timeout``
        """
        key = self._get_key(identity)
        lock = self._get_lock(key)

        async with lock:
            state = self._get_state(key)
            try:
                if timeout is None:
                    handle = await submit()
                else:
                    handle = await asyncio.wait_for(submit(), timeout=timeout)
            except asyncio.TimeoutError:
                state.failures += 1
                raise SubmissionTimeoutError(timeout)
            except Exception:
                state.failures += 1
                raise

            state.submissions += 1
            state.last_handle = handle
            state.last_submitted_at = utcnow()
            return handle

    def is_busy(self, identity: str) -> bool:
        lock = self._locks.get(self._get_key(identity))
        return lock.locked() if lock else False

    def get_state(self, identity: str) -> Optional[SequencerState]:
        """Get the bookkeeping for an identity."""
        return self._states.get(self._get_key(identity))
