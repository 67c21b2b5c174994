"""Pending authorization state storage.

Maps the CSRF ``state`` parameter of an in-flight authorization to the PKCE
code verifier generated for it. Entries are single-use and expire after a
fixed TTL whether or not they were consumed; a background task sweeps expired
entries so abandoned browser flows do not accumulate.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

# Pending state lifetime
STATE_TTL_SECONDS = 5 * 60

# Interval between background sweeps
SWEEP_INTERVAL_SECONDS = 60


@dataclass
class PendingAuthState:
    """One in-flight authorization attempt.

    Attributes:
        state: Opaque random CSRF correlator
        code_verifier: PKCE verifier bound to this attempt
        created_at: Clock reading when the entry was stored
    """

    state: str
    code_verifier: str
    created_at: float


class StateStore:
    """In-memory, self-expiring map of state -> PKCE verifier.

    The clock is injectable so expiry can be exercised without waiting:

        clock = FakeClock()
        store = StateStore(clock=clock)
        store.put("s1", verifier)
        clock.advance(STATE_TTL_SECONDS)
        assert store.consume("s1") is None
    """

    def __init__(
        self,
        ttl: float = STATE_TTL_SECONDS,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: dict[str, PendingAuthState] = {}
        self._sweeper: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, state: object) -> bool:
        if not isinstance(state, str):
            return False
        entry = self._entries.get(state)
        return entry is not None and not self._is_expired(entry)

    def _is_expired(self, entry: PendingAuthState) -> bool:
        return self._clock() - entry.created_at >= self.ttl

    def put(self, state: str, code_verifier: str) -> PendingAuthState:
        """Store a pending authorization keyed by its state value.

        Args:
            state: The state parameter sent in the authorization URL
            code_verifier: The PKCE verifier for this attempt

        Returns:
            The stored PendingAuthState
        """
        entry = PendingAuthState(state=state, code_verifier=code_verifier, created_at=self._clock())
        self._entries[state] = entry
        logger.debug(f"Stored pending state {state[:8]}... ({len(self._entries)} pending)")
        return entry

    def consume(self, state: str) -> str | None:
        """Retrieve and delete the verifier for a state value.

        Args:
            state: The state parameter received in the callback

        Returns:
            The code verifier, or None if the state was never issued,
            was already consumed, or has expired
        """
        entry = self._entries.pop(state, None)
        if entry is None:
            return None
        if self._is_expired(entry):
            logger.debug(f"Pending state {state[:8]}... expired before callback")
            return None
        return entry.code_verifier

    def sweep(self) -> int:
        """Delete every entry older than the TTL.

        Returns:
            Number of entries removed
        """
        expired = [state for state, entry in self._entries.items() if self._is_expired(entry)]
        for state in expired:
            # A concurrent consume may already have removed it
            self._entries.pop(state, None)
            logger.debug(f"Expired state removed: {state[:8]}...")
        return len(expired)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start_sweeper(self) -> None:
        """Start the periodic background sweep (no-op if already running)."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())

    async def stop_sweeper(self) -> None:
        """Cancel the background sweep and wait for it to finish."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
