"""Tests for pending authorization state storage."""

import asyncio

import pytest

from etsy_mcp.oauth.state import STATE_TTL_SECONDS, StateStore


class TestStateStore:
    """Tests for put/consume semantics."""

    def test_consume_returns_verifier(self, clock) -> None:
        """Test that a stored state yields its verifier."""
        store = StateStore(clock=clock)
        store.put("s1", "verifier-1")

        assert store.consume("s1") == "verifier-1"

    def test_state_is_single_use(self, clock) -> None:
        """Test that every consume after the first returns None."""
        store = StateStore(clock=clock)
        store.put("s1", "verifier-1")

        assert store.consume("s1") == "verifier-1"
        assert store.consume("s1") is None
        assert store.consume("s1") is None
        assert "s1" not in store

    def test_unknown_state_returns_none(self, clock) -> None:
        """Test that a never-issued state is not found."""
        store = StateStore(clock=clock)
        assert store.consume("unknown") is None

    def test_states_are_independent(self, clock) -> None:
        """Test that concurrent attempts keep their own verifiers."""
        store = StateStore(clock=clock)
        store.put("s1", "v1")
        store.put("s2", "v2")

        assert store.consume("s2") == "v2"
        assert store.consume("s1") == "v1"

    def test_expired_state_not_consumable(self, clock) -> None:
        """Test that consume at exactly T + TTL finds nothing."""
        store = StateStore(clock=clock)
        store.put("s1", "v1")

        clock.advance(STATE_TTL_SECONDS)

        assert "s1" not in store
        assert store.consume("s1") is None

    def test_state_valid_just_before_ttl(self, clock) -> None:
        """Test that a state is still usable just before expiry."""
        store = StateStore(clock=clock)
        store.put("s1", "v1")

        clock.advance(STATE_TTL_SECONDS - 0.001)

        assert "s1" in store
        assert store.consume("s1") == "v1"

    def test_contains_ignores_non_strings(self, clock) -> None:
        """Test membership check with a non-string key."""
        store = StateStore(clock=clock)
        assert 123 not in store


class TestSweep:
    """Tests for expiry sweeping."""

    def test_sweep_removes_only_expired_entries(self, clock) -> None:
        """Test that sweep deletes entries older than the TTL."""
        store = StateStore(clock=clock)
        store.put("old", "v1")
        clock.advance(STATE_TTL_SECONDS / 2)
        store.put("new", "v2")
        clock.advance(STATE_TTL_SECONDS / 2)

        removed = store.sweep()

        assert removed == 1
        assert len(store) == 1
        assert "new" in store

    def test_sweep_after_consume_is_noop(self, clock) -> None:
        """Test that sweeping an already-consumed state is harmless."""
        store = StateStore(clock=clock)
        store.put("s1", "v1")
        store.consume("s1")
        clock.advance(STATE_TTL_SECONDS)

        assert store.sweep() == 0
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_background_sweeper_evicts_entries(self, clock) -> None:
        """Test that the periodic sweep runs on its interval."""
        store = StateStore(sweep_interval=0.01, clock=clock)
        store.put("s1", "v1")
        clock.advance(STATE_TTL_SECONDS)

        store.start_sweeper()
        try:
            for _ in range(100):
                if len(store) == 0:
                    break
                await asyncio.sleep(0.01)
        finally:
            await store.stop_sweeper()

        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_start_sweeper_is_idempotent(self, clock) -> None:
        """Test that starting twice keeps a single task."""
        store = StateStore(clock=clock)
        store.start_sweeper()
        task = store._sweeper
        store.start_sweeper()

        assert store._sweeper is task
        await store.stop_sweeper()
        assert store._sweeper is None

    @pytest.mark.asyncio
    async def test_stop_without_start(self, clock) -> None:
        """Test that stopping a never-started sweeper is a no-op."""
        store = StateStore(clock=clock)
        await store.stop_sweeper()
