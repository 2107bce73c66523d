"""Tests for PairingSweeper - periodic store housekeeping."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from qrpass.pairing.session import PairingSession, SessionStatus
from qrpass.pairing.store import InMemorySessionStore, SweepResult
from qrpass.pairing.sweeper import PairingSweeper


class TestSweeperLifecycle:
    """Tests for start/stop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        sweeper = PairingSweeper(InMemorySessionStore(), interval=10)

        await sweeper.start()
        assert sweeper.running is True

        await sweeper.stop()
        assert sweeper.running is False

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self):
        store = AsyncMock()
        sweeper = PairingSweeper(store, interval=10)

        await sweeper.start()
        task = sweeper._task
        await sweeper.start()

        assert sweeper._task is task
        await sweeper.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        sweeper = PairingSweeper(InMemorySessionStore())
        await sweeper.stop()
        assert sweeper.running is False


class TestSweepLoop:
    """Tests for the periodic loop."""

    @pytest.mark.asyncio
    async def test_loop_sweeps_periodically(self):
        store = AsyncMock()
        store.sweep = AsyncMock(return_value=SweepResult())
        sweeper = PairingSweeper(store, interval=0.01)

        await sweeper.start()
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert store.sweep.await_count >= 2

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self):
        store = AsyncMock()
        store.sweep = AsyncMock(side_effect=[RuntimeError("boom"), SweepResult(), SweepResult()])
        sweeper = PairingSweeper(store, interval=0.01)

        await sweeper.start()
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert store.sweep.await_count >= 2

    @pytest.mark.asyncio
    async def test_sweep_once_expires_without_reads(self, clock):
        """Overdue sessions expire even if nobody polls them."""
        store = InMemorySessionStore(retention_grace=10, clock=clock)
        session = PairingSession.create(
            "event-ticket", {"title": "x"}, "user-1", 60, "http://h", now=clock()
        )
        await store.put(session)
        clock.advance(61)
        sweeper = PairingSweeper(store)

        result = await sweeper.sweep_once()

        assert result.expired == 1
        assert store._sessions[session.session_id].status == SessionStatus.EXPIRED
