"""Periodic sweep of the session store.

Expires overdue sessions and removes finished ones even when nobody
polls them, so the store never holds a session longer than its
lifetime plus the retention grace.

Usage:
    sweeper = PairingSweeper(store, interval=5.0)
    await sweeper.start()
    ...
    await sweeper.stop()
"""

import asyncio
import logging
from typing import Optional

from qrpass.pairing.store import SessionStore, SweepResult

logger = logging.getLogger(__name__)


class PairingSweeper:
    """Runs SessionStore.sweep() on a fixed interval."""

    def __init__(self, store: SessionStore, interval: float = 5.0):
        """Initialize the sweeper.

        Args:
            store: Store to sweep.
            interval: Seconds between sweeps.
        """
        self._store = store
        self._interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the sweep loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(f"PairingSweeper started (interval={self._interval}s)")

    async def stop(self) -> None:
        """Stop the sweep loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("PairingSweeper stopped")

    async def sweep_once(self) -> SweepResult:
        """Run a single sweep and log what changed."""
        result = await self._store.sweep()
        if result.expired or result.deleted or result.pruned:
            logger.debug(
                f"Sweep: expired={result.expired} deleted={result.deleted} "
                f"pruned={result.pruned}"
            )
        return result

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval)
                await self.sweep_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Sweep loop error: {e}")
