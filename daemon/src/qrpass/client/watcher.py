"""Countdown and status polling for the initiating device.

Two asyncio tasks run side by side once a session is created:

- countdown: recomputes the seconds left from the absolute deadline
  every tick and ends the watch as expired at zero
- poll: asks the server for the session status every interval

Whichever task sees a terminal outcome first wins; it sets the shared
stop event and the other task exits on its next wake-up.
"""

import asyncio
import inspect
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import aiohttp

from qrpass.client.api import ApiError, PairingApiClient, SessionGoneApiError
from qrpass.logging import short_id

logger = logging.getLogger(__name__)


class WatchOutcome(Enum):
    """How a watched session ended."""

    SCANNED = "scanned"
    SCANNED_NOT_SAVED = "scanned_not_saved"  # Scan worked, pass not saved
    EXPIRED = "expired"
    CANCELLED = "cancelled"


@dataclass
class WatchResult:
    """Final result of watching a session."""

    outcome: WatchOutcome
    status: Optional[str] = None
    result_ref: Optional[str] = None
    error: Optional[str] = None


# Server terminal status -> outcome
_STATUS_OUTCOMES = {
    "completed": WatchOutcome.SCANNED,
    "expired": WatchOutcome.EXPIRED,
    "cancelled": WatchOutcome.CANCELLED,
}


async def _call(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class PairingWatcher:
    """Watches one pairing session until it reaches a terminal outcome.

    Usage:
        watcher = PairingWatcher(client, session_id, expires_at, on_tick=show)
        await watcher.start()
        result = await watcher.wait()
    """

    def __init__(
        self,
        client: PairingApiClient,
        session_id: str,
        expires_at: float,
        poll_interval: float = 2.0,
        tick_interval: float = 1.0,
        refresh_delay: float = 3.0,
        on_tick: Optional[Callable[[int], Any]] = None,
        on_outcome: Optional[Callable[[WatchResult], Any]] = None,
        on_refresh: Optional[Callable[[WatchResult], Any]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the watcher.

        Args:
            client: API client used for status and cancel calls.
            session_id: Session to watch.
            expires_at: Absolute deadline from the create response.
            poll_interval: Seconds between status polls.
            tick_interval: Seconds between countdown ticks.
            refresh_delay: Seconds to wait after a scan before on_refresh,
                since the new pass may not be queryable right away.
            on_tick: Called with the seconds left on every tick.
            on_outcome: Called once with the final result.
            on_refresh: Called after a successful scan, once refresh_delay
                has passed.
            clock: Time source, injectable for testing.
        """
        self.client = client
        self.session_id = session_id
        self.expires_at = expires_at
        self.poll_interval = poll_interval
        self.tick_interval = tick_interval
        self.refresh_delay = refresh_delay
        self._on_tick = on_tick
        self._on_outcome = on_outcome
        self._on_refresh = on_refresh
        self._clock = clock

        self._stop = asyncio.Event()
        self._done = asyncio.Event()
        self._result: Optional[WatchResult] = None
        self._tasks: list[asyncio.Task] = []
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def result(self) -> Optional[WatchResult]:
        return self._result

    def remaining(self) -> int:
        """Whole seconds left, recomputed from the deadline."""
        return max(0, math.ceil(self.expires_at - self._clock()))

    async def start(self) -> None:
        """Start the countdown and poll tasks."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._countdown_loop()),
            asyncio.create_task(self._poll_loop()),
        ]
        logger.debug(f"Watching session {short_id(self.session_id)}")

    async def wait(self) -> WatchResult:
        """Wait for the outcome (and the refresh that follows a scan)."""
        await self._done.wait()
        if self._refresh_task is not None:
            await self._refresh_task
        assert self._result is not None
        return self._result

    async def stop(self) -> None:
        """Stop both tasks without deciding an outcome."""
        self._stop.set()
        current = asyncio.current_task()
        for task in self._tasks:
            if task is current:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def cancel(self) -> WatchResult:
        """Cancel the session on explicit user action.

        Stops polling and the countdown, then tells the server. A 404/410
        from the server means the session already finished there and is
        ignored. If the server reports another terminal status (the scan
        won the race), that status is the outcome. An unreachable server
        still ends the watch; the session expires there on its own.

        Raises:
            ApiError: The server rejected the cancel for another reason.
        """
        if self._result is not None:
            return self._result

        await self.stop()

        status = "cancelled"
        try:
            response = await self.client.cancel(self.session_id)
            status = response.get("status", status)
        except SessionGoneApiError:
            logger.debug(f"Cancel raced with cleanup for {short_id(self.session_id)}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not reach server to cancel {short_id(self.session_id)}: {e}")
        finally:
            outcome = _STATUS_OUTCOMES.get(status, WatchOutcome.CANCELLED)
            await self._finish(WatchResult(outcome, status=status))

        return self._result

    async def _finish(self, result: WatchResult) -> bool:
        """Record the outcome. Only the first caller wins."""
        if self._result is not None:
            return False

        self._result = result
        self._stop.set()
        logger.info(f"Session {short_id(self.session_id)} finished: {result.outcome.value}")

        try:
            await _call(self._on_outcome, result)
        except Exception as e:
            logger.error(f"Outcome callback failed: {e}")
        finally:
            if result.outcome in (WatchOutcome.SCANNED, WatchOutcome.SCANNED_NOT_SAVED):
                self._refresh_task = asyncio.create_task(self._refresh_later(result))
            self._done.set()
        return True

    async def _refresh_later(self, result: WatchResult) -> None:
        await asyncio.sleep(self.refresh_delay)
        try:
            await _call(self._on_refresh, result)
        except Exception as e:
            logger.error(f"Refresh callback failed: {e}")

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped first. Returns True if stopped."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _countdown_loop(self) -> None:
        while not self._stop.is_set():
            remaining = self.remaining()
            try:
                await _call(self._on_tick, remaining)
            except Exception as e:
                logger.warning(f"Tick callback failed: {e}")

            if remaining == 0:
                await self._finish(WatchResult(WatchOutcome.EXPIRED, status="expired"))
                return

            if await self._sleep(self.tick_interval):
                return

    async def _poll_loop(self) -> None:
        while not self._stop.is_set():
            if await self._sleep(self.poll_interval):
                return

            result = await self.poll_once()
            if result is not None:
                await self._finish(result)
                return

    async def poll_once(self) -> Optional[WatchResult]:
        """Poll the status once and map it to an outcome.

        Returns:
            A terminal result, or None while the session is still active
            or the poll failed.
        """
        try:
            data = await self.client.get_status(self.session_id)
        except SessionGoneApiError as e:
            # Cleaned up on the server. With no terminal status attached,
            # treat it as the cleanup that follows a successful scan.
            status = e.final_status or "completed"
            return WatchResult(_STATUS_OUTCOMES.get(status, WatchOutcome.SCANNED), status=status)
        except ApiError as e:
            logger.warning(f"Status poll failed for {short_id(self.session_id)}: {e}")
            return None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Status poll error for {short_id(self.session_id)}: {e}")
            return None

        if data.get("scanned"):
            error = data.get("error")
            return WatchResult(
                WatchOutcome.SCANNED_NOT_SAVED if error else WatchOutcome.SCANNED,
                status="completed",
                result_ref=data.get("resultRef"),
                error=error,
            )

        status = data.get("status")
        if status in ("expired", "cancelled"):
            return WatchResult(_STATUS_OUTCOMES[status], status=status)
        return None
