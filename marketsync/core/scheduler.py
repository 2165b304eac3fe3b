"""Fixed-rate polling loops with clean cancellation.

Each scheduled task fires on a fixed grid (``start + k * interval``) no
matter how long earlier invocations take; every invocation runs as its own
``asyncio`` task bounded by a timeout. Cancelling a handle stops future
firings only: an invocation already running is left to finish and write
its result.

A timed-out invocation stops waiting, but fetches it shares with other
callers keep running; those are bounded by the connectors' own request
deadline.
"""

from __future__ import annotations

import asyncio
import math
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from marketsync.config.constants import UPSTREAM_TIMEOUT_SECONDS
from marketsync.utils.logging import get_logger


logger = get_logger("scheduler")

PollFn = Callable[[], Awaitable[Any]]


class CancelHandle:
    def __init__(self, task_id: str):
        self.task_id = task_id
        self.fired = 0
        self._cancelled = False
        self._timer: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        logger.debug("Cancelled poll task %s after %d firings", self.task_id, self.fired)


class PollScheduler:
    def __init__(self, timeout: Optional[float] = UPSTREAM_TIMEOUT_SECONDS):
        self.timeout = timeout
        self._handles: Dict[str, CancelHandle] = {}
        self._inflight: Set[asyncio.Task] = set()

    def schedule(self, task_id: str, interval: float, fn: PollFn, immediate: bool = True) -> CancelHandle:
        """Run ``fn`` every ``interval`` seconds until the handle is cancelled.

        Scheduling an existing ``task_id`` replaces (and cancels) the old one.
        """
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")

        previous = self._handles.get(task_id)
        if previous is not None:
            previous.cancel()

        handle = CancelHandle(task_id)
        handle._timer = asyncio.ensure_future(self._run(handle, interval, fn, immediate))
        self._handles[task_id] = handle
        logger.info("Scheduled %s every %.1fs (immediate=%s)", task_id, interval, immediate)
        return handle

    def handle(self, task_id: str) -> Optional[CancelHandle]:
        return self._handles.get(task_id)

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def cancel(self, task_id: str) -> None:
        handle = self._handles.pop(task_id, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        for task_id in list(self._handles):
            self.cancel(task_id)

    async def wait_idle(self) -> None:
        """Wait for invocations that were already running to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def shutdown(self) -> None:
        timers = [h._timer for h in self._handles.values() if h._timer is not None]
        self.cancel_all()
        await asyncio.gather(*timers, return_exceptions=True)
        await self.wait_idle()

    async def _run(self, handle: CancelHandle, interval: float, fn: PollFn, immediate: bool) -> None:
        loop = asyncio.get_running_loop()
        start = loop.time()
        tick = 0 if immediate else 1
        while not handle.cancelled:
            delay = start + tick * interval - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            if handle.cancelled:
                break
            self._fire(handle, fn)
            # Skip grid points missed while the loop was busy rather than bursting
            tick = max(tick + 1, math.floor((loop.time() - start) / interval) + 1)

    def _fire(self, handle: CancelHandle, fn: PollFn) -> None:
        handle.fired += 1
        task = asyncio.ensure_future(self._invoke(handle.task_id, fn))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _invoke(self, task_id: str, fn: PollFn) -> None:
        try:
            if self.timeout:
                await asyncio.wait_for(fn(), timeout=self.timeout)
            else:
                await fn()
        except asyncio.TimeoutError:
            logger.warning("Poll task %s timed out after %.1fs", task_id, self.timeout)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Poll task %s failed: %r", task_id, exc)
