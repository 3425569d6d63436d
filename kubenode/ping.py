"""Periodic health checks of a node provider.

A node controller registers a node with the API server and keeps it alive:
the ping controller calls the provider's ``ping`` on an interval and records
the outcome, which the status and lease loops consult before reporting the
node healthy.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PingResult:
    """Outcome of one ping: when it started and the error it ended with, if any.

    A ping that does not answer within the timeout has an
    ``asyncio.TimeoutError`` as its error and no start time.
    """

    time: Optional[datetime] = None
    error: Optional[BaseException] = None


class NodePingController:
    """Pings a node provider periodically, with at most one ping in flight.

    The provider's ``ping`` takes no arguments and may be a plain function
    or a coroutine function; raising an exception marks the node unhealthy.
    """

    def __init__(self, provider: Any, ping_interval: float, timeout: Optional[float] = None) -> None:
        if not ping_interval:
            raise ValueError("Node ping interval is 0")
        if timeout is not None and not timeout:
            raise ValueError("Node ping timeout is 0")
        self.provider = provider
        self.ping_interval = ping_interval
        self.timeout = timeout
        self._result: Optional[PingResult] = None
        self._ready: Optional[asyncio.Event] = None
        self._inflight: Optional[asyncio.Task] = None

    def _event(self) -> asyncio.Event:
        if self._ready is None:
            self._ready = asyncio.Event()
        return self._ready

    def _set(self, result: PingResult) -> None:
        self._result = result
        self._event().set()

    async def _ping_once(self) -> tuple[datetime, Optional[BaseException]]:
        started = datetime.now(timezone.utc)
        try:
            outcome = self.provider.ping()
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            return started, exc
        return started, None

    async def _check(self) -> None:
        # A ping that is still running is joined rather than started again,
        # so a stuck provider never has more than one call outstanding.
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._ping_once())
        task = self._inflight
        try:
            done, _ = await asyncio.wait({task}, timeout=self.timeout)
        except asyncio.CancelledError:
            self._set(PingResult(error=asyncio.CancelledError()))
            raise

        if task not in done:
            result = PingResult(error=asyncio.TimeoutError())
            logger.warning("Failed to ping node: timed out after %ss", self.timeout)
        elif task.cancelled():
            result = PingResult(error=asyncio.CancelledError())
        else:
            started, error = task.result()
            result = PingResult(time=started, error=error)
        self._set(result)

    async def run(self) -> None:
        """Ping the provider until cancelled."""
        try:
            while True:
                await self._check()
                await asyncio.sleep(self.ping_interval)
        finally:
            if self._inflight is not None and not self._inflight.done():
                self._inflight.cancel()

    async def get_result(self) -> PingResult:
        """Return the latest result, waiting for the first ping to finish."""
        await self._event().wait()
        assert self._result is not None
        return self._result