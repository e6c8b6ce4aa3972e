"""Cooperative rate limiting for outbound feed requests."""

import asyncio
import time
from typing import Callable, Optional


class RateLimit:
    """Enforce a maximum call rate by awaiting :meth:`ready` before each call.

    Only one timer is ever outstanding. Callers that arrive while another
    caller is waiting attach to that wait instead of starting their own, and
    the waiting flag is cleared in a separate loop callback after the timer
    fires, so queued callers are released one at a time.

    Example (log every two seconds)::

        limit = RateLimit(0.5)
        for _ in range(10):
            await limit.ready()
            logger.info("tick")
    """

    def __init__(self, calls_per_second: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.interval = 1.0 / calls_per_second if calls_per_second > 0 else 0.0
        self._clock = clock
        self._waiting: Optional[asyncio.Future] = None
        self._last_used: Optional[float] = None

    @property
    def is_waiting(self) -> bool:
        return self._waiting is not None

    def _remaining_wait(self) -> float:
        if self._last_used is None:
            return 0.0
        return self.interval - (self._clock() - self._last_used)

    async def ready(self) -> None:
        while self._waiting is not None:
            await asyncio.shield(self._waiting)

        minimum_wait = self._remaining_wait()
        if minimum_wait > 0:
            loop = asyncio.get_running_loop()
            waiting = loop.create_future()
            self._waiting = waiting
            try:
                await asyncio.sleep(minimum_wait)
            except asyncio.CancelledError:
                self._release(waiting)
                raise
            loop.call_soon(self._release, waiting)

        self._last_used = self._clock()

    def _release(self, waiting: asyncio.Future) -> None:
        if self._waiting is waiting:
            self._waiting = None
        if not waiting.done():
            waiting.set_result(None)
