"""
Backoff Timeout — exponential delay between failed ReceiveMessage calls.

One instance is shared by every worker of a receiver, so the delay tracks
the health of the queue endpoint rather than of a single worker:

    counter:  0   1   2   3   …   8     9+
    delay:    1s  2s  4s  8s  …   256s  300s
"""
from __future__ import annotations

import asyncio
from typing import Optional

import structlog

logger = structlog.get_logger()

MAX_DELAY_SECONDS = 300
MAX_COUNTER = 100


class BackoffTimeout:

    def __init__(self, max_delay: float = MAX_DELAY_SECONDS, max_counter: int = MAX_COUNTER):
        self.max_delay = max_delay
        self.max_counter = max_counter
        self.counter = 0

    @property
    def delay(self) -> float:
        """Seconds the next wait() will sleep for."""
        return min(2 ** self.counter, self.max_delay)

    def reset(self) -> None:
        self.counter = 0

    async def wait(self, interrupt: Optional[asyncio.Event] = None) -> bool:
        """
        Sleep for the current delay, then advance the counter.

        The next counter value is computed before sleeping, so workers that
        fail together wait the same delay and advance the counter once.
        If ``interrupt`` is set during the sleep the wait ends early, the
        counter is left as is and False is returned.
        """
        updated = min(self.counter + 1, self.max_counter)
        seconds = self.delay
        logger.debug("backoff_wait", seconds=seconds, counter=self.counter)

        if interrupt is None:
            await asyncio.sleep(seconds)
        else:
            try:
                await asyncio.wait_for(interrupt.wait(), timeout=seconds)
                return False
            except asyncio.TimeoutError:
                pass

        self.counter = updated
        return True
