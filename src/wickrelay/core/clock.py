from __future__ import annotations

import asyncio
import time

from wickrelay.core import log
from wickrelay.core.metrics import observe_hist


class BeatClock:
    """
    Fixed-interval async clock.

        async for ts, i in clock.ticks():
            ...

    Yields (unix_ts: float, index: int). Scheduling uses the monotonic clock
    and advances by whole intervals, so slow consumers do not accumulate drift.
    """

    def __init__(self, *, interval: float = 1.0, name: str = "clock", immediate: bool = False):
        self.interval = float(interval)
        if self.interval <= 0:
            raise ValueError("interval must be > 0")
        self.name = name
        self.immediate = immediate
        self.l = log.get(f"wickrelay.{name}")
        self._running = False

    @property
    def hz(self) -> float:
        return 1.0 / self.interval

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Let the generator finish after the current beat."""
        self._running = False

    async def ticks(self):
        if self._running:
            raise RuntimeError(f"clock {self.name} is already ticking")

        self._running = True
        self.l.info("clock start interval=%.3fs", self.interval)
        i = 0
        try:
            next_t = time.perf_counter() + (0.0 if self.immediate else self.interval)
            while self._running:
                now = time.perf_counter()
                if now < next_t:
                    await asyncio.sleep(next_t - now)
                    if not self._running:
                        break
                i += 1
                yield (time.time(), i)
                after = time.perf_counter()
                observe_hist("clock_loop_ms", (after - now) * 1000.0, clock=self.name)
                # skip missed beats rather than bursting to catch up
                next_t = max(next_t + self.interval, after)
        finally:
            self._running = False
            self.l.info("clock stop ticks=%d", i)
