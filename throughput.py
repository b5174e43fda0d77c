from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from loadgen import SharedRunState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThroughputSample:
    rate_words_per_s: float
    generated_words: int
    active_workers: int
    concurrency: int
    remaining_requests: int

    def describe(self) -> str:
        return (
            f"Current speed: {self.rate_words_per_s:.1f} words/s, "
            f"generated: {self.generated_words} words, "
            f"running: {self.active_workers}/{self.concurrency}, "
            f"remaining: {self.remaining_requests} requests"
        )


class ThroughputReporter:
    """Periodic task that turns the shared counters into ``ThroughputSample``s.

    The reporter owns the previous-tick word count and is the only component
    that clears the per-worker activity flags.
    """

    def __init__(
        self,
        state: SharedRunState,
        interval_s: float = 1.0,
        on_sample: Optional[Callable[[ThroughputSample], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval_s <= 0:
            raise ValueError(f"interval_s must be > 0, got {interval_s}")
        self.state = state
        self.interval_s = interval_s
        self.on_sample = on_sample
        self._clock = clock
        self._last_generated = 0
        self._last_tick = 0.0
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._last_tick = self._clock()
        self._last_generated = self.state.generated_words
        self._task = asyncio.create_task(self._run_loop())

    def cancel(self) -> None:
        self._stop_event.set()

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            await self.tick()

    async def tick(self) -> ThroughputSample:
        window = await self.state.collect_window()
        now = self._clock()
        elapsed = now - self._last_tick
        delta = window.generated_words - self._last_generated
        rate = delta / elapsed if elapsed > 0 else 0.0
        self._last_tick = now
        self._last_generated = window.generated_words

        sample = ThroughputSample(
            rate_words_per_s=rate,
            generated_words=window.generated_words,
            active_workers=window.active_workers,
            concurrency=self.state.concurrency,
            remaining_requests=window.remaining_requests,
        )
        logger.info(sample.describe())
        if self.on_sample is not None:
            self.on_sample(sample)
        return sample
