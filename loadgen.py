from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowSnapshot:
    generated_words: int
    active_workers: int
    remaining_requests: int


class SharedRunState:
    """Mutable state shared by the workers and the throughput reporter.

    Every mutation happens under one ``asyncio.Lock`` that is never held across
    a network call. Only the reporter clears the per-slot activity flags, via
    ``collect_window``.
    """

    def __init__(self, concurrency: int, count: int) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        if count < 0:
            raise ValueError(f"count must be >= 0, got {count}")
        self.concurrency = concurrency
        self._remaining = count
        self._claimed = 0
        self._completed = 0
        self._generated_words = 0
        self._active = [False] * concurrency
        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set()

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def claimed(self) -> int:
        return self._claimed

    @property
    def completed(self) -> int:
        return self._completed

    @property
    def generated_words(self) -> int:
        return self._generated_words

    def stop(self) -> bool:
        """Clear the running flag. Returns False if it was already cleared."""
        if self._stop_event.is_set():
            return False
        self._stop_event.set()
        return True

    async def wait_stopped(self) -> None:
        await self._stop_event.wait()

    async def claim(self) -> bool:
        async with self._lock:
            if self._remaining <= 0 or self._stop_event.is_set():
                return False
            self._remaining -= 1
            self._claimed += 1
            return True

    async def record_fragment(self, slot_id: int, fragment: str) -> int:
        # Spaces stand in for words; undercounts at fragment boundaries.
        words = fragment.count(" ")
        async with self._lock:
            if fragment:
                self._active[slot_id] = True
            self._generated_words += words
        return words

    async def mark_completed(self) -> None:
        async with self._lock:
            self._completed += 1

    async def collect_window(self) -> WindowSnapshot:
        async with self._lock:
            active_workers = sum(1 for flag in self._active if flag)
            for index in range(len(self._active)):
                self._active[index] = False
            return WindowSnapshot(
                generated_words=self._generated_words,
                active_workers=active_workers,
                remaining_requests=self._remaining,
            )


def build_messages(prompt: str) -> list[dict[str, str]]:
    return [{"role": "user", "content": prompt}]


async def _consume_stream(
    slot_id: int,
    prompt: str,
    client: Any,
    model: str,
    state: SharedRunState,
) -> bool:
    async with contextlib.aclosing(
        client.stream_chat(model, build_messages(prompt))
    ) as stream:
        async for fragment in stream:
            if not state.running:
                return False
            await state.record_fragment(slot_id, fragment)
    return True


async def generate(
    slot_id: int,
    prompt: str,
    client: Any,
    model: str,
    state: SharedRunState,
) -> bool:
    """Stream one chat completion into ``state``.

    Returns True when the stream ran to its end and False when it was aborted
    because the run stopped. The stream is raced against the stop event, so a
    stop closes the HTTP response right away instead of on the next fragment.
    Stream errors propagate.
    """
    consumer = asyncio.create_task(_consume_stream(slot_id, prompt, client, model, state))
    stopper = asyncio.create_task(state.wait_stopped())
    try:
        await asyncio.wait({consumer, stopper}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stopper.cancel()
        if not consumer.done():
            consumer.cancel()
        await asyncio.wait({consumer, stopper})

    if consumer.cancelled():
        return False
    return consumer.result()


async def worker_loop(
    slot_id: int,
    state: SharedRunState,
    client: Any,
    model: str,
    prompts: Sequence[str],
    prefill: str,
    rng: random.Random,
    early_stop: bool = False,
    stop_run: Optional[Callable[[], None]] = None,
) -> None:
    budget_exhausted = False
    while state.running:
        if not await state.claim():
            budget_exhausted = state.running
            break
        prompt = prefill + "\n" + rng.choice(prompts)
        try:
            finished = await generate(slot_id, prompt, client, model, state)
        except Exception as exc:
            logger.error("Worker %d failed: %s", slot_id, exc)
            raise
        if finished:
            await state.mark_completed()

    logger.debug("Worker %d exiting (budget exhausted: %s)", slot_id, budget_exhausted)
    if early_stop and budget_exhausted and stop_run is not None:
        stop_run()
