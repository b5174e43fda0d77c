from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from loadgen import SharedRunState, worker_loop
from prefill import compute_prefill
from prompts import BUILTIN_PROMPTS
from throughput import ThroughputReporter, ThroughputSample

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunConfig:
    model: str = "text-davinci-003"
    concurrency: int = 1
    count: Optional[int] = None
    prompts: tuple[str, ...] = BUILTIN_PROMPTS
    context_length: int = 0
    early_stop: bool = False
    report_interval_s: float = 1.0
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.count is None:
            object.__setattr__(self, "count", self.concurrency)
        if self.count < 0:
            raise ValueError(f"count must be >= 0, got {self.count}")
        if self.context_length < 0:
            raise ValueError(f"context_length must be >= 0, got {self.context_length}")
        if not self.prompts:
            raise ValueError("prompts must not be empty")
        if self.report_interval_s <= 0:
            raise ValueError(
                f"report_interval_s must be > 0, got {self.report_interval_s}"
            )


@dataclass
class WorkerError:
    slot_id: int
    error: str


@dataclass
class RunResult:
    requests_claimed: int
    requests_completed: int
    generated_words: int
    elapsed_s: float
    stopped_early: bool
    worker_errors: list[WorkerError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.worker_errors


class RunController:
    """Owns one stress run: prefill sizing, the worker pool and the reporter."""

    def __init__(
        self,
        config: RunConfig,
        client: Any,
        on_sample: Optional[Callable[[ThroughputSample], None]] = None,
    ) -> None:
        self.config = config
        self.client = client
        self.state = SharedRunState(config.concurrency, config.count)
        self.reporter = ThroughputReporter(
            self.state,
            interval_s=config.report_interval_s,
            on_sample=on_sample,
        )
        self.prefill = ""
        self._rng = random.Random(config.seed)

    def stop(self) -> None:
        if not self.state.stop():
            return
        logger.info("Stopping...")
        self.reporter.cancel()

    async def run(self) -> RunResult:
        started = time.monotonic()
        try:
            self.prefill = await compute_prefill(
                self.client,
                self.config.model,
                self.config.context_length,
                rng=random.Random(self._rng.random()),
            )

            worker_tasks: list[asyncio.Task[None]] = []
            for slot_id in range(self.config.concurrency):
                worker_rng = random.Random(self._rng.random())
                worker_tasks.append(
                    asyncio.create_task(
                        worker_loop(
                            slot_id,
                            state=self.state,
                            client=self.client,
                            model=self.config.model,
                            prompts=self.config.prompts,
                            prefill=self.prefill,
                            rng=worker_rng,
                            early_stop=self.config.early_stop,
                            stop_run=self.stop,
                        )
                    )
                )

            if self.state.running:
                self.reporter.start()
            results = await asyncio.gather(*worker_tasks, return_exceptions=True)
        finally:
            self.stop()
            await self.reporter.stop()

        worker_errors: list[WorkerError] = []
        for slot_id, outcome in enumerate(results):
            if isinstance(outcome, asyncio.CancelledError):
                continue
            if isinstance(outcome, BaseException):
                worker_errors.append(WorkerError(slot_id=slot_id, error=str(outcome)))

        result = RunResult(
            requests_claimed=self.state.claimed,
            requests_completed=self.state.completed,
            generated_words=self.state.generated_words,
            elapsed_s=time.monotonic() - started,
            stopped_early=self.state.completed + len(worker_errors) < self.config.count,
            worker_errors=worker_errors,
        )
        logger.info(
            "Run finished: %d/%d requests completed, %d words generated in %.1fs",
            result.requests_completed,
            self.config.count,
            result.generated_words,
            result.elapsed_s,
        )
        return result
