from __future__ import annotations

import asyncio
from typing import Sequence
from unittest import IsolatedAsyncioTestCase, TestCase

from completion_client import CompletionError
from prefill import SEPARATOR_PROMPT
from prompts import BUILTIN_PROMPTS
from runner import RunConfig, RunController
from throughput import ThroughputSample


class FakeCompletionClient:
    def __init__(
        self,
        fragments: Sequence[str] = (),
        stall: bool = False,
        fail_calls: Sequence[int] = (),
        fail_probe: bool = False,
    ) -> None:
        self.fragments = list(fragments)
        self.stall = stall
        self.fail_calls = set(fail_calls)
        self.fail_probe = fail_probe
        self.stream_prompts: list[str] = []
        self.probes = 0

    async def probe_token_count(self, model: str, prompt: str) -> int:
        self.probes += 1
        if self.fail_probe:
            raise CompletionError("unauthorized", http_status=401)
        return len(prompt.split()) + 3

    async def stream_chat(self, model: str, messages: list[dict[str, str]]):
        self.stream_prompts.append(messages[0]["content"])
        if len(self.stream_prompts) in self.fail_calls:
            raise CompletionError("stream reset", http_status=502)
        for fragment in self.fragments:
            await asyncio.sleep(0)
            yield fragment
        if self.stall:
            await asyncio.Event().wait()


class TestRunConfig(TestCase):
    def test_defaults(self) -> None:
        config = RunConfig(concurrency=3)
        self.assertEqual(config.count, 3)
        self.assertEqual(config.prompts, BUILTIN_PROMPTS)
        self.assertEqual(len(config.prompts), 21)
        self.assertEqual(config.context_length, 0)
        self.assertFalse(config.early_stop)

    def test_rejects_invalid_values(self) -> None:
        for kwargs in (
            {"concurrency": 0},
            {"count": -1},
            {"context_length": -5},
            {"prompts": ()},
            {"report_interval_s": 0.0},
        ):
            with self.assertRaises(ValueError):
                RunConfig(**kwargs)


class TestRunController(IsolatedAsyncioTestCase):
    async def test_end_to_end_single_prompt_run(self) -> None:
        samples: list[ThroughputSample] = []
        config = RunConfig(
            model="model",
            concurrency=2,
            count=4,
            prompts=("hello",),
            context_length=0,
            report_interval_s=0.01,
        )
        client = FakeCompletionClient(fragments=["a b ", "c"])
        controller = RunController(config, client, on_sample=samples.append)

        result = await controller.run()

        self.assertEqual(controller.prefill, "")
        self.assertEqual(client.probes, 0)
        self.assertEqual(client.stream_prompts, ["\nhello"] * 4)
        self.assertEqual(controller.state.remaining, 0)
        self.assertFalse(controller.state.running)
        self.assertFalse(controller.reporter.running)
        self.assertEqual(result.requests_claimed, 4)
        self.assertEqual(result.requests_completed, 4)
        self.assertEqual(result.generated_words, 8)
        self.assertFalse(result.stopped_early)
        self.assertTrue(result.ok)

        seen = len(samples)
        await asyncio.sleep(0.05)
        self.assertEqual(len(samples), seen)

    async def test_budget_is_consumed_exactly(self) -> None:
        for count in (0, 1, 3, 7):
            for concurrency in (1, 2, 5):
                config = RunConfig(
                    concurrency=concurrency, count=count, prompts=("p",)
                )
                client = FakeCompletionClient()
                controller = RunController(config, client)

                result = await controller.run()

                self.assertEqual(len(client.stream_prompts), count)
                self.assertEqual(controller.state.remaining, 0)
                self.assertEqual(result.requests_completed, count)

    async def test_prefill_is_prepended_to_every_prompt(self) -> None:
        config = RunConfig(
            concurrency=2, count=3, prompts=("hello",), context_length=100, seed=1
        )
        client = FakeCompletionClient()
        controller = RunController(config, client)

        await controller.run()

        self.assertGreater(client.probes, 0)
        self.assertTrue(controller.prefill.endswith("\n" + SEPARATOR_PROMPT))
        self.assertEqual(
            client.stream_prompts, [controller.prefill + "\nhello"] * 3
        )

    async def test_probe_failure_aborts_before_workers_start(self) -> None:
        config = RunConfig(concurrency=2, count=4, prompts=("hello",), context_length=100)
        client = FakeCompletionClient(fail_probe=True)
        controller = RunController(config, client)

        with self.assertRaises(CompletionError):
            await controller.run()

        self.assertEqual(client.stream_prompts, [])
        self.assertEqual(controller.state.claimed, 0)
        self.assertFalse(controller.reporter.running)

    async def test_worker_failure_is_isolated(self) -> None:
        config = RunConfig(concurrency=2, count=4, prompts=("hello",))
        client = FakeCompletionClient(fragments=["x "], fail_calls=[1])
        controller = RunController(config, client)

        with self.assertLogs("loadgen", level="ERROR"):
            result = await controller.run()

        self.assertEqual(len(client.stream_prompts), 4)
        self.assertEqual(result.requests_claimed, 4)
        self.assertEqual(result.requests_completed, 3)
        self.assertEqual(len(result.worker_errors), 1)
        self.assertIn("stream reset", result.worker_errors[0].error)
        self.assertFalse(result.ok)

    async def test_stop_aborts_in_flight_streams(self) -> None:
        config = RunConfig(concurrency=3, count=100, prompts=("hello",))
        client = FakeCompletionClient(fragments=["a b"], stall=True)
        controller = RunController(config, client)
        claimed_at_stop: list[int] = []

        def stop() -> None:
            claimed_at_stop.append(controller.state.claimed)
            controller.stop()

        asyncio.get_running_loop().call_later(0.05, stop)
        result = await asyncio.wait_for(controller.run(), timeout=2.0)

        self.assertEqual(claimed_at_stop, [3])
        self.assertEqual(result.requests_claimed, 3)
        self.assertEqual(result.requests_completed, 0)
        self.assertTrue(result.stopped_early)
        self.assertEqual(controller.state.remaining, 97)

    async def test_stop_is_idempotent(self) -> None:
        controller = RunController(RunConfig(prompts=("hello",)), FakeCompletionClient())
        with self.assertLogs("runner", level="INFO") as logs:
            controller.stop()
            controller.stop()
        self.assertEqual(sum("Stopping..." in line for line in logs.output), 1)

    async def test_early_stop_cancels_sibling_streams(self) -> None:
        config = RunConfig(concurrency=2, count=1, prompts=("hello",), early_stop=True)
        client = FakeCompletionClient(fragments=["a b"], stall=True)
        controller = RunController(config, client)

        result = await asyncio.wait_for(controller.run(), timeout=2.0)

        self.assertEqual(len(client.stream_prompts), 1)
        self.assertEqual(result.requests_claimed, 1)
        self.assertEqual(result.requests_completed, 0)
        self.assertFalse(controller.state.running)
