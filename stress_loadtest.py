from __future__ import annotations

import argparse
import asyncio
import os
import re
import signal
import sys
from pathlib import Path
from typing import Optional, Sequence

from completion_client import CompletionClient, CompletionError
from log_setup import setup_logging
from prompts import load_prompts
from runner import RunConfig, RunController

API_BASE_PATTERN = re.compile(r"^(http|https)://")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Stress test an OpenAI-compatible streaming endpoint and report "
            "sustained generation throughput."
        )
    )

    parser.add_argument(
        "-b",
        "--api-base",
        default=os.environ.get("OPENAI_API_BASE"),
        help="API base URL including the version prefix (default: $OPENAI_API_BASE)",
    )
    parser.add_argument(
        "-k",
        "--api-key",
        default=os.environ.get("OPENAI_API_KEY"),
        help="API key (default: $OPENAI_API_KEY)",
    )
    parser.add_argument("-m", "--model", default="text-davinci-003", help="Model ID")
    parser.add_argument(
        "-t",
        "--concurrent",
        dest="concurrency",
        type=int,
        default=1,
        help="Number of concurrent requests",
    )
    parser.add_argument(
        "-c",
        "--count",
        type=int,
        default=None,
        help="Number of requests (default: same as concurrency)",
    )
    parser.add_argument(
        "-p",
        "--prompt-file",
        type=Path,
        default=None,
        help="Prompt file (.txt), one prompt per line (default: built-in prompts)",
    )
    parser.add_argument(
        "-x",
        "--context-length",
        type=int,
        default=0,
        help="Prefill each conversation with this many tokens",
    )
    parser.add_argument(
        "--early-stop",
        action="store_true",
        help="Stop the whole run once the remaining requests reach 0",
    )

    parser.add_argument("--timeout-s", type=float, default=300.0)
    parser.add_argument("--report-interval-s", type=float, default=1.0)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    parser.add_argument("--log-file", type=Path, default=None)

    return parser


def _validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if not args.api_base or not API_BASE_PATTERN.match(args.api_base):
        parser.error("OpenAI API base URL is invalid or missing")
    if args.concurrency < 1:
        parser.error("--concurrent must be >= 1")
    if args.count is not None and args.count < 0:
        parser.error("--count must be >= 0")
    if args.context_length < 0:
        parser.error("--context-length must be >= 0")
    if args.timeout_s <= 0:
        parser.error("--timeout-s must be > 0")
    if args.report_interval_s <= 0:
        parser.error("--report-interval-s must be > 0")
    if args.prompt_file is not None and not args.prompt_file.exists():
        parser.error(f"--prompt-file not found: {args.prompt_file}")


def _install_signal_handlers(controller: RunController, run_task: asyncio.Task) -> None:
    loop = asyncio.get_running_loop()

    def _interrupt() -> None:
        controller.stop()
        run_task.cancel()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _interrupt)
        except NotImplementedError:
            # Windows event loops; Ctrl-C surfaces as KeyboardInterrupt in main().
            break


async def _run_from_args(args: argparse.Namespace, prompts: tuple[str, ...]) -> int:
    logger = setup_logging(level=args.log_level, log_file=args.log_file)

    if not args.api_key:
        logger.info("OpenAI API key is invalid or missing. Sending requests without one.")

    config = RunConfig(
        model=args.model,
        concurrency=args.concurrency,
        count=args.count,
        prompts=prompts,
        context_length=args.context_length,
        early_stop=args.early_stop,
        report_interval_s=args.report_interval_s,
        seed=args.seed,
    )
    logger.info(
        "Starting stress test with model %s, concurrency %d, count %d, context length %d",
        config.model,
        config.concurrency,
        config.count,
        config.context_length,
    )

    async with CompletionClient(
        base_url=args.api_base,
        api_key=args.api_key,
        timeout_s=args.timeout_s,
        max_connections=max(config.concurrency * 2, 64),
    ) as client:
        controller = RunController(config, client)
        run_task = asyncio.create_task(controller.run())
        _install_signal_handlers(controller, run_task)
        try:
            result = await run_task
        except asyncio.CancelledError:
            logger.info("Interrupted")
            return 0
        except CompletionError as exc:
            logger.error("Run aborted: %s", exc)
            return 1

    return 0 if result.ok else 1


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    _validate_args(parser, args)
    try:
        prompts = load_prompts(args.prompt_file)
    except (OSError, ValueError) as exc:
        parser.error(str(exc))
    try:
        code = asyncio.run(_run_from_args(args, prompts))
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
