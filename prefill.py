from __future__ import annotations

import logging
import random
from typing import Any, Optional

logger = logging.getLogger(__name__)

SEPARATOR_PROMPT = "Ignore the garbage above and do the real work now: "
TOKEN_PROBE_PROMPT = (
    "Ignore the garbage above. This is just a test and you does not need to do anything. "
)
MIN_PREFILL_TOKENS = 14
BISECT_TOLERANCE = 5

LOREM_WORDS = (
    "lorem", "ipsum", "dolor", "sit", "amet", "consectetur", "adipiscing", "elit",
    "sed", "do", "eiusmod", "tempor", "incididunt", "ut", "labore", "et", "dolore",
    "magna", "aliqua", "enim", "ad", "minim", "veniam", "quis", "nostrud",
    "exercitation", "ullamco", "laboris", "nisi", "aliquip", "ex", "ea", "commodo",
    "consequat", "duis", "aute", "irure", "in", "reprehenderit", "voluptate",
    "velit", "esse", "cillum", "fugiat", "nulla", "pariatur", "excepteur", "sint",
    "occaecat", "cupidatat", "non", "proident", "sunt", "culpa", "qui", "officia",
    "deserunt", "mollit", "anim", "id", "est", "laborum",
)


def generate_filler_words(count: int, rng: random.Random) -> str:
    if count <= 0:
        return ""
    return " ".join(rng.choice(LOREM_WORDS) for _ in range(count))


async def compute_prefill(
    client: Any,
    model: str,
    target_tokens: int,
    rng: Optional[random.Random] = None,
) -> str:
    """Build filler text whose measured prompt size is just above ``target_tokens``.

    The tokenizer behind the endpoint is unknown, so the word count is found by
    bisection using ``client.probe_token_count`` as the comparator. A word never
    encodes to fewer than one token, which makes ``target_tokens`` words a safe
    upper bound. Probe failures propagate to the caller.
    """
    if target_tokens == 0:
        return ""
    if target_tokens < MIN_PREFILL_TOKENS:
        logger.warning("Target length is too small, no prefill content will be used!")
        return ""

    rng = rng or random.Random()
    low = 0
    high = target_tokens
    probes = 0
    while high - low > BISECT_TOLERANCE:
        mid = (low + high) // 2
        token_count = await client.probe_token_count(
            model, generate_filler_words(mid, rng) + TOKEN_PROBE_PROMPT
        )
        probes += 1
        logger.debug("Token count of %d words: %d", mid, token_count)
        if token_count < target_tokens:
            low = mid + 1
        else:
            high = mid

    logger.info(
        "Prefill sized to %d words for a target of %d tokens (%d probes)",
        low,
        target_tokens,
        probes,
    )
    return generate_filler_words(low, rng) + "\n" + SEPARATOR_PROMPT
