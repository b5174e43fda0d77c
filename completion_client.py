from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Optional

import httpx

logger = logging.getLogger(__name__)


class CompletionError(RuntimeError):
    def __init__(self, message: str, http_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.http_status = http_status


def _safe_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _extract_content(chunk: dict[str, Any]) -> str:
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first_choice = choices[0]
    if not isinstance(first_choice, dict):
        return ""

    delta = first_choice.get("delta")
    if isinstance(delta, dict):
        content = delta.get("content")
        if isinstance(content, str):
            return content
    return ""


def _headers(api_key: Optional[str]) -> dict[str, str]:
    base = {"Content-Type": "application/json"}
    if api_key:
        base["Authorization"] = f"Bearer {api_key}"
    return base


def pool_limits(max_connections: int) -> httpx.Limits:
    return httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=min(max_connections, max(max_connections // 2, 32)),
    )


class CompletionClient:
    """Thin OpenAI-compatible client over ``httpx.AsyncClient``.

    ``base_url`` is the API root including the version prefix, e.g.
    ``https://api.openai.com/v1``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_s: float = 300.0,
        max_connections: int = 64,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._client = httpx.AsyncClient(
            limits=pool_limits(max_connections),
            timeout=timeout_s,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "CompletionClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def probe_token_count(self, model: str, prompt: str) -> int:
        """Return the prompt token count the server reports for ``prompt``."""
        payload = {
            "model": model,
            "prompt": prompt,
            "stop": ["\n"],
        }
        url = f"{self.base_url}/completions"
        try:
            response = await self._client.post(
                url,
                headers=_headers(self.api_key),
                json=payload,
            )
        except httpx.HTTPError as exc:
            raise CompletionError(f"Probe request to {url} failed: {exc}") from exc

        if response.status_code >= 400:
            raise CompletionError(
                f"Probe request to {url} returned HTTP {response.status_code}: "
                f"{response.text[:2000]}",
                http_status=response.status_code,
            )
        try:
            body = response.json()
        except json.JSONDecodeError as exc:
            raise CompletionError(f"Probe response from {url} is not JSON") from exc

        usage = body.get("usage") if isinstance(body, dict) else None
        if not isinstance(usage, dict):
            return 0
        return _safe_int(usage.get("prompt_tokens")) or 0

    async def stream_chat(
        self, model: str, messages: list[dict[str, str]]
    ) -> AsyncIterator[str]:
        """Yield incremental content deltas of a streaming chat completion.

        Closing the iterator early (``break`` or task cancellation) closes the
        underlying HTTP response.
        """
        payload = {
            "model": model,
            "messages": messages,
            "stream": True,
        }
        url = f"{self.base_url}/chat/completions"
        try:
            async with self._client.stream(
                "POST",
                url,
                headers=_headers(self.api_key),
                json=payload,
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise CompletionError(
                        f"Chat request to {url} returned HTTP "
                        f"{response.status_code}: {body[:2000]}",
                        http_status=response.status_code,
                    )
                async for line in response.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    payload_text = line[5:].strip()
                    if not payload_text:
                        continue
                    if payload_text == "[DONE]":
                        break
                    try:
                        chunk = json.loads(payload_text)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed SSE payload: %s", payload_text[:200])
                        continue
                    if isinstance(chunk, dict):
                        yield _extract_content(chunk)
        except httpx.HTTPError as exc:
            raise CompletionError(f"Chat request to {url} failed: {exc}") from exc
