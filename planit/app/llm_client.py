from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from .circuit_breaker import CircuitBreaker
from .settings import Settings, settings

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You recommend real places to visit. Reply with a JSON array only, "
    "without markdown or commentary."
)


class CompletionUnavailable(RuntimeError):
    pass


class CompletionClient:
    """OpenAI-compatible chat completions client returning the raw reply text."""

    def __init__(
        self,
        config: Settings | None = None,
        *,
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config or settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self.breaker = breaker or CircuitBreaker(
            "completion",
            failure_threshold=self._config.CIRCUIT_FAILURE_THRESHOLD,
            cooldown_seconds=self._config.CIRCUIT_COOLDOWN_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return self._config.llm_configured

    def _headers(self) -> dict[str, str]:
        if not self._config.llm_configured:
            raise CompletionUnavailable("LLM_API_KEY not configured")
        return {
            "Authorization": f"Bearer {self._config.LLM_API_KEY}",
            "Content-Type": "application/json",
        }

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            async with self._client_lock:
                if self._client is None:
                    timeout = httpx.Timeout(
                        self._config.LLM_TIMEOUT_SECONDS,
                        connect=self._config.LLM_CONNECT_TIMEOUT_SECONDS,
                    )
                    base_url = self._config.LLM_API_BASE.rstrip("/") or "https://api.openai.com/v1"
                    self._client = httpx.AsyncClient(
                        base_url=base_url, timeout=timeout, transport=self._transport
                    )
        return self._client

    async def post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        headers = self._headers()
        try:
            response = await client.post(path, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise CompletionUnavailable(f"Request failed: {exc}") from exc
        if response.status_code >= 400:
            raise CompletionUnavailable(
                f"Completion error {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise CompletionUnavailable("Invalid JSON from completion service") from exc

    async def _complete(self, prompt: str) -> str:
        limit = self._config.LLM_MAX_PROMPT_CHARS
        if len(prompt) > limit:
            logger.warning("Prompt truncated from %d to %d characters", len(prompt), limit)
            prompt = prompt[:limit]
        payload = {
            "model": self._config.LLM_MODEL,
            "temperature": self._config.LLM_TEMPERATURE,
            "max_tokens": self._config.LLM_MAX_TOKENS,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }
        data = await self.post_json("/chat/completions", payload)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise CompletionUnavailable("Malformed completion response") from exc
        return content if isinstance(content, str) else ""

    async def complete(self, prompt: str) -> str:
        """Send ``prompt`` and return the reply text, bounded by the configured timeout."""
        return await self.breaker.call(self._bounded_complete, prompt)

    async def _bounded_complete(self, prompt: str) -> str:
        return await asyncio.wait_for(
            self._complete(prompt), timeout=self._config.LLM_TIMEOUT_SECONDS
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = ["CompletionClient", "CompletionUnavailable"]
