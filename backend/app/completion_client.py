from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx

from .metrics import completion_request_duration_seconds
from .settings import Settings


class CompletionUnavailable(RuntimeError):
    pass


class EmptyCompletion(CompletionUnavailable):
    """Raised when the service answers but carries no message content."""


class CompletionClient:
    """Thin client for an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def configured(self) -> bool:
        return self._settings.llm_configured

    def _headers(self) -> dict[str, str]:
        if not self.configured:
            raise CompletionUnavailable("LLM_API_BASE_URL / LLM_API_KEY not configured")
        return {
            "Authorization": f"Bearer {self._settings.LLM_API_KEY}",
            "Content-Type": "application/json",
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.llm_base_url,
                timeout=httpx.Timeout(self._settings.LLM_TIMEOUT_SECONDS),
                transport=self._transport,
            )
        return self._client

    async def post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        headers = self._headers()
        client = self._get_client()
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                client.post(path, json=payload, headers=headers),
                timeout=self._settings.LLM_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as exc:
            raise CompletionUnavailable(
                f"No response within {self._settings.LLM_TIMEOUT_SECONDS}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise CompletionUnavailable(f"Request failed: {exc!r}") from exc
        finally:
            completion_request_duration_seconds.observe(time.perf_counter() - started)
        if response.status_code >= 400:
            raise CompletionUnavailable(
                f"Completion error {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise CompletionUnavailable("Invalid JSON from completion service") from exc

    async def chat(self, messages: list[dict[str, str]], *, temperature: float = 0) -> str:
        """Send one chat completion and return the first choice's message content."""
        response = await self.post_json(
            "/chat/completions",
            {
                "model": self._settings.LLM_MODEL,
                "messages": messages,
                "temperature": temperature,
            },
        )
        choices = response.get("choices") if isinstance(response, dict) else None
        content = None
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message") or {}
            if isinstance(message, dict):
                content = message.get("content")
        if not content or not isinstance(content, str):
            raise EmptyCompletion("Empty response from completion service")
        return content

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
