"""Settings and stubbed upstream services shared by the test modules."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx

from backend.app.settings import Settings

PLACES_KEY = "test-maps-key"
LLM_BASE = "https://llm.test/api"


def make_settings(**overrides: Any) -> Settings:
    """Settings isolated from the process environment and any .env file."""
    values: dict[str, Any] = {
        "GOOGLE_MAPS_API_KEY": PLACES_KEY,
        "LLM_API_BASE_URL": None,
        "LLM_API_KEY": None,
        "LLM_MODEL": "llama-3",
        "RATE_LIMIT_ENABLED": False,
        "TRUSTED_PROXIES": "",
        "CORS_ALLOW_ORIGINS": "*",
        "SENTRY_DSN": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def llm_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {"LLM_API_BASE_URL": LLM_BASE, "LLM_API_KEY": "llm-secret"}
    values.update(overrides)
    return make_settings(**values)


class RecordingUpstream:
    """httpx.MockTransport handler that remembers every request it served."""

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[httpx.Request] = []
        self._responder = responder

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._responder(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    @property
    def calls(self) -> int:
        return len(self.requests)

    def json_body(self, index: int = 0) -> dict[str, Any]:
        return json.loads(self.requests[index].content)


def place_result(
    name: str, lat: float | None = -6.2, lng: float | None = 106.8, **extra: Any
) -> dict[str, Any]:
    result: dict[str, Any] = {
        "name": name,
        "formatted_address": f"{name} Street 1, Jakarta",
        "rating": 4.5,
        "user_ratings_total": 120,
        "place_id": f"pid-{name.lower().replace(' ', '-')}",
    }
    location: dict[str, float] = {}
    if lat is not None:
        location["lat"] = lat
    if lng is not None:
        location["lng"] = lng
    if location:
        result["geometry"] = {"location": location}
    result.update(extra)
    return result


def places_upstream(
    status: str = "OK",
    results: list[dict[str, Any]] | None = None,
    error_message: str | None = None,
) -> RecordingUpstream:
    body: dict[str, Any] = {"status": status, "results": results or []}
    if error_message is not None:
        body["error_message"] = error_message
    return RecordingUpstream(lambda request: httpx.Response(200, json=body))


def completion_upstream(content: str | None, status_code: int = 200) -> RecordingUpstream:
    body = {"choices": [{"message": {"role": "assistant", "content": content}}]}
    return RecordingUpstream(lambda request: httpx.Response(status_code, json=body))


def failing_upstream(exc_type: type[httpx.TransportError]) -> RecordingUpstream:
    def _raise(request: httpx.Request) -> httpx.Response:
        raise exc_type("upstream unavailable", request=request)

    return RecordingUpstream(_raise)
