from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from hashlib import sha256
from typing import Any

from .completion_client import CompletionClient, CompletionUnavailable, EmptyCompletion
from .logging_config import get_logger
from .metrics import query_normalizations_total
from .schemas import DEFAULT_PLACE_TYPE, SearchDescriptor
from .settings import Settings

logger = get_logger(__name__)

SYSTEM_PROMPT = """
You are a travel assistant.
From the user's question, extract the search details and ALWAYS answer with pure JSON in this format:

{
  "query_text": "...",       // main search text, e.g. "good places to eat"
  "location_hint": "...",    // city or area, e.g. "Jakarta", may be empty
  "place_type": "restaurant" // kind of place: restaurant, cafe, tourist_attraction, hotel, etc.
}

Do not send any text other than the JSON.
"""


class CompletionParseError(ValueError):
    """The completion text did not contain a usable JSON object."""


class NormalizationOutcome(str, Enum):
    COMPLETED = "completed"
    UNCONFIGURED = "unconfigured"
    TRANSPORT_ERROR = "transport_error"
    EMPTY_COMPLETION = "empty_completion"
    PARSE_ERROR = "parse_error"


@dataclass(slots=True, frozen=True)
class NormalizationResult:
    descriptor: SearchDescriptor
    outcome: NormalizationOutcome
    detail: str | None = None

    @property
    def used_fallback(self) -> bool:
        return self.outcome is not NormalizationOutcome.COMPLETED


def _query_fingerprint(raw_query: str) -> str:
    return sha256(raw_query.encode("utf-8")).hexdigest()[:10]


def extract_json_object(text: str) -> dict[str, Any]:
    """
    Parse the region between the first ``{`` and the last ``}`` of ``text``.

    Raises CompletionParseError when there is no such region, it is not valid
    JSON, or it does not decode to an object.
    """
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        raise CompletionParseError("No JSON object found in completion")
    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise CompletionParseError(f"Invalid JSON in completion: {exc.msg}") from exc
    except RecursionError as exc:
        raise CompletionParseError("Completion JSON is nested too deeply") from exc
    if not isinstance(parsed, dict):
        raise CompletionParseError("Completion JSON is not an object")
    return parsed


def _text_field(payload: dict[str, Any], key: str, default: str) -> str:
    value = payload.get(key)
    if isinstance(value, str) and value:
        return value
    return default


def descriptor_from_payload(payload: dict[str, Any], raw_query: str) -> SearchDescriptor:
    return SearchDescriptor(
        query_text=_text_field(payload, "query_text", raw_query),
        location_hint=_text_field(payload, "location_hint", ""),
        place_type=_text_field(payload, "place_type", DEFAULT_PLACE_TYPE),
    )


class QueryNormalizer:
    """
    Turns a raw query into a SearchDescriptor.

    With a completion service configured it makes exactly one call; every
    failure degrades to ``SearchDescriptor.naive`` and nothing is raised.
    """

    def __init__(self, settings: Settings, client: CompletionClient) -> None:
        self._settings = settings
        self._client = client

    def _messages(self, raw_query: str) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": raw_query},
        ]

    async def normalize_with_outcome(self, raw_query: str) -> NormalizationResult:
        result = await self._normalize(raw_query)
        query_normalizations_total.labels(outcome=result.outcome.value).inc()
        return result

    async def normalize(self, raw_query: str) -> SearchDescriptor:
        return (await self.normalize_with_outcome(raw_query)).descriptor

    async def _normalize(self, raw_query: str) -> NormalizationResult:
        naive = SearchDescriptor.naive(raw_query)
        if not self._settings.llm_configured:
            return NormalizationResult(naive, NormalizationOutcome.UNCONFIGURED)

        digest = _query_fingerprint(raw_query)
        try:
            content = await self._client.chat(self._messages(raw_query), temperature=0)
        except EmptyCompletion as exc:
            logger.error("llm_empty_completion", query_digest=digest, error=str(exc))
            return NormalizationResult(naive, NormalizationOutcome.EMPTY_COMPLETION, str(exc))
        except CompletionUnavailable as exc:
            logger.error("llm_request_failed", query_digest=digest, error=str(exc))
            return NormalizationResult(naive, NormalizationOutcome.TRANSPORT_ERROR, str(exc))
        except Exception as exc:  # noqa: BLE001 - e.g. httpx.InvalidURL from a bad base URL
            logger.exception("llm_request_crashed", query_digest=digest)
            return NormalizationResult(naive, NormalizationOutcome.TRANSPORT_ERROR, repr(exc))

        try:
            payload = extract_json_object(content)
        except CompletionParseError as exc:
            logger.warning("llm_parse_failed", query_digest=digest, error=str(exc))
            return NormalizationResult(naive, NormalizationOutcome.PARSE_ERROR, str(exc))

        descriptor = descriptor_from_payload(payload, raw_query)
        logger.debug(
            "llm_query_normalized",
            query_digest=digest,
            descriptor=descriptor.model_dump(by_alias=True),
        )
        return NormalizationResult(descriptor, NormalizationOutcome.COMPLETED)
