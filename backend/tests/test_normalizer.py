import asyncio
import json
import time

import httpx
import pytest
from backend.app.completion_client import CompletionClient
from backend.app.normalizer import (
    CompletionParseError,
    NormalizationOutcome,
    QueryNormalizer,
    descriptor_from_payload,
    extract_json_object,
)
from backend.app.schemas import SearchDescriptor
from backend.tests.upstreams import (
    LLM_BASE,
    RecordingUpstream,
    completion_upstream,
    failing_upstream,
    llm_settings,
    make_settings,
)

RAW = "tempat makan enak di Jakarta"


def _normalize(settings, upstream, query=RAW):
    async def _run():
        client = CompletionClient(settings, transport=upstream.transport if upstream else None)
        try:
            return await QueryNormalizer(settings, client).normalize_with_outcome(query)
        finally:
            await client.aclose()

    return asyncio.run(_run())


class TestExtractJsonObject:
    def test_plain_object(self):
        assert extract_json_object('{"query_text": "sushi"}') == {"query_text": "sushi"}

    def test_object_wrapped_in_prose_and_fences(self):
        text = 'Sure! ```json\n{"query_text": "ramen", "location_hint": "Tokyo"}\n``` Enjoy.'
        assert extract_json_object(text) == {"query_text": "ramen", "location_hint": "Tokyo"}

    def test_spans_first_open_to_last_close_brace(self):
        text = '{"query_text": "a", "extra": {"nested": true}} trailing'
        assert extract_json_object(text)["extra"] == {"nested": True}

    @pytest.mark.parametrize("text", ["no json here", "} backwards {", "{", "}"])
    def test_missing_delimiters(self, text):
        with pytest.raises(CompletionParseError):
            extract_json_object(text)

    def test_invalid_json_between_braces(self):
        with pytest.raises(CompletionParseError):
            extract_json_object("{query_text: unquoted}")

    def test_two_objects_are_not_one(self):
        with pytest.raises(CompletionParseError):
            extract_json_object('{"a": 1} and {"b": 2}')

    def test_deeply_nested_json_is_a_parse_error(self):
        text = '{"query_text": ' + "[" * 200_000 + "]" * 200_000 + "}"
        with pytest.raises(CompletionParseError):
            extract_json_object(text)


class TestDescriptorFromPayload:
    def test_full_payload(self):
        descriptor = descriptor_from_payload(
            {"query_text": "coffee", "location_hint": "Bandung", "place_type": "cafe"}, RAW
        )
        assert descriptor == SearchDescriptor(
            query_text="coffee", location_hint="Bandung", place_type="cafe"
        )

    def test_partial_payload_takes_defaults(self):
        descriptor = descriptor_from_payload({"location_hint": "Jakarta"}, RAW)
        assert descriptor.query_text == RAW
        assert descriptor.location_hint == "Jakarta"
        assert descriptor.place_type == "restaurant"

    def test_empty_and_non_string_values_take_defaults(self):
        descriptor = descriptor_from_payload(
            {"query_text": "", "location_hint": None, "place_type": 7}, RAW
        )
        assert descriptor == SearchDescriptor.naive(RAW)


class TestQueryNormalizer:
    def test_unconfigured_returns_naive_without_calling_out(self):
        upstream = completion_upstream('{"query_text": "x"}')
        result = _normalize(make_settings(), upstream)

        assert result.outcome is NormalizationOutcome.UNCONFIGURED
        assert result.descriptor == SearchDescriptor(
            query_text=RAW, location_hint="", place_type="restaurant"
        )
        assert upstream.calls == 0

    def test_key_without_base_url_is_unconfigured(self):
        settings = make_settings(LLM_API_KEY="secret")
        result = _normalize(settings, completion_upstream("{}"))
        assert result.outcome is NormalizationOutcome.UNCONFIGURED

    def test_completed_descriptor(self):
        content = json.dumps(
            {"query_text": "tempat makan enak", "location_hint": "Jakarta", "place_type": "restaurant"}
        )
        result = _normalize(llm_settings(), completion_upstream(content))

        assert result.outcome is NormalizationOutcome.COMPLETED
        assert not result.used_fallback
        assert result.descriptor.query_text == "tempat makan enak"
        assert result.descriptor.location_hint == "Jakarta"

    def test_request_shape(self):
        upstream = completion_upstream('{"query_text": "x"}')
        _normalize(llm_settings(LLM_MODEL="mixtral"), upstream)

        request = upstream.requests[0]
        assert request.method == "POST"
        assert str(request.url) == f"{LLM_BASE}/chat/completions"
        assert request.headers["Authorization"] == "Bearer llm-secret"
        body = upstream.json_body()
        assert body["model"] == "mixtral"
        assert body["temperature"] == 0
        assert [m["role"] for m in body["messages"]] == ["system", "user"]
        assert body["messages"][1]["content"] == RAW
        assert "query_text" in body["messages"][0]["content"]

    def test_partial_fields_take_defaults(self):
        result = _normalize(llm_settings(), completion_upstream('{"place_type": "cafe"}'))
        assert result.outcome is NormalizationOutcome.COMPLETED
        assert result.descriptor == SearchDescriptor(
            query_text=RAW, location_hint="", place_type="cafe"
        )

    def test_prose_without_object_falls_back(self):
        result = _normalize(llm_settings(), completion_upstream("I cannot help with that."))
        assert result.outcome is NormalizationOutcome.PARSE_ERROR
        assert result.descriptor == SearchDescriptor.naive(RAW)

    def test_malformed_json_falls_back(self):
        result = _normalize(llm_settings(), completion_upstream('{"query_text": "x",}'))
        assert result.outcome is NormalizationOutcome.PARSE_ERROR
        assert result.descriptor == SearchDescriptor.naive(RAW)

    @pytest.mark.parametrize("content", [None, ""])
    def test_missing_content_falls_back(self, content):
        result = _normalize(llm_settings(), completion_upstream(content))
        assert result.outcome is NormalizationOutcome.EMPTY_COMPLETION
        assert result.descriptor == SearchDescriptor.naive(RAW)

    def test_deeply_nested_json_falls_back(self):
        content = '{"query_text": ' + "[" * 200_000 + "]" * 200_000 + "}"
        result = _normalize(llm_settings(), completion_upstream(content))
        assert result.outcome is NormalizationOutcome.PARSE_ERROR
        assert result.descriptor == SearchDescriptor.naive(RAW)

    def test_no_choices_falls_back(self):
        upstream = RecordingUpstream(lambda request: httpx.Response(200, json={"choices": []}))
        result = _normalize(llm_settings(), upstream)
        assert result.outcome is NormalizationOutcome.EMPTY_COMPLETION

    @pytest.mark.parametrize("status_code", [401, 429, 500, 503])
    def test_non_2xx_falls_back(self, status_code):
        upstream = completion_upstream('{"query_text": "ignored"}', status_code=status_code)
        result = _normalize(llm_settings(), upstream)
        assert result.outcome is NormalizationOutcome.TRANSPORT_ERROR
        assert result.descriptor == SearchDescriptor.naive(RAW)
        assert upstream.calls == 1

    @pytest.mark.parametrize("exc_type", [httpx.ReadTimeout, httpx.ConnectError])
    def test_transport_failure_falls_back_after_single_attempt(self, exc_type):
        upstream = failing_upstream(exc_type)
        result = _normalize(llm_settings(), upstream)
        assert result.outcome is NormalizationOutcome.TRANSPORT_ERROR
        assert result.descriptor == SearchDescriptor.naive(RAW)
        assert upstream.calls == 1

    def test_non_json_body_falls_back(self):
        upstream = RecordingUpstream(lambda request: httpx.Response(200, text="<html>bad gateway</html>"))
        result = _normalize(llm_settings(), upstream)
        assert result.outcome is NormalizationOutcome.TRANSPORT_ERROR

    def test_normalize_returns_descriptor_only(self):
        async def _run():
            settings = make_settings()
            client = CompletionClient(settings)
            return await QueryNormalizer(settings, client).normalize(RAW)

        assert asyncio.run(_run()) == SearchDescriptor.naive(RAW)



async def _drip_server(interval: float):
    """Local HTTP server that sends headers, then one body byte per ``interval``."""
    handlers: list[asyncio.Task] = []

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        handlers.append(asyncio.current_task())
        try:
            await reader.readuntil(b"\r\n\r\n")
            writer.write(
                b"HTTP/1.1 200 OK\r\n"
                b"Content-Type: application/json\r\n"
                b"Content-Length: 1000\r\n\r\n"
            )
            while True:
                writer.write(b" ")
                await writer.drain()
                await asyncio.sleep(interval)
        except ConnectionError:
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, handlers


class TestCompletionDeadline:
    def test_slow_trickling_response_is_cut_off_at_timeout(self):
        async def _run():
            server, handlers = await _drip_server(interval=0.2)
            port = server.sockets[0].getsockname()[1]
            settings = llm_settings(
                LLM_API_BASE_URL=f"http://127.0.0.1:{port}", LLM_TIMEOUT_SECONDS=1.0
            )
            client = CompletionClient(settings, transport=httpx.AsyncHTTPTransport())
            started = time.perf_counter()
            try:
                result = await QueryNormalizer(settings, client).normalize_with_outcome(RAW)
            finally:
                elapsed = time.perf_counter() - started
                await client.aclose()
                for task in handlers:
                    task.cancel()
                await asyncio.gather(*handlers, return_exceptions=True)
                server.close()
                await server.wait_closed()
            return result, elapsed

        result, elapsed = asyncio.run(_run())

        assert elapsed < 3.0
        assert result.outcome is NormalizationOutcome.TRANSPORT_ERROR
        assert result.descriptor == SearchDescriptor.naive(RAW)
