import asyncio
import json
import unittest

import httpx
from fakes import collect, user

from llm_dispatch.config import DispatchConfig
from llm_dispatch.errors import (
    ProviderAuthError,
    ProviderProtocolError,
    ProviderRateLimitError,
    ProviderUnavailableError,
)
from llm_dispatch.providers import AnthropicProvider, OpenAIProvider, RequestyProvider, build_adapters
from llm_dispatch.registry import default_registry
from llm_dispatch.types import InvokeOptions, Message, TokenUsage

SYSTEM = Message(role="system", content="You are terse.")


def _sse(*payloads: object) -> bytes:
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode()


class _Recorder:
    """MockTransport handler that replays responses and keeps requests."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


def _openai(handler: _Recorder, **kwargs) -> OpenAIProvider:
    return OpenAIProvider(
        provider_id="openai",
        base_url="https://api.openai.com/v1",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _anthropic(handler: _Recorder) -> AnthropicProvider:
    return AnthropicProvider(
        provider_id="anthropic",
        base_url="https://api.anthropic.com/v1",
        transport=httpx.MockTransport(handler),
    )


class OpenAIProviderTests(unittest.TestCase):
    def test_invoke_builds_payload_and_normalizes(self) -> None:
        handler = _Recorder(
            httpx.Response(
                200,
                json={
                    "choices": [{"message": {"role": "assistant", "content": "4"}}],
                    "usage": {"prompt_tokens": 12, "completion_tokens": 1, "total_tokens": 13},
                },
            )
        )
        result = asyncio.run(_openai(handler).invoke("sk-test", "gpt-4", [SYSTEM, user("2+2?")]))

        self.assertEqual(result.text, "4")
        self.assertEqual(result.usage, TokenUsage(prompt_tokens=12, completion_tokens=1, total_tokens=13))
        request = handler.requests[0]
        self.assertEqual(str(request.url), "https://api.openai.com/v1/chat/completions")
        self.assertEqual(request.headers["Authorization"], "Bearer sk-test")
        self.assertEqual(
            handler.last_json,
            {
                "model": "gpt-4",
                "messages": [
                    {"role": "system", "content": "You are terse."},
                    {"role": "user", "content": "2+2?"},
                ],
                "temperature": 0.7,
                "max_tokens": 2000,
            },
        )

    def test_options_override_defaults(self) -> None:
        handler = _Recorder(httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}))
        result = asyncio.run(
            _openai(handler).invoke("k", "gpt-4", [user("hi")], InvokeOptions(temperature=0.0, max_tokens=32))
        )
        self.assertEqual(handler.last_json["temperature"], 0.0)
        self.assertEqual(handler.last_json["max_tokens"], 32)
        # no usage reported: zeros, not an estimate
        self.assertEqual(result.usage, TokenUsage())

    def test_http_errors_map_to_error_kinds(self) -> None:
        cases = [
            (401, ProviderAuthError),
            (403, ProviderAuthError),
            (429, ProviderRateLimitError),
            (503, ProviderUnavailableError),
            (400, ProviderProtocolError),
        ]
        for status, expected in cases:
            with self.subTest(status=status):
                handler = _Recorder(httpx.Response(status, text="nope"))
                with self.assertRaises(expected) as ctx:
                    asyncio.run(_openai(handler).invoke("k", "gpt-4", [user("hi")]))
                self.assertEqual(ctx.exception.status_code, status)

    def test_malformed_bodies_are_protocol_errors(self) -> None:
        for response in (
            httpx.Response(200, text="<html>oops</html>"),
            httpx.Response(200, json={"id": "x"}),
            httpx.Response(200, json=["not", "an", "object"]),
        ):
            with self.subTest(body=response.content[:20]):
                with self.assertRaises(ProviderProtocolError):
                    asyncio.run(_openai(_Recorder(response)).invoke("k", "gpt-4", [user("hi")]))

    def test_transport_failures_are_unavailable(self) -> None:
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        for exc in (httpx.ConnectTimeout("timed out", request=request), httpx.ConnectError("refused", request=request)):
            with self.subTest(exc=type(exc).__name__):
                with self.assertRaises(ProviderUnavailableError):
                    asyncio.run(_openai(_Recorder(exc)).invoke("k", "gpt-4", [user("hi")]))

    def test_rate_limit_retry_when_configured(self) -> None:
        handler = _Recorder(
            httpx.Response(429, text="slow down"),
            httpx.Response(200, json={"choices": [{"message": {"content": "finally"}}]}),
        )
        adapter = _openai(handler, rate_limit_retries=1, retry_backoff_s=0)
        result = asyncio.run(adapter.invoke("k", "gpt-4", [user("hi")]))
        self.assertEqual(result.text, "finally")
        self.assertEqual(len(handler.requests), 2)

    def test_no_retry_by_default(self) -> None:
        handler = _Recorder(httpx.Response(429, text="slow down"))
        with self.assertRaises(ProviderRateLimitError):
            asyncio.run(_openai(handler).invoke("k", "gpt-4", [user("hi")]))
        self.assertEqual(len(handler.requests), 1)

    def test_stream_yields_deltas_and_reported_usage(self) -> None:
        body = _sse(
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}}]},
            {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}},
            "[DONE]",
        )
        handler = _Recorder(httpx.Response(200, content=body))
        chunks = asyncio.run(collect(_openai(handler).stream("k", "gpt-4", [user("hi")])))

        self.assertEqual([(c.type, c.text) for c in chunks], [("text_delta", "Hel"), ("text_delta", "lo"), ("done", "")])
        self.assertEqual(chunks[-1].usage, TokenUsage(prompt_tokens=5, completion_tokens=2, total_tokens=7))
        self.assertTrue(handler.last_json["stream"])
        self.assertEqual(handler.last_json["stream_options"], {"include_usage": True})

    def test_stream_without_usage_is_flagged_estimate(self) -> None:
        body = _sse({"choices": [{"delta": {"content": "12345678"}}]}, "[DONE]")
        chunks = asyncio.run(
            collect(_openai(_Recorder(httpx.Response(200, content=body))).stream("k", "gpt-4", [user("abcd")]))
        )
        usage = chunks[-1].usage
        self.assertTrue(usage.estimated)
        self.assertEqual((usage.prompt_tokens, usage.completion_tokens, usage.total_tokens), (1, 2, 3))

    def test_stream_cut_short_is_protocol_error(self) -> None:
        body = _sse({"choices": [{"delta": {"content": "Hel"}}]})
        stream = _openai(_Recorder(httpx.Response(200, content=body))).stream("k", "gpt-4", [user("hi")])
        with self.assertRaises(ProviderProtocolError):
            asyncio.run(collect(stream))

    def test_stream_http_error_maps_status(self) -> None:
        stream = _openai(_Recorder(httpx.Response(401, text="bad key"))).stream("k", "gpt-4", [user("hi")])
        with self.assertRaises(ProviderAuthError):
            asyncio.run(collect(stream))

    def test_in_stream_error_events_map_to_error_kinds(self) -> None:
        cases = [
            ({"code": 429, "message": "Rate limit exceeded"}, ProviderRateLimitError),
            ({"code": "503", "message": "upstream down"}, ProviderUnavailableError),
            ({"code": "invalid_api_key", "message": "bad key"}, ProviderAuthError),
            ({"type": "rate_limit_exceeded", "message": "slow down"}, ProviderRateLimitError),
            ({"type": "server_error", "message": "boom"}, ProviderUnavailableError),
            ({"code": "something_new", "message": "??"}, ProviderProtocolError),
            ("plain string", ProviderProtocolError),
        ]
        for error, expected in cases:
            with self.subTest(error=error):
                body = _sse({"choices": [{"delta": {"content": "Hel"}}]}, {"error": error})
                stream = _openai(_Recorder(httpx.Response(200, content=body))).stream("k", "gpt-4", [user("hi")])
                with self.assertRaises(expected):
                    asyncio.run(collect(stream))

    def test_openrouter_in_stream_rate_limit(self) -> None:
        handler = _Recorder(
            httpx.Response(200, content=_sse({"error": {"code": 429, "message": "Rate limit exceeded"}}))
        )
        adapters = build_adapters(default_registry(), transport=httpx.MockTransport(handler))
        stream = adapters["openrouter"].stream("k", "google/gemini-pro", [user("hi")])
        with self.assertRaises(ProviderRateLimitError) as ctx:
            asyncio.run(collect(stream))
        self.assertEqual(ctx.exception.provider, "openrouter")
        self.assertEqual(ctx.exception.status_code, 429)

    def test_stream_choice_that_is_not_an_object_is_protocol_error(self) -> None:
        body = _sse({"choices": ["oops"]}, "[DONE]")
        stream = _openai(_Recorder(httpx.Response(200, content=body))).stream("k", "gpt-4", [user("hi")])
        with self.assertRaises(ProviderProtocolError):
            asyncio.run(collect(stream))

    def test_timeout_override_reaches_request(self) -> None:
        handler = _Recorder(
            httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}),
            httpx.Response(200, content=_sse({"choices": [{"delta": {"content": "ok"}}]}, "[DONE]")),
        )
        adapter = _openai(handler)
        options = InvokeOptions(timeout_s=3)

        async def scenario():
            await adapter.invoke("k", "gpt-4", [user("hi")], options)
            await collect(adapter.stream("k", "gpt-4", [user("hi")], options))

        asyncio.run(scenario())

        expected = {"connect": 3.0, "read": 3.0, "write": 3.0, "pool": 3.0}
        self.assertEqual([r.extensions["timeout"] for r in handler.requests], [expected, expected])

    def test_client_timeout_applies_without_override(self) -> None:
        handler = _Recorder(httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}))
        asyncio.run(_openai(handler, timeout_s=12).invoke("k", "gpt-4", [user("hi")]))
        self.assertEqual(
            handler.requests[0].extensions["timeout"],
            {"connect": 12.0, "read": 12.0, "write": 12.0, "pool": 12.0},
        )


class AnthropicProviderTests(unittest.TestCase):
    def test_invoke_hoists_system_and_reads_blocks(self) -> None:
        handler = _Recorder(
            httpx.Response(
                200,
                json={
                    "content": [{"type": "text", "text": "Four"}, {"type": "text", "text": "."}],
                    "usage": {"input_tokens": 10, "output_tokens": 5},
                },
            )
        )
        history = [SYSTEM, user("2+2?"), Message(role="assistant", content="?"), user("sum")]
        result = asyncio.run(_anthropic(handler).invoke("sk-ant", "claude-3-opus-20240229", history))

        self.assertEqual(result.text, "Four.")
        self.assertEqual(result.usage.total_tokens, 15)
        request = handler.requests[0]
        self.assertEqual(str(request.url), "https://api.anthropic.com/v1/messages")
        self.assertEqual(request.headers["x-api-key"], "sk-ant")
        self.assertEqual(request.headers["anthropic-version"], "2023-06-01")
        payload = handler.last_json
        self.assertEqual(payload["system"], "You are terse.")
        self.assertEqual([m["role"] for m in payload["messages"]], ["user", "assistant", "user"])
        self.assertEqual(payload["messages"][0]["content"], [{"type": "text", "text": "2+2?"}])
        self.assertEqual(payload["max_tokens"], 2000)

    def test_missing_content_is_protocol_error(self) -> None:
        handler = _Recorder(httpx.Response(200, json={"type": "message"}))
        with self.assertRaises(ProviderProtocolError):
            asyncio.run(_anthropic(handler).invoke("k", "claude-3", [user("hi")]))

    def test_stream_events(self) -> None:
        body = (
            b"event: message_start\n"
            + _sse({"type": "message_start", "message": {"usage": {"input_tokens": 12, "output_tokens": 1}}})
            + b"event: ping\n"
            + _sse({"type": "ping"})
            + _sse({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hel"}})
            + _sse({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "lo"}})
            + _sse({"type": "message_delta", "usage": {"output_tokens": 4}})
            + _sse({"type": "message_stop"})
        )
        chunks = asyncio.run(
            collect(_anthropic(_Recorder(httpx.Response(200, content=body))).stream("k", "claude-3", [user("hi")]))
        )
        self.assertEqual([c.text for c in chunks if c.type == "text_delta"], ["Hel", "lo"])
        self.assertEqual(chunks[-1].type, "done")
        self.assertEqual(chunks[-1].usage, TokenUsage(prompt_tokens=12, completion_tokens=4, total_tokens=16))

    def test_stream_error_event(self) -> None:
        body = _sse(
            {"type": "content_block_delta", "delta": {"text": "Hel"}},
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        )
        stream = _anthropic(_Recorder(httpx.Response(200, content=body))).stream("k", "claude-3", [user("hi")])
        with self.assertRaises(ProviderUnavailableError):
            asyncio.run(collect(stream))


class RequestyProviderTests(unittest.TestCase):
    def _adapter(self, handler: _Recorder) -> RequestyProvider:
        return RequestyProvider(
            provider_id="requesty",
            base_url="https://api.requesty.ai/v1",
            transport=httpx.MockTransport(handler),
        )

    def test_invoke_reads_response_field(self) -> None:
        handler = _Recorder(
            httpx.Response(200, json={"response": "hi there", "usage": {"prompt": 3, "completion": 2, "total": 5}})
        )
        result = asyncio.run(self._adapter(handler).invoke("rq-key", "requesty-turbo", [user("hi")]))
        self.assertEqual(result.text, "hi there")
        self.assertEqual(result.usage.total_tokens, 5)
        self.assertEqual(handler.requests[0].headers["X-API-Key"], "rq-key")
        self.assertEqual(str(handler.requests[0].url), "https://api.requesty.ai/v1/completions")

    def test_stream_falls_back_to_single_chunk(self) -> None:
        handler = _Recorder(httpx.Response(200, json={"response": "whole answer"}))
        chunks = asyncio.run(collect(self._adapter(handler).stream("k", "requesty-base", [user("hi")])))
        self.assertEqual([(c.type, c.text) for c in chunks], [("text_delta", "whole answer"), ("done", "")])
        self.assertEqual(chunks[-1].usage, TokenUsage())


class BuildAdaptersTests(unittest.TestCase):
    def test_one_adapter_per_catalog_provider(self) -> None:
        adapters = build_adapters(default_registry())
        self.assertEqual(set(adapters), {"openai", "anthropic", "openrouter", "grok", "requesty"})
        self.assertIsInstance(adapters["openrouter"], OpenAIProvider)
        self.assertIsInstance(adapters["grok"], OpenAIProvider)
        self.assertIsInstance(adapters["anthropic"], AnthropicProvider)
        self.assertIsInstance(adapters["requesty"], RequestyProvider)
        self.assertEqual(adapters["grok"].provider_id, "grok")

    def test_endpoint_override_and_extra_headers(self) -> None:
        handler = _Recorder(httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}))
        config = DispatchConfig(endpoint_overrides={"openrouter": "http://proxy.local/or"})
        adapters = build_adapters(default_registry(), config, transport=httpx.MockTransport(handler))

        asyncio.run(adapters["openrouter"].invoke("k", "google/gemini-pro", [user("hi")]))

        request = handler.requests[0]
        self.assertEqual(str(request.url), "http://proxy.local/or/chat/completions")
        self.assertEqual(request.headers["X-Title"], "Data Aggregator")
        self.assertEqual(request.headers["HTTP-Referer"], "https://data-aggregator.vercel.app")


if __name__ == "__main__":
    unittest.main()
