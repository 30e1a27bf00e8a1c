import asyncio
import json

import httpx
import pytest

from cardgen.errors import ErrorKind, GatewayError
from cardgen.providers.base import ChatOptions, JsonSchemaSpec, Message, ResponseFormat
from cardgen.tests.utils.upstream import (
    TEST_API_KEY,
    TEST_MODEL,
    ChunkedStream,
    RecordingSleep,
    Upstream,
    completion_body,
    delta_event,
    make_client,
    sse_event,
)


def ok(content: str = "Hello", **kwargs) -> httpx.Response:
    return httpx.Response(200, json=completion_body(content, **kwargs))


# ─────────────────────────────────────────────────────
# Request construction
# ─────────────────────────────────────────────────────


class TestRequestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "options",
        [
            ChatOptions(),
            ChatOptions(prompt="hi", messages=[Message(role="user", content="hi")]),
        ],
        ids=["neither", "both"],
    )
    async def test_messages_xor_prompt(self, options):
        upstream = Upstream([ok()])
        client = make_client(upstream)
        with pytest.raises(GatewayError) as exc_info:
            await client.send(options)
        assert exc_info.value.kind is ErrorKind.BAD_REQUEST
        assert upstream.calls == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("temperature", [-0.01, 2.01, 10, float("nan")])
    async def test_temperature_out_of_range(self, temperature):
        upstream = Upstream([ok()])
        client = make_client(upstream)
        with pytest.raises(GatewayError) as exc_info:
            await client.send(ChatOptions(prompt="hi", temperature=temperature))
        assert exc_info.value.kind is ErrorKind.BAD_REQUEST
        assert exc_info.value.details == {"field": "temperature"}
        assert upstream.calls == 0

    @pytest.mark.asyncio
    async def test_model_required(self):
        upstream = Upstream([ok()])
        client = make_client(upstream, default_model=None)
        with pytest.raises(GatewayError) as exc_info:
            await client.send(ChatOptions(prompt="hi"))
        assert exc_info.value.kind is ErrorKind.BAD_REQUEST
        assert upstream.calls == 0

    @pytest.mark.asyncio
    async def test_max_tokens_must_be_positive(self):
        upstream = Upstream([ok()])
        client = make_client(upstream)
        with pytest.raises(GatewayError) as exc_info:
            await client.send(ChatOptions(prompt="hi", max_tokens=0))
        assert exc_info.value.kind is ErrorKind.BAD_REQUEST
        assert upstream.calls == 0

    def test_stream_validates_before_any_call(self):
        upstream = Upstream([ok()])
        client = make_client(upstream)
        with pytest.raises(GatewayError):
            client.stream(ChatOptions())
        assert upstream.calls == 0


class TestRequestBody:
    @pytest.mark.asyncio
    async def test_prompt_becomes_user_message(self):
        upstream = Upstream([ok()])
        client = make_client(upstream)
        await client.send(ChatOptions(prompt="What is water?"))

        body = upstream.bodies()[0]
        assert body["messages"] == [{"role": "user", "content": "What is water?"}]
        assert body["model"] == TEST_MODEL
        assert body["temperature"] == 1.0
        assert body["stream"] is False
        assert "max_tokens" not in body

    @pytest.mark.asyncio
    async def test_system_messages_are_moved_first(self):
        upstream = Upstream([ok()])
        client = make_client(upstream)
        await client.send(
            ChatOptions(
                messages=[
                    Message(role="user", content="u1"),
                    Message(role="system", content="s1"),
                    Message(role="assistant", content="a1"),
                    Message(role="system", content="s2"),
                    Message(role="user", content="u2"),
                ]
            )
        )
        contents = [m["content"] for m in upstream.bodies()[0]["messages"]]
        assert contents == ["s1", "s2", "u1", "a1", "u2"]

    @pytest.mark.asyncio
    async def test_options_override_config_defaults(self):
        upstream = Upstream([ok()])
        client = make_client(upstream, default_temperature=0.2, default_max_tokens=100)
        await client.send(ChatOptions(prompt="hi", model="other/model", temperature=0.9, max_tokens=50, stop="END"))

        body = upstream.bodies()[0]
        assert body["model"] == "other/model"
        assert body["temperature"] == 0.9
        assert body["max_tokens"] == 50
        assert body["stop"] == ["END"]

    @pytest.mark.asyncio
    async def test_config_defaults_apply(self):
        upstream = Upstream([ok()])
        client = make_client(upstream, default_temperature=0.2, default_max_tokens=100)
        await client.send(ChatOptions(prompt="hi"))

        body = upstream.bodies()[0]
        assert body["temperature"] == 0.2
        assert body["max_tokens"] == 100

    @pytest.mark.asyncio
    async def test_response_format_and_headers(self):
        upstream = Upstream([ok('{"answer": 42}')])
        client = make_client(upstream, app_url="https://cards.example.com", app_name="cardgen")
        fmt = ResponseFormat(
            type="json_schema",
            json_schema=JsonSchemaSpec(name="Answer", strict=True, schema={"type": "object"}),
        )
        await client.send(ChatOptions(prompt="hi", response_format=fmt))

        request = upstream.requests[0]
        assert request.url == "https://openrouter.ai/api/v1/chat/completions"
        assert request.headers["Authorization"] == f"Bearer {TEST_API_KEY}"
        assert request.headers["HTTP-Referer"] == "https://cards.example.com"
        assert request.headers["X-Title"] == "cardgen"
        assert json.loads(request.content)["response_format"] == {
            "type": "json_schema",
            "json_schema": {"name": "Answer", "strict": True, "schema": {"type": "object"}},
        }


# ─────────────────────────────────────────────────────
# Response parsing
# ─────────────────────────────────────────────────────


class TestResponseParsing:
    @pytest.mark.asyncio
    async def test_normalized_response(self):
        usage = {"prompt_tokens": 12, "completion_tokens": 30, "total_tokens": 42}
        client = make_client(Upstream([ok("Hi there", finish_reason="length", usage=usage)]))
        response = await client.send(ChatOptions(prompt="hi"))

        assert response.content == "Hi there"
        assert response.model == TEST_MODEL
        assert response.finish_reason == "length"
        assert response.usage.total_tokens == 42

    @pytest.mark.asyncio
    async def test_missing_usage_defaults_to_zero_and_unknown_finish_reason_is_none(self):
        client = make_client(Upstream([ok("x", finish_reason="tool_calls")]))
        response = await client.send(ChatOptions(prompt="hi"))
        assert response.usage.prompt_tokens == 0
        assert response.usage.completion_tokens == 0
        assert response.usage.total_tokens == 0
        assert response.finish_reason is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"model": TEST_MODEL, "choices": []},
            {"model": TEST_MODEL},
            {"model": TEST_MODEL, "choices": [{"message": {"content": None}}]},
            {"model": TEST_MODEL, "choices": [{"finish_reason": "stop"}]},
            {"model": "", "choices": [{"message": {"content": "x"}}]},
            [1, 2, 3],
        ],
    )
    async def test_malformed_body_is_invalid_json_without_retry(self, body):
        upstream = Upstream([httpx.Response(200, json=body)])
        client = make_client(upstream)
        with pytest.raises(GatewayError) as exc_info:
            await client.send(ChatOptions(prompt="hi"))
        assert exc_info.value.kind is ErrorKind.INVALID_JSON
        assert upstream.calls == 1

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        client = make_client(Upstream([httpx.Response(200, text="<html>oops</html>")]))
        with pytest.raises(GatewayError) as exc_info:
            await client.send(ChatOptions(prompt="hi"))
        assert exc_info.value.kind is ErrorKind.INVALID_JSON

    @pytest.mark.asyncio
    async def test_strict_schema_is_checked_after_parse(self):
        fmt = ResponseFormat(
            type="json_schema",
            json_schema=JsonSchemaSpec(
                name="Cards",
                strict=True,
                schema={"type": "object", "required": ["flashcards"], "properties": {"flashcards": {}}},
            ),
        )
        client = make_client(Upstream([ok('{"cards": []}')]))
        with pytest.raises(GatewayError) as exc_info:
            await client.send(ChatOptions(prompt="hi", response_format=fmt))
        assert exc_info.value.kind is ErrorKind.SCHEMA_VALIDATION

    @pytest.mark.asyncio
    async def test_send_parsed(self):
        client = make_client(Upstream([ok('{"answer": 42}')]))
        result = await client.send_parsed(ChatOptions(prompt="hi"), lambda content: json.loads(content)["answer"])
        assert result == 42


# ─────────────────────────────────────────────────────
# Retry policy
# ─────────────────────────────────────────────────────


class TestRetryPolicy:
    @pytest.mark.asyncio
    async def test_retry_after_header_is_honoured(self):
        sleep = RecordingSleep()
        upstream = Upstream([httpx.Response(429, headers={"Retry-After": "3"}), ok()])
        client = make_client(upstream, sleep=sleep, retry_delay=1.0)

        response = await client.send(ChatOptions(prompt="hi"))

        assert response.content == "Hello"
        assert upstream.calls == 2
        assert sleep.delays == [3.0]

    @pytest.mark.asyncio
    async def test_429_without_retry_after_uses_exponential_backoff(self):
        sleep = RecordingSleep()
        upstream = Upstream([httpx.Response(429), httpx.Response(429), ok()])
        client = make_client(upstream, sleep=sleep, retry_delay=0.5)

        await client.send(ChatOptions(prompt="hi"))

        assert sleep.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", ["inf", "nan", "1e3", "-1", "2.5"])
    async def test_non_integer_retry_after_falls_back_to_backoff(self, header):
        sleep = RecordingSleep()
        upstream = Upstream([httpx.Response(429, headers={"Retry-After": header})])
        client = make_client(upstream, sleep=sleep, retry_delay=1.0)

        with pytest.raises(GatewayError) as exc_info:
            await client.send(ChatOptions(prompt="hi"))

        assert exc_info.value.kind is ErrorKind.RATE_LIMITED
        assert exc_info.value.retry_after is None
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted_carries_retry_after(self):
        upstream = Upstream([httpx.Response(429, headers={"Retry-After": "7"})])
        client = make_client(upstream)
        with pytest.raises(GatewayError) as exc_info:
            await client.send(ChatOptions(prompt="hi"))
        assert exc_info.value.kind is ErrorKind.RATE_LIMITED
        assert exc_info.value.retry_after == 7.0
        assert upstream.calls == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("retry_attempts", [0, 1, 2, 4])
    async def test_persistent_500_exhausts_attempts(self, retry_attempts):
        sleep = RecordingSleep()
        upstream = Upstream([httpx.Response(500, text="boom")])
        client = make_client(upstream, sleep=sleep, retry_attempts=retry_attempts, retry_delay=1.0)

        with pytest.raises(GatewayError) as exc_info:
            await client.send(ChatOptions(prompt="hi"))

        assert exc_info.value.kind is ErrorKind.SERVER_ERROR
        assert exc_info.value.http_status == 500
        assert upstream.calls == retry_attempts + 1
        assert sleep.delays == [1.0 * 2**n for n in range(retry_attempts)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [502, 503, 504])
    async def test_gateway_statuses_recover(self, status):
        upstream = Upstream([httpx.Response(status), ok()])
        client = make_client(upstream)
        response = await client.send(ChatOptions(prompt="hi"))
        assert response.content == "Hello"
        assert upstream.calls == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,kind",
        [
            (400, ErrorKind.BAD_REQUEST),
            (401, ErrorKind.UNAUTHORIZED),
            (402, ErrorKind.PAYMENT_REQUIRED),
            (404, ErrorKind.NOT_FOUND),
            (403, ErrorKind.BAD_REQUEST),
            (501, ErrorKind.SERVER_ERROR),
        ],
    )
    async def test_non_retryable_statuses_fail_after_one_call(self, status, kind):
        sleep = RecordingSleep()
        upstream = Upstream([httpx.Response(status, text="nope")])
        client = make_client(upstream, sleep=sleep)

        with pytest.raises(GatewayError) as exc_info:
            await client.send(ChatOptions(prompt="hi"))

        assert exc_info.value.kind is kind
        assert exc_info.value.http_status == status
        assert upstream.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_connection_errors_retry_then_network_error(self):
        sleep = RecordingSleep()
        upstream = Upstream([httpx.ConnectError("connection refused")])
        client = make_client(upstream, sleep=sleep)

        with pytest.raises(GatewayError) as exc_info:
            await client.send(ChatOptions(prompt="hi"))

        assert exc_info.value.kind is ErrorKind.NETWORK_ERROR
        assert exc_info.value.http_status is None
        assert upstream.calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_transport_timeout_recovers(self):
        upstream = Upstream([httpx.ReadTimeout("read timed out"), ok()])
        client = make_client(upstream)
        response = await client.send(ChatOptions(prompt="hi"))
        assert response.content == "Hello"
        assert upstream.calls == 2

    @pytest.mark.asyncio
    async def test_slow_upstream_is_cancelled_at_timeout(self):
        async def hang(request):
            await asyncio.sleep(5)
            return ok()

        upstream = Upstream([hang])
        client = make_client(upstream, timeout=0.05, retry_attempts=1)

        with pytest.raises(GatewayError) as exc_info:
            await client.send(ChatOptions(prompt="hi"))

        assert exc_info.value.kind is ErrorKind.NETWORK_ERROR
        assert "timeout" in exc_info.value.message.lower()
        assert upstream.calls == 2

    @pytest.mark.asyncio
    async def test_concurrent_calls_do_not_interfere(self):
        async def echo(request):
            prompt = json.loads(request.content)["messages"][0]["content"]
            await asyncio.sleep(0)
            return ok(prompt.upper())

        client = make_client(Upstream([echo]))
        results = await asyncio.gather(*(client.send(ChatOptions(prompt=p)) for p in ["a", "b", "c"]))
        assert [r.content for r in results] == ["A", "B", "C"]


# ─────────────────────────────────────────────────────
# Streaming
# ─────────────────────────────────────────────────────


def stream_response(*events: str) -> tuple:
    body = ChunkedStream([e.encode("utf-8") for e in events])
    return body, httpx.Response(200, headers={"Content-Type": "text/event-stream"}, stream=body)


class TestStreaming:
    @pytest.mark.asyncio
    async def test_stream_yields_deltas_then_stop(self):
        body, response = stream_response(
            sse_event(delta_event("Hel")),
            sse_event(delta_event("lo")),
            "data: [DONE]\n\n",
        )
        upstream = Upstream([response])
        client = make_client(upstream)

        async with client.stream(ChatOptions(prompt="hi")) as chunks:
            received = [chunk async for chunk in chunks]

        assert [c.delta for c in received] == ["Hel", "lo", ""]
        assert received[-1].finish_reason == "stop"
        assert all(c.model == TEST_MODEL for c in received)
        assert upstream.bodies()[0]["stream"] is True
        assert body.closed

    @pytest.mark.asyncio
    async def test_stream_is_lazy(self):
        _, response = stream_response("data: [DONE]\n\n")
        upstream = Upstream([response])
        client = make_client(upstream)

        stream = client.stream(ChatOptions(prompt="hi"))
        assert upstream.calls == 0
        await stream.aclose()
        assert upstream.calls == 0

    @pytest.mark.asyncio
    async def test_early_exit_releases_connection(self):
        body, response = stream_response(
            sse_event(delta_event("one")),
            sse_event(delta_event("two")),
            sse_event(delta_event("three")),
            "data: [DONE]\n\n",
        )
        client = make_client(Upstream([response]))

        async with client.stream(ChatOptions(prompt="hi")) as chunks:
            async for chunk in chunks:
                assert chunk.delta == "one"
                break

        assert body.closed
        assert body.reads < 4

    @pytest.mark.asyncio
    async def test_stream_retries_before_first_byte(self):
        sleep = RecordingSleep()
        _, response = stream_response(sse_event(delta_event("ok")), "data: [DONE]\n\n")
        upstream = Upstream([httpx.Response(503), response])
        client = make_client(upstream, sleep=sleep)

        async with client.stream(ChatOptions(prompt="hi")) as chunks:
            received = [chunk.delta async for chunk in chunks]

        assert received == ["ok", ""]
        assert upstream.calls == 2
        assert sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_stream_http_error_surfaces_on_first_pull(self):
        client = make_client(Upstream([httpx.Response(401)]))
        stream = client.stream(ChatOptions(prompt="hi"))
        with pytest.raises(GatewayError) as exc_info:
            async with stream as chunks:
                async for _ in chunks:
                    pass
        assert exc_info.value.kind is ErrorKind.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_connection_lost_mid_stream_is_network_error(self):
        body = ChunkedStream(
            [sse_event(delta_event("Hel")).encode("utf-8")],
            error=httpx.ReadError("connection reset"),
        )
        upstream = Upstream([httpx.Response(200, headers={"Content-Type": "text/event-stream"}, stream=body)])
        client = make_client(upstream)
        received = []

        with pytest.raises(GatewayError) as exc_info:
            async with client.stream(ChatOptions(prompt="hi")) as chunks:
                async for chunk in chunks:
                    received.append(chunk.delta)

        assert exc_info.value.kind is ErrorKind.NETWORK_ERROR
        assert received == ["Hel"]
        assert body.closed
        assert upstream.calls == 1
