import asyncio
import time
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional, TypeVar

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from cardgen.core.config import Settings
from cardgen.errors import ErrorKind, GatewayError, error_from_status
from cardgen.observability import UPSTREAM_LATENCY, UPSTREAM_REQUESTS, UPSTREAM_RETRIES
from cardgen.providers.base import (
    ChatOptions,
    ChatResponse,
    ChatStreamChunk,
    GatewayConfig,
    Message,
    normalize_finish_reason,
    parse_usage,
)
from cardgen.providers.schema import validate_content
from cardgen.providers.sse import ChatStream, iter_chunks

logger = structlog.get_logger()

COMPLETIONS_ENDPOINT = "chat/completions"
RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
DEFAULT_TEMPERATURE = 1.0

T = TypeVar("T")
Sleeper = Callable[[float], Awaitable[Any]]


def _bad_request(message: str, field: str) -> GatewayError:
    return GatewayError(ErrorKind.BAD_REQUEST, message, details={"field": field})


def _is_retryable(exc: BaseException) -> bool:
    if not isinstance(exc, GatewayError):
        return False
    if exc.kind is ErrorKind.NETWORK_ERROR:
        return True
    return exc.http_status in RETRYABLE_STATUSES


def parse_chat_response(raw: Any) -> ChatResponse:
    """Normalize a completion body; anything malformed is an invalid-json error."""
    if not isinstance(raw, dict):
        raise GatewayError(ErrorKind.INVALID_JSON, "Invalid response: expected object")

    choices = raw.get("choices")
    if not isinstance(choices, list) or not choices:
        raise GatewayError(ErrorKind.INVALID_JSON, "Invalid response: choices array is missing or empty")
    choice = choices[0]
    if not isinstance(choice, dict):
        raise GatewayError(ErrorKind.INVALID_JSON, "Invalid response: first choice is missing or invalid")
    message = choice.get("message")
    if not isinstance(message, dict):
        raise GatewayError(ErrorKind.INVALID_JSON, "Invalid response: message is missing or invalid")
    content = message.get("content")
    if not isinstance(content, str):
        raise GatewayError(
            ErrorKind.INVALID_JSON, "Invalid response: message.content is missing or not a string"
        )
    model = raw.get("model")
    if not isinstance(model, str) or not model.strip():
        raise GatewayError(ErrorKind.INVALID_JSON, "Invalid response: model is missing or invalid")

    return ChatResponse(
        content=content,
        model=model,
        usage=parse_usage(raw.get("usage")),
        finish_reason=normalize_finish_reason(choice.get("finish_reason")),
    )


class OpenRouterClient:
    """
    Client for an OpenAI-compatible chat completion API (OpenRouter by default).

    Every call opens its own HTTP exchange; the instance holds nothing but its
    immutable config, so one client can serve any number of concurrent calls.
    Transport failures on retryable statuses, timeouts and connection errors
    are retried with backoff before being surfaced as a ``GatewayError``.
    """

    def __init__(
        self,
        config: GatewayConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleeper = asyncio.sleep,
    ):
        self._config = config
        self._transport = transport
        self._sleep = sleep

    @property
    def config(self) -> GatewayConfig:
        """Read-only view of the configuration with the API key masked."""
        return self._config.model_copy(update={"api_key": self._config.masked_api_key()})

    async def send(self, options: ChatOptions) -> ChatResponse:
        body = self.build_request_body(options, stream=False)
        start = time.perf_counter()
        async with self._http_client() as http:
            response = await self._post(http, body, stream=False)

        try:
            raw = response.json()
        except ValueError as exc:
            raise GatewayError(ErrorKind.INVALID_JSON, "Invalid response: body is not JSON") from exc
        result = parse_chat_response(raw)
        logger.info(
            "upstream_completion",
            model=result.model,
            finish_reason=result.finish_reason,
            total_tokens=result.usage.total_tokens,
            elapsed_ms=int((time.perf_counter() - start) * 1000),
        )

        fmt = options.response_format
        if fmt is not None and fmt.type == "json_schema" and fmt.json_schema is not None:
            validate_content(result.content, fmt.json_schema.schema_, fmt.json_schema.strict)
        return result

    async def send_parsed(self, options: ChatOptions, parser: Callable[[str], T]) -> T:
        response = await self.send(options)
        return parser(response.content)

    def stream(self, options: ChatOptions) -> ChatStream:
        """
        Stream a completion.

        Request validation happens here, synchronously; the HTTP exchange starts
        on the first pull. Prefer ``async with client.stream(...) as chunks`` so
        the connection is released if iteration is abandoned.
        """
        body = self.build_request_body(options, stream=True)
        return ChatStream(self._stream_chunks(body))

    async def _stream_chunks(self, body: Dict[str, Any]) -> AsyncGenerator[ChatStreamChunk, None]:
        async with self._http_client() as http:
            response = await self._post(http, body, stream=True)
            chunks = iter_chunks(response.aiter_bytes())
            try:
                async for chunk in chunks:
                    yield chunk
            except httpx.TransportError as exc:
                # a started stream is not replayed
                raise GatewayError(ErrorKind.NETWORK_ERROR, f"Stream interrupted: {exc}") from exc
            finally:
                await chunks.aclose()
                await response.aclose()

    def build_request_body(self, options: ChatOptions, *, stream: bool) -> Dict[str, Any]:
        if options.messages and options.prompt:
            raise _bad_request("Cannot provide both 'messages' and 'prompt'. Use one or the other.", "messages")
        if not options.messages and not options.prompt:
            raise _bad_request("Either 'messages' or 'prompt' must be provided.", "messages")

        if options.prompt:
            messages = [Message(role="user", content=options.prompt)]
        else:
            messages = list(options.messages or [])
        # system instructions go first; relative order is kept within each group
        messages = [m for m in messages if m.role == "system"] + [m for m in messages if m.role != "system"]

        model = options.model or self._config.default_model
        if not model:
            raise _bad_request("Model must be provided either in config or options", "model")

        temperature = options.temperature
        if temperature is None:
            temperature = self._config.default_temperature
        if temperature is None:
            temperature = DEFAULT_TEMPERATURE
        if not 0 <= temperature <= 2:
            raise _bad_request(f"Temperature must be between 0 and 2, got {temperature}", "temperature")

        max_tokens = options.max_tokens if options.max_tokens is not None else self._config.default_max_tokens
        if max_tokens is not None and max_tokens <= 0:
            raise _bad_request(f"max_tokens must be greater than 0, got {max_tokens}", "max_tokens")

        body: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": temperature,
        }
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        if options.stop:
            body["stop"] = [options.stop] if isinstance(options.stop, str) else list(options.stop)
        if options.response_format is not None:
            body["response_format"] = options.response_format.model_dump(by_alias=True, exclude_none=True)
        body["stream"] = stream
        return body

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._config.api_key}",
            "Content-Type": "application/json",
        }
        if self._config.app_url:
            headers["HTTP-Referer"] = self._config.app_url
        if self._config.app_name:
            headers["X-Title"] = self._config.app_name
        return headers

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._config.timeout, transport=self._transport)

    async def _post(self, http: httpx.AsyncClient, body: Dict[str, Any], *, stream: bool) -> httpx.Response:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.retry_attempts + 1),
            wait=self._backoff,
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                response = await self._attempt(http, body, stream=stream)
        return response

    async def _attempt(self, http: httpx.AsyncClient, body: Dict[str, Any], *, stream: bool) -> httpx.Response:
        url = f"{self._config.base_url}/{COMPLETIONS_ENDPOINT}"
        request = http.build_request("POST", url, json=body, headers=self._headers())
        logger.debug("upstream_request", url=url, model=body.get("model"), stream=stream)
        start = time.perf_counter()
        try:
            async with asyncio.timeout(self._config.timeout):
                response = await http.send(request, stream=stream)
        except (TimeoutError, httpx.TimeoutException) as exc:
            UPSTREAM_REQUESTS.labels("timeout").inc()
            raise GatewayError(
                ErrorKind.NETWORK_ERROR, f"Request timeout after {self._config.timeout}s"
            ) from exc
        except httpx.TransportError as exc:
            UPSTREAM_REQUESTS.labels("network_error").inc()
            raise GatewayError(ErrorKind.NETWORK_ERROR, f"Network error: {exc}") from exc
        finally:
            UPSTREAM_LATENCY.observe(time.perf_counter() - start)

        if response.is_success:
            UPSTREAM_REQUESTS.labels("success").inc()
            return response

        UPSTREAM_REQUESTS.labels(str(response.status_code)).inc()
        text: Optional[str] = None
        try:
            text = (await response.aread()).decode("utf-8", errors="replace")
        except httpx.HTTPError as exc:
            logger.warning("upstream_error_body_unreadable", status=response.status_code, error=str(exc))
        finally:
            await response.aclose()
        raise error_from_status(response.status_code, text, response.headers.get("Retry-After"))

    def _backoff(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, GatewayError) and exc.kind is ErrorKind.RATE_LIMITED and exc.retry_after is not None:
            return exc.retry_after
        return self._config.retry_delay * 2 ** (retry_state.attempt_number - 1)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        code = exc.code if isinstance(exc, GatewayError) else type(exc).__name__
        UPSTREAM_RETRIES.labels(code).inc()
        logger.warning(
            "upstream_retry",
            attempt=retry_state.attempt_number,
            delay=retry_state.next_action.sleep if retry_state.next_action else None,
            code=code,
            status=getattr(exc, "http_status", None),
        )


def build_client(settings: Settings, **overrides: Any) -> OpenRouterClient:
    """Client configured from process settings; ``overrides`` win over them."""
    return OpenRouterClient(GatewayConfig.from_settings(settings, **overrides))
