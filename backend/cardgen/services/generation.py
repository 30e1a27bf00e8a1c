import json
from typing import Any, List, Optional

import structlog
from pydantic import BaseModel

from cardgen.errors import ErrorKind, GatewayError, GenerationError, GenerationErrorKind
from cardgen.observability import GENERATION_ATTEMPTS
from cardgen.prompts import (
    FLASHCARD_RESPONSE_FORMAT,
    FLASHCARD_SYSTEM_PROMPT,
    MAX_BACK_LENGTH,
    MAX_FRONT_LENGTH,
    MAX_PROPOSALS,
    build_user_prompt,
)
from cardgen.providers.base import ChatOptions, Message
from cardgen.providers.openrouter import OpenRouterClient
from cardgen.services.analytics import AnalyticsSink

logger = structlog.get_logger()

# Upstream output problems that a fresh attempt may fix
SEMANTIC_KINDS = frozenset({ErrorKind.INVALID_JSON, ErrorKind.SCHEMA_VALIDATION})


class Proposal(BaseModel):
    front: str
    back: str


class GenerationOutcome(BaseModel):
    proposals: List[Proposal]
    count: int


class InvalidOutput(Exception):
    """A completed exchange whose content breaks the flashcard contract."""


def _is_valid_entry(entry: Any) -> bool:
    if not isinstance(entry, dict):
        return False
    front, back = entry.get("front"), entry.get("back")
    return (
        isinstance(front, str)
        and 0 < len(front) <= MAX_FRONT_LENGTH
        and isinstance(back, str)
        and 0 < len(back) <= MAX_BACK_LENGTH
    )


def extract_proposals(content: str) -> List[Proposal]:
    """Parse model output, drop out-of-bounds cards and keep the first five."""
    try:
        parsed = json.loads(content)
    except ValueError as exc:
        raise InvalidOutput(f"Failed to parse AI response as JSON: {exc}") from exc

    flashcards = parsed.get("flashcards") if isinstance(parsed, dict) else None
    if not isinstance(flashcards, list):
        raise InvalidOutput("AI response missing flashcards array")

    valid = [entry for entry in flashcards if _is_valid_entry(entry)]
    if not valid:
        raise InvalidOutput("All proposals exceeded character limits")
    return [Proposal(front=e["front"], back=e["back"]) for e in valid[:MAX_PROPOSALS]]


def _transport_failure(err: GatewayError, attempts: int) -> GenerationError:
    match err.kind:
        case ErrorKind.PAYMENT_REQUIRED:
            return GenerationError(
                GenerationErrorKind.QUOTA_EXCEEDED, "Upstream quota exceeded", attempts=attempts
            )
        case ErrorKind.RATE_LIMITED:
            return GenerationError(
                GenerationErrorKind.QUOTA_EXCEEDED, "Rate limit exceeded", attempts=attempts
            )
        case ErrorKind.SERVER_ERROR | ErrorKind.NETWORK_ERROR:
            return GenerationError(
                GenerationErrorKind.UPSTREAM_UNAVAILABLE, err.message, attempts=attempts
            )
        case _:
            # unauthorized / bad-request / not-found: misconfiguration on our side
            return GenerationError(
                GenerationErrorKind.UPSTREAM_UNAVAILABLE,
                f"Upstream rejected the request ({err.code}): {err.message}",
                attempts=attempts,
            )


class FlashcardGenerator:
    """
    Turns source text into flashcard proposals.

    Transport retries are the client's business; this layer only retries when
    the model answered but the answer is unusable, up to ``max_retries``
    extra attempts, one attempt at a time.
    """

    def __init__(
        self,
        client: OpenRouterClient,
        analytics: AnalyticsSink,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        max_retries: int = 2,
    ):
        self.client = client
        self.analytics = analytics
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_retries = max_retries

    def _options(self, source_text: str) -> ChatOptions:
        return ChatOptions(
            messages=[
                Message(role="system", content=FLASHCARD_SYSTEM_PROMPT),
                Message(role="user", content=build_user_prompt(source_text)),
            ],
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            response_format=FLASHCARD_RESPONSE_FORMAT,
        )

    async def generate_proposals(self, source_text: str, caller_id: str) -> GenerationOutcome:
        # source_text length is validated by the caller (1..10000 chars)
        options = self._options(source_text)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 2):
            try:
                response = await self.client.send(options)
                proposals = extract_proposals(response.content)
            except GatewayError as err:
                if err.kind not in SEMANTIC_KINDS:
                    GENERATION_ATTEMPTS.labels("transport_error").inc()
                    logger.error("generation_failed", attempt=attempt, code=err.code, status=err.http_status)
                    raise _transport_failure(err, attempt) from err
                last_error = err
            except InvalidOutput as err:
                last_error = err
            else:
                GENERATION_ATTEMPTS.labels("success").inc()
                logger.info("generation_succeeded", attempt=attempt, count=len(proposals), model=response.model)
                await self.analytics.track_event(caller_id, "generate", None, {})
                return GenerationOutcome(proposals=proposals, count=len(proposals))

            GENERATION_ATTEMPTS.labels("invalid_output").inc()
            logger.warning("generation_invalid_output", attempt=attempt, error=str(last_error))

        raise GenerationError(
            GenerationErrorKind.INVALID_OUTPUT,
            f"AI returned invalid output after {self.max_retries + 1} attempts: {last_error}",
            attempts=self.max_retries + 1,
        ) from last_error
