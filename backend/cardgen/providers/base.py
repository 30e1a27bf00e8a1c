from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cardgen.core.config import Settings

FinishReason = Literal["stop", "length", "content_filter"]
FINISH_REASONS = ("stop", "length", "content_filter")

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


class GatewayConfig(BaseModel):
    """Connection and runtime parameters of one gateway client. Never mutated."""

    model_config = ConfigDict(frozen=True)

    api_key: str = Field(repr=False)
    base_url: str = DEFAULT_BASE_URL
    default_model: Optional[str] = None
    default_temperature: Optional[float] = Field(default=None, ge=0, le=2)
    default_max_tokens: Optional[int] = Field(default=None, gt=0)
    timeout: float = Field(default=30.0, gt=0)  # seconds, per attempt
    retry_attempts: int = Field(default=2, ge=0)  # retries after the first try
    retry_delay: float = Field(default=1.0, ge=0)  # backoff unit, seconds
    # optional attribution headers (HTTP-Referer / X-Title)
    app_url: Optional[str] = None
    app_name: Optional[str] = None

    @field_validator("api_key")
    @classmethod
    def _require_api_key(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Upstream API key is required")
        return v

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def masked_api_key(self) -> str:
        if len(self.api_key) <= 8:
            return "****"
        return f"{self.api_key[:4]}...{self.api_key[-4:]}"

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "GatewayConfig":
        values: Dict[str, Any] = {
            "api_key": settings.OPENROUTER_API_KEY,
            "base_url": settings.OPENROUTER_BASE_URL,
            "default_model": settings.OPENROUTER_MODEL,
            "default_temperature": settings.OPENROUTER_TEMPERATURE,
            "default_max_tokens": settings.OPENROUTER_MAX_TOKENS,
            "timeout": settings.OPENROUTER_TIMEOUT_SECONDS,
            "retry_attempts": settings.OPENROUTER_RETRY_ATTEMPTS,
            "retry_delay": settings.OPENROUTER_RETRY_DELAY_SECONDS,
            "app_url": settings.APP_URL,
            "app_name": settings.PROJECT_NAME,
        }
        values.update(overrides)
        return cls(**values)


class Message(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class JsonSchemaSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    strict: bool = False
    schema_: Dict[str, Any] = Field(alias="schema")


class ResponseFormat(BaseModel):
    type: Literal["json_object", "json_schema"]
    json_schema: Optional[JsonSchemaSpec] = None


class ChatOptions(BaseModel):
    # exactly one of messages / prompt; enforced by the client so the
    # failure surfaces as a bad-request GatewayError
    messages: Optional[List[Message]] = None
    prompt: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stop: Optional[Union[str, List[str]]] = None
    response_format: Optional[ResponseFormat] = None


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatResponse(BaseModel):
    content: str
    model: str
    usage: Usage = Field(default_factory=Usage)
    finish_reason: Optional[FinishReason] = None


class ChatStreamChunk(BaseModel):
    delta: str
    model: str
    finish_reason: Optional[FinishReason] = None
    usage: Optional[Usage] = None  # only on the terminal event


def normalize_finish_reason(value: Any) -> Optional[FinishReason]:
    return value if value in FINISH_REASONS else None


def parse_usage(raw: Any) -> Usage:
    if not isinstance(raw, dict):
        return Usage()

    def count(key: str) -> int:
        value = raw.get(key)
        return value if isinstance(value, int) and not isinstance(value, bool) else 0

    return Usage(
        prompt_tokens=count("prompt_tokens"),
        completion_tokens=count("completion_tokens"),
        total_tokens=count("total_tokens"),
    )
