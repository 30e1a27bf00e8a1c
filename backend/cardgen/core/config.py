from typing import Annotated, Any, List, Literal, Optional

from pydantic import AnyUrl, BeforeValidator, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_cors(v: Any) -> List[str] | str:
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, (list, str)):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "cardgen"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    SENTRY_DSN: Optional[AnyUrl] = None
    BACKEND_CORS_ORIGINS: Annotated[List[AnyUrl] | str, BeforeValidator(parse_cors)] = []
    APP_URL: Optional[str] = None

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Upstream completion API
    OPENROUTER_API_KEY: str = ""
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    OPENROUTER_MODEL: str = "openai/gpt-4o-mini"
    OPENROUTER_TEMPERATURE: float = 0.7
    OPENROUTER_MAX_TOKENS: int = 2000
    OPENROUTER_TIMEOUT_SECONDS: float = 30.0
    OPENROUTER_RETRY_ATTEMPTS: int = 2
    OPENROUTER_RETRY_DELAY_SECONDS: float = 1.0

    # Semantic retries on top of the transport retries above
    GENERATION_MAX_RETRIES: int = 2

    ANALYTICS_CALLBACK_URL: Optional[str] = None
    ANALYTICS_CALLBACK_AUTH: Optional[str] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> List[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]


settings = Settings()  # type: ignore
