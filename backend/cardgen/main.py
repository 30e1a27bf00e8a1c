from contextlib import asynccontextmanager
from typing import Optional

import sentry_sdk
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.routing import APIRoute
from fastapi.middleware.gzip import GZipMiddleware
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from cardgen.api.main import api_router
from cardgen.api.routes.cards import error_response
from cardgen.core.config import settings
from cardgen.core.logging import setup_logging
from cardgen.middleware.request_id import RequestIdMiddleware
from cardgen.observability import MetricsMiddleware, metrics_router
from cardgen.providers.openrouter import build_client
from cardgen.schemas import ErrorBody
from cardgen.services.analytics import CallbackAnalyticsSink
from cardgen.services.generation import FlashcardGenerator

logger = structlog.get_logger()

HTTP_ERROR_CODES = {
    401: "AUTHENTICATION_ERROR",
    404: "NOT_FOUND",
}


def custom_generate_unique_id(route: APIRoute) -> str:
    return f"{route.tags[0]}-{route.name}"


def build_generator() -> Optional[FlashcardGenerator]:
    try:
        client = build_client(settings)
    except ValidationError as exc:
        logger.error(
            "generator_not_configured",
            fields=[".".join(str(p) for p in e["loc"]) for e in exc.errors()],
        )
        return None
    analytics = CallbackAnalyticsSink(settings.ANALYTICS_CALLBACK_URL, settings.ANALYTICS_CALLBACK_AUTH)
    logger.info("generator_configured", **client.config.model_dump(include={"api_key", "base_url", "default_model"}))
    return FlashcardGenerator(client, analytics, max_retries=settings.GENERATION_MAX_RETRIES)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    app.state.generator = build_generator()
    yield


if settings.SENTRY_DSN and settings.ENVIRONMENT != "local":
    sentry_sdk.init(dsn=str(settings.SENTRY_DSN), enable_tracing=True)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    generate_unique_id_function=custom_generate_unique_id,
    lifespan=lifespan,
)

app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=512)

# Set all CORS enabled origins
if settings.all_cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.all_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = {
        ".".join(str(p) for p in err["loc"] if p != "body"): err["msg"] for err in exc.errors()
    }
    return error_response(400, ErrorBody(code="VALIDATION_ERROR", message="Validation error", details=details))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        code = "SERVER_ERROR"
    else:
        code = HTTP_ERROR_CODES.get(exc.status_code, "VALIDATION_ERROR")
    return error_response(exc.status_code, ErrorBody(code=code, message=str(exc.detail)))


app.include_router(api_router, prefix=settings.API_V1_STR)
app.include_router(metrics_router)
