from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
import structlog

from cardgen.api.deps import CallerIdDep, GeneratorDep
from cardgen.errors import ErrorKind, GatewayError, GenerationError, GenerationErrorKind
from cardgen.schemas import (
    ErrorBody,
    ErrorResponse,
    GenerateProposalsRequest,
    GenerateProposalsResponse,
)

router = APIRouter(prefix="/cards", tags=["cards"])
logger = structlog.get_logger()


def error_response(status_code: int, body: ErrorBody) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=body).model_dump(exclude_none=True),
    )


def _generation_error_response(err: GenerationError) -> JSONResponse:
    match err.kind:
        case GenerationErrorKind.QUOTA_EXCEEDED:
            cause = err.__cause__
            if isinstance(cause, GatewayError) and cause.kind is ErrorKind.RATE_LIMITED:
                response = error_response(
                    429,
                    ErrorBody(code="QUOTA_EXCEEDED", message="Rate limit exceeded. Please try again later"),
                )
                if isinstance(cause.retry_after, int):
                    response.headers["Retry-After"] = str(cause.retry_after)
                return response
            return error_response(
                402, ErrorBody(code="QUOTA_EXCEEDED", message="Upstream quota or rate limit exceeded")
            )
        case GenerationErrorKind.INVALID_OUTPUT:
            return error_response(
                422,
                ErrorBody(code="VALIDATION_ERROR", message="AI model returned invalid proposals. Please try again."),
            )
        case GenerationErrorKind.UPSTREAM_UNAVAILABLE:
            return error_response(
                503, ErrorBody(code="SERVER_ERROR", message="AI service temporarily unavailable")
            )


@router.post(
    "/generate",
    response_model=GenerateProposalsResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def generate_proposals(
    payload: GenerateProposalsRequest,
    request: Request,
    generator: GeneratorDep,
    caller_id: CallerIdDep,
):
    """
    Generate flashcard proposals from pasted text. Proposals are not persisted.
    """
    request_id = getattr(request.state, "request_id", None)
    try:
        outcome = await generator.generate_proposals(payload.text, caller_id)
    except GenerationError as err:
        logger.warning(
            "generate_proposals_failed",
            code=err.code,
            attempts=err.attempts,
            error=err.message,
            request_id=request_id,
        )
        return _generation_error_response(err)
    return GenerateProposalsResponse.model_validate(outcome.model_dump())
