from typing import List, Optional, Any, Dict, Literal
from pydantic import BaseModel, Field

MAX_SOURCE_TEXT_LENGTH = 10_000

ErrorCode = Literal[
    "VALIDATION_ERROR", "AUTHENTICATION_ERROR", "NOT_FOUND", "QUOTA_EXCEEDED", "SERVER_ERROR"
]


class GenerateProposalsRequest(BaseModel):
    text: str = Field(min_length=1, max_length=MAX_SOURCE_TEXT_LENGTH)


class CardProposal(BaseModel):
    front: str
    back: str


class GenerateProposalsResponse(BaseModel):
    proposals: List[CardProposal]
    count: int


class ErrorBody(BaseModel):
    code: ErrorCode
    message: str
    details: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    error: ErrorBody
