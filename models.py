"""
API and domain models.
Request/response schemas and explanation records using Pydantic.
"""

import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from exceptions import InvalidErrorCodeError

MAX_U32 = 4294967295

ExplanationSource = Literal["cache", "ai", "static"]
ErrorCodeType = Literal["standard", "anchor_constraint", "custom"]

_HEX_RE = re.compile(r"^[0-9a-f]+$", re.IGNORECASE)
_DEC_RE = re.compile(r"^\d+$")


class Explanation(BaseModel):
    """Explanation of an error code, whichever source produced it."""

    code: int
    explanation: str = Field(..., min_length=1)
    fixes: list[str]
    source: ExplanationSource
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    provider: str | None = None


class AIExplanation(BaseModel):
    """Parsed provider output before it is tagged with a source."""

    explanation: str
    fixes: list[str]
    confidence: float = Field(..., ge=0.0, le=1.0)
    model: str
    tokens: int = 0


class ValidatedErrorCode(BaseModel):
    """Error code after input normalization."""

    code: int
    original_input: int | str
    type: ErrorCodeType


class RateLimitResult(BaseModel):
    """Structured allow/deny answer from the rate limiter."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int | None = None


def classify_error_code(code: int) -> ErrorCodeType:
    """Classify a code by the Solana/Anchor numbering conventions."""
    if 2000 <= code <= 2999:
        return "anchor_constraint"
    if code >= 6000:
        return "custom"
    return "standard"


def validate_error_code(value: int | str) -> ValidatedErrorCode:
    """
    Normalize a raw error code.

    Accepts an int, a decimal string or a 0x-prefixed hex string, all within
    the unsigned 32-bit range. Raises InvalidErrorCodeError otherwise.
    """
    if isinstance(value, bool):
        raise InvalidErrorCodeError("Invalid error code format. Must be a number or hex string.")

    if isinstance(value, int):
        code = value
    elif isinstance(value, str):
        text = value.strip()
        if text.lower().startswith("0x"):
            digits = text[2:]
            if not _HEX_RE.match(digits):
                raise InvalidErrorCodeError(
                    "Invalid error code format. String must be a valid decimal or hexadecimal number."
                )
            code = int(digits, 16)
        else:
            if not _DEC_RE.match(text):
                raise InvalidErrorCodeError(
                    "Invalid error code format. String must be a valid decimal or hexadecimal number."
                )
            code = int(text, 10)
    else:
        raise InvalidErrorCodeError("Invalid error code format. Must be a number or hex string.")

    if code < 0 or code > MAX_U32:
        raise InvalidErrorCodeError(f"Invalid error code format. Must be a number between 0 and {MAX_U32}.")

    return ValidatedErrorCode(code=code, original_input=value, type=classify_error_code(code))


class ExplainRequest(BaseModel):
    """Schema for POST /v1/explain requests."""

    error_code: int | str = Field(..., description="Error code as integer, decimal string or 0x hex string")
    context: str | None = Field(default=None, max_length=1000, description="Optional free-text context")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error_code": "0x1770",
                "context": "Raised while calling the deposit instruction",
            }
        }
    )

    @field_validator("context")
    @classmethod
    def strip_context(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None


class ExplainResponse(BaseModel):
    """Schema for POST /v1/explain responses."""

    code: int
    explanation: str
    fixes: list[str]
    source: ExplanationSource
    confidence: float | None
    cached: bool
    timestamp: str


class HealthResponse(BaseModel):
    """Schema for GET /health responses."""

    status: str
    version: str


class StatusResponse(BaseModel):
    """Schema for GET /v1/status responses."""

    providers: dict[str, dict]
    circuit: dict
    cache: dict
    rate_limiter: dict
