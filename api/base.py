"""Unified response envelope for the session-based /auth routes.

Bearer-authenticated /api routes answer errors with Problem Details instead
(see api.problem_details).
"""

from typing import Any
from datetime import datetime
from uuid import uuid4

from pydantic import BaseModel, Field
from starlette.responses import JSONResponse

from utils.timezone import now_utc


class APIError(BaseModel):
    """Error details in API response."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    fields: dict[str, list[str]] | None = Field(
        default=None, description="Field-level messages for validation errors"
    )


class APIMeta(BaseModel):
    """Metadata included in every response."""

    timestamp: datetime = Field(..., description="Response timestamp (UTC)")
    request_id: str = Field(..., description="Unique request identifier for tracing")


class APIResponse(BaseModel):
    """
    Unified response format for the /auth endpoints.

    Every endpoint returns this structure, making client parsing predictable.
    """

    success: bool
    data: Any | None = None
    error: APIError | None = None
    meta: APIMeta


def _meta() -> APIMeta:
    return APIMeta(timestamp=now_utc(), request_id=str(uuid4()))


def success_response(data: Any) -> APIResponse:
    """Create a success response."""
    return APIResponse(success=True, data=data, error=None, meta=_meta())


def error_response(
    code: str,
    message: str,
    fields: dict[str, list[str]] | None = None,
) -> APIResponse:
    """Create an error response."""
    return APIResponse(
        success=False,
        data=None,
        error=APIError(code=code, message=message, fields=fields),
        meta=_meta(),
    )


def error_json(
    status_code: int,
    code: str,
    message: str,
    fields: dict[str, list[str]] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Error envelope wrapped in a JSONResponse."""
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content=error_response(code, message, fields).model_dump(mode="json"),
    )


class ErrorCodes:
    """Standard error codes for consistent error handling."""

    # Authentication
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    INVALID_CODE = "INVALID_CODE"
    CHALLENGE_LOCKED = "CHALLENGE_LOCKED"
    RATE_LIMITED = "RATE_LIMITED"
    NO_PENDING_LOGIN = "NO_PENDING_LOGIN"

    # Resource Errors
    NOT_FOUND = "NOT_FOUND"

    # Validation Errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"

    # Infrastructure
    INTERNAL_ERROR = "INTERNAL_ERROR"
