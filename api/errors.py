"""Global exception handlers for FastAPI.

Requests under /api/ get RFC 9457 Problem Details and have a failure reason
written into their API request context (never overwriting one recorded by the
auth middleware). Other requests get the standard response envelope.
"""

import logging
from http import HTTPStatus

import psycopg2
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from api import problem_details
from api.base import ErrorCodes, error_json
from auth.config import AuthConfig
from auth.exceptions import AuthenticationFailed, ValidationFailed
from auth.types import ApiRequestFailure

logger = logging.getLogger(__name__)

API_PREFIX = "/api/"

_ENVELOPE_CODES = {
    401: ErrorCodes.NOT_AUTHENTICATED,
    404: ErrorCodes.NOT_FOUND,
    429: ErrorCodes.RATE_LIMITED,
}


def is_api_request(request: Request) -> bool:
    return request.url.path.startswith(API_PREFIX)


def _trace_id(request: Request) -> str | None:
    context = getattr(request.state, "api_context", None)
    return context.trace_id if context is not None else None


def _set_failure(request: Request, reason: ApiRequestFailure) -> None:
    context = getattr(request.state, "api_context", None)
    if context is not None:
        context.set_failure(reason.value, overwrite=False)


def _explicit_detail(exc: StarletteHTTPException) -> str | None:
    """The exception's detail, unless it is just the default status phrase."""
    if not exc.detail or exc.detail == HTTPStatus(exc.status_code).phrase:
        return None
    return str(exc.detail)


def validation_errors(exc: RequestValidationError) -> dict[str, list[str]]:
    """Group pydantic errors by field name."""
    errors: dict[str, list[str]] = {}
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(location) or "body"
        errors.setdefault(field, []).append(error.get("msg", "Invalid value"))
    return errors


def _http_problem(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    instance = request.url.path
    trace_id = _trace_id(request)
    detail = _explicit_detail(exc)
    status = exc.status_code

    if status == 400:
        return problem_details.bad_request(
            instance, detail or "The request could not be understood by the server.", trace_id
        )
    if status == 403:
        _set_failure(request, ApiRequestFailure.UNAUTHORIZED)
        return problem_details.forbidden(
            instance, detail or "You do not have permission to access this resource.", trace_id
        )
    if status == 404:
        return problem_details.not_found(instance, detail or "Resource not found", trace_id)
    if status == 405:
        allow = (exc.headers or {}).get("Allow")
        return problem_details.method_not_allowed(
            instance, allow, "The HTTP method used is not supported for this endpoint.", trace_id
        )
    if status == 409:
        _set_failure(request, ApiRequestFailure.CONFLICT)
        return problem_details.conflict(instance, detail or "Conflict", trace_id)
    if status == 429:
        retry_after = int((exc.headers or {}).get("Retry-After", 60))
        return problem_details.too_many_requests(
            instance, "Too many requests. Please try again later.", retry_after, trace_id
        )
    if status == 503:
        return problem_details.service_unavailable(instance, trace_id=trace_id)

    _set_failure(request, ApiRequestFailure.SERVER_ERROR)
    return problem_details.problem_response(
        status,
        "HTTP Error",
        detail,
        instance=instance,
        headers=exc.headers,
        trace_id=trace_id,
    )


def register_error_handlers(app: FastAPI, config: AuthConfig) -> None:
    """Register global exception handlers on the app."""

    @app.exception_handler(ValidationFailed)
    async def validation_failed_handler(request: Request, exc: ValidationFailed):
        if is_api_request(request):
            _set_failure(request, ApiRequestFailure.VALIDATION_FAILED)
            return problem_details.unprocessable_entity(
                request.url.path, exc.errors, trace_id=_trace_id(request)
            )
        return error_json(422, ErrorCodes.VALIDATION_ERROR, "Validation failed", exc.errors)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = validation_errors(exc)
        if is_api_request(request):
            _set_failure(request, ApiRequestFailure.VALIDATION_FAILED)
            return problem_details.unprocessable_entity(
                request.url.path, errors, trace_id=_trace_id(request)
            )
        return error_json(422, ErrorCodes.VALIDATION_ERROR, "Validation failed", errors)

    @app.exception_handler(AuthenticationFailed)
    async def authentication_failed_handler(request: Request, exc: AuthenticationFailed):
        if is_api_request(request):
            _set_failure(request, ApiRequestFailure(exc.reason))
            return problem_details.unauthorized(
                request.url.path, config.api_auth_realm, trace_id=_trace_id(request)
            )
        return error_json(401, ErrorCodes.NOT_AUTHENTICATED, "Authentication required")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if is_api_request(request):
            return _http_problem(request, exc)
        code = _ENVELOPE_CODES.get(exc.status_code, ErrorCodes.INVALID_REQUEST)
        return error_json(
            exc.status_code,
            code,
            str(exc.detail or HTTPStatus(exc.status_code).phrase),
            headers=exc.headers,
        )

    @app.exception_handler(psycopg2.Error)
    async def database_error_handler(request: Request, exc: psycopg2.Error):
        logger.exception("Database error")
        if is_api_request(request):
            _set_failure(request, ApiRequestFailure.DATABASE_ERROR)
            return problem_details.internal_server_error(
                request.url.path,
                "A database error occurred while processing the request.",
                trace_id=_trace_id(request),
            )
        return error_json(500, ErrorCodes.INTERNAL_ERROR, "An internal error occurred")

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception")
        if is_api_request(request):
            _set_failure(request, ApiRequestFailure.SERVER_ERROR)
            return problem_details.internal_server_error(
                request.url.path, trace_id=_trace_id(request)
            )
        return error_json(500, ErrorCodes.INTERNAL_ERROR, "An internal error occurred")
