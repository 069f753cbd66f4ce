"""RFC 9457 Problem Details responses for the bearer-authenticated API.

Every body carries type, title, status and instance; detail when given; and
trace_id when the request reached the API auth middleware, so clients can
quote it when reporting problems.
"""

from typing import Any

from starlette.responses import JSONResponse

from utils.request_context import get_api_context

PROBLEM_JSON = "application/problem+json"


def problem_response(
    status: int,
    title: str,
    detail: str | None = None,
    type_: str = "about:blank",
    instance: str | None = None,
    extensions: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    trace_id: str | None = None,
) -> JSONResponse:
    """Build a problem+json response.

    trace_id defaults to the one in the bound API request context.
    """
    body: dict[str, Any] = {"type": type_, "title": title, "status": status}
    if detail:
        body["detail"] = detail
    body["instance"] = instance

    if trace_id is None:
        context = get_api_context()
        trace_id = context.trace_id if context is not None else None
    if trace_id is not None:
        body["trace_id"] = trace_id

    if extensions:
        body.update(extensions)

    return JSONResponse(
        status_code=status,
        content=body,
        headers=headers,
        media_type=PROBLEM_JSON,
    )


def bad_request(
    instance: str | None,
    detail: str = "Bad request",
    trace_id: str | None = None,
) -> JSONResponse:
    return problem_response(400, "Bad Request", detail, instance=instance, trace_id=trace_id)


def unauthorized(
    instance: str | None,
    realm: str,
    detail: str = "Authentication failed",
    trace_id: str | None = None,
) -> JSONResponse:
    return problem_response(
        401,
        "Unauthorized",
        detail,
        instance=instance,
        headers={"WWW-Authenticate": f'Bearer realm="{realm}"'},
        trace_id=trace_id,
    )


def forbidden(
    instance: str | None,
    detail: str = "Access forbidden",
    trace_id: str | None = None,
) -> JSONResponse:
    return problem_response(403, "Forbidden", detail, instance=instance, trace_id=trace_id)


def not_found(
    instance: str | None,
    detail: str = "Resource not found",
    trace_id: str | None = None,
) -> JSONResponse:
    return problem_response(404, "Not Found", detail, instance=instance, trace_id=trace_id)


def method_not_allowed(
    instance: str | None,
    allowed_methods: list[str] | str | None = None,
    detail: str = "Method not allowed",
    trace_id: str | None = None,
) -> JSONResponse:
    if isinstance(allowed_methods, list):
        allow = ", ".join(allowed_methods)
    else:
        allow = allowed_methods or ""
    return problem_response(
        405,
        "Method Not Allowed",
        detail,
        instance=instance,
        headers={"Allow": allow} if allow else None,
        trace_id=trace_id,
    )


def conflict(
    instance: str | None,
    detail: str = "Conflict",
    trace_id: str | None = None,
) -> JSONResponse:
    return problem_response(409, "Conflict", detail, instance=instance, trace_id=trace_id)


def unprocessable_entity(
    instance: str | None,
    errors: dict[str, list[str]] | None = None,
    detail: str = "Validation failed",
    trace_id: str | None = None,
) -> JSONResponse:
    return problem_response(
        422,
        "Unprocessable Entity",
        detail,
        instance=instance,
        extensions={"errors": errors} if errors else None,
        trace_id=trace_id,
    )


def too_many_requests(
    instance: str | None,
    detail: str = "Too many requests",
    retry_after: int = 60,
    trace_id: str | None = None,
) -> JSONResponse:
    return problem_response(
        429,
        "Too Many Requests",
        detail,
        instance=instance,
        headers={"Retry-After": str(retry_after)},
        trace_id=trace_id,
    )


def internal_server_error(
    instance: str | None,
    detail: str = "An unexpected error occurred",
    trace_id: str | None = None,
) -> JSONResponse:
    return problem_response(
        500, "Internal Server Error", detail, instance=instance, trace_id=trace_id
    )


def service_unavailable(
    instance: str | None,
    detail: str = "Service temporarily unavailable",
    retry_after: int = 3600,
    trace_id: str | None = None,
) -> JSONResponse:
    return problem_response(
        503,
        "Service Unavailable",
        detail,
        instance=instance,
        headers={"Retry-After": str(retry_after)},
        trace_id=trace_id,
    )
