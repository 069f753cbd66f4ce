"""Request-scoped API context shared by middleware, error handlers and logging.

Starlette runs each middleware's downstream app in a child task, so values
written to a ContextVar deep in the stack are invisible to outer layers. The
context is therefore a single mutable object: it is bound once per request
(ContextVar for log correlation, ``request.state`` for handlers) and every
layer writes into the same instance.
"""

import ipaddress
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any
from uuid import UUID, uuid4

_current_api_context: ContextVar["ApiRequestContext | None"] = ContextVar(
    "current_api_context", default=None
)


@dataclass
class ApiRequestContext:
    """Metadata collected while an API request is processed."""

    trace_id: str | None = None
    user_id: UUID | None = None
    token_id: UUID | None = None
    failure_reason: str | None = None

    def new_trace(self) -> str:
        """Assign a fresh trace identifier and return it."""
        self.trace_id = str(uuid4())
        return self.trace_id

    def set_failure(self, reason: str, overwrite: bool = True) -> None:
        """
        Record why the request failed.

        Exception rendering passes overwrite=False so that a reason recorded
        by the authentication middleware is never replaced.
        """
        if self.failure_reason is not None and not overwrite:
            return
        self.failure_reason = reason


def get_api_context() -> ApiRequestContext | None:
    """Return the context bound to the current request, if any."""
    return _current_api_context.get()


def bind_api_context(context: ApiRequestContext) -> None:
    """Bind a context for the current request."""
    _current_api_context.set(context)


def clear_api_context() -> None:
    """
    Clear the bound context.

    Called by middleware in a finally block so nothing leaks between requests.
    """
    _current_api_context.set(None)


def ensure_api_context(state: Any) -> ApiRequestContext:
    """
    Return the context stored on ``request.state``, creating and binding one
    if this is the first layer to touch the request.
    """
    context = getattr(state, "api_context", None)
    if context is None:
        context = ApiRequestContext()
        state.api_context = context
    bind_api_context(context)
    return context


@contextmanager
def api_request_context(context: ApiRequestContext | None = None):
    """
    Context manager for temporarily binding an API context.

    Useful for tests and background jobs that log with a trace id.

    Example:
        with api_request_context() as ctx:
            ctx.new_trace()
            logger.info("correlated")
    """
    context = context or ApiRequestContext()
    previous = _current_api_context.get()
    bind_api_context(context)
    try:
        yield context
    finally:
        _current_api_context.set(previous)


def client_ip(request: Any) -> str | None:
    """Extract a valid client IP from a Starlette request, or None."""
    if not request.client:
        return None
    host = request.client.host
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        return None
