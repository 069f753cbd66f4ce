"""Request-scoped middleware for API requests."""

import asyncio
import logging
import random
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from api.request_logger import ApiRequestLogger, ApiRequestRecord
from auth.config import AuthConfig
from auth.types import ApiRequestFailure
from utils.request_context import (
    ApiRequestContext,
    clear_api_context,
    client_ip,
    ensure_api_context,
)

logger = logging.getLogger(__name__)


class ApiRequestLoggingMiddleware(BaseHTTPMiddleware):
    """Persist metadata for /api requests.

    Sits outside the bearer auth middleware so the record includes the
    resolved user, token, status and failure reason. Requests with neither a
    user nor a failure reason are skipped. Failures are always logged;
    successful requests may be sampled.
    """

    PREFIX = "/api/"

    def __init__(self, app, config: AuthConfig, request_logger: ApiRequestLogger):
        super().__init__(app)
        self._config = config
        self._request_logger = request_logger

    def should_log(self, status_code: int, failure_reason: str | None) -> bool:
        if not self._config.request_logging_sampling_enabled:
            return True

        if status_code >= 400 or failure_reason is not None:
            return True

        rate = self._config.request_logging_sample_rate
        if rate <= 0.0:
            return False
        if rate >= 1.0:
            return True
        return random.random() < rate

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(self.PREFIX) or not self._config.request_logging_enabled:
            return await call_next(request)

        context = ensure_api_context(request.state)
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            # Rendered as a 500 by the outermost error handler
            context.set_failure(ApiRequestFailure.SERVER_ERROR.value, overwrite=False)
            await asyncio.to_thread(self._record, request, context, 500, started, None)
            raise
        finally:
            clear_api_context()

        if context.trace_id:
            response.headers["X-Trace-Id"] = context.trace_id

        await asyncio.to_thread(self._record, request, context, response.status_code, started, response)
        return response

    def _record(
        self,
        request: Request,
        context: ApiRequestContext,
        status_code: int,
        started: float,
        response: Response | None,
    ) -> None:
        if context.user_id is None and context.failure_reason is None:
            return

        if not self.should_log(status_code, context.failure_reason):
            return

        response_bytes = None
        if response is not None and response.headers.get("content-length") is not None:
            response_bytes = int(response.headers["content-length"])

        record = ApiRequestRecord(
            trace_id=context.trace_id,
            user_id=context.user_id,
            token_id=context.token_id,
            method=request.method,
            path=request.url.path,
            ip_address=client_ip(request),
            status_code=status_code,
            duration_ms=int((time.perf_counter() - started) * 1000),
            response_bytes=response_bytes,
            user_agent=request.headers.get("User-Agent"),
            failure_reason=context.failure_reason,
        )

        try:
            self._request_logger.log(record)
        except Exception:
            # A failed log write must not change the API response
            logger.exception("Failed to persist API request log")
