"""Bearer token middleware for the /api routes.

Resolves an `Authorization: Bearer <token>` header to an API user and one of
their access tokens. Every outcome is recorded in the request's
ApiRequestContext so the request logging middleware can persist it.
"""

import asyncio
import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from api import problem_details
from auth.config import AuthConfig
from auth.database import AuthDatabase
from auth.exceptions import AuthenticationFailed
from auth.hashing import TokenHasher
from auth.ip_allowlist import is_ip_allowed
from auth.types import AccessToken, ApiRequestFailure, User
from utils.request_context import ApiRequestContext, clear_api_context, client_ip, ensure_api_context
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


class AccessTokenMiddleware(BaseHTTPMiddleware):
    """Authenticate bearer tokens for paths under /api/.

    For protected routes:
    1. Assigns a fresh trace id
    2. Validates the header and resolves the token by its HMAC
    3. Checks the token's IP allow-list
    4. Counts the usage and exposes user and token on request.state

    Failures answer 401 Problem Details with a generic detail; the specific
    reason only reaches logs.
    """

    PROTECTED_PREFIX = "/api/"
    PUBLIC_PATHS = [
        "/api/health",
    ]

    def __init__(self, app, config: AuthConfig, auth_db: AuthDatabase, hasher: TokenHasher):
        super().__init__(app)
        self._config = config
        self._auth_db = auth_db
        self._hasher = hasher

    def _is_protected_path(self, path: str) -> bool:
        return path.startswith(self.PROTECTED_PREFIX) and path not in self.PUBLIC_PATHS

    def authenticate(self, request: Request, context: ApiRequestContext) -> tuple[AccessToken, User]:
        """Resolve the request's bearer token.

        Raises:
            AuthenticationFailed: With the reason for the failure.
        """
        header = request.headers.get("Authorization")
        if not header or not header.startswith(BEARER_PREFIX):
            raise AuthenticationFailed(ApiRequestFailure.INVALID_HEADER_FORMAT.value)

        raw_token = header[len(BEARER_PREFIX):].strip()
        if not raw_token:
            raise AuthenticationFailed(ApiRequestFailure.MISSING_CREDENTIALS.value)

        token_hash = self._hasher.hash(raw_token)
        del raw_token

        now = now_utc()
        found = self._auth_db.find_active_access_token(token_hash, now)
        if found is None:
            raise AuthenticationFailed(ApiRequestFailure.TOKEN_INVALID_OR_EXPIRED.value)

        token, user = found
        context.user_id = user.id
        context.token_id = token.id

        if not is_ip_allowed(client_ip(request), token.allowed_ips):
            raise AuthenticationFailed(ApiRequestFailure.IP_DENIED.value)

        self._auth_db.record_token_usage(token.id, now)
        token.usage_count += 1
        token.last_used_at = now

        return token, user

    async def dispatch(self, request: Request, call_next):
        """Process request through middleware."""
        path = request.url.path

        if path in self.PUBLIC_PATHS and not self._config.api_enabled:
            return problem_details.service_unavailable(path)

        if not self._is_protected_path(path):
            return await call_next(request)

        context = ensure_api_context(request.state)
        context.new_trace()

        try:
            if not self._config.api_enabled:
                return problem_details.service_unavailable(path, trace_id=context.trace_id)

            try:
                token, user = await asyncio.to_thread(self.authenticate, request, context)
            except AuthenticationFailed as e:
                context.set_failure(e.reason)
                logger.info("API authentication failed: %s", e.reason)
                return problem_details.unauthorized(
                    path, self._config.api_auth_realm, trace_id=context.trace_id
                )

            request.state.user = user
            request.state.access_token = token

            return await call_next(request)
        finally:
            clear_api_context()
