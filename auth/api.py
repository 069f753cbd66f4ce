"""HTTP routes for email login code authentication.

Blocking work (bcrypt, Postgres, Valkey) never runs on the event loop: the
async routes offload it and the rest are plain def routes served from the
threadpool.
"""

import asyncio

from fastapi import APIRouter, Request, Response

from api.base import ErrorCodes, error_json, success_response
from auth.exceptions import ChallengeLockedError, RateLimitedError, SessionExpiredError
from auth.login_session import LOGIN_SESSION_COOKIE, LoginSessionStore
from auth.service import LoginCodeService
from auth.types import LoginCodeRequest, User, VerifyLoginCodeRequest
from utils.request_context import client_ip

SESSION_COOKIE = "session_token"

INVALID_CODE_MESSAGE = "Invalid code."


def _user_payload(user: User) -> dict:
    return {
        "id": str(user.id),
        "email": user.email,
        "email_verified_at": user.email_verified_at.isoformat() if user.email_verified_at else None,
        "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
    }


def _invalid_code(message: str = INVALID_CODE_MESSAGE):
    return error_json(422, ErrorCodes.INVALID_CODE, message, {"code": [message]})


def _local_auth_disabled():
    return error_json(404, ErrorCodes.NOT_FOUND, "Not found")


def create_auth_router(auth_service: LoginCodeService, login_sessions: LoginSessionStore) -> APIRouter:
    """Create auth router with injected service."""
    router = APIRouter(prefix="/auth", tags=["auth"])
    config = auth_service.config
    secure_cookies = config.environment in ("production", "staging")

    def set_login_session_cookie(response: Response, session_id: str) -> None:
        response.set_cookie(
            key=LOGIN_SESSION_COOKIE,
            value=session_id,
            httponly=True,
            secure=secure_cookies,
            samesite="lax",
            max_age=config.login_code_expires_in_minutes * 60,
        )

    @router.post("/login-code")
    async def send_login_code(request: Request, response: Response, body: LoginCodeRequest):
        """Email a login code.

        The response is the same whether or not the email belongs to a user.
        """
        if not config.local_auth_enabled:
            return _local_auth_disabled()

        email = body.email.strip().lower()

        try:
            challenge = await auth_service.request_login_code(
                email=email,
                ip_address=client_ip(request),
                user_agent=request.headers.get("User-Agent"),
            )
        except RateLimitedError as e:
            return error_json(422, ErrorCodes.RATE_LIMITED, str(e), {"email": [str(e)]})

        # Fresh pending state on every request
        await asyncio.to_thread(login_sessions.clear, request.cookies.get(LOGIN_SESSION_COOKIE))
        session_id = login_sessions.new_session_id()
        await asyncio.to_thread(login_sessions.save, session_id, email, challenge.id if challenge else None)
        set_login_session_cookie(response, session_id)

        return success_response({"status": "code_sent"})

    @router.post("/login-code/resend")
    async def resend_login_code(request: Request, response: Response):
        """Send a new code for the pending login, subject to the resend cooldown."""
        if not config.local_auth_enabled:
            return _local_auth_disabled()

        session_id = request.cookies.get(LOGIN_SESSION_COOKIE)
        pending = await asyncio.to_thread(login_sessions.load, session_id)
        if pending is None:
            return error_json(400, ErrorCodes.NO_PENDING_LOGIN, "Request a login code first.")

        wait_seconds = pending.resend_wait_seconds()
        if wait_seconds > 0:
            return error_json(
                429,
                ErrorCodes.RATE_LIMITED,
                f"Please wait {wait_seconds} seconds before requesting another code.",
                headers={"Retry-After": str(wait_seconds)},
            )

        try:
            challenge = await auth_service.request_login_code(
                email=pending.email,
                ip_address=client_ip(request),
                user_agent=request.headers.get("User-Agent"),
            )
        except RateLimitedError as e:
            return error_json(422, ErrorCodes.RATE_LIMITED, str(e), {"email": [str(e)]})

        await asyncio.to_thread(
            login_sessions.save,
            session_id,
            pending.email,
            challenge.id if challenge else pending.challenge_id,
        )
        set_login_session_cookie(response, session_id)

        return success_response({"status": "code_resent"})

    @router.post("/login-code/verify")
    def verify_login_code(request: Request, response: Response, body: VerifyLoginCodeRequest):
        """Verify the code for the pending login and create a session.

        Sets session_token cookie on success.
        """
        if not config.local_auth_enabled:
            return _local_auth_disabled()

        if len(body.code) != config.login_code_digits:
            message = f"The code must be {config.login_code_digits} characters."
            return error_json(422, ErrorCodes.VALIDATION_ERROR, message, {"code": [message]})

        session_id = request.cookies.get(LOGIN_SESSION_COOKIE)
        pending = login_sessions.load(session_id)
        if pending is None or pending.challenge_id is None:
            return _invalid_code()

        try:
            result = auth_service.verify_login_code(
                challenge_id=pending.challenge_id,
                code=body.code,
                ip_address=client_ip(request),
                user_agent=request.headers.get("User-Agent"),
            )
        except ChallengeLockedError as e:
            return error_json(422, ErrorCodes.CHALLENGE_LOCKED, str(e), {"code": [str(e)]})

        if result is None:
            return _invalid_code()

        login_sessions.clear(session_id)
        response.delete_cookie(key=LOGIN_SESSION_COOKIE)
        response.set_cookie(
            key=SESSION_COOKIE,
            value=result.session.token,
            httponly=True,
            secure=secure_cookies,
            samesite="lax",
            max_age=int((result.session.expires_at - result.session.created_at).total_seconds()),
        )

        return success_response({"user": _user_payload(result.user)})

    @router.post("/logout")
    def logout(request: Request, response: Response):
        """Logout - revoke session and clear cookie."""
        if not config.local_auth_enabled:
            return _local_auth_disabled()

        session_token = request.cookies.get(SESSION_COOKIE)
        if session_token:
            auth_service.logout(session_token=session_token, ip_address=client_ip(request))

        response.delete_cookie(key=SESSION_COOKIE)

        return success_response({"message": "Logged out successfully"})

    @router.get("/me")
    def get_current_user(request: Request):
        """Get the user signed in through the session cookie."""
        if not config.local_auth_enabled:
            return _local_auth_disabled()

        session_token = request.cookies.get(SESSION_COOKIE)
        if not session_token:
            return error_json(401, ErrorCodes.NOT_AUTHENTICATED, "Authentication required")

        try:
            session = auth_service.validate_session(session_token)
        except SessionExpiredError:
            return error_json(401, ErrorCodes.SESSION_EXPIRED, "Session expired. Please sign in again.")

        user = auth_service.get_user(session.user_id)
        if user is None or not user.is_active:
            return error_json(401, ErrorCodes.NOT_AUTHENTICATED, "Authentication required")

        return success_response({"user": _user_payload(user)})

    return router
