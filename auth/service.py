"""Authentication service - orchestrates the email login code flow."""

import asyncio
import logging
import secrets
import time
from uuid import UUID

from auth.challenges import IssuedChallenge, LoginChallengeIssuer
from auth.config import AuthConfig
from auth.database import AuthDatabase
from auth.exceptions import ChallengeLockedError, RateLimitedError, SessionExpiredError
from auth.jobs import LoginCodeMailer
from auth.security_logger import SecurityEvent, SecurityLogger
from auth.session import SessionManager
from auth.types import AuthenticatedUser, LoginChallenge, Session, User
from auth.verification import LoginChallengeVerifier

logger = logging.getLogger(__name__)

MAX_JITTER_MS = 50


class LoginCodeService:
    """Orchestrates login code authentication.

    Handles:
    - Code requests (with timing equalization against email enumeration)
    - Code verification
    - Session management
    - Logout
    """

    def __init__(
        self,
        config: AuthConfig,
        auth_db: AuthDatabase,
        issuer: LoginChallengeIssuer,
        verifier: LoginChallengeVerifier,
        mailer: LoginCodeMailer,
        session_manager: SessionManager,
        security_logger: SecurityLogger,
    ):
        self._config = config
        self._auth_db = auth_db
        self._issuer = issuer
        self._verifier = verifier
        self._mailer = mailer
        self._session_manager = session_manager
        self._security_logger = security_logger

    @property
    def config(self) -> AuthConfig:
        return self._config

    async def request_login_code(
        self,
        email: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> LoginChallenge | None:
        """Issue and mail a login code if email belongs to a local user.

        Known and unknown emails take the same minimum time
        (login_code_min_response_ms plus up to 50 ms jitter).

        Returns:
            The new challenge, or None for unknown emails.

        Raises:
            RateLimitedError: After the time floor, if the email hit its hourly limit.
        """
        email = email.strip().lower()
        floor_seconds = (self._config.login_code_min_response_ms + secrets.randbelow(MAX_JITTER_MS + 1)) / 1000
        started = time.monotonic()

        try:
            found = await asyncio.to_thread(self._issue_for_known_user, email, ip_address, user_agent)
            if found is None:
                return None

            user, issued = found

            await self._mailer.dispatch(issued.challenge.id, issued.code)
            await asyncio.to_thread(
                self._security_logger.log,
                SecurityEvent.LOGIN_CODE_REQUESTED,
                email=email,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"challenge_id": str(issued.challenge.id)},
            )
            return issued.challenge
        finally:
            remaining = floor_seconds - (time.monotonic() - started)
            if remaining > 0:
                await asyncio.sleep(remaining)

    def _issue_for_known_user(
        self,
        email: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> tuple[User, IssuedChallenge] | None:
        """Look up the user and issue a challenge. Blocking: bcrypt, Postgres and Valkey."""
        user = self._auth_db.get_local_user_by_email(email)

        if user is None:
            self._security_logger.log(
                SecurityEvent.LOGIN_CODE_UNKNOWN_EMAIL,
                email=email,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return None

        try:
            issued = self._issuer.issue(email, ip_address, user_agent)
        except RateLimitedError:
            self._security_logger.log(
                SecurityEvent.RATE_LIMITED,
                email=email,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise

        return user, issued

    def verify_login_code(
        self,
        challenge_id: UUID,
        code: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> AuthenticatedUser | None:
        """Verify a code and sign the user in.

        Returns:
            AuthenticatedUser on success, None for any invalid outcome.

        Raises:
            ChallengeLockedError: If the challenge is locked after too many attempts.
        """
        challenge = self._auth_db.get_login_challenge(challenge_id)
        if challenge is None:
            return None

        if challenge.is_locked():
            raise ChallengeLockedError(self._config.login_code_lock_minutes)

        if not self._verifier.verify(challenge, code, ip_address, user_agent):
            if challenge.is_locked():
                self._security_logger.log(
                    SecurityEvent.LOGIN_CODE_LOCKED,
                    email=challenge.email,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    details={"challenge_id": str(challenge.id), "attempts": challenge.attempts},
                )
            else:
                self._security_logger.log(
                    SecurityEvent.LOGIN_CODE_FAILED,
                    email=challenge.email,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    details={"challenge_id": str(challenge.id)},
                )
            return None

        user = self._auth_db.get_local_user_by_email(challenge.email)
        if user is None:
            return None

        self._auth_db.mark_email_verified(user.id)
        self._auth_db.update_last_login(user.id)
        session = self._session_manager.create_session(user.id)

        self._security_logger.log(
            SecurityEvent.LOGIN_CODE_VERIFIED,
            email=user.email,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self._security_logger.log(
            SecurityEvent.SESSION_CREATED,
            email=user.email,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        # Refresh user to get updated email_verified_at and last_login_at
        user = self._auth_db.get_user_by_id(user.id) or user

        return AuthenticatedUser(user=user, session=session)

    def logout(self, session_token: str, ip_address: str | None) -> None:
        """Revoke session (logout). Safe to call with an invalid token."""
        try:
            session = self._session_manager.validate_session(session_token)
            user_id = session.user_id
        except SessionExpiredError:
            user_id = None

        self._session_manager.revoke_session(session_token)

        self._security_logger.log(
            SecurityEvent.SESSION_REVOKED,
            user_id=user_id,
            ip_address=ip_address,
        )

    def validate_session(self, token: str) -> Session:
        """Validate session token.

        Raises:
            SessionExpiredError: If session invalid or expired.
        """
        return self._session_manager.validate_session(token)

    def get_user(self, user_id: UUID):
        return self._auth_db.get_user_by_id(user_id)
