"""Login challenge issuance."""

import logging
from dataclasses import dataclass
from datetime import timedelta

from auth.codes import generate_code
from auth.config import AuthConfig
from auth.database import AuthDatabase
from auth.hashing import hash_code
from auth.rate_limiter import LoginCodeRateLimiter
from auth.types import LoginChallenge
from auth.verification import truncate_user_agent
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


@dataclass
class IssuedChallenge:
    """A stored challenge plus its plaintext code.

    The code exists only in memory, long enough to hand it to the mailer.
    """

    challenge: LoginChallenge
    code: str

    def __repr__(self) -> str:
        return f"IssuedChallenge(challenge_id={self.challenge.id})"


class LoginChallengeIssuer:
    """Create login challenges under the per-email hourly limit."""

    def __init__(
        self,
        config: AuthConfig,
        auth_db: AuthDatabase,
        rate_limiter: LoginCodeRateLimiter,
    ):
        self._config = config
        self._auth_db = auth_db
        self._rate_limiter = rate_limiter

    def issue(
        self,
        email: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> IssuedChallenge:
        """Issue a new challenge for email.

        Raises:
            RateLimitedError: If the email reached its hourly limit.
        """
        email = email.strip().lower()

        self._rate_limiter.check(email)

        code = generate_code(self._config.code_strategy, self._config.login_code_digits)
        expires_at = now_utc() + timedelta(minutes=self._config.login_code_expires_in_minutes)

        challenge = self._auth_db.create_login_challenge(
            email=email,
            code_hash=hash_code(code, rounds=self._config.login_code_hash_rounds),
            expires_at=expires_at,
            requested_ip=ip_address,
            requested_user_agent=truncate_user_agent(user_agent),
        )

        self._rate_limiter.record(email)
        logger.info("Issued login challenge %s", challenge.id)

        return IssuedChallenge(challenge=challenge, code=code)
