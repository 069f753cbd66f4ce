"""Login challenge verification.

Checks a submitted one-time code against a challenge and applies the attempt
counter, lockout and single-use consumption. Wrong, expired, locked or already
used codes are ordinary outcomes: verify() returns False instead of raising.
"""

import logging
from datetime import timedelta

from auth.config import AuthConfig
from auth.database import AuthDatabase
from auth.hashing import check_code
from auth.types import LoginChallenge
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

USER_AGENT_MAX_LENGTH = 512


def truncate_user_agent(user_agent: str | None) -> str | None:
    """Keep at most the first 512 characters, no ellipsis."""
    if user_agent is None:
        return None
    return user_agent[:USER_AGENT_MAX_LENGTH]


class LoginChallengeVerifier:
    """Verify codes against login challenges."""

    def __init__(self, config: AuthConfig, auth_db: AuthDatabase):
        self._config = config
        self._auth_db = auth_db

    def verify(
        self,
        challenge: LoginChallenge,
        code: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> bool:
        """
        Verify a code.

        Flow:
        1. Inactive challenge (consumed, expired or locked): False, nothing changes
        2. Wrong code: count the attempt, lock once the limit is reached
        3. Right code: consume the challenge

        Returns:
            True only if this call consumed the challenge.
        """
        now = now_utc()

        if not challenge.is_active(now):
            return False

        if not check_code(code, challenge.code_hash):
            attempts = self._auth_db.increment_challenge_attempts(challenge.id)
            challenge.attempts = attempts

            if attempts >= self._config.login_code_max_attempts:
                locked_until = now + timedelta(minutes=self._config.login_code_lock_minutes)
                self._auth_db.lock_challenge(challenge.id, locked_until)
                challenge.locked_until = locked_until
                logger.info(
                    "Login challenge %s locked after %d attempts", challenge.id, attempts
                )
            return False

        consumed_user_agent = truncate_user_agent(user_agent)
        if not self._auth_db.consume_challenge(challenge.id, now, ip_address, consumed_user_agent):
            # A concurrent request consumed it first
            return False

        challenge.consumed_at = now
        challenge.consumed_ip = ip_address
        challenge.consumed_user_agent = consumed_user_agent
        return True
