"""Rate limiting for login code requests.

Uses Valkey counters with a fixed window. The counter is created together with
its TTL (SET NX EX) and then incremented, so a window always closes
decay_seconds after it opened and no counter outlives its window.
"""

import logging
import math

from clients.valkey_client import ValkeyClient
from auth.config import AuthConfig
from auth.exceptions import RateLimitedError

logger = logging.getLogger(__name__)


class RateLimiter:
    """Generic fixed-window attempt counter."""

    def __init__(self, valkey: ValkeyClient):
        self._valkey = valkey

    def attempts(self, key: str) -> int:
        current = self._valkey.get(key)
        return int(current) if current is not None else 0

    def too_many_attempts(self, key: str, max_attempts: int) -> bool:
        return self.attempts(key) >= max_attempts

    def hit(self, key: str, decay_seconds: int) -> int:
        """Count one attempt. Returns the count inside the current window."""
        self._valkey.set_if_absent(key, "0", decay_seconds)
        return self._valkey.incr(key)

    def ensure_window(self, key: str, decay_seconds: int) -> None:
        """Give a counter without a TTL (ttl -1) a fresh window."""
        if self._valkey.ttl(key) == -1:
            logger.warning("Rate limit key %s had no TTL, restarting its window", key)
            self._valkey.expire(key, decay_seconds)

    def available_in(self, key: str) -> int:
        """Seconds until the window closes (at least 1)."""
        return max(self._valkey.ttl(key), 1)

    def clear(self, key: str) -> None:
        self._valkey.delete(key)


class LoginCodeRateLimiter:
    """Per-email hourly cap on issued login codes."""

    KEY_PREFIX = "login-code:"
    DECAY_SECONDS = 3600

    def __init__(self, valkey: ValkeyClient, config: AuthConfig):
        self._limiter = RateLimiter(valkey)
        self._config = config

    def _key(self, email: str) -> str:
        """Generate rate limit key for email (normalized to lowercase)."""
        return f"{self.KEY_PREFIX}{email.strip().lower()}"

    def check(self, email: str) -> None:
        """Refuse the request if the hourly cap is reached.

        Raises:
            RateLimitedError: With a user-facing "try again" message.
        """
        key = self._key(email)
        self._limiter.ensure_window(key, self.DECAY_SECONDS)
        if not self._limiter.too_many_attempts(key, self._config.login_code_rate_limit_per_hour):
            return

        seconds = self._limiter.available_in(key)
        minutes = math.ceil(seconds / 60)
        unit = "minute" if minutes == 1 else "minutes"
        raise RateLimitedError(
            retry_after_seconds=seconds,
            message=f"Too many login attempts. Please try again in {minutes} {unit}.",
        )

    def record(self, email: str) -> int:
        """Count an issued code against the email's hourly window."""
        return self._limiter.hit(self._key(email), self.DECAY_SECONDS)

    def reset(self, email: str) -> None:
        self._limiter.clear(self._key(email))
