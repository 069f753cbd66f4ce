"""Typed exceptions for auth failures."""


class AuthError(Exception):
    """Base class for authentication/authorization errors."""


class AuthenticationFailed(AuthError):
    """
    Bearer authentication failed.

    The reason is recorded in the request context for logs only; responses
    never reveal it.
    """

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__("Authentication failed")


class RateLimitedError(AuthError):
    """Too many attempts. Client should wait before retrying."""

    def __init__(self, retry_after_seconds: int, message: str | None = None):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message or f"Rate limited. Retry after {retry_after_seconds} seconds.")


class ChallengeLockedError(AuthError):
    """Login challenge refused verification after too many wrong codes."""

    def __init__(self, lock_minutes: int):
        self.lock_minutes = lock_minutes
        unit = "minute" if lock_minutes == 1 else "minutes"
        super().__init__(
            f"Too many attempts. Please wait {lock_minutes} {unit} before trying again."
        )


class SessionExpiredError(AuthError):
    """Session has expired and user must re-authenticate."""


class ValidationFailed(AuthError):
    """
    Request data was rejected.

    Carries field-level messages, rendered as a 422 Problem Details response.
    """

    def __init__(self, errors: dict[str, list[str]]):
        self.errors = errors
        super().__init__("Validation failed")


class MissingRequestIpForRestrictedToken(RuntimeError):
    """
    An IP-restricted token was presented but the request IP is unknown.

    Reported to error tracking rather than raised: it usually means a proxy
    is not forwarding the client address.
    """

    def __init__(self, allowed_ips: list[str] | None = None):
        self.allowed_ips = list(allowed_ips or [])
        super().__init__("Request IP missing for IP-restricted Access Token.")
