"""Authentication: email login codes, sessions and bearer access tokens."""

from auth.exceptions import (
    AuthError,
    AuthenticationFailed,
    RateLimitedError,
    ChallengeLockedError,
    SessionExpiredError,
    ValidationFailed,
    MissingRequestIpForRestrictedToken,
)
from auth.types import (
    AuthType,
    AccessTokenStatus,
    ApiRequestFailure,
    User,
    Session,
    AuthenticatedUser,
    LoginChallenge,
    AccessToken,
)
from auth.codes import CodeStrategy, generate_code
from auth.config import AuthConfig, load_auth_config
from auth.database import AuthDatabase
from auth.rate_limiter import RateLimiter, LoginCodeRateLimiter
from auth.security_logger import SecurityLogger, SecurityEvent
from auth.session import SessionManager
from auth.verification import LoginChallengeVerifier
from auth.challenges import LoginChallengeIssuer, IssuedChallenge
from auth.tokens import AccessTokenIssuer
from auth.service import LoginCodeService
from auth.security_middleware import AccessTokenMiddleware
from auth.api import create_auth_router
