"""Pydantic models for auth domain."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

from utils.timezone import now_utc


class AuthType(str, Enum):
    """How a user signs in."""

    SSO = "sso"
    LOCAL = "local"
    API = "api"


class AccessTokenStatus(str, Enum):
    """Derived lifecycle state of an access token."""

    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class ApiRequestFailure(str, Enum):
    """Why an API request failed, recorded in the request context and logs."""

    # Authentication failures
    INVALID_HEADER_FORMAT = "invalid-header-format"
    MISSING_CREDENTIALS = "missing-credentials"
    TOKEN_INVALID_OR_EXPIRED = "token-invalid-or-expired"
    IP_DENIED = "ip-denied"

    # General failures
    VALIDATION_FAILED = "validation-failed"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    DATABASE_ERROR = "database-error"
    SERVER_ERROR = "server-error"


class User(BaseModel):
    """A registered user of the system."""

    id: UUID
    email: EmailStr
    auth_type: AuthType
    is_active: bool = True
    email_verified_at: datetime | None = None
    created_at: datetime
    last_login_at: datetime | None = None

    model_config = {"from_attributes": True}


class Session(BaseModel):
    """An active browser session."""

    token: str = Field(..., description="Session token (opaque string)")
    user_id: UUID
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime


class AuthenticatedUser(BaseModel):
    """User info returned after successful authentication."""

    user: User
    session: Session


class LoginChallenge(BaseModel):
    """
    OTP challenge state for one local sign-in attempt.

    Never deleted by the login flow: expiry and consumption are logical.
    """

    id: UUID
    email: str
    code_hash: str = Field(..., repr=False)
    attempts: int = 0
    locked_until: datetime | None = None
    expires_at: datetime
    email_sent_at: datetime | None = None
    consumed_at: datetime | None = None
    consumed_ip: str | None = None
    consumed_user_agent: str | None = None
    requested_ip: str | None = None
    requested_user_agent: str | None = None
    created_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or now_utc()
        return now >= self.expires_at

    def is_locked(self, now: datetime | None = None) -> bool:
        now = now or now_utc()
        return self.locked_until is not None and now <= self.locked_until

    def is_consumed(self) -> bool:
        return self.consumed_at is not None

    def is_active(self, now: datetime | None = None) -> bool:
        """Unconsumed, unexpired and not locked at `now`."""
        now = now or now_utc()
        return not self.is_consumed() and not self.is_expired(now) and not self.is_locked(now)


class AccessToken(BaseModel):
    """A bearer credential belonging to an API user. Only the hash is stored."""

    id: UUID
    user_id: UUID
    name: str
    token_hash: str = Field(..., repr=False)
    token_prefix: str
    allowed_ips: list[str] | None = None
    usage_count: int = 0
    last_used_at: datetime | None = None
    expires_at: datetime | None = None
    revoked_at: datetime | None = None
    expiration_notified_at: datetime | None = None
    created_at: datetime

    def status(self, now: datetime | None = None) -> AccessTokenStatus:
        now = now or now_utc()
        if self.revoked_at is not None:
            return AccessTokenStatus.REVOKED
        if self.expires_at is not None and self.expires_at < now:
            return AccessTokenStatus.EXPIRED
        return AccessTokenStatus.ACTIVE

    def to_public_dict(self) -> dict:
        """Serializable view for API responses (no hash, no prefix)."""
        return {
            "id": str(self.id),
            "name": self.name,
            "status": self.status().value,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "usage_count": self.usage_count,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat(),
            "allowed_ips": self.allowed_ips,
        }


class LoginCodeRequest(BaseModel):
    """Request body for sending a login code."""

    email: EmailStr


class VerifyLoginCodeRequest(BaseModel):
    """Request body for verifying a login code. Length is checked against config."""

    code: str = Field(..., max_length=64)
