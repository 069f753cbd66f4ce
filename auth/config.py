"""Authentication configuration."""

import os
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from auth.codes import CodeStrategy


class AuthConfig(BaseModel):
    """
    Authentication configuration.

    All durations are in their natural units (minutes for short durations,
    hours for longer ones) to make configuration intuitive. Components receive
    this object at construction rather than reading globals.
    """

    environment: Literal["production", "staging", "local", "testing"] = Field(
        default="production",
        description="Deployment environment",
    )

    # Application
    app_name: str = Field(
        default="Northwestern Starter",
        description="Application name for emails and the API auth realm",
    )
    app_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL of the application",
    )

    # Local (email code) authentication
    local_auth_enabled: bool = Field(
        default=True,
        description="Whether email login codes are accepted",
    )
    login_code_digits: int = Field(
        default=6,
        description="Length of the numeric login code",
        ge=4,
        le=12,
    )
    login_code_expires_in_minutes: int = Field(
        default=10,
        description="How long a login code remains valid",
        ge=1,
        le=60,
    )
    login_code_max_attempts: int = Field(
        default=8,
        description="Failed verifications before the challenge locks",
        ge=1,
        le=50,
    )
    login_code_lock_minutes: int = Field(
        default=15,
        description="How long a locked challenge refuses verification",
        ge=1,
        le=1440,
    )
    login_code_rate_limit_per_hour: int = Field(
        default=10,
        description="Max login code requests per email per hour",
        ge=1,
        le=100,
    )
    login_code_resend_cooldown_seconds: int = Field(
        default=30,
        description="Minimum wait between resend requests",
        ge=0,
        le=600,
    )
    login_code_min_response_ms: int = Field(
        default=500,
        description="Response time floor for login code requests",
        ge=0,
        le=5000,
    )
    login_code_hash_rounds: int = Field(
        default=12,
        description="bcrypt cost factor for stored code hashes",
        ge=4,
        le=16,
    )
    code_strategy: CodeStrategy = Field(
        default=CodeStrategy.RANDOM,
        description="How login codes are generated",
    )

    # Bearer API
    api_enabled: bool = Field(
        default=True,
        description="Whether bearer-authenticated /api routes are served (503 when off)",
    )
    expiration_notifications_enabled: bool = Field(
        default=True,
        description="Email API users about access tokens nearing expiry",
    )
    expiration_notification_intervals: list[int] = Field(
        default_factory=lambda: [30, 14, 7, 3, 1],
        description="Days before expiry on which a notification is sent",
    )

    # Session settings
    session_expiry_hours: int = Field(
        default=12,
        description="Session lifetime in hours",
        ge=1,
        le=2160,
    )

    # API request logging
    request_logging_enabled: bool = Field(
        default=True,
        description="Persist metadata for bearer-authenticated API requests",
    )
    request_logging_sampling_enabled: bool = Field(
        default=False,
        description="Sample successful requests instead of logging all of them",
    )
    request_logging_sample_rate: float = Field(
        default=1.0,
        description="Fraction of successful requests logged when sampling",
        ge=0.0,
        le=1.0,
    )
    request_log_retention_days: int | None = Field(
        default=90,
        description="Prune API request logs older than this (None disables pruning)",
        ge=1,
    )

    @field_validator("expiration_notification_intervals")
    @classmethod
    def _positive_intervals(cls, v: list[int]) -> list[int]:
        if any(days < 1 for days in v):
            raise ValueError("Notification intervals must be at least 1 day")
        return sorted(set(v), reverse=True)

    @model_validator(mode="after")
    def _fixed_codes_outside_production(self) -> "AuthConfig":
        if self.code_strategy is CodeStrategy.FIXED and self.environment == "production":
            raise ValueError("Fixed login codes must not be used in production")
        return self

    @property
    def api_auth_realm(self) -> str:
        """Realm advertised in WWW-Authenticate for bearer-protected routes."""
        return f"{self.app_name} API"


def load_auth_config() -> AuthConfig:
    """
    Build config from the process environment.

    Only non-secret deployment settings live here; secrets come from Vault.
    """
    overrides: dict = {"environment": os.getenv("APP_ENV", "production")}
    if os.getenv("APP_NAME"):
        overrides["app_name"] = os.getenv("APP_NAME")
    if os.getenv("APP_BASE_URL"):
        overrides["app_base_url"] = os.getenv("APP_BASE_URL")
    if os.getenv("LOGIN_CODE_STRATEGY"):
        overrides["code_strategy"] = os.getenv("LOGIN_CODE_STRATEGY")
    if os.getenv("LOCAL_AUTH_ENABLED"):
        overrides["local_auth_enabled"] = os.getenv("LOCAL_AUTH_ENABLED", "").lower() in ("1", "true", "yes")
    if os.getenv("API_ACCESS_TOKEN_EXPIRATION_NOTIFICATIONS_ENABLED"):
        overrides["expiration_notifications_enabled"] = (
            os.getenv("API_ACCESS_TOKEN_EXPIRATION_NOTIFICATIONS_ENABLED", "").lower() in ("1", "true", "yes")
        )
    return AuthConfig(**overrides)
