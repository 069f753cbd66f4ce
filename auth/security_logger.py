"""Security event logging for the auth audit trail.

Append-only log to the security_events table.
"""

from enum import Enum
from typing import Any
from uuid import UUID

from psycopg2.extras import Json

from clients.postgres_client import PostgresClient
from utils.timezone import now_utc


class SecurityEvent(Enum):
    """Auth security event types."""

    LOGIN_CODE_REQUESTED = "login_code_requested"
    LOGIN_CODE_UNKNOWN_EMAIL = "login_code_unknown_email"
    LOGIN_CODE_VERIFIED = "login_code_verified"
    LOGIN_CODE_FAILED = "login_code_failed"
    LOGIN_CODE_LOCKED = "login_code_locked"
    SESSION_CREATED = "session_created"
    SESSION_REVOKED = "session_revoked"
    RATE_LIMITED = "rate_limited"
    ACCESS_TOKEN_CREATED = "access_token_created"
    ACCESS_TOKEN_REVOKED = "access_token_revoked"


class SecurityLogger:
    """Append-only security event logger."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    def log(
        self,
        event: SecurityEvent,
        email: str | None = None,
        user_id: UUID | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log security event to database."""
        self._db.execute_returning(
            """INSERT INTO security_events
               (event_type, email, user_id, ip_address, user_agent, details, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s)
               RETURNING id""",
            (
                event.value,
                email,
                user_id,
                ip_address,
                user_agent,
                Json(details) if details else None,
                now_utc(),
            ),
        )

    def get_recent_events(
        self,
        email: str | None = None,
        user_id: UUID | None = None,
        event_type: SecurityEvent | None = None,
        limit: int = 100,
    ) -> list[dict]:
        """Query recent security events with optional filters."""
        conditions = []
        params: list[Any] = []

        if email:
            conditions.append("email = %s")
            params.append(email)

        if user_id:
            conditions.append("user_id = %s")
            params.append(user_id)

        if event_type:
            conditions.append("event_type = %s")
            params.append(event_type.value)

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        params.append(limit)

        return self._db.execute(
            f"""SELECT id, event_type, email, user_id, ip_address, user_agent, details, created_at
                FROM security_events
                WHERE {where_clause}
                ORDER BY created_at DESC
                LIMIT %s""",
            tuple(params),
        )
