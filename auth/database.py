"""Database operations for authentication.

Tables: users, login_challenges, access_tokens.

Counters and one-time transitions are single conditional statements so that
concurrent requests for the same row cannot lose updates or consume a
challenge twice.
"""

from datetime import datetime
from uuid import UUID

from psycopg2.extras import Json

from clients.postgres_client import PostgresClient
from auth.types import AccessToken, AuthType, LoginChallenge, User
from utils.timezone import now_utc

_USER_COLUMNS = "id, email, auth_type, is_active, email_verified_at, created_at, last_login_at"

_CHALLENGE_COLUMNS = """id, email, code_hash, attempts, locked_until, expires_at, email_sent_at,
    consumed_at, consumed_ip, consumed_user_agent, requested_ip, requested_user_agent, created_at"""

_TOKEN_COLUMNS = """id, user_id, name, token_hash, token_prefix, allowed_ips, usage_count,
    last_used_at, expires_at, revoked_at, expiration_notified_at, created_at"""


def _user_from_row(row: dict) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        auth_type=AuthType(row["auth_type"]),
        is_active=row["is_active"],
        email_verified_at=row["email_verified_at"],
        created_at=row["created_at"],
        last_login_at=row["last_login_at"],
    )


def _prefixed(row: dict, prefix: str) -> dict:
    return {key[len(prefix):]: value for key, value in row.items() if key.startswith(prefix)}


class AuthDatabase:
    """Database operations for authentication."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_user_by_id(self, user_id: UUID) -> User | None:
        """Find user by ID."""
        row = self._db.execute_single(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s",
            (user_id,),
        )
        return _user_from_row(row) if row else None

    def get_local_user_by_email(self, email: str) -> User | None:
        """Find an active local (email code) user, case-insensitively."""
        row = self._db.execute_single(
            f"""SELECT {_USER_COLUMNS} FROM users
               WHERE lower(email) = lower(%s) AND auth_type = %s AND is_active = true
               ORDER BY created_at
               LIMIT 1""",
            (email, AuthType.LOCAL.value),
        )
        return _user_from_row(row) if row else None

    def mark_email_verified(self, user_id: UUID) -> None:
        """Set email_verified_at unless it is already set."""
        self._db.execute_returning(
            """UPDATE users SET email_verified_at = COALESCE(email_verified_at, %s)
               WHERE id = %s RETURNING id""",
            (now_utc(), user_id),
        )

    def update_last_login(self, user_id: UUID) -> None:
        """Update last_login_at to current time."""
        self._db.execute_returning(
            "UPDATE users SET last_login_at = %s WHERE id = %s RETURNING id",
            (now_utc(), user_id),
        )

    # ------------------------------------------------------------------
    # Login challenges
    # ------------------------------------------------------------------

    def create_login_challenge(
        self,
        email: str,
        code_hash: str,
        expires_at: datetime,
        requested_ip: str | None,
        requested_user_agent: str | None,
    ) -> LoginChallenge:
        """Persist a new challenge (attempts 0, nothing consumed)."""
        rows = self._db.execute_returning(
            f"""INSERT INTO login_challenges
                   (email, code_hash, expires_at, requested_ip, requested_user_agent, created_at)
               VALUES (%s, %s, %s, %s, %s, %s)
               RETURNING {_CHALLENGE_COLUMNS}""",
            (email, code_hash, expires_at, requested_ip, requested_user_agent, now_utc()),
        )
        return LoginChallenge(**rows[0])

    def get_login_challenge(self, challenge_id: UUID) -> LoginChallenge | None:
        """Retrieve challenge by ID."""
        row = self._db.execute_single(
            f"SELECT {_CHALLENGE_COLUMNS} FROM login_challenges WHERE id = %s",
            (challenge_id,),
        )
        return LoginChallenge(**row) if row else None

    def increment_challenge_attempts(self, challenge_id: UUID) -> int:
        """Atomically add one failed attempt. Returns the new count."""
        rows = self._db.execute_returning(
            """UPDATE login_challenges SET attempts = attempts + 1
               WHERE id = %s
               RETURNING attempts""",
            (challenge_id,),
        )
        return rows[0]["attempts"] if rows else 0

    def lock_challenge(self, challenge_id: UUID, locked_until: datetime) -> None:
        """Refuse verification until locked_until."""
        self._db.execute_returning(
            "UPDATE login_challenges SET locked_until = %s WHERE id = %s RETURNING id",
            (locked_until, challenge_id),
        )

    def consume_challenge(
        self,
        challenge_id: UUID,
        consumed_at: datetime,
        consumed_ip: str | None,
        consumed_user_agent: str | None,
    ) -> bool:
        """
        Mark the challenge used.

        Returns False if another request consumed it first.
        """
        rows = self._db.execute_returning(
            """UPDATE login_challenges
               SET consumed_at = %s, consumed_ip = %s, consumed_user_agent = %s
               WHERE id = %s AND consumed_at IS NULL
               RETURNING id""",
            (consumed_at, consumed_ip, consumed_user_agent, challenge_id),
        )
        return len(rows) > 0

    def mark_challenge_email_sent(self, challenge_id: UUID, sent_at: datetime) -> bool:
        """Record delivery. Returns False if it was already recorded."""
        rows = self._db.execute_returning(
            """UPDATE login_challenges SET email_sent_at = %s
               WHERE id = %s AND email_sent_at IS NULL
               RETURNING id""",
            (sent_at, challenge_id),
        )
        return len(rows) > 0

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def find_active_access_token(
        self, token_hash: str, now: datetime | None = None
    ) -> tuple[AccessToken, User] | None:
        """
        Resolve a token hash to an active token owned by an API user.

        Active: not revoked, and either no expiry or expiry not yet passed.
        """
        now = now or now_utc()
        row = self._db.execute_single(
            """SELECT t.id AS t_id, t.user_id AS t_user_id, t.name AS t_name,
                      t.token_hash AS t_token_hash, t.token_prefix AS t_token_prefix,
                      t.allowed_ips AS t_allowed_ips, t.usage_count AS t_usage_count,
                      t.last_used_at AS t_last_used_at, t.expires_at AS t_expires_at,
                      t.revoked_at AS t_revoked_at, t.created_at AS t_created_at,
                      u.id AS u_id, u.email AS u_email, u.auth_type AS u_auth_type,
                      u.is_active AS u_is_active, u.email_verified_at AS u_email_verified_at,
                      u.created_at AS u_created_at, u.last_login_at AS u_last_login_at
               FROM access_tokens t
               JOIN users u ON u.id = t.user_id
               WHERE t.token_hash = %s
                 AND u.auth_type = %s
                 AND t.revoked_at IS NULL
                 AND (t.expires_at IS NULL OR t.expires_at >= %s)
               LIMIT 1""",
            (token_hash, AuthType.API.value, now),
        )
        if row is None:
            return None
        return AccessToken(**_prefixed(row, "t_")), _user_from_row(_prefixed(row, "u_"))

    def record_token_usage(self, token_id: UUID, used_at: datetime) -> None:
        """Single-statement usage increment so concurrent requests never lose counts."""
        self._db.execute_returning(
            """UPDATE access_tokens
               SET usage_count = usage_count + 1, last_used_at = %s
               WHERE id = %s
               RETURNING usage_count""",
            (used_at, token_id),
        )

    def create_access_token(
        self,
        user_id: UUID,
        name: str,
        token_hash: str,
        token_prefix: str,
        expires_at: datetime | None,
        allowed_ips: list[str] | None,
    ) -> AccessToken:
        """Persist a new token record."""
        rows = self._db.execute_returning(
            f"""INSERT INTO access_tokens
                   (user_id, name, token_hash, token_prefix, expires_at, allowed_ips, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s)
               RETURNING {_TOKEN_COLUMNS}""",
            (
                user_id,
                name,
                token_hash,
                token_prefix,
                expires_at,
                Json(allowed_ips) if allowed_ips is not None else None,
                now_utc(),
            ),
        )
        return AccessToken(**rows[0])

    def get_access_token(self, token_id: UUID) -> AccessToken | None:
        """Retrieve token by ID regardless of status."""
        row = self._db.execute_single(
            f"SELECT {_TOKEN_COLUMNS} FROM access_tokens WHERE id = %s",
            (token_id,),
        )
        return AccessToken(**row) if row else None

    def list_access_tokens(self, user_id: UUID, limit: int = 20) -> list[AccessToken]:
        """
        Tokens for a user in operational order.

        Active, then expired, then revoked; used before never used; most
        recently used first; newest first as tie-breaker.
        """
        rows = self._db.execute(
            f"""SELECT {_TOKEN_COLUMNS} FROM access_tokens
               WHERE user_id = %s
               ORDER BY
                 CASE
                   WHEN revoked_at IS NOT NULL THEN 0
                   WHEN expires_at IS NOT NULL AND expires_at < %s THEN 1
                   ELSE 2
                 END DESC,
                 (last_used_at IS NOT NULL) DESC,
                 last_used_at DESC NULLS LAST,
                 created_at DESC
               LIMIT %s""",
            (user_id, now_utc(), limit),
        )
        return [AccessToken(**row) for row in rows]

    def revoke_access_token(self, token_id: UUID, revoked_at: datetime) -> bool:
        """Revoke a token. Returns False if it was already revoked or missing."""
        rows = self._db.execute_returning(
            """UPDATE access_tokens SET revoked_at = %s
               WHERE id = %s AND revoked_at IS NULL
               RETURNING id""",
            (revoked_at, token_id),
        )
        return len(rows) > 0

    def list_tokens_expiring_between(
        self,
        start: datetime,
        end: datetime,
        now: datetime,
        notified_before: datetime,
    ) -> list[tuple[AccessToken, User]]:
        """
        Unrevoked tokens expiring inside [start, end] and still in the future,
        with their owners.

        Tokens notified at or after notified_before are skipped, so repeated
        runs on the same day send one email per token.
        """
        rows = self._db.execute(
            """SELECT t.id AS t_id, t.user_id AS t_user_id, t.name AS t_name,
                      t.token_hash AS t_token_hash, t.token_prefix AS t_token_prefix,
                      t.allowed_ips AS t_allowed_ips, t.usage_count AS t_usage_count,
                      t.last_used_at AS t_last_used_at, t.expires_at AS t_expires_at,
                      t.revoked_at AS t_revoked_at,
                      t.expiration_notified_at AS t_expiration_notified_at,
                      t.created_at AS t_created_at,
                      u.id AS u_id, u.email AS u_email, u.auth_type AS u_auth_type,
                      u.is_active AS u_is_active, u.email_verified_at AS u_email_verified_at,
                      u.created_at AS u_created_at, u.last_login_at AS u_last_login_at
               FROM access_tokens t
               JOIN users u ON u.id = t.user_id
               WHERE t.revoked_at IS NULL
                 AND t.expires_at BETWEEN %s AND %s
                 AND t.expires_at > %s
                 AND (t.expiration_notified_at IS NULL OR t.expiration_notified_at < %s)
                 AND u.email IS NOT NULL
               ORDER BY t.expires_at""",
            (start, end, now, notified_before),
        )
        return [
            (AccessToken(**_prefixed(row, "t_")), _user_from_row(_prefixed(row, "u_")))
            for row in rows
        ]

    def mark_token_expiration_notified(self, token_id: UUID, notified_at: datetime) -> bool:
        rows = self._db.execute_returning(
            """UPDATE access_tokens SET expiration_notified_at = %s
               WHERE id = %s
               RETURNING id""",
            (notified_at, token_id),
        )
        return len(rows) > 0
