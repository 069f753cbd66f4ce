"""Pending login-code state between requesting and verifying a code.

Stored server-side in Valkey under an opaque cookie value so the challenge id
never reaches the browser. Unknown emails get the same state with no
challenge id, which keeps the follow-up screens indistinguishable.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from clients.valkey_client import ValkeyClient
from auth.config import AuthConfig
from utils.timezone import now_utc, parse_iso

LOGIN_SESSION_COOKIE = "login_code_session"


@dataclass
class PendingLogin:
    email: str
    challenge_id: UUID | None
    resend_available_at: datetime

    def resend_wait_seconds(self, now: datetime | None = None) -> int:
        """Seconds left in the resend cooldown (0 when a resend is allowed)."""
        now = now or now_utc()
        remaining = (self.resend_available_at - now).total_seconds()
        return max(int(remaining + 0.999), 0)


class LoginSessionStore:
    """Valkey-backed pending login state keyed by cookie value."""

    KEY_PREFIX = "login-session:"

    def __init__(self, valkey: ValkeyClient, config: AuthConfig):
        self._valkey = valkey
        self._config = config
        self._ttl_seconds = config.login_code_expires_in_minutes * 60

    def _key(self, session_id: str) -> str:
        return f"{self.KEY_PREFIX}{session_id}"

    def new_session_id(self) -> str:
        return secrets.token_urlsafe(32)

    def save(self, session_id: str, email: str, challenge_id: UUID | None) -> PendingLogin:
        """Store state for a freshly requested code and restart the resend cooldown."""
        pending = PendingLogin(
            email=email,
            challenge_id=challenge_id,
            resend_available_at=now_utc()
            + timedelta(seconds=self._config.login_code_resend_cooldown_seconds),
        )
        self._valkey.set_json(
            self._key(session_id),
            {
                "email": pending.email,
                "challenge_id": str(challenge_id) if challenge_id else None,
                "resend_available_at": pending.resend_available_at.isoformat(),
            },
            expire_seconds=self._ttl_seconds,
        )
        return pending

    def load(self, session_id: str | None) -> PendingLogin | None:
        if not session_id:
            return None

        data = self._valkey.get_json(self._key(session_id))
        if not data:
            return None

        return PendingLogin(
            email=data["email"],
            challenge_id=UUID(data["challenge_id"]) if data.get("challenge_id") else None,
            resend_available_at=parse_iso(data["resend_available_at"]),
        )

    def clear(self, session_id: str | None) -> None:
        if session_id:
            self._valkey.delete(self._key(session_id))
