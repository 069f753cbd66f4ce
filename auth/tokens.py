"""Access token issuance and revocation for API users."""

import logging
import secrets
from datetime import datetime

from auth.database import AuthDatabase
from auth.hashing import TokenHasher
from auth.types import AccessToken, AuthType, User
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

TOKEN_PREFIX_LENGTH = 5


class AccessTokenIssuer:
    """Mint bearer tokens. Only the keyed hash and a short prefix are stored."""

    def __init__(self, auth_db: AuthDatabase, hasher: TokenHasher):
        self._auth_db = auth_db
        self._hasher = hasher

    def issue(
        self,
        user: User,
        name: str,
        expires_at: datetime | None = None,
        allowed_ips: list[str] | None = None,
    ) -> tuple[str, AccessToken]:
        """Create a token for an API user.

        Returns:
            (raw_token, record). The raw token is shown to the caller once.

        Raises:
            ValueError: If the user is not an API user.
        """
        if user.auth_type != AuthType.API:
            raise ValueError("Access tokens can only be issued to API users")

        # 48 random bytes encode to 64 URL-safe characters
        raw_token = secrets.token_urlsafe(48)

        token = self._auth_db.create_access_token(
            user_id=user.id,
            name=name,
            token_hash=self._hasher.hash(raw_token),
            token_prefix=raw_token[:TOKEN_PREFIX_LENGTH],
            expires_at=expires_at,
            allowed_ips=allowed_ips or None,
        )
        logger.info("Issued access token %s for user %s", token.id, user.id)

        return raw_token, token

    def revoke(self, token: AccessToken) -> bool:
        revoked = self._auth_db.revoke_access_token(token.id, now_utc())
        if revoked:
            logger.info("Revoked access token %s", token.id)
        return revoked
