"""Shared test fixtures.

The suite runs without Postgres, Valkey or Vault: AuthDatabase and
ValkeyClient are replaced by in-memory stand-ins that follow the same
contracts (atomic counters, conditional single-use updates, TTLs).
"""

import asyncio
import contextlib
import json
import time
from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock, Mock
from uuid import UUID, uuid4

import pytest
from dotenv import load_dotenv
from fastapi.testclient import TestClient

# Load .env file BEFORE any other imports that might use env vars
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

# Reset vault client singleton to pick up env vars
import clients.vault_client as vault_module
vault_module._vault_client_instance = None
vault_module._secret_cache.clear()

from api.app import create_app
from auth.config import AuthConfig
from auth.hashing import CodeCipher
from auth.security_logger import SecurityLogger
from auth.types import AccessToken, AuthType, LoginChallenge, User
from api.request_logger import ApiRequestLogger
from clients.postgres_client import PostgresClient
from utils.request_context import clear_api_context
from utils.timezone import now_utc


TEST_APP_KEY = "test-app-key-0123456789abcdef"

TEST_USER_EMAIL = "testuser@example.com"
TEST_API_USER_EMAIL = "api-client@example.com"


# =============================================================================
# IN-MEMORY STAND-INS
# =============================================================================


class FakeValkey:
    """Dict-backed ValkeyClient with TTL support."""

    def __init__(self):
        self._data: dict[str, str] = {}
        self._expires: dict[str, float] = {}

    def _purge(self, key: str) -> None:
        expires = self._expires.get(key)
        if expires is not None and time.monotonic() >= expires:
            self._data.pop(key, None)
            self._expires.pop(key, None)

    def ping(self) -> bool:
        return True

    def get(self, key: str) -> str | None:
        self._purge(key)
        return self._data.get(key)

    def set(self, key: str, value: str, expire_seconds: int | None = None) -> None:
        self._data[key] = str(value)
        if expire_seconds is not None:
            self._expires[key] = time.monotonic() + expire_seconds
        else:
            self._expires.pop(key, None)

    def set_if_absent(self, key: str, value: str, expire_seconds: int) -> bool:
        if self.exists(key):
            return False
        self.set(key, value, expire_seconds)
        return True

    def delete(self, key: str) -> bool:
        self._expires.pop(key, None)
        return self._data.pop(key, None) is not None

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def ttl(self, key: str) -> int:
        self._purge(key)
        if key not in self._data:
            return -2
        if key not in self._expires:
            return -1
        return max(int(self._expires[key] - time.monotonic() + 0.999), 0)

    def expire(self, key: str, seconds: int) -> bool:
        if not self.exists(key):
            return False
        self._expires[key] = time.monotonic() + seconds
        return True

    def incr(self, key: str) -> int:
        value = int(self.get(key) or 0) + 1
        self._data[key] = str(value)
        return value

    def set_json(self, key: str, value, expire_seconds: int | None = None) -> None:
        self.set(key, json.dumps(value), expire_seconds)

    def get_json(self, key: str):
        value = self.get(key)
        return json.loads(value) if value is not None else None

    def close(self) -> None:
        pass


class InMemoryAuthDatabase:
    """AuthDatabase over dicts, mirroring the SQL statements' semantics."""

    def __init__(self):
        self.users: dict[UUID, User] = {}
        self.challenges: dict[UUID, LoginChallenge] = {}
        self.tokens: dict[UUID, AccessToken] = {}

    # Test setup helpers

    def add_user(
        self,
        email: str,
        auth_type: AuthType = AuthType.LOCAL,
        is_active: bool = True,
    ) -> User:
        user = User(
            id=uuid4(),
            email=email,
            auth_type=auth_type,
            is_active=is_active,
            created_at=now_utc(),
        )
        self.users[user.id] = user
        return user

    # Users

    def get_user_by_id(self, user_id: UUID) -> User | None:
        user = self.users.get(user_id)
        return user.model_copy() if user else None

    def get_local_user_by_email(self, email: str) -> User | None:
        for user in self.users.values():
            if (
                user.email.lower() == email.lower()
                and user.auth_type == AuthType.LOCAL
                and user.is_active
            ):
                return user.model_copy()
        return None

    def mark_email_verified(self, user_id: UUID) -> None:
        user = self.users[user_id]
        if user.email_verified_at is None:
            user.email_verified_at = now_utc()

    def update_last_login(self, user_id: UUID) -> None:
        self.users[user_id].last_login_at = now_utc()

    # Login challenges

    def create_login_challenge(self, email, code_hash, expires_at, requested_ip, requested_user_agent):
        challenge = LoginChallenge(
            id=uuid4(),
            email=email,
            code_hash=code_hash,
            expires_at=expires_at,
            requested_ip=requested_ip,
            requested_user_agent=requested_user_agent,
            created_at=now_utc(),
        )
        self.challenges[challenge.id] = challenge
        return challenge.model_copy()

    def get_login_challenge(self, challenge_id: UUID) -> LoginChallenge | None:
        challenge = self.challenges.get(challenge_id)
        return challenge.model_copy() if challenge else None

    def increment_challenge_attempts(self, challenge_id: UUID) -> int:
        challenge = self.challenges[challenge_id]
        challenge.attempts += 1
        return challenge.attempts

    def lock_challenge(self, challenge_id: UUID, locked_until: datetime) -> None:
        self.challenges[challenge_id].locked_until = locked_until

    def consume_challenge(self, challenge_id, consumed_at, consumed_ip, consumed_user_agent) -> bool:
        challenge = self.challenges[challenge_id]
        if challenge.consumed_at is not None:
            return False
        challenge.consumed_at = consumed_at
        challenge.consumed_ip = consumed_ip
        challenge.consumed_user_agent = consumed_user_agent
        return True

    def mark_challenge_email_sent(self, challenge_id: UUID, sent_at: datetime) -> bool:
        challenge = self.challenges[challenge_id]
        if challenge.email_sent_at is not None:
            return False
        challenge.email_sent_at = sent_at
        return True

    # Access tokens

    def find_active_access_token(self, token_hash: str, now: datetime | None = None):
        now = now or now_utc()
        for token in self.tokens.values():
            if token.token_hash != token_hash or token.revoked_at is not None:
                continue
            if token.expires_at is not None and token.expires_at < now:
                continue
            user = self.users.get(token.user_id)
            if user is None or user.auth_type != AuthType.API:
                continue
            return token.model_copy(), user.model_copy()
        return None

    def record_token_usage(self, token_id: UUID, used_at: datetime) -> None:
        token = self.tokens[token_id]
        token.usage_count += 1
        token.last_used_at = used_at

    def create_access_token(self, user_id, name, token_hash, token_prefix, expires_at, allowed_ips):
        token = AccessToken(
            id=uuid4(),
            user_id=user_id,
            name=name,
            token_hash=token_hash,
            token_prefix=token_prefix,
            expires_at=expires_at,
            allowed_ips=allowed_ips,
            created_at=now_utc(),
        )
        self.tokens[token.id] = token
        return token.model_copy()

    def get_access_token(self, token_id: UUID) -> AccessToken | None:
        token = self.tokens.get(token_id)
        return token.model_copy() if token else None

    def list_access_tokens(self, user_id: UUID, limit: int = 20) -> list[AccessToken]:
        now = now_utc()
        status_rank = {"active": 0, "expired": 1, "revoked": 2}

        def relevance(token: AccessToken):
            last_used = token.last_used_at.timestamp() if token.last_used_at else 0
            return (
                status_rank[token.status(now).value],
                token.last_used_at is None,
                -last_used,
                -token.created_at.timestamp(),
            )

        owned = [t.model_copy() for t in self.tokens.values() if t.user_id == user_id]
        return sorted(owned, key=relevance)[:limit]

    def revoke_access_token(self, token_id: UUID, revoked_at: datetime) -> bool:
        token = self.tokens.get(token_id)
        if token is None or token.revoked_at is not None:
            return False
        token.revoked_at = revoked_at
        return True

    def list_tokens_expiring_between(self, start, end, now, notified_before):
        found = []
        for token in self.tokens.values():
            if token.revoked_at is not None or token.expires_at is None:
                continue
            if not (start <= token.expires_at <= end) or token.expires_at <= now:
                continue
            notified = token.expiration_notified_at
            if notified is not None and notified >= notified_before:
                continue
            found.append((token.model_copy(), self.users[token.user_id].model_copy()))
        return sorted(found, key=lambda pair: pair[0].expires_at)

    def mark_token_expiration_notified(self, token_id: UUID, notified_at: datetime) -> bool:
        token = self.tokens.get(token_id)
        if token is None:
            return False
        token.expiration_notified_at = notified_at
        return True


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture(autouse=True)
def reset_api_context():
    """Ensure no API request context leaks between tests."""
    clear_api_context()
    yield
    clear_api_context()


@pytest.fixture
def config() -> AuthConfig:
    """Fast test config: cheap bcrypt, no response-time floor."""
    return AuthConfig(
        environment="testing",
        app_name="Test App",
        app_base_url="https://test.example.com",
        login_code_hash_rounds=4,
        login_code_min_response_ms=0,
    )


@pytest.fixture
def valkey() -> FakeValkey:
    return FakeValkey()


@pytest.fixture
def auth_db() -> InMemoryAuthDatabase:
    return InMemoryAuthDatabase()


@pytest.fixture
def local_user(auth_db) -> User:
    return auth_db.add_user(TEST_USER_EMAIL, AuthType.LOCAL)


@pytest.fixture
def api_user(auth_db) -> User:
    return auth_db.add_user(TEST_API_USER_EMAIL, AuthType.API)


@pytest.fixture
def app_key() -> str:
    return TEST_APP_KEY


@pytest.fixture
def security_logger():
    """Mock security logger - audit rows are not under test here."""
    return Mock(spec=SecurityLogger)


@pytest.fixture
def request_logger():
    return Mock(spec=ApiRequestLogger)


@pytest.fixture
def queue():
    """Stand-in SAQ queue that records enqueued jobs."""
    mock = Mock()
    mock.enqueue = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def postgres():
    """PostgresClient stand-in; only the health check touches it directly."""
    return Mock(spec=PostgresClient)


@pytest.fixture
def app(config, postgres, valkey, queue, app_key, auth_db, security_logger, request_logger):
    """Fully wired application over the in-memory stand-ins."""
    return create_app(
        config=config,
        postgres=postgres,
        valkey=valkey,
        queue=queue,
        app_key=app_key,
        auth_db=auth_db,
        security_logger=security_logger,
        request_logger=request_logger,
    )


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def queued_code(queue, app_key):
    """Decrypt the login code from the most recent send_login_code_email job."""

    def _read() -> str:
        return CodeCipher(app_key).decrypt(queue.enqueue.call_args.kwargs["encrypted_code"])

    return _read


@pytest.fixture
def loop_stall():
    """Await a coroutine while a 5 ms ticker runs; return (result, longest gap in seconds)."""

    async def _measure(coro):
        gaps = []

        async def tick():
            last = time.perf_counter()
            while True:
                await asyncio.sleep(0.005)
                now = time.perf_counter()
                gaps.append(now - last)
                last = now

        ticker = asyncio.create_task(tick())
        await asyncio.sleep(0)
        try:
            result = await coro
        finally:
            ticker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await ticker
        return result, max(gaps, default=0.0)

    return _measure
