"""Tests for auth background jobs - login code email, log pruning and token expiry notices."""

import time
from datetime import timedelta
from unittest.mock import Mock
from uuid import uuid4

import pytest

from auth.hashing import CodeCipher, hash_code
from auth.jobs import (
    NOTIFY_EXPIRING_ACCESS_TOKENS_CRON,
    PRUNE_API_REQUEST_LOGS_CRON,
    LoginCodeMailer,
    get_queue_settings,
    notify_expiring_access_tokens,
    prune_api_request_logs,
    send_login_code_email,
)
from auth.types import AuthType
from clients.email_client import EmailGatewayClient, EmailGatewayError
from utils.timezone import now_utc


@pytest.fixture
def cipher(app_key):
    return CodeCipher(app_key)


@pytest.fixture
def email_client():
    return Mock(spec=EmailGatewayClient)


@pytest.fixture
def ctx(auth_db, email_client, cipher, config, request_logger):
    """Worker context as built by startup()."""
    return {
        "auth_db": auth_db,
        "email_client": email_client,
        "cipher": cipher,
        "config": config,
        "request_logger": request_logger,
    }


@pytest.fixture
def challenge(auth_db):
    return auth_db.create_login_challenge(
        email="user@example.com",
        code_hash=hash_code("482913", rounds=4),
        expires_at=now_utc() + timedelta(minutes=10),
        requested_ip=None,
        requested_user_agent=None,
    )


class TestLoginCodeMailer:

    @pytest.mark.asyncio
    async def test_enqueues_encrypted_code(self, queue, cipher):
        challenge_id = uuid4()

        await LoginCodeMailer(queue, cipher).dispatch(challenge_id, "482913")

        queue.enqueue.assert_awaited_once()
        args, kwargs = queue.enqueue.call_args
        assert args == ("send_login_code_email",)
        assert kwargs["challenge_id"] == str(challenge_id)
        assert kwargs["retries"] == 3
        assert "482913" not in kwargs["encrypted_code"]
        assert cipher.decrypt(kwargs["encrypted_code"]) == "482913"


class TestSendLoginCodeEmail:

    @pytest.mark.asyncio
    async def test_sends_and_marks(self, ctx, challenge, cipher, email_client, auth_db, config):
        result = await send_login_code_email(
            ctx, challenge_id=str(challenge.id), encrypted_code=cipher.encrypt("482913")
        )

        assert result == {"status": "sent"}
        email_client.send_login_code.assert_called_once_with(
            email="user@example.com",
            code="482913",
            expires_at=challenge.expires_at,
            app_name=config.app_name,
        )
        assert auth_db.get_login_challenge(challenge.id).email_sent_at is not None

    @pytest.mark.asyncio
    async def test_redelivery_skipped(self, ctx, challenge, cipher, email_client):
        """At-least-once delivery: a retried job does not send twice."""
        payload = {"challenge_id": str(challenge.id), "encrypted_code": cipher.encrypt("482913")}

        await send_login_code_email(ctx, **payload)
        result = await send_login_code_email(ctx, **payload)

        assert result == {"status": "already_sent"}
        email_client.send_login_code.assert_called_once()

    @pytest.mark.asyncio
    async def test_missing_challenge(self, ctx, cipher, email_client):
        result = await send_login_code_email(
            ctx, challenge_id=str(uuid4()), encrypted_code=cipher.encrypt("482913")
        )

        assert result == {"status": "missing"}
        email_client.send_login_code.assert_not_called()

    @pytest.mark.asyncio
    async def test_gateway_failure_leaves_unsent(self, ctx, challenge, cipher, email_client, auth_db):
        """The job fails so the queue retries it."""
        email_client.send_login_code.side_effect = EmailGatewayError("Gateway error: down")

        with pytest.raises(EmailGatewayError):
            await send_login_code_email(
                ctx, challenge_id=str(challenge.id), encrypted_code=cipher.encrypt("482913")
            )

        assert auth_db.get_login_challenge(challenge.id).email_sent_at is None

    @pytest.mark.asyncio
    async def test_tampered_payload(self, ctx, challenge, email_client):
        with pytest.raises(ValueError):
            await send_login_code_email(ctx, challenge_id=str(challenge.id), encrypted_code="garbage")

        email_client.send_login_code.assert_not_called()

    @pytest.mark.asyncio
    async def test_slow_gateway_does_not_stall_worker_loop(self, ctx, challenge, cipher, email_client, loop_stall):
        """Concurrent jobs keep running while one waits on the gateway."""
        email_client.send_login_code.side_effect = lambda **kwargs: time.sleep(0.3)

        result, stall = await loop_stall(
            send_login_code_email(
                ctx, challenge_id=str(challenge.id), encrypted_code=cipher.encrypt("482913")
            )
        )

        assert result == {"status": "sent"}
        assert stall < 0.15


class TestPruneApiRequestLogs:

    @pytest.mark.asyncio
    async def test_prunes_with_retention(self, ctx, request_logger, config):
        request_logger.prune.return_value = 12

        assert await prune_api_request_logs(ctx) == {"deleted": 12}
        request_logger.prune.assert_called_once_with(config.request_log_retention_days)

    @pytest.mark.asyncio
    async def test_retention_disabled(self, ctx, request_logger, config):
        ctx["config"] = config.model_copy(update={"request_log_retention_days": None})

        assert await prune_api_request_logs(ctx) == {"deleted": 0}
        request_logger.prune.assert_not_called()


class TestNotifyExpiringAccessTokens:

    @pytest.fixture
    def owner(self, auth_db):
        return auth_db.add_user("integrations@example.com", AuthType.API)

    @pytest.fixture
    def add_token(self, auth_db, owner):
        def _add(name, expires_in, **fields):
            token = auth_db.create_access_token(
                user_id=owner.id,
                name=name,
                token_hash=f"hash-{name}",
                token_prefix="abcde",
                expires_at=now_utc() + expires_in,
                allowed_ips=None,
            )
            for field, value in fields.items():
                setattr(auth_db.tokens[token.id], field, value)
            return token

        return _add

    @pytest.mark.asyncio
    async def test_notifies_on_interval_day(self, ctx, add_token, owner, email_client, auth_db, config):
        token = add_token("deploy", timedelta(days=7))

        result = await notify_expiring_access_tokens(ctx)

        assert result == {"sent": 1, "failed": 0}
        email_client.send_token_expiration.assert_called_once_with(
            email=owner.email,
            token_name="deploy",
            expires_at=token.expires_at,
            days_until_expiration=7,
            app_name=config.app_name,
            auth_realm="Test App API",
        )
        assert auth_db.get_access_token(token.id).expiration_notified_at is not None

    @pytest.mark.asyncio
    async def test_skips_days_between_intervals(self, ctx, add_token, email_client):
        add_token("later", timedelta(days=5))

        assert await notify_expiring_access_tokens(ctx) == {"sent": 0, "failed": 0}
        email_client.send_token_expiration.assert_not_called()

    @pytest.mark.asyncio
    async def test_skips_revoked(self, ctx, add_token, email_client):
        add_token("revoked", timedelta(days=3), revoked_at=now_utc())

        await notify_expiring_access_tokens(ctx)

        email_client.send_token_expiration.assert_not_called()

    @pytest.mark.asyncio
    async def test_second_run_same_day_sends_nothing(self, ctx, add_token, email_client):
        add_token("deploy", timedelta(days=1))

        await notify_expiring_access_tokens(ctx)
        result = await notify_expiring_access_tokens(ctx)

        assert result == {"sent": 0, "failed": 0}
        email_client.send_token_expiration.assert_called_once()

    @pytest.mark.asyncio
    async def test_notified_yesterday_is_notified_again(self, ctx, add_token, email_client):
        add_token("deploy", timedelta(days=14), expiration_notified_at=now_utc() - timedelta(hours=25))

        assert (await notify_expiring_access_tokens(ctx))["sent"] == 1

    @pytest.mark.asyncio
    async def test_failure_counted_and_run_continues(self, ctx, add_token, email_client, auth_db):
        first = add_token("first", timedelta(days=30))
        second = add_token("second", timedelta(days=30))
        email_client.send_token_expiration.side_effect = [EmailGatewayError("Gateway error: down"), None]

        result = await notify_expiring_access_tokens(ctx)

        assert result == {"sent": 1, "failed": 1}
        assert auth_db.get_access_token(first.id).expiration_notified_at is None
        assert auth_db.get_access_token(second.id).expiration_notified_at is not None

    @pytest.mark.asyncio
    async def test_disabled(self, ctx, add_token, email_client, config):
        ctx["config"] = config.model_copy(update={"expiration_notifications_enabled": False})
        add_token("deploy", timedelta(days=7))

        assert await notify_expiring_access_tokens(ctx) == {"sent": 0, "failed": 0}
        email_client.send_token_expiration.assert_not_called()


class TestQueueSettings:

    def test_registers_tasks_and_cron(self, queue):
        settings = get_queue_settings(queue)

        assert settings["queue"] is queue
        assert send_login_code_email in settings["functions"]
        assert prune_api_request_logs in settings["functions"]
        cron = settings["cron_jobs"][0]
        assert cron.function is prune_api_request_logs
        assert cron.cron == PRUNE_API_REQUEST_LOGS_CRON
        assert notify_expiring_access_tokens in settings["functions"]
        notify = settings["cron_jobs"][1]
        assert notify.function is notify_expiring_access_tokens
        assert notify.cron == NOTIFY_EXPIRING_ACCESS_TOKENS_CRON
