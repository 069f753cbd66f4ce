"""Background jobs for the auth flow, run by the SAQ worker.

Login code emails are sent off the request path. The queue delivers at least
once, so the send task skips challenges whose email_sent_at is already set.
The code travels Fernet-encrypted and is decrypted only inside the task.

Cron jobs prune old API request logs and warn API users about access tokens
that are about to expire.
"""

import asyncio
import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any
from uuid import UUID

from saq import CronJob, Queue, Worker

from api.request_logger import ApiRequestLogger
from auth.config import AuthConfig, load_auth_config
from auth.database import AuthDatabase
from auth.hashing import CodeCipher
from clients.email_client import EmailGatewayClient
from clients.postgres_client import PostgresClient
from clients.vault_client import get_app_key, get_database_url, get_email_config, get_valkey_url
from utils.logging import configure_logging
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

SEND_LOGIN_CODE_TIMEOUT_SECONDS = 60

# Daily at 03:15 UTC
PRUNE_API_REQUEST_LOGS_CRON = "15 3 * * *"

# Daily at 09:00 UTC
NOTIFY_EXPIRING_ACCESS_TOKENS_CRON = "0 9 * * *"


class LoginCodeMailer:
    """Hand a freshly issued code to the worker for delivery."""

    def __init__(self, queue: Queue, cipher: CodeCipher):
        self._queue = queue
        self._cipher = cipher

    async def dispatch(self, challenge_id: UUID, code: str) -> None:
        await self._queue.enqueue(
            "send_login_code_email",
            challenge_id=str(challenge_id),
            encrypted_code=self._cipher.encrypt(code),
            timeout=SEND_LOGIN_CODE_TIMEOUT_SECONDS,
            retries=3,
        )
        logger.info("Queued login code email for challenge %s", challenge_id)


async def send_login_code_email(
    ctx: dict[str, Any],
    *,
    challenge_id: str,
    encrypted_code: str,
) -> dict[str, Any]:
    """Deliver one login code email.

    Args:
        ctx: SAQ context holding auth_db, email_client, cipher and config
        challenge_id: Challenge the code belongs to
        encrypted_code: Fernet token produced by LoginCodeMailer

    Returns:
        Dict with the outcome ("sent", "missing" or "already_sent")
    """
    return await asyncio.to_thread(
        _deliver_login_code,
        ctx["auth_db"],
        ctx["email_client"],
        ctx["cipher"],
        ctx["config"],
        UUID(challenge_id),
        encrypted_code,
    )


def _deliver_login_code(
    auth_db: AuthDatabase,
    email_client: EmailGatewayClient,
    cipher: CodeCipher,
    config: AuthConfig,
    challenge_id: UUID,
    encrypted_code: str,
) -> dict[str, Any]:
    """Blocking half of send_login_code_email, run in a worker thread."""
    challenge = auth_db.get_login_challenge(challenge_id)
    if challenge is None:
        logger.warning("Login challenge %s not found, skipping email", challenge_id)
        return {"status": "missing"}

    if challenge.email_sent_at is not None:
        logger.info("Login code email for challenge %s already sent", challenge_id)
        return {"status": "already_sent"}

    code = cipher.decrypt(encrypted_code)
    email_client.send_login_code(
        email=challenge.email,
        code=code,
        expires_at=challenge.expires_at,
        app_name=config.app_name,
    )
    auth_db.mark_challenge_email_sent(challenge.id, now_utc())

    return {"status": "sent"}


async def notify_expiring_access_tokens(ctx: dict[str, Any]) -> dict[str, Any]:
    """Email owners of access tokens expiring on one of the configured days ahead.

    Returns:
        Dict with counts of notifications sent and failed
    """
    config: AuthConfig = ctx["config"]
    if not config.expiration_notifications_enabled:
        logger.info("Access token expiration notifications are disabled")
        return {"sent": 0, "failed": 0}

    return await asyncio.to_thread(
        _notify_expiring_access_tokens, ctx["auth_db"], ctx["email_client"], config, now_utc()
    )


def _notify_expiring_access_tokens(
    auth_db: AuthDatabase,
    email_client: EmailGatewayClient,
    config: AuthConfig,
    now: datetime,
) -> dict[str, Any]:
    sent = 0
    failed = 0
    notified_before = now - timedelta(hours=24)

    for days in config.expiration_notification_intervals:
        day_start = datetime.combine((now + timedelta(days=days)).date(), time.min, tzinfo=timezone.utc)
        day_end = day_start + timedelta(days=1) - timedelta(microseconds=1)

        expiring = auth_db.list_tokens_expiring_between(day_start, day_end, now, notified_before)
        if expiring:
            logger.info("Found %d token(s) expiring in %d days", len(expiring), days)

        for token, user in expiring:
            try:
                email_client.send_token_expiration(
                    email=user.email,
                    token_name=token.name,
                    expires_at=token.expires_at,
                    days_until_expiration=days,
                    app_name=config.app_name,
                    auth_realm=config.api_auth_realm,
                )
                auth_db.mark_token_expiration_notified(token.id, now_utc())
                sent += 1
            except Exception:
                # Counted and logged; the run continues with the next token
                failed += 1
                logger.exception(
                    "Failed to send access token expiration notification for token %s (user %s)",
                    token.id,
                    user.id,
                )

    if failed:
        logger.error("Failed to send %d access token expiration notification(s)", failed)
    return {"sent": sent, "failed": failed}


async def prune_api_request_logs(ctx: dict[str, Any]) -> dict[str, Any]:
    """Delete API request logs past the retention window."""
    config: AuthConfig = ctx["config"]
    request_logger: ApiRequestLogger = ctx["request_logger"]

    if config.request_log_retention_days is None:
        return {"deleted": 0}

    deleted = await asyncio.to_thread(request_logger.prune, config.request_log_retention_days)
    logger.info("Pruned %d API request logs", deleted)
    return {"deleted": deleted}


def create_queue(valkey_url: str) -> Queue:
    return Queue.from_url(valkey_url)


async def startup(ctx: dict[str, Any]) -> None:
    """Called when worker starts. Builds the collaborators tasks read from ctx."""
    postgres = PostgresClient(get_database_url())
    email_config = get_email_config()

    ctx["config"] = load_auth_config()
    ctx["postgres"] = postgres
    ctx["auth_db"] = AuthDatabase(postgres)
    ctx["request_logger"] = ApiRequestLogger(postgres)
    ctx["cipher"] = CodeCipher(get_app_key())
    ctx["email_client"] = EmailGatewayClient(
        gateway_url=email_config["gateway_url"],
        api_key=email_config["api_key"],
        hmac_secret=email_config["hmac_secret"],
    )


async def shutdown(ctx: dict[str, Any]) -> None:
    """Called when worker shuts down."""
    postgres = ctx.get("postgres")
    if postgres is not None:
        postgres.close()


def get_queue_settings(queue: Queue | None = None) -> dict:
    """Get SAQ queue settings for the worker."""
    return {
        "queue": queue or create_queue(get_valkey_url()),
        "functions": [send_login_code_email, prune_api_request_logs, notify_expiring_access_tokens],
        "concurrency": 4,
        "cron_jobs": [
            CronJob(prune_api_request_logs, cron=PRUNE_API_REQUEST_LOGS_CRON),
            CronJob(notify_expiring_access_tokens, cron=NOTIFY_EXPIRING_ACCESS_TOKENS_CRON),
        ],
        "startup": startup,
        "shutdown": shutdown,
    }


def main() -> None:
    """Run the SAQ worker."""
    configure_logging()
    settings = get_queue_settings()
    worker = Worker(
        queue=settings["queue"],
        functions=settings["functions"],
        concurrency=settings["concurrency"],
        cron_jobs=settings["cron_jobs"],
        startup=settings["startup"],
        shutdown=settings["shutdown"],
    )
    asyncio.run(worker.start())


if __name__ == "__main__":
    main()
