"""FastAPI application factory."""

import logging
import os

import sentry_sdk
from fastapi import FastAPI
from saq import Queue

from api.access_tokens import create_access_token_router
from api.base import success_response
from api.errors import register_error_handlers
from api.middleware import ApiRequestLoggingMiddleware
from api.request_logger import ApiRequestLogger
from auth.api import create_auth_router
from auth.challenges import LoginChallengeIssuer
from auth.config import AuthConfig, load_auth_config
from auth.database import AuthDatabase
from auth.hashing import CodeCipher, TokenHasher
from auth.jobs import LoginCodeMailer, create_queue
from auth.login_session import LoginSessionStore
from auth.rate_limiter import LoginCodeRateLimiter
from auth.security_logger import SecurityLogger
from auth.security_middleware import AccessTokenMiddleware
from auth.service import LoginCodeService
from auth.session import SessionManager
from auth.tokens import AccessTokenIssuer
from auth.verification import LoginChallengeVerifier
from clients.postgres_client import PostgresClient
from clients.valkey_client import ValkeyClient
from clients.vault_client import get_app_key, get_database_url, get_valkey_url
from utils.logging import configure_logging

logger = logging.getLogger(__name__)


def create_app(
    config: AuthConfig,
    postgres: PostgresClient,
    valkey: ValkeyClient,
    queue: Queue,
    app_key: str,
    auth_db: AuthDatabase | None = None,
    security_logger: SecurityLogger | None = None,
    request_logger: ApiRequestLogger | None = None,
) -> FastAPI:
    """Wire services, middleware, error handlers and routers.

    auth_db, security_logger and request_logger default to Postgres-backed
    instances; tests pass in-memory ones.
    """
    auth_db = auth_db or AuthDatabase(postgres)
    security_logger = security_logger or SecurityLogger(postgres)
    request_logger = request_logger or ApiRequestLogger(postgres)
    hasher = TokenHasher(app_key)

    auth_service = LoginCodeService(
        config=config,
        auth_db=auth_db,
        issuer=LoginChallengeIssuer(config, auth_db, LoginCodeRateLimiter(valkey, config)),
        verifier=LoginChallengeVerifier(config, auth_db),
        mailer=LoginCodeMailer(queue, CodeCipher(app_key)),
        session_manager=SessionManager(valkey, config),
        security_logger=security_logger,
    )

    app = FastAPI(title=config.app_name, docs_url=None, redoc_url=None)

    register_error_handlers(app, config)

    # Added last runs first: request logging wraps bearer authentication
    app.add_middleware(AccessTokenMiddleware, config=config, auth_db=auth_db, hasher=hasher)
    app.add_middleware(ApiRequestLoggingMiddleware, config=config, request_logger=request_logger)

    app.include_router(create_auth_router(auth_service, LoginSessionStore(valkey, config)))
    app.include_router(
        create_access_token_router(auth_db, AccessTokenIssuer(auth_db, hasher), security_logger)
    )

    @app.get("/api/health")
    def health():
        """Public health check (no bearer token)."""
        postgres.ping()
        valkey.ping()
        return success_response({"status": "ok"})

    return app


def create_default_app() -> FastAPI:
    """Build the app from Vault secrets and the process environment."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    config = load_auth_config()

    sentry_dsn = os.getenv("SENTRY_DSN")
    if sentry_dsn:
        sentry_sdk.init(
            dsn=sentry_dsn,
            environment=config.environment,
            traces_sample_rate=0.1 if config.environment == "production" else 1.0,
        )
        logger.info("Sentry initialized")

    valkey_url = get_valkey_url()
    return create_app(
        config=config,
        postgres=PostgresClient(get_database_url()),
        valkey=ValkeyClient(valkey_url),
        queue=create_queue(valkey_url),
        app_key=get_app_key(),
    )
