"""Bearer-authenticated v1 routes: the current API user and their access tokens."""

import logging
from datetime import timedelta
from uuid import UUID

from fastapi import APIRouter, HTTPException, Request, Response
from pydantic import BaseModel, Field
from starlette.responses import JSONResponse

from auth.database import AuthDatabase
from auth.exceptions import ValidationFailed
from auth.ip_allowlist import is_valid_ip_or_cidr
from auth.security_logger import SecurityEvent, SecurityLogger
from auth.tokens import AccessTokenIssuer
from auth.types import AccessToken, User
from utils.request_context import client_ip
from utils.timezone import from_timestamp, now_utc

logger = logging.getLogger(__name__)

MIN_TOKEN_LIFETIME = timedelta(hours=24)

TOKEN_CREATED_MESSAGE = (
    "Token generated successfully. Store the bearer token immediately; it will not be shown again."
)


class CreateAccessTokenRequest(BaseModel):
    """Request body for creating an access token."""

    name: str = Field(..., min_length=1, max_length=255)
    expires_at: int | None = Field(default=None, description="Unix timestamp (seconds, UTC)")
    allowed_ips: list[str] | None = None


def _user_resource(user: User) -> dict:
    return {
        "id": str(user.id),
        "email": user.email,
        "auth_type": user.auth_type.value,
        "created_at": user.created_at.isoformat(),
    }


def validate_create_request(body: CreateAccessTokenRequest) -> None:
    """
    Raises:
        ValidationFailed: With field-level messages.
    """
    errors: dict[str, list[str]] = {}

    if not body.name.strip():
        errors["name"] = ["The name field is required."]

    if body.expires_at is not None:
        minimum = now_utc() + MIN_TOKEN_LIFETIME
        if body.expires_at < int(minimum.timestamp()):
            errors["expires_at"] = ["The expires at must be at least 24 hours from now."]

    for index, value in enumerate(body.allowed_ips or []):
        if not is_valid_ip_or_cidr(value):
            errors[f"allowed_ips.{index}"] = [
                f"The allowed_ips.{index} must be a valid IP address or CIDR range."
            ]

    if errors:
        raise ValidationFailed(errors)


def create_access_token_router(
    auth_db: AuthDatabase,
    issuer: AccessTokenIssuer,
    security_logger: SecurityLogger,
) -> APIRouter:
    """Create v1 router with injected collaborators."""
    router = APIRouter(prefix="/api/v1", tags=["api"])

    def owned_token(request: Request, token_id: str) -> AccessToken:
        try:
            token = auth_db.get_access_token(UUID(token_id))
        except ValueError:
            token = None
        if token is None:
            raise HTTPException(status_code=404)
        if token.user_id != request.state.user.id:
            raise HTTPException(status_code=403, detail="This token does not belong to you.")
        return token

    @router.get("/me")
    def me(request: Request):
        """The API user behind the bearer token."""
        return {"data": _user_resource(request.state.user)}

    @router.get("/access-tokens")
    def list_tokens(request: Request):
        """Tokens of the current user, most relevant first."""
        tokens = auth_db.list_access_tokens(request.state.user.id)
        return {"data": [token.to_public_dict() for token in tokens]}

    @router.post("/access-tokens", status_code=201)
    def create_token(request: Request, body: CreateAccessTokenRequest):
        """Create a token. The bearer value appears in this response only."""
        validate_create_request(body)

        user: User = request.state.user
        raw_token, token = issuer.issue(
            user,
            name=body.name.strip(),
            expires_at=from_timestamp(body.expires_at) if body.expires_at is not None else None,
            allowed_ips=body.allowed_ips,
        )

        security_logger.log(
            SecurityEvent.ACCESS_TOKEN_CREATED,
            email=user.email,
            user_id=user.id,
            ip_address=client_ip(request),
            details={"token_id": str(token.id)},
        )

        return JSONResponse(
            status_code=201,
            content={
                "data": token.to_public_dict(),
                "meta": {"bearer_token": raw_token, "message": TOKEN_CREATED_MESSAGE},
            },
        )

    @router.get("/access-tokens/{token_id}")
    def show_token(request: Request, token_id: str):
        return {"data": owned_token(request, token_id).to_public_dict()}

    @router.delete("/access-tokens/{token_id}", status_code=204)
    def revoke_token(request: Request, token_id: str):
        """Revoke a token other than the one making this request."""
        token = owned_token(request, token_id)

        if token.id == request.state.access_token.id:
            raise ValidationFailed(
                {"token": ["You cannot revoke the token you are currently using."]}
            )

        if issuer.revoke(token):
            user: User = request.state.user
            security_logger.log(
                SecurityEvent.ACCESS_TOKEN_REVOKED,
                email=user.email,
                user_id=user.id,
                ip_address=client_ip(request),
                details={"token_id": str(token.id)},
            )

        return Response(status_code=204)

    return router
