"""Tests for api/errors.py - exception rendering for /api and /auth paths."""

import psycopg2
import pytest
from fastapi import FastAPI, HTTPException, Request
from fastapi.testclient import TestClient
from pydantic import BaseModel

from api.errors import register_error_handlers
from auth.exceptions import AuthenticationFailed, ValidationFailed
from utils.request_context import ensure_api_context


class Payload(BaseModel):
    name: str


@pytest.fixture
def captured():
    return []


@pytest.fixture
def app(config, captured):
    app = FastAPI()
    register_error_handlers(app, config)

    @app.middleware("http")
    async def bind_context(request: Request, call_next):
        if request.url.path.startswith("/api/"):
            context = ensure_api_context(request.state)
            context.new_trace()
            captured.append(context)
        return await call_next(request)

    for prefix in ("/api/v1", "/auth"):

        @app.get(f"{prefix}/validation")
        async def validation():
            raise ValidationFailed({"name": ["The name field is required."]})

        @app.post(f"{prefix}/body")
        async def body(payload: Payload):
            return {"name": payload.name}

        @app.get(f"{prefix}/forbidden")
        async def forbidden():
            raise HTTPException(status_code=403)

        @app.get(f"{prefix}/conflict")
        async def conflict():
            raise HTTPException(status_code=409, detail="Token name already used.")

        @app.get(f"{prefix}/teapot")
        async def teapot():
            raise HTTPException(status_code=418)

        @app.get(f"{prefix}/database")
        async def database():
            raise psycopg2.OperationalError("connection lost")

        @app.get(f"{prefix}/auth")
        async def auth():
            raise AuthenticationFailed("ip-denied")

        @app.get(f"{prefix}/boom")
        async def boom():
            raise RuntimeError("boom")

    return app


@pytest.fixture
def client(app):
    return TestClient(app, raise_server_exceptions=False)


class TestApiProblemDetails:

    def test_validation_failed(self, client, captured):
        response = client.get("/api/v1/validation")

        assert response.status_code == 422
        assert response.headers["content-type"].startswith("application/problem+json")
        assert response.json()["errors"] == {"name": ["The name field is required."]}
        assert captured[-1].failure_reason == "validation-failed"

    def test_request_validation_grouped_by_field(self, client):
        response = client.post("/api/v1/body", json={})

        assert response.status_code == 422
        assert list(response.json()["errors"]) == ["name"]

    def test_forbidden_default_detail(self, client, captured):
        response = client.get("/api/v1/forbidden")

        assert response.status_code == 403
        assert response.json()["detail"] == "You do not have permission to access this resource."
        assert captured[-1].failure_reason == "unauthorized"

    def test_conflict_keeps_detail(self, client, captured):
        response = client.get("/api/v1/conflict")

        assert response.status_code == 409
        assert response.json()["detail"] == "Token name already used."
        assert captured[-1].failure_reason == "conflict"

    def test_unknown_route(self, client):
        response = client.get("/api/v1/missing")

        assert response.status_code == 404
        assert response.json()["title"] == "Not Found"

    def test_method_not_allowed(self, client):
        response = client.delete("/api/v1/validation")

        assert response.status_code == 405
        assert "GET" in response.headers["allow"]

    def test_other_status_is_server_failure(self, client, captured):
        response = client.get("/api/v1/teapot")

        assert response.status_code == 418
        assert response.json()["title"] == "HTTP Error"
        assert captured[-1].failure_reason == "server-error"

    def test_database_error(self, client, captured):
        response = client.get("/api/v1/database")

        assert response.status_code == 500
        assert "connection lost" not in response.text
        assert captured[-1].failure_reason == "database-error"

    def test_authentication_failed(self, client, captured):
        response = client.get("/api/v1/auth")

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == 'Bearer realm="Test App API"'
        assert captured[-1].failure_reason == "ip-denied"

    def test_unhandled_exception(self, client, captured):
        response = client.get("/api/v1/boom")

        assert response.status_code == 500
        body = response.json()
        assert body["title"] == "Internal Server Error"
        assert body["trace_id"] == captured[-1].trace_id
        assert captured[-1].failure_reason == "server-error"

    def test_existing_reason_kept(self, client, captured, app):
        """Renderers never overwrite a reason recorded earlier in the request."""

        @app.get("/api/v1/denied-then-invalid")
        async def denied_then_invalid(request: Request):
            request.state.api_context.set_failure("ip-denied")
            raise ValidationFailed({"x": ["bad"]})

        client.get("/api/v1/denied-then-invalid")

        assert captured[-1].failure_reason == "ip-denied"


class TestEnvelopeErrors:

    def test_validation_failed(self, client):
        response = client.get("/auth/validation")

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["fields"] == {"name": ["The name field is required."]}

    def test_request_validation(self, client):
        response = client.post("/auth/body", json={})

        assert response.status_code == 422
        assert "name" in response.json()["error"]["fields"]

    def test_not_found(self, client):
        response = client.get("/auth/missing")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_authentication_failed(self, client):
        response = client.get("/auth/auth")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "NOT_AUTHENTICATED"

    def test_database_error(self, client):
        response = client.get("/auth/database")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "INTERNAL_ERROR"

    def test_unhandled_exception(self, client):
        response = client.get("/auth/boom")

        assert response.status_code == 500
        assert response.json()["success"] is False
