"""Tests for the error envelope format and error handling.

Error responses share one stable envelope:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import ValidationError

from tokengate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    register_exception_handlers,
)
from tokengate.api.schemas import Envelope, ErrorBody
from tokengate.service.errors import OAuth2ProviderError, OAuth2StateError


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_required_fields(self):
        """ErrorBody requires code and message fields."""
        error = ErrorBody(code="unauthorized", message="Invalid token")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_invalid_code_raises(self):
        """Codes outside the stable set are rejected."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")


class TestEnvelope:
    """Tests for the Envelope model."""

    def test_request_id_auto_generated(self):
        """A request_id is generated when none is in context."""
        envelope = Envelope(status="ok")
        assert envelope.request_id

    def test_invalid_status_raises(self):
        """Status must be ok or error."""
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestErrorCodeMapping:
    """Tests for HTTP status to error code mapping."""

    def test_provider_failures_map_to_provider_error(self):
        """502 Bad Gateway maps to 'provider_error'."""
        assert _error_code_for_status(502) == "provider_error"

    def test_unknown_status_defaults_to_server_error(self):
        """Unknown status codes default to 'server_error'."""
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_every_mapped_code_is_valid(self):
        """Every mapped code passes ErrorBody validation."""
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="x")


class TestErrorResponseFactory:
    """Tests for the error_response helper."""

    def test_basic(self):
        """error_response renders the envelope with the mapped code."""
        response = error_response(401, "authentication required")

        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["message"] == "authentication required"
        assert data["request_id"]

    def test_headers_are_passed_through(self):
        response = error_response(401, "nope", headers={"WWW-Authenticate": "Bearer"})

        assert response.headers["www-authenticate"] == "Bearer"


class TestExceptionHandlers:
    """Tests for register_exception_handlers()."""

    @pytest.fixture
    def client(self):
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/state")
        async def state():
            raise OAuth2StateError("authorization state mismatch", detail={"state": "x"})

        @app.get("/provider")
        async def provider():
            raise OAuth2ProviderError("refresh rejected", provider_status=400)

        @app.get("/forbidden")
        async def forbidden():
            raise HTTPException(status_code=403, detail="nope")

        @app.get("/boom")
        async def boom():
            raise RuntimeError("boom")

        return TestClient(app, raise_server_exceptions=False)

    def test_service_error(self, client):
        """ServiceError subclasses render their own status and code."""
        response = client.get("/state")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
        assert response.json()["error"]["details"] == {"state": "x"}

    def test_provider_error(self, client):
        response = client.get("/provider")

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "provider_error"

    def test_not_found(self, client):
        """Starlette HTTP exceptions are wrapped in the envelope."""
        response = client.get("/missing")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_method_not_allowed(self, client):
        """Routing errors raised by Starlette use the envelope too."""
        response = client.post("/state")

        assert response.status_code == 405
        assert response.json()["status"] == "error"
        assert response.json()["error"]["code"] == "server_error"

    def test_fastapi_http_exception(self, client):
        response = client.get("/forbidden")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"
        assert response.json()["error"]["message"] == "nope"

    def test_uncaught_exception(self, client):
        """Unexpected exceptions become a generic 500."""
        response = client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
