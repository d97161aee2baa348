"""Error envelope format and the failure-to-HTTP rendering.

Every error response has the shape::

    {
        "status": "error",
        "data": null,
        "error": {"code": "<stable_code>", "type": "<VARIANT>", "message": "...", "details": ...},
        "request_id": "<uuid>"
    }
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from salonauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from salonauth.api.schemas import Envelope, ErrorBody
from salonauth.service.errors import AuthenticationError, ServerError
from salonauth.service.failures import (
    AccountLocked,
    IpAlreadyTrusted,
    MaxTrustedIpsReached,
    TwoFactorRequired,
    error_type,
)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.type is None
        assert error.details is None

    def test_accepts_dict_and_list_details(self):
        assert ErrorBody(code="conflict", message="x", details={"ip_address": "10.0.0.1"}).details
        assert len(ErrorBody(code="validation_error", message="x", details=[{}, {}]).details) == 2

    def test_missing_fields_raise(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    def test_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_type_must_be_upper_snake(self):
        assert ErrorBody(code="conflict", type="IP_ALREADY_TRUSTED", message="x").type
        with pytest.raises(ValidationError):
            ErrorBody(code="conflict", type="IpAlreadyTrusted", message="x")


class TestEnvelope:
    def test_error_status(self):
        envelope = Envelope(status="error", error=ErrorBody(code="unauthorized", message="Invalid token"))
        assert envelope.error.code == "unauthorized"
        assert envelope.data is None

    def test_request_id_generated(self):
        assert len(Envelope(status="ok").request_id) == 36
        assert Envelope(status="ok", request_id="custom-id-123").request_id == "custom-id-123"

    def test_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


@pytest.mark.parametrize(
    "status,code",
    [
        (400, "validation_error"),
        (401, "unauthorized"),
        (403, "forbidden"),
        (404, "not_found"),
        (409, "conflict"),
        (429, "rate_limited"),
        (500, "server_error"),
        (418, "server_error"),
        (503, "server_error"),
    ],
)
def test_error_code_for_status(status, code):
    assert _error_code_for_status(status) == code


def test_every_mapped_code_is_valid():
    for code in _STATUS_TO_CODE.values():
        ErrorBody(code=code, message="ok")


@pytest.mark.parametrize(
    "failure,expected",
    [
        (IpAlreadyTrusted("10.0.0.1"), "IP_ALREADY_TRUSTED"),
        (MaxTrustedIpsReached(10), "MAX_TRUSTED_IPS_REACHED"),
        (TwoFactorRequired(), "TWO_FACTOR_REQUIRED"),
        (AccountLocked(until=None), "ACCOUNT_LOCKED"),
    ],
)
def test_error_type_names_variants(failure, expected):
    assert error_type(failure) == expected


class TestErrorResponseFactory:
    def test_basic(self):
        response = _error_response(401, "Invalid credentials", error_type="INVALID_CREDENTIALS")
        assert response.status_code == 401
        data = json.loads(response.body)
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["type"] == "INVALID_CREDENTIALS"
        assert data["error"]["details"] is None
        assert data["request_id"]

    def test_details_and_headers(self):
        response = _error_response(
            429,
            "Too many requests",
            details={"retry_after_seconds": 60},
            headers={"Retry-After": "60"},
        )
        assert response.headers["Retry-After"] == "60"
        assert json.loads(response.body)["error"]["details"]["retry_after_seconds"] == 60

    def test_code_override(self):
        response = _error_response(400, "Custom error", code="conflict")
        assert json.loads(response.body)["error"]["code"] == "conflict"


class _Payload(BaseModel):
    email: str


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.post("/echo")
    async def echo(payload: _Payload):
        return {"email": payload.email}

    @app.get("/denied")
    async def denied():
        raise AuthenticationError("Access token has been revoked", error_type="TOKEN_REVOKED")

    @app.get("/storage")
    async def storage():
        raise ServerError("connection to db.internal:5432 failed", error_type="DATABASE_ERROR")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    return TestClient(app, raise_server_exceptions=False)


def test_request_validation_renders_as_400(client):
    response = client.post("/echo", json={})
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "validation_error"
    assert error["type"] == "VALIDATION_ERROR"
    assert error["details"][0]["loc"] == ["body", "email"]


def test_service_error_renders_envelope(client):
    response = client.get("/denied")
    assert response.status_code == 401
    assert response.json()["error"] == {
        "code": "unauthorized",
        "type": "TOKEN_REVOKED",
        "message": "Access token has been revoked",
        "details": None,
    }


def test_router_404_and_uncaught_errors_use_envelope(client):
    missing = client.get("/nowhere")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "not_found"

    boom = client.get("/boom")
    assert boom.status_code == 500
    assert boom.json()["error"]["type"] == "INTERNAL_ERROR"


def test_server_error_message_is_scrubbed(client):
    response = client.get("/storage")
    assert response.status_code == 500
    error = response.json()["error"]
    assert error["type"] == "DATABASE_ERROR"
    assert "db.internal" not in error["message"]
