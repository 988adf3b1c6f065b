"""Tests for the error envelope format and exception mapping.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": ...},
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from accessflow.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from accessflow.api.schemas import Envelope, ErrorBody
from accessflow.service.errors import (
    CodeExpiredError,
    ConflictError,
    ForbiddenError,
    InvalidCodeError,
    InvalidCredentialsError,
    InvalidMethodError,
    InviteNotFoundError,
    ServerError,
    TokenInvalidError,
)
from accessflow.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_details_optional(self):
        error = ErrorBody(code="unauthorized", message="invalid credentials")
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_status_restricted(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_envelope_generates_request_id(self):
        assert Envelope(status="ok").request_id


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _STATUS_TO_CODE[status] == code
        assert _error_code_for_status(status) == code

    def test_unknown_status_falls_back(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_shape(self):
        response = _error_response(404, "missing", {"id": "x"})
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["data"] is None
        assert body["error"] == {"code": "not_found", "message": "missing", "details": {"id": "x"}}


def _app_raising(exc):
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


@pytest.mark.parametrize(
    "exc,status,code",
    [
        (InvalidMethodError("invalid MFA method"), 400, "validation_error"),
        (InvalidCredentialsError("invalid credentials"), 401, "unauthorized"),
        (CodeExpiredError("expired"), 401, "unauthorized"),
        (ForbiddenError("inactive", detail={"status": "disabled"}), 403, "forbidden"),
        (InviteNotFoundError("invalid or expired invite"), 404, "not_found"),
        (ConflictError("exists"), 409, "conflict"),
        (ServerError("unsupported"), 500, "server_error"),
        (ConstraintViolation("email already exists"), 409, "conflict"),
        (RuntimeError("kaboom"), 500, "server_error"),
    ],
)
def test_exceptions_map_to_envelope(exc, status, code):
    response = _app_raising(exc).get("/boom")
    body = response.json()
    assert response.status_code == status
    assert body["status"] == "error"
    assert body["error"]["code"] == code


def test_forbidden_detail_is_exposed():
    response = _app_raising(ForbiddenError("inactive", detail={"status": "disabled"})).get("/boom")
    assert response.json()["error"]["details"] == {"status": "disabled"}


def test_uncaught_error_hides_message():
    response = _app_raising(RuntimeError("secret internals")).get("/boom")
    assert "secret internals" not in response.text


@pytest.mark.parametrize(
    "exc,reason",
    [
        (InvalidCredentialsError("invalid credentials"), "invalid_credentials"),
        (TokenInvalidError("invalid token"), "token_invalid"),
        (InvalidCodeError("invalid OTP code"), "invalid_code"),
        (CodeExpiredError("OTP code expired"), "code_expired"),
        (InviteNotFoundError("invalid or expired invite"), "invite_not_found"),
    ],
)
def test_shared_codes_carry_reason(exc, reason):
    body = _app_raising(exc).get("/boom").json()
    assert body["error"]["details"]["reason"] == reason


def test_caller_detail_kept_alongside_reason():
    exc = CodeExpiredError("OTP code expired", detail={"method": "otp"})
    assert exc.detail == {"method": "otp", "reason": "code_expired"}
