"""Tests for the error envelope and the exception-to-status mapping.

Error responses look like:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from tokenledger.api.error_handling import _error_code_for_status, _error_response
from tokenledger.api.schemas import Envelope, ErrorBody
from tokenledger.service.errors import (
    AccountInactiveError,
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    RefreshTokenExpiredError,
    RefreshTokenRevokedError,
    ServiceError,
    UpstreamUnavailableError,
    UserUnavailableError,
)


class TestErrorBody:
    def test_known_codes_accepted(self):
        error = ErrorBody(code="refresh_token_revoked", message="refresh token revoked")
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
        assert Envelope(status="ok").request_id


@pytest.mark.parametrize(
    "exc_cls, status_code, error_code",
    [
        (InvalidCredentialsError, 401, "invalid_credentials"),
        (AccountInactiveError, 403, "account_inactive"),
        (InvalidRefreshTokenError, 401, "invalid_refresh_token"),
        (RefreshTokenRevokedError, 401, "refresh_token_revoked"),
        (RefreshTokenExpiredError, 401, "refresh_token_expired"),
        (UserUnavailableError, 401, "user_unavailable"),
        (UpstreamUnavailableError, 503, "upstream_unavailable"),
    ],
)
def test_error_kinds(exc_cls, status_code, error_code):
    exc = exc_cls()
    assert isinstance(exc, ServiceError)
    assert exc.status_code == status_code
    assert exc.error_code == error_code
    # Every kind must be representable in the envelope
    ErrorBody(code=exc.error_code, message=exc.message)


def test_credential_and_token_errors_are_authentication_errors():
    for exc_cls in (InvalidCredentialsError, InvalidRefreshTokenError, RefreshTokenRevokedError):
        assert issubclass(exc_cls, AuthenticationError)


def test_conflict_error():
    exc = ConflictError("refresh token id conflict")
    assert exc.status_code == 409
    assert exc.error_code == "conflict"


def test_status_fallback_codes():
    assert _error_code_for_status(401) == "unauthorized"
    assert _error_code_for_status(503) == "upstream_unavailable"
    assert _error_code_for_status(418) == "server_error"


def test_error_response_shape():
    response = _error_response(401, "invalid refresh token", code="invalid_refresh_token")
    body = json.loads(response.body)
    assert response.status_code == 401
    assert response.headers["cache-control"] == "no-store"
    assert body["status"] == "error"
    assert body["data"] is None
    assert body["error"] == {
        "code": "invalid_refresh_token",
        "message": "invalid refresh token",
        "details": None,
    }
    assert body["request_id"]
