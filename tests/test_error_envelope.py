"""Tests for the error envelope format and error handling.

Every failure answers with:
{
    "success": false,
    "code": "<stable_code>",
    "message": "<human_readable>",
    "details": <object|array|null>,
    "requestId": "<id>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from docvault import app as app_module
from docvault.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from docvault.api.schemas import Envelope
from docvault.service.errors import ErrorKind, ServiceError


@pytest.fixture
def client():
    return TestClient(app_module.app)


class TestEnvelope:
    def test_error_codes_are_validated(self):
        with pytest.raises(ValidationError):
            Envelope(success=False, code="teapot", message="no")

    @pytest.mark.parametrize("kind", list(ErrorKind))
    def test_every_kind_is_a_valid_code(self, kind):
        assert Envelope(success=False, code=kind.value).code == kind.value

    def test_request_id_is_generated(self):
        assert Envelope(success=True).request_id

    def test_serializes_with_camel_case_request_id(self):
        dumped = Envelope(success=True, request_id="abc").model_dump(by_alias=True)

        assert dumped["requestId"] == "abc"


class TestErrorResponse:
    def test_status_codes_map_to_stable_codes(self):
        assert _error_code_for_status(401) == "INVALID_TOKEN"
        assert _error_code_for_status(413) == "VALIDATION_ERROR"
        assert _error_code_for_status(418) == "SERVER_ERROR"
        assert all(isinstance(code, ErrorKind) for code in _STATUS_TO_CODE.values())

    def test_error_response_body(self):
        response = _error_response(403, "nope", {"field": "objectKey"})
        body = json.loads(response.body)

        assert response.status_code == 403
        assert body["success"] is False
        assert body["code"] == "FORBIDDEN"
        assert body["details"] == {"field": "objectKey"}

    def test_empty_details_are_null(self):
        body = json.loads(_error_response(400, "bad", {}).body)

        assert body["details"] is None


class TestServiceErrors:
    @pytest.mark.parametrize("kind", list(ErrorKind))
    def test_for_kind_binds_subclass(self, kind):
        exc = ServiceError.for_kind(kind, "x")

        assert exc.kind == kind
        assert exc.status_code == kind.status_code

    def test_status_override(self):
        exc = ServiceError.for_kind(ErrorKind.VALIDATION_ERROR, "too big", status_code=413)

        assert exc.status_code == 413
        assert exc.error_code == "VALIDATION_ERROR"

    def test_retry_and_relogin_are_disjoint(self):
        for kind in ErrorKind:
            assert not (kind.retryable and kind.requires_login)
        assert ErrorKind.REVOKED.requires_login
        assert ErrorKind.UNAVAILABLE.retryable


class TestHttpErrors:
    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/api/does-not-exist")

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"
        assert response.json()["success"] is False

    def test_request_id_is_echoed(self, client):
        response = client.get("/api/auth/me", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["requestId"] == "req-123"

    def test_malformed_json_is_validation_error(self, client):
        response = client.post(
            "/api/auth/login",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
