"""Integration tests for the document upload endpoints."""

from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from conftest import PASSWORD
from docvault import app as app_module
from docvault.service.object_keys import derive_object_key


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def auth_headers(client, user):
    response = client.post(
        "/api/auth/login", json={"email": user.email, "password": PASSWORD}
    )
    return {"Authorization": f"Bearer {response.json()['data']['accessToken']}"}


def _upload_url(client, headers, **overrides):
    payload = {"fileName": "report.pdf", "contentType": "application/pdf", "fileSize": 4}
    payload.update(overrides)
    return client.post("/api/document-upload/upload-url", json=payload, headers=headers)


class TestUploadUrl:
    def test_grant_is_tenant_scoped(self, client, auth_headers):
        response = _upload_url(client, auth_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["key"].startswith("acme/documents/")
        assert data["key"].endswith("/report.pdf")
        assert data["fileName"] == "report.pdf"
        assert data["method"] == "PUT"
        assert data["headers"] == {"Content-Type": "application/pdf"}
        assert parse_qs(urlparse(data["uploadUrl"]).query)["key"] == [data["key"]]
        assert response.headers["Cache-Control"].startswith("no-store")

    def test_zero_size_is_accepted(self, client, auth_headers):
        assert _upload_url(client, auth_headers, fileSize=0).status_code == 200

    def test_missing_size_is_rejected(self, client, auth_headers):
        response = _upload_url(client, auth_headers, fileSize=None)

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert response.json()["details"] == {"field": "fileSize"}

    def test_missing_file_name_is_reported_first(self, client, auth_headers):
        response = client.post(
            "/api/document-upload/upload-url", json={}, headers=auth_headers
        )

        assert response.status_code == 400
        assert response.json()["details"] == {"field": "fileName"}

    @pytest.mark.parametrize("size", ["10", True, 4.5])
    def test_non_integer_size_is_rejected(self, client, auth_headers, size):
        response = _upload_url(client, auth_headers, fileSize=size)

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_awkward_file_name_yields_usable_key(self, client, auth_headers):
        grant = _upload_url(client, auth_headers, fileName=". notes.pdf").json()["data"]

        validated = client.post(
            "/api/document-upload/validate", json={"objectKey": grant["key"]}, headers=auth_headers
        )
        stored = client.put(grant["uploadUrl"], content=b"%PDF", headers=grant["headers"])

        assert grant["key"].endswith("/notes.pdf")
        assert validated.status_code == 200
        assert stored.status_code == 200

    def test_oversized_declaration_is_413(self, client, auth_headers, runtime):
        response = _upload_url(
            client, auth_headers, fileSize=runtime.settings.max_upload_bytes + 1
        )

        assert response.status_code == 413
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_requires_authentication(self, client):
        assert _upload_url(client, {}).status_code == 401


class TestValidate:
    def test_own_key_is_valid(self, client, auth_headers):
        key = derive_object_key("acme", "a.pdf")

        response = client.post(
            "/api/document-upload/validate", json={"objectKey": key}, headers=auth_headers
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"valid": True}

    def test_foreign_key_is_forbidden(self, client, auth_headers):
        key = derive_object_key("globex", "a.pdf")

        response = client.post(
            "/api/document-upload/validate", json={"objectKey": key}, headers=auth_headers
        )

        assert response.status_code == 403
        body = response.json()
        assert body["code"] == "FORBIDDEN"
        assert body["message"] == "Access denied to this object"
        assert "globex" not in response.text

    def test_missing_key_is_400(self, client, auth_headers):
        response = client.post(
            "/api/document-upload/validate", json={}, headers=auth_headers
        )

        assert response.status_code == 400


class TestDirectUpload:
    def test_file_is_stored_under_tenant(self, client, auth_headers, runtime):
        response = client.post(
            "/api/document-upload/direct-upload",
            files={"file": ("notes.txt", b"hello", "text/plain")},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["size"] == 5
        assert data["mimeType"] == "text/plain"
        assert data["objectKey"].startswith("acme/documents/")
        assert runtime.storage.object_path(data["objectKey"]).read_bytes() == b"hello"

    def test_missing_file_is_400(self, client, auth_headers):
        response = client.post(
            "/api/document-upload/direct-upload", data={}, headers=auth_headers
        )

        assert response.status_code == 400
        assert response.json()["message"] == "No file uploaded"


class TestGrantedPut:
    def test_put_with_grant_stores_object(self, client, auth_headers, runtime):
        grant = _upload_url(client, auth_headers).json()["data"]

        response = client.put(grant["uploadUrl"], content=b"%PDF", headers=grant["headers"])

        assert response.status_code == 200
        assert response.json()["data"]["size"] == 4
        assert runtime.storage.object_path(grant["key"]).read_bytes() == b"%PDF"

    def test_tampered_signature_is_forbidden(self, client, auth_headers):
        grant = _upload_url(client, auth_headers).json()["data"]
        url = grant["uploadUrl"].replace("sig=", "sig=00")

        response = client.put(url, content=b"%PDF", headers=grant["headers"])

        assert response.status_code == 403

    def test_other_content_type_is_forbidden(self, client, auth_headers):
        grant = _upload_url(client, auth_headers).json()["data"]

        response = client.put(
            grant["uploadUrl"], content=b"<html>", headers={"Content-Type": "text/html"}
        )

        assert response.status_code == 403
