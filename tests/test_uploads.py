"""Tests for upload grants, key validation and relayed uploads."""

import io
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import pytest
from botocore.exceptions import ClientError

from docvault.config import Settings
from docvault.service.errors import (
    ErrorKind,
    ForbiddenError,
    UnavailableError,
    ValidationError,
)
from docvault.service.object_keys import derive_object_key, validate_object_key_ownership
from docvault.service.storage_backend import LocalStorageBackend, S3StorageBackend
from docvault.service.uploads import UploadGrantor

MAX_BYTES = 16


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="unit-test-secret-with-enough-length-000",
        max_upload_bytes=MAX_BYTES,
        upload_url_ttl_minutes=5,
        downstream_backoff_ms=0,
        downstream_max_retries=1,
    )


@pytest.fixture
def clock():
    return {"now": 1_000.0}


@pytest.fixture
def backend(tmp_path, clock):
    return LocalStorageBackend(
        str(tmp_path), "grant-secret", base_url="http://testserver", clock=lambda: clock["now"]
    )


@pytest.fixture
def grantor(backend, settings):
    return UploadGrantor(backend, settings)


async def _chunks(*parts):
    for part in parts:
        yield part


def _grant_params(grant):
    query = parse_qs(urlparse(grant.url).query)
    return query["key"][0], query["expires"][0], query["sig"][0]


class TestIssueUploadGrant:
    async def test_grant_is_short_lived_and_tenant_scoped(self, grantor):
        grant = await grantor.issue_upload_grant("acme", "report.pdf", "application/pdf", 12)

        assert grant.url.startswith("http://testserver/api/storage/objects?")
        assert grant.method == "PUT"
        assert grant.expires_at == datetime.fromtimestamp(1_300, timezone.utc)
        assert grant.headers == {"Content-Type": "application/pdf"}
        assert validate_object_key_ownership(grant.key, "acme")
        assert grant.key.endswith("/report.pdf")

    async def test_zero_size_is_valid(self, grantor):
        grant = await grantor.issue_upload_grant("acme", "empty.txt", "text/plain", 0)

        assert grant.key.startswith("acme/documents/")

    async def test_missing_size_is_rejected(self, grantor):
        with pytest.raises(ValidationError) as exc_info:
            await grantor.issue_upload_grant("acme", "a.txt", "text/plain", None)

        assert exc_info.value.detail["field"] == "fileSize"

    async def test_fields_are_checked_in_order(self, grantor):
        with pytest.raises(ValidationError) as missing_all:
            await grantor.issue_upload_grant("acme", None, None, None)
        with pytest.raises(ValidationError) as missing_type:
            await grantor.issue_upload_grant("acme", "a.txt", "", None)

        assert missing_all.value.detail["field"] == "fileName"
        assert missing_type.value.detail["field"] == "contentType"

    @pytest.mark.parametrize("size", [-1, True, "12"])
    async def test_bad_sizes_are_rejected(self, grantor, size):
        with pytest.raises(ValidationError):
            await grantor.issue_upload_grant("acme", "a.txt", "text/plain", size)

    async def test_oversized_declaration_is_413(self, grantor):
        with pytest.raises(ValidationError) as exc_info:
            await grantor.issue_upload_grant("acme", "a.txt", "text/plain", MAX_BYTES + 1)

        assert exc_info.value.status_code == 413
        assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR

    async def test_malformed_content_type_is_rejected(self, grantor):
        with pytest.raises(ValidationError):
            await grantor.issue_upload_grant("acme", "a.txt", "not a mime", 1)

    async def test_missing_tenant_fails_closed(self, grantor):
        with pytest.raises(ForbiddenError):
            await grantor.issue_upload_grant(None, "a.txt", "text/plain", 1)


class TestValidateObjectKey:
    def test_missing_key_is_validation_error(self, grantor):
        with pytest.raises(ValidationError):
            grantor.validate_object_key(None, "acme")

    def test_foreign_key_is_forbidden(self, grantor):
        key = derive_object_key("globex", "plan.pdf")

        with pytest.raises(ForbiddenError) as exc_info:
            grantor.validate_object_key(key, "acme")

        assert exc_info.value.message == "Access denied to this object"
        assert "globex" not in exc_info.value.message

    def test_own_key_is_valid(self, grantor):
        assert grantor.validate_object_key(derive_object_key("acme", "plan.pdf"), "acme")


class TestDirectUpload:
    async def test_relay_writes_under_derived_key(self, grantor, backend):
        body = io.BytesIO(b"hello world")

        async def read(size):
            return body.read(size)

        result = await grantor.direct_upload(
            "acme", file_name="../notes.txt", content_type="text/plain", read=read
        )

        assert result.size == 11
        assert result.file_name == "notes.txt"
        assert result.object_key.startswith("acme/documents/")
        assert backend.object_path(result.object_key).read_bytes() == b"hello world"

    async def test_oversized_body_is_413_and_not_stored(self, grantor, backend):
        body = io.BytesIO(b"x" * (MAX_BYTES + 5))

        async def read(size):
            return body.read(size)

        with pytest.raises(ValidationError) as exc_info:
            await grantor.direct_upload(
                "acme", file_name="big.bin", content_type=None, read=read
            )

        assert exc_info.value.status_code == 413
        assert not (backend.root / "acme").exists()

    async def test_missing_file_name(self, grantor):
        async def read(size):
            return b""

        with pytest.raises(ValidationError):
            await grantor.direct_upload("acme", file_name=None, content_type=None, read=read)


class TestGrantedUpload:
    async def test_upload_within_lifetime_is_stored(self, grantor, backend, clock):
        grant = await grantor.issue_upload_grant("acme", "a.pdf", "application/pdf", 4)
        key, expires, sig = _grant_params(grant)
        clock["now"] = float(expires)

        size = await grantor.accept_granted_upload(
            key, expires, sig, method="PUT", content_type="application/pdf",
            chunks=_chunks(b"%P", b"DF"),
        )

        assert size == 4
        assert backend.object_path(key).read_bytes() == b"%PDF"

    async def test_expired_grant_is_forbidden(self, grantor, clock):
        grant = await grantor.issue_upload_grant("acme", "a.pdf", "application/pdf", 4)
        key, expires, sig = _grant_params(grant)
        clock["now"] = float(expires) + 1

        with pytest.raises(ForbiddenError):
            await grantor.accept_granted_upload(
                key, expires, sig, method="PUT", content_type="application/pdf",
                chunks=_chunks(b"%PDF"),
            )

    async def test_content_type_must_match_grant(self, grantor):
        grant = await grantor.issue_upload_grant("acme", "a.pdf", "application/pdf", 4)
        key, expires, sig = _grant_params(grant)

        with pytest.raises(ForbiddenError):
            await grantor.accept_granted_upload(
                key, expires, sig, method="PUT", content_type="text/html",
                chunks=_chunks(b"<script>"),
            )

    async def test_oversized_granted_body_is_rejected(self, grantor):
        grant = await grantor.issue_upload_grant("acme", "a.bin", "application/octet-stream", 4)
        key, expires, sig = _grant_params(grant)

        with pytest.raises(ValidationError):
            await grantor.accept_granted_upload(
                key, expires, sig, method="PUT", content_type="application/octet-stream",
                chunks=_chunks(b"x" * MAX_BYTES, b"y"),
            )


class _FakeS3Client:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def generate_presigned_url(self, operation, **kwargs):
        if self.fail:
            raise ClientError({"Error": {"Code": "500", "Message": "boom"}}, "PutObject")
        self.calls.append((operation, kwargs))
        return f"https://bucket.s3.example/{kwargs['Params']['Key']}?X-Amz-Signature=abc"

    async def put_object(self, **kwargs):
        self.calls.append(("put_object", kwargs))


class _FakeSession:
    def __init__(self, client):
        self._client = client

    def client(self, service, **kwargs):
        assert service == "s3"
        return self._client


class TestS3Backend:
    async def test_presign_binds_key_and_content_type(self, settings):
        client = _FakeS3Client()
        grantor = UploadGrantor(
            S3StorageBackend("docs", session=_FakeSession(client)), settings
        )

        grant = await grantor.issue_upload_grant("acme", "a.pdf", "application/pdf", 4)

        operation, kwargs = client.calls[0]
        assert operation == "put_object"
        assert kwargs["Params"] == {
            "Bucket": "docs",
            "Key": grant.key,
            "ContentType": "application/pdf",
        }
        assert kwargs["ExpiresIn"] == 300
        assert kwargs["HttpMethod"] == "PUT"
        assert grant.url.startswith("https://bucket.s3.example/acme/documents/")

    async def test_backend_failure_surfaces_as_unavailable(self, settings):
        grantor = UploadGrantor(
            S3StorageBackend("docs", session=_FakeSession(_FakeS3Client(fail=True))),
            settings,
        )

        with pytest.raises(UnavailableError):
            await grantor.issue_upload_grant("acme", "a.pdf", "application/pdf", 4)
