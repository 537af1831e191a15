from __future__ import annotations

import re
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional

from docvault.config import Settings
from docvault.logging import get_logger
from docvault.service.errors import ForbiddenError, NotFoundError, ValidationError
from docvault.service.object_keys import (
    derive_object_key,
    parse_object_key,
    sanitize_file_name,
    validate_object_key_ownership,
)
from docvault.service.resilience import call_with_retry
from docvault.service.storage_backend import StorageBackend, UploadGrant

logger = get_logger(__name__)

READ_CHUNK_BYTES = 1024 * 1024
_CONTENT_TYPE_RE = re.compile(r"^[\w.+-]+/[\w.+-]+(\s*;.*)?$")


@dataclass
class DirectUploadResult:
    object_key: str
    file_name: str
    size: int
    mime_type: str


class UploadGrantor:
    """Issues tenant-scoped upload grants and relays direct uploads."""

    def __init__(self, backend: StorageBackend, settings: Settings) -> None:
        self.backend = backend
        self.settings = settings

    async def _backend(self, op: str, *args):
        return await call_with_retry(
            f"storage.{op}",
            getattr(self.backend, op),
            *args,
            timeout_seconds=self.settings.downstream_timeout_seconds,
            max_retries=self.settings.retry_budget,
            backoff_ms=self.settings.downstream_backoff_ms,
        )

    def _check_content_type(self, content_type: Optional[str]) -> str:
        if not content_type or not content_type.strip():
            raise ValidationError("contentType is required", detail={"field": "contentType"})
        content_type = content_type.strip()
        if not _CONTENT_TYPE_RE.match(content_type):
            raise ValidationError("contentType is malformed", detail={"field": "contentType"})
        return content_type

    def _too_large(self, size: int) -> ValidationError:
        return ValidationError(
            "file exceeds the maximum upload size",
            status_code=413,
            detail={"field": "fileSize", "size": size, "max_bytes": self.settings.max_upload_bytes},
        )

    async def issue_upload_grant(
        self,
        tenant_id: Optional[str],
        file_name: Optional[str],
        content_type: Optional[str],
        file_size: Optional[int],
    ) -> UploadGrant:
        """Validate an upload request and presign a PUT for its derived key.

        ``file_size`` of zero is a valid declaration; ``None`` is not.
        Nothing is persisted here.
        """
        if not file_name or not file_name.strip():
            raise ValidationError("fileName is required", detail={"field": "fileName"})
        content_type = self._check_content_type(content_type)
        if file_size is None:
            raise ValidationError("fileSize is required", detail={"field": "fileSize"})
        if isinstance(file_size, bool) or not isinstance(file_size, int) or file_size < 0:
            raise ValidationError("fileSize must be a non-negative integer", detail={"field": "fileSize"})
        if file_size > self.settings.max_upload_bytes:
            raise self._too_large(file_size)

        key = derive_object_key(tenant_id, file_name)
        grant = await self._backend(
            "generate_upload_grant",
            key,
            content_type,
            self.settings.upload_url_ttl_minutes * 60,
        )
        logger.info(
            "upload_grant_issued",
            tenant_id=tenant_id,
            backend=self.backend.name,
            size=file_size,
            expires_at=grant.expires_at.isoformat(),
        )
        return grant

    def validate_object_key(self, object_key: Optional[str], tenant_id: Optional[str]) -> bool:
        if not object_key:
            raise ValidationError("objectKey is required", detail={"field": "objectKey"})
        if not validate_object_key_ownership(object_key, tenant_id):
            logger.warning("object_key_rejected", tenant_id=tenant_id)
            raise ForbiddenError("Access denied to this object")
        return True

    async def direct_upload(
        self,
        tenant_id: Optional[str],
        *,
        file_name: Optional[str],
        content_type: Optional[str],
        read: Callable[[int], Awaitable[bytes]],
    ) -> DirectUploadResult:
        """Relay an upload through the service.

        The key is derived here, never taken from the client, and the body
        is read in chunks so at most ``max_upload_bytes + 1`` bytes are held.
        """
        if not file_name or not file_name.strip():
            raise ValidationError("No file uploaded", detail={"field": "file"})
        content_type = self._check_content_type(content_type or "application/octet-stream")
        key = derive_object_key(tenant_id, file_name)

        limit = self.settings.max_upload_bytes
        chunks = []
        size = 0
        while True:
            chunk = await read(min(READ_CHUNK_BYTES, limit + 1 - size))
            if not chunk:
                break
            chunks.append(chunk)
            size += len(chunk)
            if size > limit:
                raise self._too_large(size)

        await self._backend("put_object", key, b"".join(chunks), content_type)
        logger.info(
            "direct_upload_stored",
            tenant_id=tenant_id,
            backend=self.backend.name,
            size=size,
        )
        return DirectUploadResult(
            object_key=key,
            file_name=sanitize_file_name(file_name),
            size=size,
            mime_type=content_type,
        )

    async def _read_bounded(self, chunks: AsyncIterator[bytes]) -> bytes:
        limit = self.settings.max_upload_bytes
        body = bytearray()
        async for chunk in chunks:
            body.extend(chunk)
            if len(body) > limit:
                raise self._too_large(len(body))
        return bytes(body)

    async def accept_granted_upload(
        self,
        key: Optional[str],
        expires: Optional[str],
        signature: Optional[str],
        *,
        method: str,
        content_type: Optional[str],
        chunks: AsyncIterator[bytes],
    ) -> int:
        """Store an upload made against a locally signed grant.

        Only backends that sign their own grants (``verify_grant``) accept
        uploads here. Returns the number of bytes written.
        """
        verify = getattr(self.backend, "verify_grant", None)
        if verify is None:
            raise NotFoundError("upload endpoint not enabled")
        if not key or parse_object_key(key) is None:
            raise ForbiddenError("upload grant invalid or expired")
        valid, reason = verify(
            key, expires, signature or "", method=method, content_type=content_type or ""
        )
        if not valid:
            logger.warning("upload_grant_rejected", reason=reason)
            raise ForbiddenError("upload grant invalid or expired")

        body = await self._read_bounded(chunks)
        await self._backend("put_object", key, body, content_type or "")
        return len(body)
