from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from docvault.logging import get_logger
from docvault.service.fs import generate_signed_url, safe_join, validate_signed_url
from docvault.service.resilience import StorageUnavailable

logger = get_logger(__name__)

UPLOAD_METHOD = "PUT"


@dataclass
class UploadGrant:
    """Time-boxed capability to write exactly one object."""

    url: str
    key: str
    method: str
    content_type: str
    expires_at: datetime
    # Headers the client must send with the upload for the grant to hold
    headers: Dict[str, str] = field(default_factory=dict)


class StorageBackend(Protocol):
    name: str

    async def generate_upload_grant(
        self, key: str, content_type: str, expires_in_seconds: int
    ) -> UploadGrant: ...

    async def put_object(self, key: str, body: bytes, content_type: str) -> None: ...

    async def verify_connection(self) -> None: ...


class S3StorageBackend:
    """Presigned PUT grants and server-side relays against an S3 bucket."""

    name = "s3"

    def __init__(
        self,
        bucket: str,
        *,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        session: Optional[aioboto3.Session] = None,
    ) -> None:
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.session = session or aioboto3.Session()

    def _client(self):
        return self.session.client(
            "s3", region_name=self.region, endpoint_url=self.endpoint_url
        )

    async def generate_upload_grant(
        self, key: str, content_type: str, expires_in_seconds: int
    ) -> UploadGrant:
        expires_at = datetime.fromtimestamp(time.time() + expires_in_seconds, timezone.utc)
        try:
            async with self._client() as s3:
                url = await s3.generate_presigned_url(
                    "put_object",
                    Params={
                        "Bucket": self.bucket,
                        "Key": key,
                        "ContentType": content_type,
                    },
                    ExpiresIn=expires_in_seconds,
                    HttpMethod=UPLOAD_METHOD,
                )
        except (BotoCoreError, ClientError) as exc:
            logger.warning("s3_presign_failed", error_type=type(exc).__name__)
            raise StorageUnavailable(str(exc)) from exc
        return UploadGrant(
            url=url,
            key=key,
            method=UPLOAD_METHOD,
            content_type=content_type,
            expires_at=expires_at,
            headers={"Content-Type": content_type},
        )

    async def put_object(self, key: str, body: bytes, content_type: str) -> None:
        try:
            async with self._client() as s3:
                await s3.put_object(
                    Bucket=self.bucket, Key=key, Body=body, ContentType=content_type
                )
        except (BotoCoreError, ClientError) as exc:
            logger.warning("s3_put_failed", error_type=type(exc).__name__)
            raise StorageUnavailable(str(exc)) from exc

    async def verify_connection(self) -> None:
        try:
            async with self._client() as s3:
                await s3.head_bucket(Bucket=self.bucket)
        except (BotoCoreError, ClientError) as exc:
            raise StorageUnavailable(str(exc)) from exc


class LocalStorageBackend:
    """Filesystem object store that honours HMAC-signed upload grants.

    Grants point at the service's own ``PUT /api/storage/objects`` endpoint
    and are only accepted while unexpired. ``clock`` is injectable so grant
    lifetimes can be checked at exact instants.
    """

    name = "local"

    def __init__(
        self,
        root: str,
        secret: str,
        *,
        base_url: str = "",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.root = Path(root) / "objects"
        self.secret = secret
        self.endpoint = f"{base_url.rstrip('/')}/api/storage/objects"
        self.clock = clock

    async def generate_upload_grant(
        self, key: str, content_type: str, expires_in_seconds: int
    ) -> UploadGrant:
        url, expires_at = generate_signed_url(
            key,
            content_type,
            self.secret,
            method=UPLOAD_METHOD,
            expiry_seconds=expires_in_seconds,
            base_url=self.endpoint,
            now=self.clock(),
        )
        return UploadGrant(
            url=url,
            key=key,
            method=UPLOAD_METHOD,
            content_type=content_type,
            expires_at=datetime.fromtimestamp(expires_at, timezone.utc),
            headers={"Content-Type": content_type},
        )

    def verify_grant(
        self,
        key: str,
        expires: Any,
        signature: str,
        *,
        method: str,
        content_type: str,
    ) -> Tuple[bool, Optional[str]]:
        return validate_signed_url(
            key,
            expires,
            signature,
            method=method,
            content_type=content_type,
            secret_key=self.secret,
            clock=self.clock,
        )

    def object_path(self, key: str) -> Path:
        return safe_join(self.root, key)

    def _write(self, key: str, body: bytes) -> None:
        path = self.object_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp")
        tmp_path.write_bytes(body)
        tmp_path.replace(path)

    async def put_object(self, key: str, body: bytes, content_type: str) -> None:
        try:
            await asyncio.to_thread(self._write, key, body)
        except OSError as exc:
            logger.warning("local_put_failed", error_type=type(exc).__name__)
            raise StorageUnavailable(str(exc)) from exc
        logger.info("local_object_written", key=key, size=len(body), content_type=content_type)

    async def verify_connection(self) -> None:
        try:
            await asyncio.to_thread(self.root.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageUnavailable(str(exc)) from exc
