from __future__ import annotations

import re
import secrets
import time
from typing import Optional

from docvault.service.errors import ForbiddenError, ValidationError

# Keys look like ``{tenant_id}/documents/{document_id}-{token}/{file_name}``
DOCUMENTS_SEGMENT = "documents"
MAX_FILE_NAME_LENGTH = 255
UNIQUE_TOKEN_BYTES = 8

_TENANT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")
_DOCUMENT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")
_UNIQUE_TOKEN_RE = re.compile(r"^[0-9a-f]{16}$")
_UNSAFE_NAME_CHARS = re.compile(r"[^\w\-_\. ]")


def new_document_id() -> str:
    return f"doc_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def new_unique_token() -> str:
    return secrets.token_hex(UNIQUE_TOKEN_BYTES)


def sanitize_file_name(file_name: str) -> str:
    """Reduce an untrusted file name to a safe final path segment.

    Directory components are dropped, unsafe characters replaced and leading
    dots stripped so the name can never address a parent or hidden path.
    """
    if "\x00" in file_name:
        raise ValidationError("fileName contains a null byte", detail={"field": "fileName"})
    # Clients on Windows send backslash separated paths
    base = re.split(r"[\\/]", file_name)[-1]
    safe = _UNSAFE_NAME_CHARS.sub("_", base).lstrip(". ").strip()
    # Truncation can expose a trailing space; the result must be a fixed point
    safe = safe[:MAX_FILE_NAME_LENGTH].rstrip()
    return safe or "untitled"


def _require_tenant(tenant_id: Optional[str]) -> str:
    if not tenant_id:
        # A missing tenant on an authenticated caller is a server-side defect
        raise ForbiddenError("tenant context missing")
    if not _TENANT_ID_RE.match(tenant_id):
        raise ForbiddenError("tenant context invalid")
    return tenant_id


def derive_object_key(
    tenant_id: Optional[str],
    file_name: str,
    document_id: Optional[str] = None,
    *,
    unique_token: Optional[str] = None,
) -> str:
    """Build the storage key for a new upload.

    The tenant id is always the first path segment. ``document_id`` and
    ``unique_token`` default to fresh random values; passing both makes the
    result deterministic.
    """
    tenant = _require_tenant(tenant_id)
    doc_id = document_id or new_document_id()
    if not _DOCUMENT_ID_RE.match(doc_id):
        raise ValidationError("invalid document id", detail={"field": "documentId"})
    token = unique_token or new_unique_token()
    if not _UNIQUE_TOKEN_RE.match(token):
        raise ValidationError("invalid uniqueness token")
    return f"{tenant}/{DOCUMENTS_SEGMENT}/{doc_id}-{token}/{sanitize_file_name(file_name)}"


def parse_object_key(key: str) -> Optional[dict]:
    """Split a key into its parts, or None when it is not well formed."""
    if not isinstance(key, str) or not key or "\x00" in key or "\\" in key:
        return None
    parts = key.split("/")
    if len(parts) != 4:
        return None
    tenant, segment, doc_part, name = parts
    if not _TENANT_ID_RE.match(tenant) or segment != DOCUMENTS_SEGMENT:
        return None
    doc_id, sep, token = doc_part.rpartition("-")
    if not sep or not _DOCUMENT_ID_RE.match(doc_id) or not _UNIQUE_TOKEN_RE.match(token):
        return None
    if not name or name != sanitize_file_name(name):
        return None
    return {"tenant_id": tenant, "document_id": doc_id, "unique_token": token, "file_name": name}


def validate_object_key_ownership(key: str, tenant_id: Optional[str]) -> bool:
    """Return whether ``key`` is well formed and belongs to ``tenant_id``.

    Ownership is an exact match on the leading segment; storage is not
    consulted.
    """
    if not tenant_id:
        return False
    parsed = parse_object_key(key)
    if parsed is None:
        return False
    return parsed["tenant_id"] == tenant_id
