from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator

from docvault.logging import get_correlation_id
from docvault.service.errors import ErrorKind
from docvault.storage.models import LoginHistoryEntry, LoginStatus, User

_VALID_ERROR_CODES = frozenset(kind.value for kind in ErrorKind)


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class CamelModel(BaseModel):
    """Request bodies use the camelCase field names browsers send."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Envelope(BaseModel):
    """Response envelope shared by every endpoint.

    Success: ``{success: true, message, data, requestId}``.
    Failure: ``{success: false, code, message, details, requestId}``.
    """

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    code: Optional[str] = None
    details: Optional[Any] = None
    request_id: str = Field(default_factory=_request_id, alias="requestId")

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class LoginRequest(CamelModel):
    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)
    tenant_id: Optional[str] = Field(default=None, alias="tenantId", max_length=128)
    remember_me: bool = Field(default=False, alias="rememberMe")

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _normalize_unicode(value.strip().lower())


class TokenRefreshRequest(CamelModel):
    # Cookie-less clients may send the token in the body instead
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", max_length=2048)


class PasswordChangeRequest(CamelModel):
    old_password: str = Field(..., alias="oldPassword", min_length=1, max_length=128)
    new_password: str = Field(..., alias="newPassword")

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UploadUrlRequest(CamelModel):
    """Upload grant request; presence checks happen in the grantor so they run in order."""

    file_name: Optional[str] = Field(default=None, alias="fileName", max_length=1024)
    content_type: Optional[str] = Field(default=None, alias="contentType", max_length=255)
    file_size: Optional[StrictInt] = Field(default=None, alias="fileSize")


class ValidateKeyRequest(CamelModel):
    object_key: Optional[str] = Field(default=None, alias="objectKey", max_length=2048)


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    role: str
    status: str
    tenantId: str
    createdAt: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            status=user.status,
            tenantId=user.tenant_id,
            createdAt=user.created_at,
        )


class LoginResponse(BaseModel):
    accessToken: str
    expiresAt: datetime
    user: UserResponse


class RefreshResponse(BaseModel):
    accessToken: str
    expiresAt: datetime


class PasswordChangeResponse(BaseModel):
    revokedSessions: int


class UploadUrlResponse(BaseModel):
    uploadUrl: str
    key: str
    fileName: str
    method: str
    expiresAt: datetime
    headers: dict = Field(default_factory=dict)


class ValidateKeyResponse(BaseModel):
    valid: bool


class DirectUploadResponse(BaseModel):
    objectKey: str
    fileName: str
    size: int
    mimeType: str


class LoginHistoryItem(BaseModel):
    id: str
    status: str
    email: str
    userId: Optional[str] = None
    tenantId: Optional[str] = None
    ipAddress: Optional[str] = None
    userAgent: Optional[str] = None
    reason: Optional[str] = None
    createdAt: datetime

    @classmethod
    def from_entry(cls, entry: LoginHistoryEntry) -> "LoginHistoryItem":
        return cls(
            id=entry.id,
            status=entry.status,
            email=entry.email,
            userId=entry.user_id,
            tenantId=entry.tenant_id,
            ipAddress=entry.ip_addr,
            userAgent=entry.user_agent,
            reason=entry.reason,
            createdAt=entry.created_at,
        )


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class LoginHistoryResponse(BaseModel):
    items: List[LoginHistoryItem]
    pagination: Pagination


def normalize_login_status(value: Optional[str]) -> Optional[str]:
    """Map the ``status`` query parameter to a stored status, or None for all."""
    if not value or value.lower() == "all":
        return None
    upper = value.upper()
    if upper not in LoginStatus.ALL:
        raise ValueError(f"status must be one of: all, {', '.join(sorted(LoginStatus.ALL)).lower()}")
    return upper
