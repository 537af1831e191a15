from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus:
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"
    # Terminal; users are never hard-deleted while audit history references them
    REMOVED = "REMOVED"


class TenantStatus:
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class ApprovalStatus:
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Role:
    USER = "USER"
    TENANT_ADMIN = "TENANT_ADMIN"
    MASTER_ADMIN = "MASTER_ADMIN"

    ADMIN_ROLES = frozenset({TENANT_ADMIN, MASTER_ADMIN})


class LoginStatus:
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"

    ALL = frozenset({SUCCESS, FAILED, BLOCKED})


@dataclass
class Tenant:
    id: str
    name: str
    status: str = TenantStatus.ACTIVE
    approval_status: str = ApprovalStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)

    @property
    def can_sign_in(self) -> bool:
        return (
            self.status == TenantStatus.ACTIVE
            and self.approval_status == ApprovalStatus.APPROVED
        )


@dataclass
class User:
    id: str
    tenant_id: str
    email: str
    role: str = Role.USER
    status: str = UserStatus.ACTIVE
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


@dataclass
class RefreshCredential:
    """Persisted half of a login session.

    Only the SHA-256 digest of the opaque token is stored. ``family_id`` is
    shared by every record rotated out of the same login; ``replaced_by``
    points at the successor once the record has been rotated.
    """

    id: str
    token_hash: str
    family_id: str
    user_id: str
    tenant_id: str
    issued_at: datetime
    expires_at: datetime
    remember_me: bool = False
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        token_hash: str,
        *,
        user_id: str,
        tenant_id: str,
        ttl_minutes: int,
        family_id: Optional[str] = None,
        remember_me: bool = False,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "RefreshCredential":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token_hash=token_hash,
            family_id=family_id or str(uuid.uuid4()),
            user_id=user_id,
            tenant_id=tenant_id,
            issued_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            remember_me=remember_me,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    @property
    def state(self) -> str:
        """``active``, ``rotated`` or ``revoked``; only ``active`` may transition."""
        if self.revoked_at is None:
            return "active"
        return "rotated" if self.replaced_by else "revoked"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class LoginHistoryEntry:
    id: str
    status: str
    email: str
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, status: str, email: str, **kwargs) -> "LoginHistoryEntry":
        return cls(id=str(uuid.uuid4()), status=status, email=email, **kwargs)
