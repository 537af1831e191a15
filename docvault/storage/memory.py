from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from docvault.logging import get_logger
from docvault.storage.errors import ConstraintViolation
from docvault.storage.models import (
    ApprovalStatus,
    LoginHistoryEntry,
    RefreshCredential,
    Role,
    Tenant,
    TenantStatus,
    User,
    UserStatus,
    utcnow,
)


class MemoryStore:
    """In-process credential store for tests and local development.

    Every read and write takes ``_data_lock`` so multi-step operations such
    as refresh rotation are atomic with respect to other threads. When a
    ``state_path`` is given the store is snapshotted to JSON after each
    write and reloaded on start.
    """

    def __init__(self, state_path: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_credentials: Dict[str, RefreshCredential] = {}
        self._refresh_by_hash: Dict[str, str] = {}
        self.login_history: List[LoginHistoryEntry] = []
        # RLock so helpers can re-enter while a caller already holds it
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path:
            self._load_state()

    # -- tenants and users -------------------------------------------------

    def create_tenant(
        self,
        name: str,
        *,
        tenant_id: Optional[str] = None,
        status: str = TenantStatus.ACTIVE,
        approval_status: str = ApprovalStatus.APPROVED,
    ) -> Tenant:
        with self._data_lock:
            tid = tenant_id or str(uuid.uuid4())
            if tid in self.tenants:
                raise ConstraintViolation("tenant already exists", {"tenant_id": tid})
            tenant = Tenant(
                id=tid, name=name, status=status, approval_status=approval_status
            )
            self.tenants[tid] = tenant
            self._persist_state()
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def update_tenant_status(
        self,
        tenant_id: str,
        *,
        status: Optional[str] = None,
        approval_status: Optional[str] = None,
    ) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            if status:
                tenant.status = status
            if approval_status:
                tenant.approval_status = approval_status
            self._persist_state()
            return tenant

    def create_user(
        self,
        email: str,
        *,
        tenant_id: str,
        role: str = Role.USER,
        status: str = UserStatus.ACTIVE,
        name: Optional[str] = None,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            if any(
                u.email == normalized and u.tenant_id == tenant_id
                for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                email=normalized,
                role=role,
                status=status,
                name=name,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def find_users_by_email(
        self, email: str, tenant_id: Optional[str] = None
    ) -> List[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return [
                u
                for u in self.users.values()
                if u.email == normalized and (tenant_id is None or u.tenant_id == tenant_id)
            ]

    def update_user_status(self, user_id: str, status: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = status
            self._persist_state()
            return user

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- refresh credentials ---------------------------------------------

    def create_refresh_credential(self, cred: RefreshCredential) -> RefreshCredential:
        with self._data_lock:
            if cred.token_hash in self._refresh_by_hash:
                raise ConstraintViolation("refresh token collision", {"field": "token_hash"})
            if cred.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": cred.user_id})
            self.refresh_credentials[cred.id] = cred
            self._refresh_by_hash[cred.token_hash] = cred.id
            self._persist_state()
            return cred

    def get_refresh_credential(self, cred_id: str) -> Optional[RefreshCredential]:
        with self._data_lock:
            return self.refresh_credentials.get(cred_id)

    def get_refresh_credential_by_hash(
        self, token_hash: str
    ) -> Optional[RefreshCredential]:
        with self._data_lock:
            cred_id = self._refresh_by_hash.get(token_hash)
            return self.refresh_credentials.get(cred_id) if cred_id else None

    def rotate_refresh_credential(
        self, current_id: str, successor: RefreshCredential
    ) -> bool:
        """Mark ``current_id`` rotated and insert ``successor`` in one step.

        Returns False, without writing anything, when the current record is
        missing, already revoked or expired.
        """
        with self._data_lock:
            current = self.refresh_credentials.get(current_id)
            now = utcnow()
            if current is None or current.revoked_at is not None or current.is_expired(now):
                return False
            if successor.token_hash in self._refresh_by_hash:
                raise ConstraintViolation("refresh token collision", {"field": "token_hash"})
            current.revoked_at = now
            current.replaced_by = successor.id
            self.refresh_credentials[successor.id] = successor
            self._refresh_by_hash[successor.token_hash] = successor.id
            self._persist_state()
            return True

    def revoke_refresh_credential(self, cred_id: str) -> bool:
        """Revoke one record; revoking a terminal record is a no-op."""
        with self._data_lock:
            cred = self.refresh_credentials.get(cred_id)
            if not cred or cred.revoked_at is not None:
                return False
            cred.revoked_at = utcnow()
            self._persist_state()
            return True

    def revoke_refresh_family(self, family_id: str) -> int:
        with self._data_lock:
            now = utcnow()
            revoked = 0
            for cred in self.refresh_credentials.values():
                if cred.family_id == family_id and cred.revoked_at is None:
                    cred.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def revoke_user_refresh_credentials(
        self, user_id: str, except_family_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            now = utcnow()
            revoked = 0
            for cred in self.refresh_credentials.values():
                if cred.user_id != user_id or cred.revoked_at is not None:
                    continue
                if except_family_id and cred.family_id == except_family_id:
                    continue
                cred.revoked_at = now
                revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    # -- login history -----------------------------------------------------

    def record_login_attempt(self, entry: LoginHistoryEntry) -> LoginHistoryEntry:
        with self._data_lock:
            self.login_history.append(entry)
            self._persist_state()
            return entry

    def list_login_history(
        self,
        *,
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> Tuple[List[LoginHistoryEntry], int]:
        with self._data_lock:
            matches = [
                e
                for e in self.login_history
                if (tenant_id is None or e.tenant_id == tenant_id)
                and (user_id is None or e.user_id == user_id)
                and (status is None or e.status == status)
            ]
        matches.sort(key=lambda e: e.created_at, reverse=True)
        return matches[offset : offset + limit], len(matches)

    def verify_connection(self) -> None:
        return None

    # -- JSON snapshot -----------------------------------------------------

    @staticmethod
    def _serialize(obj) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _parse_dates(raw: dict, *keys: str) -> dict:
        data = dict(raw)
        for key in keys:
            if data.get(key):
                data[key] = datetime.fromisoformat(data[key])
        return data

    def _persist_state(self) -> None:
        if not self.state_path:
            return
        with self._data_lock:
            payload = {
                "tenants": [self._serialize(t) for t in self.tenants.values()],
                "users": [self._serialize(u) for u in self.users.values()],
                "credentials": [
                    {"user_id": uid, "password_hash": h, "password_algo": a}
                    for uid, (h, a) in self.credentials.items()
                ],
                "refresh_credentials": [
                    self._serialize(c) for c in self.refresh_credentials.values()
                ],
                "login_history": [self._serialize(e) for e in self.login_history],
            }
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.state_path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(payload))
            tmp_path.replace(self.state_path)

    def _load_state(self) -> bool:
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.tenants = {
            t["id"]: Tenant(**self._parse_dates(t, "created_at"))
            for t in data.get("tenants", [])
        }
        self.users = {
            u["id"]: User(**self._parse_dates(u, "created_at"))
            for u in data.get("users", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.refresh_credentials = {
            c["id"]: RefreshCredential(
                **self._parse_dates(c, "issued_at", "expires_at", "revoked_at")
            )
            for c in data.get("refresh_credentials", [])
        }
        self._refresh_by_hash = {
            c.token_hash: c.id for c in self.refresh_credentials.values()
        }
        self.login_history = [
            LoginHistoryEntry(**self._parse_dates(e, "created_at"))
            for e in data.get("login_history", [])
        ]
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            refresh_credentials=len(self.refresh_credentials),
        )
        return True
