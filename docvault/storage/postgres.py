from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from docvault.logging import get_logger
from docvault.storage.errors import ConstraintViolation, StoreUnavailable
from docvault.storage.models import (
    ApprovalStatus,
    LoginHistoryEntry,
    RefreshCredential,
    Role,
    Tenant,
    TenantStatus,
    User,
    UserStatus,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS tenant (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        approval_status TEXT NOT NULL DEFAULT 'PENDING',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        tenant_id TEXT NOT NULL REFERENCES tenant(id),
        email TEXT NOT NULL,
        name TEXT,
        role TEXT NOT NULL DEFAULT 'USER',
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (tenant_id, email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id),
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_credential (
        id UUID PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        family_id UUID NOT NULL,
        user_id UUID NOT NULL REFERENCES app_user(id),
        tenant_id TEXT NOT NULL REFERENCES tenant(id),
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        remember_me BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        replaced_by UUID,
        ip_addr TEXT,
        user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_credential_family_idx ON refresh_credential (family_id)",
    "CREATE INDEX IF NOT EXISTS refresh_credential_user_idx ON refresh_credential (user_id)",
    """
    CREATE TABLE IF NOT EXISTS login_history (
        id UUID PRIMARY KEY,
        tenant_id TEXT,
        user_id UUID,
        email TEXT NOT NULL,
        status TEXT NOT NULL,
        ip_addr TEXT,
        user_agent TEXT,
        reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_history_tenant_idx ON login_history (tenant_id, created_at DESC)",
)


class PostgresStore:
    """Postgres-backed credential store.

    Connection failures surface as ``StoreUnavailable`` so the service layer
    can retry them; constraint failures surface as ``ConstraintViolation``.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, PoolTimeout) as exc:
            self.logger.warning("postgres_unavailable", error=str(exc))
            raise StoreUnavailable(str(exc)) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _tenant_from_row(row: Dict[str, Any]) -> Tenant:
        return Tenant(
            id=row["id"],
            name=row["name"],
            status=row.get("status", TenantStatus.ACTIVE),
            approval_status=row.get("approval_status", ApprovalStatus.PENDING),
            created_at=row["created_at"],
        )

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            tenant_id=row["tenant_id"],
            email=row["email"],
            role=row.get("role", Role.USER),
            status=row.get("status", UserStatus.ACTIVE),
            name=row.get("name"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshCredential:
        return RefreshCredential(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            family_id=str(row["family_id"]),
            user_id=str(row["user_id"]),
            tenant_id=row["tenant_id"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            remember_me=bool(row.get("remember_me")),
            revoked_at=row.get("revoked_at"),
            replaced_by=str(row["replaced_by"]) if row.get("replaced_by") else None,
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _history_from_row(row: Dict[str, Any]) -> LoginHistoryEntry:
        return LoginHistoryEntry(
            id=str(row["id"]),
            status=row["status"],
            email=row["email"],
            tenant_id=row.get("tenant_id"),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            reason=row.get("reason"),
            created_at=row["created_at"],
        )

    # -- tenants and users -------------------------------------------------

    def create_tenant(
        self,
        name: str,
        *,
        tenant_id: Optional[str] = None,
        status: str = TenantStatus.ACTIVE,
        approval_status: str = ApprovalStatus.APPROVED,
    ) -> Tenant:
        tid = tenant_id or str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO tenant (id, name, status, approval_status)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (tid, name, status, approval_status),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant already exists", {"tenant_id": tid})
        return self._tenant_from_row(row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenant WHERE id = %s", (tenant_id,)).fetchone()
        return self._tenant_from_row(row) if row else None

    def update_tenant_status(
        self,
        tenant_id: str,
        *,
        status: Optional[str] = None,
        approval_status: Optional[str] = None,
    ) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE tenant
                SET status = COALESCE(%s, status),
                    approval_status = COALESCE(%s, approval_status)
                WHERE id = %s
                RETURNING *
                """,
                (status, approval_status, tenant_id),
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    def create_user(
        self,
        email: str,
        *,
        tenant_id: str,
        role: str = Role.USER,
        status: str = UserStatus.ACTIVE,
        name: Optional[str] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, tenant_id, email, name, role, status)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, tenant_id, email.strip().lower(), name, role, status),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def find_users_by_email(
        self, email: str, tenant_id: Optional[str] = None
    ) -> List[User]:
        normalized = email.strip().lower()
        with self._connect() as conn:
            if tenant_id is None:
                rows = conn.execute(
                    "SELECT * FROM app_user WHERE email = %s", (normalized,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM app_user WHERE email = %s AND tenant_id = %s",
                    (normalized, tenant_id),
                ).fetchall()
        return [self._user_from_row(r) for r in rows]

    def update_user_status(self, user_id: str, status: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s WHERE id = %s RETURNING *",
                (status, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # -- refresh credentials ---------------------------------------------

    @staticmethod
    def _insert_refresh(conn: Any, cred: RefreshCredential) -> None:
        conn.execute(
            """
            INSERT INTO refresh_credential (
                id, token_hash, family_id, user_id, tenant_id, issued_at,
                expires_at, remember_me, revoked_at, replaced_by, ip_addr, user_agent
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                cred.id,
                cred.token_hash,
                cred.family_id,
                cred.user_id,
                cred.tenant_id,
                cred.issued_at,
                cred.expires_at,
                cred.remember_me,
                cred.revoked_at,
                cred.replaced_by,
                cred.ip_addr,
                cred.user_agent,
            ),
        )

    def create_refresh_credential(self, cred: RefreshCredential) -> RefreshCredential:
        try:
            with self._connect() as conn:
                self._insert_refresh(conn, cred)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": cred.user_id})
        return cred

    def get_refresh_credential(self, cred_id: str) -> Optional[RefreshCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_credential WHERE id = %s", (cred_id,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def get_refresh_credential_by_hash(
        self, token_hash: str
    ) -> Optional[RefreshCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_credential WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def rotate_refresh_credential(
        self, current_id: str, successor: RefreshCredential
    ) -> bool:
        """Conditionally retire ``current_id`` and insert ``successor`` atomically.

        The ``revoked_at IS NULL`` predicate is evaluated under the row lock
        taken by UPDATE, so of two concurrent rotations exactly one sees a
        matching row; the other gets no row back and writes nothing.
        """
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        """
                        UPDATE refresh_credential
                        SET revoked_at = now(), replaced_by = %s
                        WHERE id = %s AND revoked_at IS NULL AND expires_at > now()
                        RETURNING id
                        """,
                        (successor.id, current_id),
                    ).fetchone()
                    if not row:
                        return False
                    self._insert_refresh(conn, successor)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token_hash"})
        return True

    def revoke_refresh_credential(self, cred_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_credential SET revoked_at = now()
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (cred_id,),
            ).fetchone()
        return row is not None

    def revoke_refresh_family(self, family_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_credential SET revoked_at = now()
                WHERE family_id = %s AND revoked_at IS NULL
                """,
                (family_id,),
            )
            return cur.rowcount or 0

    def revoke_user_refresh_credentials(
        self, user_id: str, except_family_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_family_id:
                cur = conn.execute(
                    """
                    UPDATE refresh_credential SET revoked_at = now()
                    WHERE user_id = %s AND revoked_at IS NULL AND family_id <> %s
                    """,
                    (user_id, except_family_id),
                )
            else:
                cur = conn.execute(
                    """
                    UPDATE refresh_credential SET revoked_at = now()
                    WHERE user_id = %s AND revoked_at IS NULL
                    """,
                    (user_id,),
                )
            return cur.rowcount or 0

    # -- login history -----------------------------------------------------

    def record_login_attempt(self, entry: LoginHistoryEntry) -> LoginHistoryEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_history (id, tenant_id, user_id, email, status, ip_addr, user_agent, reason, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.tenant_id,
                    entry.user_id,
                    entry.email,
                    entry.status,
                    entry.ip_addr,
                    entry.user_agent,
                    entry.reason,
                    entry.created_at,
                ),
            )
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
        clauses: List[str] = []
        params: List[Any] = []
        if tenant_id is not None:
            clauses.append("tenant_id = %s")
            params.append(tenant_id)
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS c FROM login_history {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM login_history {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        total = int(total_row["c"]) if total_row else 0
        return [self._history_from_row(r) for r in rows], total
