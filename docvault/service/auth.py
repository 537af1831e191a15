from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import re
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Generic, List, Optional, Protocol, Tuple, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from docvault.config import Settings
from docvault.logging import get_logger
from docvault.service.errors import ErrorKind, ServiceError
from docvault.service.resilience import call_with_retry, fire_and_forget
from docvault.storage.errors import ConstraintViolation
from docvault.storage.models import (
    LoginHistoryEntry,
    LoginStatus,
    RefreshCredential,
    Role,
    Tenant,
    User,
)

logger = get_logger(__name__)

T = TypeVar("T")

# secrets.token_urlsafe(48) yields 64 url-safe characters
REFRESH_TOKEN_BYTES = 48
_REFRESH_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{43,128}$")

PASSWORD_ALGO = "argon2id"

# Deferred side-effect scheduler, e.g. ``BackgroundTasks.add_task``
Defer = Callable[..., None]


class CredentialStore(Protocol):
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def find_users_by_email(
        self, email: str, tenant_id: Optional[str] = None
    ) -> List[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_refresh_credential(self, cred: RefreshCredential) -> RefreshCredential: ...

    def get_refresh_credential(self, cred_id: str) -> Optional[RefreshCredential]: ...

    def get_refresh_credential_by_hash(
        self, token_hash: str
    ) -> Optional[RefreshCredential]: ...

    def rotate_refresh_credential(
        self, current_id: str, successor: RefreshCredential
    ) -> bool: ...

    def revoke_refresh_credential(self, cred_id: str) -> bool: ...

    def revoke_refresh_family(self, family_id: str) -> int: ...

    def revoke_user_refresh_credentials(
        self, user_id: str, except_family_id: Optional[str] = None
    ) -> int: ...

    def record_login_attempt(self, entry: LoginHistoryEntry) -> LoginHistoryEntry: ...

    def list_login_history(
        self,
        *,
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> Tuple[List[LoginHistoryEntry], int]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    tenant_id: str
    # Refresh family (login session chain) the access token was minted for
    session_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role in Role.ADMIN_ROLES


@dataclass
class IssuedSession:
    """A freshly minted credential pair.

    ``refresh_token`` must only ever leave the server inside the HTTP-only
    cookie; ``access_token`` is returned in the response body.
    """

    user: User
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    family_id: str
    remember_me: bool = False


@dataclass
class AuthOutcome(Generic[T]):
    """Typed result of a session operation: a value or an ``ErrorKind``."""

    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: str = ""
    detail: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T = None, message: str = "") -> "AuthOutcome[T]":
        return cls(value=value, message=message)

    @classmethod
    def failure(
        cls, kind: ErrorKind, message: str, detail: Optional[dict] = None
    ) -> "AuthOutcome[T]":
        return cls(error=kind, message=message, detail=detail or {})

    def unwrap(self, *, status_code: Optional[int] = None) -> T:
        """Return the value or raise the ``ServiceError`` bound to the kind."""
        if self.error is not None:
            raise ServiceError.for_kind(
                self.error, self.message, status_code=status_code, detail=self.detail
            )
        return self.value


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionManager:
    """Login, refresh rotation, logout and access-token verification."""

    INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=30)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _store(self, op: str, *args: Any, **kwargs: Any) -> Any:
        """Invoke a store method with the configured timeout and retry budget."""
        return await call_with_retry(
            f"store.{op}",
            getattr(self.store, op),
            *args,
            timeout_seconds=self.settings.downstream_timeout_seconds,
            max_retries=self.settings.retry_budget,
            backoff_ms=self.settings.downstream_backoff_ms,
            **kwargs,
        )

    async def _side_effect(
        self, label: str, func: Callable[..., Any], *args: Any, defer: Optional[Defer] = None
    ) -> None:
        if defer is not None:
            defer(
                fire_and_forget,
                label,
                func,
                *args,
                timeout_seconds=self.settings.downstream_timeout_seconds,
            )
            return
        await fire_and_forget(
            label, func, *args, timeout_seconds=self.settings.downstream_timeout_seconds
        )

    # -- passwords ---------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _check_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _burn_hash(self, password: str) -> None:
        """Spend one verification so unknown accounts take as long as known ones."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self._check_hash(self._dummy_hash, password)

    async def verify_password(self, user_id: str, password: str) -> bool:
        record = await self._store("get_password_record", user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            self._burn_hash(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        return self._check_hash(stored_hash, password)

    async def set_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        await self._store("save_password", user_id, pwd_hash, algo)

    # -- login -------------------------------------------------------------

    async def _resolve_login_user(
        self, email: str, tenant_hint: Optional[str]
    ) -> Optional[User]:
        users = await self._store("find_users_by_email", email, tenant_hint)
        if len(users) != 1:
            # Without a tenant hint an email shared across tenants is ambiguous
            return None
        return users[0]

    async def login(
        self,
        email: str,
        password: str,
        *,
        tenant_hint: Optional[str] = None,
        remember_me: bool = False,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        defer: Optional[Defer] = None,
    ) -> AuthOutcome[IssuedSession]:
        """Authenticate by email and password and mint a credential pair.

        Unknown email, wrong password and a disabled account or tenant all
        produce the same ``INVALID_CREDENTIALS`` outcome. The attempt is
        recorded in login history as a best-effort side effect, handed to
        ``defer`` when given so it runs after the response.
        """
        history = dict(email=email.strip().lower(), ip_addr=ip_addr, user_agent=user_agent)
        try:
            user = await self._resolve_login_user(email, tenant_hint)
            if user is None:
                self._burn_hash(password)
                await self._record_attempt(
                    LoginStatus.FAILED, tenant_id=tenant_hint, reason="unknown_user",
                    defer=defer, **history,
                )
                return self._invalid_credentials()

            if not await self.verify_password(user.id, password):
                await self._record_attempt(
                    LoginStatus.FAILED, tenant_id=user.tenant_id, user_id=user.id,
                    reason="bad_password", defer=defer, **history,
                )
                return self._invalid_credentials()

            tenant = await self._store("get_tenant", user.tenant_id)
            if not user.is_active or tenant is None or not tenant.can_sign_in:
                reason = "user_inactive" if not user.is_active else "tenant_inactive"
                self.logger.info(
                    "login_blocked", user_id=user.id, tenant_id=user.tenant_id, reason=reason
                )
                await self._record_attempt(
                    LoginStatus.BLOCKED, tenant_id=user.tenant_id, user_id=user.id,
                    reason=reason, defer=defer, **history,
                )
                return self._invalid_credentials()

            issued = await self._open_session(
                user, remember_me=remember_me, ip_addr=ip_addr, user_agent=user_agent
            )
        except ServiceError as exc:
            return AuthOutcome.failure(exc.kind, exc.message, exc.detail)

        await self._record_attempt(
            LoginStatus.SUCCESS, tenant_id=user.tenant_id, user_id=user.id,
            defer=defer, **history,
        )
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            tenant_id=user.tenant_id,
            family_id=issued.family_id,
            remember_me=remember_me,
        )
        return AuthOutcome.success(issued, "Login successful")

    def _invalid_credentials(self) -> AuthOutcome[IssuedSession]:
        return AuthOutcome.failure(
            ErrorKind.INVALID_CREDENTIALS, self.INVALID_CREDENTIALS_MESSAGE
        )

    async def _record_attempt(
        self, status: str, *, defer: Optional[Defer] = None, **fields: Any
    ) -> None:
        entry = LoginHistoryEntry.new(status, **fields)
        await self._side_effect(
            "store.record_login_attempt", self.store.record_login_attempt, entry, defer=defer
        )

    async def _open_session(
        self,
        user: User,
        *,
        remember_me: bool,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> IssuedSession:
        token = secrets.token_urlsafe(REFRESH_TOKEN_BYTES)
        cred = RefreshCredential.new(
            hash_refresh_token(token),
            user_id=user.id,
            tenant_id=user.tenant_id,
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            remember_me=remember_me,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        try:
            await self._store("create_refresh_credential", cred)
        except ConstraintViolation:
            # A timed-out first attempt may have landed before the retry
            existing = await self._store("get_refresh_credential", cred.id)
            if existing is None or existing.token_hash != cred.token_hash:
                raise
        return self._issue(user, cred, token)

    def _issue(self, user: User, cred: RefreshCredential, refresh_token: str) -> IssuedSession:
        access_token, access_exp = self._issue_access_token(user, cred.family_id)
        return IssuedSession(
            user=user,
            access_token=access_token,
            access_expires_at=access_exp,
            refresh_token=refresh_token,
            refresh_expires_at=cred.expires_at,
            family_id=cred.family_id,
            remember_me=cred.remember_me,
        )

    # -- refresh -----------------------------------------------------------

    async def refresh(
        self,
        presented: Optional[str],
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthOutcome[IssuedSession]:
        """Rotate a refresh credential and mint a new pair.

        Presenting a record that was already rotated is treated as theft:
        the whole family is revoked and the caller must sign in again.
        """
        if not presented or not _REFRESH_TOKEN_RE.match(presented):
            return AuthOutcome.failure(ErrorKind.INVALID_TOKEN, "Invalid refresh token")
        try:
            current = await self._store(
                "get_refresh_credential_by_hash", hash_refresh_token(presented)
            )
            if current is None:
                return AuthOutcome.failure(ErrorKind.INVALID_TOKEN, "Invalid refresh token")
            if current.revoked_at is not None:
                return await self._reject_revoked(current)
            if current.is_expired(self._now()):
                return AuthOutcome.failure(ErrorKind.INVALID_TOKEN, "Refresh token expired")

            user = await self._store("get_user", current.user_id)
            tenant = await self._store("get_tenant", current.tenant_id)
            if (
                user is None
                or not user.is_active
                or user.tenant_id != current.tenant_id
                or tenant is None
                or not tenant.can_sign_in
            ):
                await self._store("revoke_refresh_family", current.family_id)
                self.logger.info(
                    "refresh_denied_account_disabled",
                    user_id=current.user_id,
                    family_id=current.family_id,
                )
                return AuthOutcome.failure(ErrorKind.REVOKED, "Session is no longer valid")

            token = secrets.token_urlsafe(REFRESH_TOKEN_BYTES)
            successor = RefreshCredential.new(
                hash_refresh_token(token),
                user_id=current.user_id,
                tenant_id=current.tenant_id,
                ttl_minutes=self.settings.refresh_token_ttl_minutes,
                family_id=current.family_id,
                remember_me=current.remember_me,
                ip_addr=ip_addr or current.ip_addr,
                user_agent=user_agent or current.user_agent,
            )
            rotated = await self._store("rotate_refresh_credential", current.id, successor)
            if not rotated:
                latest = await self._store("get_refresh_credential", current.id)
                if latest is not None and latest.replaced_by == successor.id:
                    # Our own earlier attempt committed before timing out
                    rotated = True
                elif latest is not None and latest.revoked_at is not None:
                    return await self._reject_revoked(latest)
                else:
                    return AuthOutcome.failure(
                        ErrorKind.INVALID_TOKEN, "Refresh token expired"
                    )
        except ServiceError as exc:
            return AuthOutcome.failure(exc.kind, exc.message, exc.detail)

        self.logger.info(
            "refresh_rotated",
            user_id=user.id,
            family_id=successor.family_id,
            replaced=current.id,
        )
        return AuthOutcome.success(self._issue(user, successor, token), "Token refreshed")

    async def _reject_revoked(self, cred: RefreshCredential) -> AuthOutcome[IssuedSession]:
        if cred.replaced_by:
            revoked = await self._store("revoke_refresh_family", cred.family_id)
            self.logger.warning(
                "refresh_reuse_detected",
                user_id=cred.user_id,
                tenant_id=cred.tenant_id,
                family_id=cred.family_id,
                revoked=revoked,
            )
            return AuthOutcome.failure(
                ErrorKind.REVOKED,
                "Refresh token reuse detected; sign in again",
                {"reuse": True},
            )
        return AuthOutcome.failure(ErrorKind.REVOKED, "Refresh token revoked")

    # -- logout ------------------------------------------------------------

    async def logout(self, presented: Optional[str]) -> AuthOutcome[None]:
        """Revoke the presented refresh credential.

        Always succeeds from the caller's point of view: unknown, already
        revoked and unreadable tokens are no-ops, and store failures are
        logged rather than raised.
        """
        if presented and _REFRESH_TOKEN_RE.match(presented):
            try:
                cred = await self._store(
                    "get_refresh_credential_by_hash", hash_refresh_token(presented)
                )
                if cred is not None:
                    changed = await self._store("revoke_refresh_credential", cred.id)
                    self.logger.info(
                        "logout_revoked",
                        user_id=cred.user_id,
                        family_id=cred.family_id,
                        already_revoked=not changed,
                    )
            except ServiceError as exc:
                self.logger.warning("logout_revoke_failed", error_code=exc.error_code)
            except Exception as exc:
                self.logger.error("logout_revoke_failed", error=str(exc))
        return AuthOutcome.success(None, "Logged out successfully")

    # -- authenticated operations -----------------------------------------

    async def change_password(
        self, ctx: AuthContext, old_password: str, new_password: str
    ) -> AuthOutcome[int]:
        """Replace the caller's password and end every other session.

        The session that performed the change (``ctx.session_id``) stays
        valid; the value is the number of refresh credentials revoked.
        """
        try:
            if not await self.verify_password(ctx.user_id, old_password):
                return AuthOutcome.failure(
                    ErrorKind.INVALID_CREDENTIALS, "Current password is incorrect"
                )
            if old_password == new_password:
                return AuthOutcome.failure(
                    ErrorKind.VALIDATION_ERROR,
                    "New password must differ from the current password",
                )
            await self.set_password(ctx.user_id, new_password)
            revoked = await self._store(
                "revoke_user_refresh_credentials", ctx.user_id, ctx.session_id
            )
        except ServiceError as exc:
            return AuthOutcome.failure(exc.kind, exc.message, exc.detail)
        self.logger.info(
            "password_changed", user_id=ctx.user_id, revoked_sessions=revoked
        )
        return AuthOutcome.success(revoked, "Password changed successfully")

    async def get_current_user(self, ctx: AuthContext) -> AuthOutcome[User]:
        try:
            user = await self._store("get_user", ctx.user_id)
        except ServiceError as exc:
            return AuthOutcome.failure(exc.kind, exc.message, exc.detail)
        if user is None or not user.is_active or user.tenant_id != ctx.tenant_id:
            return AuthOutcome.failure(ErrorKind.INVALID_TOKEN, "invalid session")
        return AuthOutcome.success(user, "User retrieved successfully")

    async def list_login_history(
        self,
        ctx: AuthContext,
        *,
        scope: str = "user",
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
    ) -> AuthOutcome[dict]:
        if scope == "tenant" and not ctx.is_admin:
            return AuthOutcome.failure(
                ErrorKind.FORBIDDEN, "tenant login history requires an admin role"
            )
        page = max(1, page)
        limit = max(1, min(limit, 100))
        filters: dict[str, Any] = {"tenant_id": ctx.tenant_id, "status": status}
        if scope != "tenant":
            filters["user_id"] = ctx.user_id
        try:
            items, total = await self._store(
                "list_login_history", limit=limit, offset=(page - 1) * limit, **filters
            )
        except ServiceError as exc:
            return AuthOutcome.failure(exc.kind, exc.message, exc.detail)
        return AuthOutcome.success(
            {
                "items": items,
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": max(1, math.ceil(total / limit)),
                },
            }
        )

    # -- access tokens -----------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm to block alg-confusion tokens
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def _issue_access_token(self, user: User, family_id: str) -> Tuple[str, datetime]:
        now = self._now()
        expires_at = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "sid": family_id,
            "tenant_id": user.tenant_id,
            "role": user.role,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload), expires_at

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Verify a bearer access token by signature and expiry only."""
        token = self._extract_bearer(authorization)
        if not token:
            return None
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        user_id = payload.get("sub")
        tenant_id = payload.get("tenant_id")
        role = payload.get("role")
        if not user_id or not isinstance(tenant_id, str) or not role:
            return None
        return AuthContext(
            user_id=str(user_id),
            role=str(role),
            tenant_id=tenant_id,
            session_id=payload.get("sid"),
        )
