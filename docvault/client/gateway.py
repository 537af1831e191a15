from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import httpx

from docvault.logging import get_logger
from docvault.service.errors import ErrorKind

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
REFRESH_COOKIE_NAME = "refreshToken"

_AUTH_PATHS = ("/api/auth/login", "/api/auth/refresh", "/api/auth/logout")


class GatewayError(Exception):
    """Failed call through the gateway, carrying the server's error kind."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.details = details

    @classmethod
    def from_response(cls, response: httpx.Response) -> "GatewayError":
        body = _json_body(response)
        return cls(
            _error_kind(body.get("code"), response.status_code),
            body.get("message") or f"request failed with status {response.status_code}",
            status_code=response.status_code,
            details=body.get("details"),
        )


class LoginFailed(GatewayError):
    """Sign-in was refused; ``kind`` says why."""


class SessionExpired(GatewayError):
    """The refresh credential is gone; the user has to sign in again."""


def _json_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return body if isinstance(body, dict) else {}


def _error_kind(code: Optional[str], status_code: int) -> ErrorKind:
    try:
        return ErrorKind(code)
    except ValueError:
        if status_code == 401:
            return ErrorKind.INVALID_TOKEN
        if status_code in (502, 503, 504):
            return ErrorKind.UNAVAILABLE
        return ErrorKind.SERVER_ERROR


class TokenStore(Protocol):
    def load(self) -> Optional[Dict[str, Any]]: ...

    def save(self, state: Dict[str, Any]) -> None: ...

    def clear(self) -> None: ...


class MemoryTokenStore:
    """Session-scoped storage; forgotten when the process ends."""

    def __init__(self) -> None:
        self._state: Optional[Dict[str, Any]] = None

    def load(self) -> Optional[Dict[str, Any]]:
        return dict(self._state) if self._state else None

    def save(self, state: Dict[str, Any]) -> None:
        self._state = dict(state)

    def clear(self) -> None:
        self._state = None


class FileTokenStore:
    """Persistent storage for remembered sessions, readable only by the owner."""

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)

    def load(self) -> Optional[Dict[str, Any]]:
        try:
            state = json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("token_store_unreadable", path=str(self.path), error=str(exc))
            return None
        return state if isinstance(state, dict) else None

    def save(self, state: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as handle:
            json.dump(state, handle)
        tmp_path.replace(self.path)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class SessionContext:
    """Single source of truth for where the client's credentials live.

    A session that was not remembered is kept in ``session_store`` only and
    ends with the process. A remembered one is written to
    ``persistent_store`` (when configured) together with the refresh cookie
    so it survives a restart.
    """

    def __init__(
        self,
        *,
        session_store: Optional[TokenStore] = None,
        persistent_store: Optional[TokenStore] = None,
    ) -> None:
        self.session_store = session_store or MemoryTokenStore()
        self.persistent_store = persistent_store
        self.remember_me = bool(persistent_store and persistent_store.load())

    @property
    def store(self) -> TokenStore:
        if self.remember_me and self.persistent_store is not None:
            return self.persistent_store
        return self.session_store

    @property
    def state(self) -> Dict[str, Any]:
        return self.store.load() or {}

    @property
    def access_token(self) -> Optional[str]:
        return self.state.get("accessToken")

    @property
    def refresh_token(self) -> Optional[str]:
        return self.state.get("refreshToken")

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        return self.state.get("user")

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token)

    def begin(
        self,
        access_token: str,
        *,
        remember_me: bool,
        user: Optional[Dict[str, Any]] = None,
        refresh_token: Optional[str] = None,
    ) -> None:
        self.clear()
        self.remember_me = remember_me
        state: Dict[str, Any] = {"accessToken": access_token, "user": user}
        if self.store is self.persistent_store and refresh_token:
            state["refreshToken"] = refresh_token
        self.store.save(state)

    def update(self, access_token: str, *, refresh_token: Optional[str] = None) -> None:
        state = self.state
        state["accessToken"] = access_token
        if self.store is self.persistent_store and refresh_token:
            state["refreshToken"] = refresh_token
        self.store.save(state)

    def clear(self) -> None:
        self.session_store.clear()
        if self.persistent_store is not None:
            self.persistent_store.clear()
        self.remember_me = False


class GatewayClient:
    """Authenticated HTTP client for the document gateway.

    Every request carries the current access token. A 401 for an expired
    or unknown access token triggers one refresh shared by all requests
    that hit it, after which each of them is replayed exactly once.
    """

    def __init__(
        self,
        base_url: str,
        *,
        context: Optional[SessionContext] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cookie_name: str = REFRESH_COOKIE_NAME,
    ) -> None:
        self.context = context or SessionContext()
        self.cookie_name = cookie_name
        self._http = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )
        self._refresh_task: Optional[asyncio.Task] = None
        self.refresh_count = 0

    async def __aenter__(self) -> "GatewayClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.debug("client_refresh_aborted", error=str(exc))
        await self._http.aclose()

    def _refresh_cookie(self) -> Optional[str]:
        return self._http.cookies.get(self.cookie_name)

    # -- session lifecycle -------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        *,
        tenant_id: Optional[str] = None,
        remember_me: bool = False,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "email": email,
            "password": password,
            "rememberMe": remember_me,
        }
        if tenant_id:
            payload["tenantId"] = tenant_id
        response = await self._http.post("/api/auth/login", json=payload)
        body = _json_body(response)
        if response.status_code != 200 or not body.get("success"):
            error = GatewayError.from_response(response)
            raise LoginFailed(
                error.kind, error.message, status_code=error.status_code, details=error.details
            )
        data = body["data"]
        self.context.begin(
            data["accessToken"],
            remember_me=remember_me,
            user=data.get("user"),
            refresh_token=self._refresh_cookie(),
        )
        return data.get("user") or {}

    async def logout(self) -> None:
        try:
            await self._http.post("/api/auth/logout")
        except httpx.HTTPError as exc:
            logger.warning("logout_request_failed", error=str(exc))
        finally:
            self.context.clear()
            self._http.cookies.clear()

    async def _do_refresh(self) -> str:
        self.refresh_count += 1
        payload = None
        if self.context.refresh_token:
            # Remembered sessions restored from disk have no cookie jar yet
            payload = {"refreshToken": self.context.refresh_token}
        try:
            response = await self._http.post("/api/auth/refresh", json=payload)
        except httpx.HTTPError as exc:
            raise GatewayError(ErrorKind.UNAVAILABLE, f"refresh failed: {exc}") from exc

        body = _json_body(response)
        if response.status_code == 200 and body.get("success"):
            token = body["data"]["accessToken"]
            self.context.update(token, refresh_token=self._refresh_cookie())
            logger.info("client_session_refreshed")
            return token

        error = GatewayError.from_response(response)
        if error.kind.retryable:
            raise error
        self.context.clear()
        self._http.cookies.clear()
        logger.info("client_session_expired", error_code=error.kind.value)
        raise SessionExpired(
            error.kind, error.message, status_code=error.status_code, details=error.details
        )

    async def _refresh_once(self, stale_token: Optional[str]) -> str:
        """Return a fresh access token, joining any refresh already in flight."""
        current = self.context.access_token
        if current and current != stale_token:
            # Another request refreshed after this one was sent
            return current
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._do_refresh())
        # Shielded so one cancelled waiter does not abort the shared refresh
        return await asyncio.shield(self._refresh_task)

    # -- requests ----------------------------------------------------------

    async def _send(
        self, method: str, url: str, token: Optional[str], **kwargs: Any
    ) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return await self._http.request(method, url, headers=headers, **kwargs)

    @staticmethod
    def _needs_refresh(url: str, response: httpx.Response) -> bool:
        if response.status_code != 401 or url in _AUTH_PATHS:
            return False
        code = _json_body(response).get("code")
        return code in (None, ErrorKind.INVALID_TOKEN.value)

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        token = self.context.access_token
        if not token:
            raise SessionExpired(ErrorKind.INVALID_TOKEN, "not signed in")
        response = await self._send(method, url, token, **kwargs)
        if not self._needs_refresh(url, response):
            return response
        fresh = await self._refresh_once(token)
        return await self._send(method, url, fresh, **kwargs)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def call(self, method: str, url: str, **kwargs: Any) -> Any:
        """Send a request and return the envelope's ``data`` or raise ``GatewayError``."""
        response = await self.request(method, url, **kwargs)
        body = _json_body(response)
        if response.is_success and body.get("success"):
            return body.get("data")
        raise GatewayError.from_response(response)

    # -- documents ---------------------------------------------------------

    async def current_user(self) -> Dict[str, Any]:
        return await self.call("GET", "/api/auth/me")

    async def request_upload_grant(
        self, file_name: str, content_type: str, file_size: Optional[int]
    ) -> Dict[str, Any]:
        return await self.call(
            "POST",
            "/api/document-upload/upload-url",
            json={"fileName": file_name, "contentType": content_type, "fileSize": file_size},
        )

    async def validate_object_key(self, object_key: str) -> bool:
        try:
            data = await self.call(
                "POST", "/api/document-upload/validate", json={"objectKey": object_key}
            )
        except GatewayError as exc:
            if exc.kind == ErrorKind.FORBIDDEN:
                return False
            raise
        return bool(data and data.get("valid"))

    async def direct_upload(
        self, file_name: str, content: bytes, content_type: str
    ) -> Dict[str, Any]:
        return await self.call(
            "POST",
            "/api/document-upload/direct-upload",
            files={"file": (file_name, content, content_type)},
        )

    async def upload_to_grant(self, grant: Dict[str, Any], content: bytes) -> httpx.Response:
        """PUT ``content`` to a grant URL.

        The bearer token is deliberately left off: grant URLs may point at a
        third-party object store.
        """
        response = await self._http.request(
            grant.get("method", "PUT"),
            grant["uploadUrl"],
            content=content,
            headers=grant.get("headers") or {},
        )
        if not response.is_success:
            raise GatewayError.from_response(response)
        return response
