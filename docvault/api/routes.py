from __future__ import annotations

from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Header,
    Query,
    Request,
    Response,
    UploadFile,
)

from docvault.api.error_handling import _error_response
from docvault.api.schemas import (
    DirectUploadResponse,
    Envelope,
    LoginHistoryItem,
    LoginHistoryResponse,
    LoginRequest,
    LoginResponse,
    Pagination,
    PasswordChangeRequest,
    PasswordChangeResponse,
    RefreshResponse,
    TokenRefreshRequest,
    UploadUrlRequest,
    UploadUrlResponse,
    UserResponse,
    ValidateKeyRequest,
    ValidateKeyResponse,
    normalize_login_status,
)
from docvault.config import Settings
from docvault.logging import get_logger
from docvault.service.auth import AuthContext
from docvault.service.errors import (
    ErrorKind,
    InvalidTokenError,
    RateLimitedError,
    ValidationError,
)
from docvault.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a token-bucket limit, raising ``RateLimitedError`` when exhausted."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after": max(1, reset_seconds)}
        )
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _set_refresh_cookie(
    response: Response, settings: Settings, token: str, *, remember_me: bool
) -> None:
    # Without max_age the cookie is session scoped and dies with the browser
    max_age = settings.remember_me_max_age_days * 24 * 60 * 60 if remember_me else None
    response.set_cookie(
        settings.refresh_cookie_name,
        token,
        max_age=max_age,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        path="/",
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.refresh_cookie_name,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.sessions.authenticate(authorization)
    if not ctx:
        raise InvalidTokenError("invalid or expired access token")
    return ctx


# -- auth -------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
):
    """Authenticate with email and password.

    The refresh token is only ever sent as an HTTP-only cookie. Bad
    credentials answer 200 with ``success: false`` so clients never mistake
    them for an expired access token.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    outcome = await runtime.sessions.login(
        body.email,
        body.password,
        tenant_hint=body.tenant_id,
        remember_me=body.remember_me,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        defer=background_tasks.add_task,
    )
    if outcome.error == ErrorKind.INVALID_CREDENTIALS:
        return Envelope(
            success=False, code=outcome.error.value, message=outcome.message
        )
    issued = outcome.unwrap()
    _set_refresh_cookie(
        response, runtime.settings, issued.refresh_token, remember_me=issued.remember_me
    )
    return Envelope(
        success=True,
        message=outcome.message,
        data=LoginResponse(
            accessToken=issued.access_token,
            expiresAt=issued.access_expires_at,
            user=UserResponse.from_user(issued.user),
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
):
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_ip(request)}",
        settings.refresh_rate_limit_per_minute,
        60,
    )
    presented = request.cookies.get(settings.refresh_cookie_name) or (
        body.refresh_token if body else None
    )
    outcome = await runtime.sessions.refresh(
        presented,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if not outcome.ok:
        if outcome.error.retryable:
            outcome.unwrap()
        logger.info("refresh_rejected", error_code=outcome.error.value)
        failed = _error_response(
            outcome.error.status_code,
            outcome.message,
            outcome.detail,
            code=outcome.error.value,
        )
        # The presented credential is dead either way; drop it from the browser
        _clear_refresh_cookie(failed, settings)
        return failed
    issued = outcome.value
    _set_refresh_cookie(
        response, settings, issued.refresh_token, remember_me=issued.remember_me
    )
    return Envelope(
        success=True,
        message=outcome.message,
        data=RefreshResponse(
            accessToken=issued.access_token, expiresAt=issued.access_expires_at
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
):
    runtime = get_runtime()
    settings = runtime.settings
    presented = request.cookies.get(settings.refresh_cookie_name) or (
        body.refresh_token if body else None
    )
    try:
        outcome = await runtime.sessions.logout(presented)
    finally:
        _clear_refresh_cookie(response, settings)
    return Envelope(success=True, message=outcome.message)


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    outcome = await runtime.sessions.get_current_user(principal)
    user = outcome.unwrap()
    return Envelope(
        success=True, message=outcome.message, data=UserResponse.from_user(user)
    )


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(get_user),
):
    """Change the caller's password and sign out their other sessions."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"password:change:{principal.user_id}", 5, 300
    )
    outcome = await runtime.sessions.change_password(
        principal, body.old_password, body.new_password
    )
    # A wrong current password must not look like an expired access token
    status_code = 400 if outcome.error == ErrorKind.INVALID_CREDENTIALS else None
    revoked = outcome.unwrap(status_code=status_code)
    return Envelope(
        success=True,
        message=outcome.message,
        data=PasswordChangeResponse(revokedSessions=revoked),
    )


# -- document uploads -------------------------------------------------------


@router.post("/document-upload/upload-url", response_model=Envelope, tags=["uploads"])
async def create_upload_url(
    body: UploadUrlRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Issue a short-lived presigned PUT for a tenant-scoped object key."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"uploads:grant:{principal.user_id}",
        runtime.settings.upload_rate_limit_per_minute,
        60,
        response=response,
    )
    grant = await runtime.uploads.issue_upload_grant(
        principal.tenant_id, body.file_name, body.content_type, body.file_size
    )
    return Envelope(
        success=True,
        message="Upload URL generated successfully",
        data=UploadUrlResponse(
            uploadUrl=grant.url,
            key=grant.key,
            fileName=body.file_name,
            method=grant.method,
            expiresAt=grant.expires_at,
            headers=grant.headers,
        ),
    )


@router.post("/document-upload/validate", response_model=Envelope, tags=["uploads"])
async def validate_object_key(
    body: ValidateKeyRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    valid = runtime.uploads.validate_object_key(body.object_key, principal.tenant_id)
    return Envelope(
        success=True,
        message="Object key is valid",
        data=ValidateKeyResponse(valid=valid),
    )


@router.post("/document-upload/direct-upload", response_model=Envelope, tags=["uploads"])
async def direct_upload(
    response: Response,
    file: Optional[UploadFile] = File(None),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"uploads:direct:{principal.user_id}",
        runtime.settings.upload_rate_limit_per_minute,
        60,
        response=response,
    )
    if file is None:
        raise ValidationError("No file uploaded", detail={"field": "file"})
    result = await runtime.uploads.direct_upload(
        principal.tenant_id,
        file_name=file.filename,
        content_type=file.content_type,
        read=file.read,
    )
    return Envelope(
        success=True,
        message="File uploaded successfully",
        data=DirectUploadResponse(
            objectKey=result.object_key,
            fileName=result.file_name,
            size=result.size,
            mimeType=result.mime_type,
        ),
    )


@router.put("/storage/objects", response_model=Envelope, tags=["uploads"])
async def put_granted_object(
    request: Request,
    key: Optional[str] = Query(None, max_length=2048),
    expires: Optional[str] = Query(None, max_length=32),
    sig: Optional[str] = Query(None, max_length=128),
):
    """Receive an upload made with a locally signed grant URL."""
    runtime = get_runtime()
    size = await runtime.uploads.accept_granted_upload(
        key,
        expires,
        sig,
        method=request.method,
        content_type=request.headers.get("content-type"),
        chunks=request.stream(),
    )
    return Envelope(success=True, message="Object stored", data={"key": key, "size": size})


# -- login history ----------------------------------------------------------


async def _login_history(
    principal: AuthContext, scope: str, page: int, limit: int, status: Optional[str]
) -> Envelope:
    try:
        status_filter = normalize_login_status(status)
    except ValueError as exc:
        raise ValidationError(str(exc), detail={"field": "status"}) from exc
    runtime = get_runtime()
    outcome = await runtime.sessions.list_login_history(
        principal, scope=scope, page=page, limit=limit, status=status_filter
    )
    result = outcome.unwrap()
    return Envelope(
        success=True,
        message="Login history retrieved successfully",
        data=LoginHistoryResponse(
            items=[LoginHistoryItem.from_entry(e) for e in result["items"]],
            pagination=Pagination(**result["pagination"]),
        ),
    )


@router.get("/login-history/user", response_model=Envelope, tags=["login-history"])
async def user_login_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = Query(None, max_length=16),
    principal: AuthContext = Depends(get_user),
):
    return await _login_history(principal, "user", page, limit, status)


@router.get("/login-history/tenant", response_model=Envelope, tags=["login-history"])
async def tenant_login_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = Query(None, max_length=16),
    principal: AuthContext = Depends(get_user),
):
    """Login history for the caller's whole tenant (admin roles only)."""
    return await _login_history(principal, "tenant", page, limit, status)
