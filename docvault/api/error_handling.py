from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from docvault.api.schemas import Envelope
from docvault.logging import get_logger, sanitize_error_message
from docvault.service.errors import ErrorKind, ServiceError
from docvault.service.fs import PathTraversalError
from docvault.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

# Stable error codes for statuses raised outside the service layer
_STATUS_TO_CODE = {
    400: ErrorKind.VALIDATION_ERROR,
    401: ErrorKind.INVALID_TOKEN,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    405: ErrorKind.VALIDATION_ERROR,
    409: ErrorKind.VALIDATION_ERROR,
    413: ErrorKind.VALIDATION_ERROR,
    415: ErrorKind.VALIDATION_ERROR,
    422: ErrorKind.VALIDATION_ERROR,
    429: ErrorKind.RATE_LIMITED,
    503: ErrorKind.UNAVAILABLE,
    504: ErrorKind.UNAVAILABLE,
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, ErrorKind.SERVER_ERROR).value


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    envelope = Envelope(
        success=False,
        code=code or _error_code_for_status(status_code),
        message=message,
        details=details or None,
    )
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(by_alias=True, mode="json"),
        headers=headers,
    )


def _log_failure(request: Request, event: str, status_code: int, **fields) -> None:
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(
        event,
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        **fields,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the error envelope for domain, storage and framework errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_failure(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        headers = None
        if exc.kind == ErrorKind.RATE_LIMITED and exc.detail.get("retry_after"):
            headers = {"Retry-After": str(exc.detail["retry_after"])}
        return _error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code, headers=headers
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_failure(
            request, "constraint_violation", 409, message=exc.message, detail=exc.detail
        )
        return _error_response(409, exc.message, exc.detail)

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        _log_failure(
            request,
            "store_unavailable",
            503,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(503, "service temporarily unavailable")

    @app.exception_handler(PathTraversalError)
    async def handle_path_traversal_error(request: Request, exc: PathTraversalError):
        logger.warning(
            "path_traversal_attempt",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            client_ip=request.client.host if request.client else None,
        )
        return _error_response(400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
                "message": str(err.get("msg", "invalid value")),
                "type": err.get("type"),
            }
            for err in exc.errors()
        ]
        _log_failure(request, "request_validation_error", 400, errors=details)
        return _error_response(400, "request validation failed", {"errors": details})

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict):
            message = str(exc.detail.get("message") or exc.detail.get("detail") or "http error")
            code = exc.detail.get("code")
            details = exc.detail.get("details")
        else:
            message = str(exc.detail) if exc.detail else "http error"
            code = None
            details = None
        if code not in {kind.value for kind in ErrorKind}:
            code = None
        _log_failure(request, "http_error", exc.status_code, error_code=code, message=message)
        return _error_response(
            exc.status_code, message, details, code=code, headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error")
