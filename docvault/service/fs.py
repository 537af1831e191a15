import hashlib
import hmac
import time
from pathlib import Path
from typing import Callable, Optional, Tuple
from urllib.parse import urlencode


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


# Upload grants live for minutes; the settings layer caps them at one hour
DEFAULT_GRANT_EXPIRY_SECONDS = 300


def _grant_signature(
    key: str, method: str, content_type: str, expires_at: int, secret_key: str
) -> str:
    message = f"{key}|{method.upper()}|{content_type}|{expires_at}"
    return hmac.new(
        secret_key.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def generate_signed_url(
    key: str,
    content_type: str,
    secret_key: str,
    *,
    method: str = "PUT",
    expiry_seconds: int = DEFAULT_GRANT_EXPIRY_SECONDS,
    base_url: str = "/api/storage/objects",
    now: Optional[float] = None,
) -> Tuple[str, int]:
    """Generate a signed upload URL scoped to one key, method and content type.

    Args:
        key: Object key the grant covers
        content_type: The only Content-Type the upload may declare
        secret_key: HMAC secret key for signing
        method: HTTP method the grant allows
        expiry_seconds: Grant lifetime in seconds
        base_url: Absolute or relative URL of the upload endpoint
        now: Issue time override, seconds since the epoch

    Returns:
        Tuple of (signed URL, expiry timestamp)
    """
    issued = time.time() if now is None else now
    expires_at = int(issued) + expiry_seconds
    signature = _grant_signature(key, method, content_type, expires_at, secret_key)
    params = urlencode({"key": key, "expires": expires_at, "sig": signature})
    return f"{base_url}?{params}", expires_at


def validate_signed_url(
    key: str,
    expires: str,
    signature: str,
    *,
    method: str,
    content_type: str,
    secret_key: str,
    clock: Callable[[], float] = time.time,
) -> Tuple[bool, Optional[str]]:
    """Validate a signed upload URL.

    The grant is accepted up to and including its expiry second.

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        expires_at = int(expires)
    except (ValueError, TypeError):
        return False, "invalid expiry format"

    if clock() > expires_at:
        return False, "URL has expired"

    expected_sig = _grant_signature(key, method, content_type or "", expires_at, secret_key)
    if not hmac.compare_digest(signature or "", expected_sig):
        return False, "invalid signature"

    return True, None


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")
