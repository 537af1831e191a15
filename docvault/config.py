from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from docvault.logging import get_logger

logger = get_logger(__name__)


class StorageBackendKind(str, Enum):
    """Object storage implementations the grantor can talk to."""

    S3 = "s3"
    LOCAL = "local"


# Retry hard cap for store and storage backend calls
MAX_DOWNSTREAM_RETRIES = 3


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth and upload gateway."""

    database_url: str = env_field(
        "postgresql://localhost:5432/docvault", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/docvault", "SHARED_FS_ROOT")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("docvault", "JWT_ISSUER")
    jwt_audience: str = env_field("docvault-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", ge=1, le=24 * 60
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=5
    )
    remember_me_max_age_days: int = env_field(7, "REMEMBER_ME_MAX_AGE_DAYS", ge=1)
    refresh_cookie_name: str = env_field("refreshToken", "REFRESH_COOKIE_NAME")
    cookie_secure: bool = env_field(
        False,
        "COOKIE_SECURE",
        description="Mark the refresh cookie Secure (production deployments)",
    )

    storage_backend: StorageBackendKind = env_field(
        StorageBackendKind.S3, "STORAGE_BACKEND"
    )
    s3_bucket: str = env_field("docvault-documents", "S3_BUCKET")
    s3_region: str | None = env_field(None, "S3_REGION")
    s3_endpoint_url: str | None = env_field(None, "S3_ENDPOINT_URL")
    max_upload_bytes: int = env_field(50 * 1024 * 1024, "MAX_UPLOAD_BYTES", ge=1)
    upload_url_ttl_minutes: int = env_field(
        5,
        "UPLOAD_URL_TTL_MINUTES",
        ge=1,
        le=60,
        description="Lifetime of presigned upload grants (minutes, never hours)",
    )

    downstream_timeout_seconds: float = env_field(
        5.0, "DOWNSTREAM_TIMEOUT_SECONDS", gt=0
    )
    downstream_max_retries: int = env_field(2, "DOWNSTREAM_MAX_RETRIES", ge=0)
    downstream_backoff_ms: int = env_field(100, "DOWNSTREAM_BACKOFF_MS", ge=0)

    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    refresh_rate_limit_per_minute: int = env_field(
        30, "REFRESH_RATE_LIMIT_PER_MINUTE"
    )
    upload_rate_limit_per_minute: int = env_field(30, "UPLOAD_RATE_LIMIT_PER_MINUTE")

    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @property
    def cookie_samesite(self) -> str:
        # Browsers drop SameSite=None cookies that are not Secure
        return "none" if self.cookie_secure else "lax"

    @property
    def retry_budget(self) -> int:
        return min(self.downstream_max_retries, MAX_DOWNSTREAM_RETRIES)

    @field_validator("storage_backend")
    @classmethod
    def _validate_backend(cls, value: StorageBackendKind) -> StorageBackendKind:
        return StorageBackendKind(value)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/docvault"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (containers)
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
