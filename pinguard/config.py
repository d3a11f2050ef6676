from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from pinguard.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the PIN re-authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/pinguard", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/pinguard", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, sync Redis client).",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")

    # Primary session
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("pinguard", "JWT_ISSUER")
    jwt_audience: str = env_field("pinguard-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        30,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Primary access token TTL in minutes",
    )
    session_ttl_minutes: int = env_field(
        24 * 60,
        "SESSION_TTL_MINUTES",
        description="Primary session lifetime in minutes",
    )
    allow_signup: bool = env_field(
        True,
        "ALLOW_SIGNUP",
        description="Allow new user signups",
    )

    # PIN policy
    pin_max_attempts: int = env_field(
        5,
        "PIN_MAX_ATTEMPTS",
        description="Consecutive wrong PINs before the PIN is locked",
    )
    pin_lock_minutes: int = env_field(
        15,
        "PIN_LOCK_MINUTES",
        description="How long a PIN lock lasts",
    )
    biometric_token_ttl_minutes: int = env_field(
        8 * 60,
        "BIOMETRIC_TOKEN_TTL_MINUTES",
        description="Lifetime of a biometric session token",
    )
    reset_code_ttl_minutes: int = env_field(
        10,
        "RESET_CODE_TTL_MINUTES",
        description="Lifetime of an emailed PIN reset code",
    )
    reset_code_max_attempts: int = env_field(
        3,
        "RESET_CODE_MAX_ATTEMPTS",
        description="Wrong reset codes accepted before the challenge is discarded",
    )
    reset_code_digits: int = env_field(6, "RESET_CODE_DIGITS")
    new_account_grace_minutes: int = env_field(
        60,
        "NEW_ACCOUNT_GRACE_MINUTES",
        description="Accounts younger than this are not asked to set up a PIN",
    )
    operation_timeout_seconds: float = env_field(
        5.0,
        "OPERATION_TIMEOUT_SECONDS",
        description="Upper bound for a single store or hasher call",
    )

    # Rate limits (requests per minute)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    pin_rate_limit_per_minute: int = env_field(20, "PIN_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")

    # SMTP / Email
    smtp_host: str | None = env_field(
        None, "SMTP_HOST", description="SMTP server hostname"
    )
    smtp_port: int = env_field(587, "SMTP_PORT", description="SMTP server port")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(
        True, "SMTP_USE_TLS", description="STARTTLS when true, implicit SSL otherwise"
    )
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("PinGuard", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # HTTP
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "pin_max_attempts",
        "pin_lock_minutes",
        "biometric_token_ttl_minutes",
        "reset_code_ttl_minutes",
        "reset_code_max_attempts",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("reset_code_digits")
    @classmethod
    def _validate_code_digits(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("reset_code_digits must be between 4 and 10")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/pinguard"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

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
        tmp_path: str | None = None
        try:
            # Write to a temp file then rename so readers never see a partial secret
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
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
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
