from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from moodcircle.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a persisted signing secret, generating it on first use.

    Secrets live under ``SHARED_FS_ROOT`` with mode 0600 so issued tokens stay
    valid across restarts when no explicit secret is configured.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/moodcircle"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup",
            error=str(exc),
            path=str(fs_root),
            message="Could not set directory permissions",
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        # Write to a temp file then rename so readers never see a partial secret
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
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
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the passwordless auth service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/moodcircle", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/moodcircle", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (in-memory state, no state file).",
    )
    # Token signing
    jwt_access_secret: str | None = env_field(
        None, "JWT_ACCESS_SECRET", validate_default=True
    )
    jwt_refresh_secret: str | None = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("moodcircle", "JWT_ISSUER")
    jwt_audience: str = env_field("moodcircle-clients", "JWT_AUDIENCE")
    jwt_clock_skew_seconds: int = env_field(
        30,
        "JWT_CLOCK_SKEW_SECONDS",
        ge=0,
        description="Allowance for clock skew across nodes when checking token expiry",
    )
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        gt=0,
        description="Access tokens are never denylisted, so keep this short",
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Revoke the presented refresh token and issue a new one on every refresh",
    )
    # One-time codes
    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=10)
    otp_expiry_minutes: int = env_field(10, "OTP_EXPIRY_MINUTES", gt=0)
    otp_cleanup_interval_seconds: int = env_field(
        600, "OTP_CLEANUP_INTERVAL_SECONDS", ge=0
    )
    # Pseudonyms
    pseudonym_prefix: str = env_field("mood_", "PSEUDONYM_PREFIX")
    pseudonym_suffix_bytes: int = env_field(4, "PSEUDONYM_SUFFIX_BYTES", ge=3, le=16)
    pseudonym_max_attempts: int = env_field(5, "PSEUDONYM_MAX_ATTEMPTS", ge=1)
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("MoodCircle", "EMAIL_FROM_NAME")
    email_send_timeout_seconds: float = env_field(
        10.0, "EMAIL_SEND_TIMEOUT_SECONDS", gt=0
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("pseudonym_prefix")
    @classmethod
    def _validate_prefix(cls, value: str) -> str:
        if not value or not value.replace("_", "").isalnum():
            raise ValueError("pseudonym prefix must be alphanumeric (underscores allowed)")
        return value

    @field_validator("jwt_access_secret")
    @classmethod
    def _ensure_access_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_access_secret")

    @field_validator("jwt_refresh_secret")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_refresh_secret")

    @model_validator(mode="after")
    def _secrets_differ(self) -> "Settings":
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
        return self


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
