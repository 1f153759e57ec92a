from __future__ import annotations

import os
import secrets
import tempfile
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from homeops.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments; only PRODUCTION enforces hard key requirements."""

    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the HomeOps API."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field("postgresql://localhost:5432/homeops", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; enables runtime resets.",
    )
    state_dir: str = env_field("/srv/homeops", "STATE_DIR")

    # Token signing
    jwt_secret: str | None = env_field(None, "SECRET_KEY")
    jwt_issuer: str = env_field("homeops", "JWT_ISSUER")
    jwt_audience: str = env_field("homeops-web", "JWT_AUDIENCE")
    accept_legacy_tokens: bool = env_field(
        True,
        "ACCEPT_LEGACY_TOKENS",
        description="Accept HS256 access tokens signed with SECRET_KEY that carry no iss/aud claims",
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    mfa_ticket_ttl_minutes: int = env_field(5, "MFA_TICKET_TTL_MINUTES")
    mfa_ticket_max_attempts: int = env_field(3, "MFA_TICKET_MAX_ATTEMPTS")
    mfa_enrollment_ttl_minutes: int = env_field(10, "MFA_ENROLLMENT_TTL_MINUTES")
    invitation_ttl_hours: int = env_field(48, "INVITATION_TTL_HOURS")
    activation_ttl_days: int = env_field(7, "ACTIVATION_TTL_DAYS")

    # MFA secret encryption
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")
    mfa_encryption_key_id: str = env_field("k1", "MFA_ENCRYPTION_KEY_ID")

    # Google OAuth
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_redirect_uri_signin: str | None = env_field(None, "GOOGLE_REDIRECT_URI_SIGNIN")
    google_redirect_uri_signup: str | None = env_field(None, "GOOGLE_REDIRECT_URI_SIGNUP")

    # External collaborators
    s3_bucket: str | None = env_field(None, "AWS_S3_BUCKET")
    s3_region: str = env_field("us-east-2", "AWS_REGION")
    llm_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    llm_base_url: str = env_field("https://api.openai.com/v1", "OPENAI_BASE_URL")
    llm_model: str = env_field("gpt-4o-mini", "OPENAI_MODEL")
    llm_timeout_seconds: float = env_field(60.0, "OPENAI_TIMEOUT_SECONDS")

    # Product
    app_name: str = env_field("HomeOps", "APP_NAME")
    app_web_origin: str = env_field("http://localhost:5173", "APP_WEB_ORIGIN")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    ai_monthly_cap: Decimal = env_field(Decimal("5.00"), "AI_MONTHLY_CAP")
    sweep_interval_seconds: int = env_field(900, "SWEEP_INTERVAL_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

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

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if self.is_production:
            raise ValueError("SECRET_KEY must be set in production")
        self.jwt_secret = _load_or_create_dev_secret(Path(self.state_dir))
        return self


def _load_or_create_dev_secret(state_dir: Path) -> str:
    """Persist a generated signing secret so tokens stay valid across restarts."""

    secret_path = state_dir / ".jwt_secret"
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(state_dir, 0o700)
    except PermissionError:
        # Directory may be owned by another user inside containers
        pass
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(state_dir))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist signing secret; set SECRET_KEY or make STATE_DIR writable"
        ) from exc
    logger.warning("jwt_secret_generated", path=str(secret_path))
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
