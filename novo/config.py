from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from novo.logging import get_logger

logger = get_logger(__name__)


class AppEnv(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def load_env_values(model: type[BaseModel], env_file: str = ".env") -> dict[str, str]:
    """Collect raw values for ``model`` fields from the process env, then ``.env``."""
    env_file_values = dotenv_values(env_file)
    merged: dict[str, str] = {}
    for name, field in model.model_fields.items():
        extra = field.json_schema_extra or {}
        env_key = extra.get("env") if isinstance(extra, dict) else None
        env_name = env_key or name.upper()
        if env_name in os.environ:
            merged[name] = os.environ[env_name]
        elif env_name in env_file_values and env_file_values[env_name] is not None:
            merged[name] = env_file_values[env_name]
    return merged


def _persisted_secret(fs_root: str, filename: str) -> str:
    """Read a signing secret from ``fs_root`` or generate and persist one.

    Tokens stay valid across restarts as long as the shared root survives.
    """
    root = Path(fs_root)
    secret_path = root / filename
    try:
        root.mkdir(parents=True, exist_ok=True)
        os.chmod(root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(persisted) >= 32:
                return persisted

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.replace(tmp_path, secret_path)
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret explicitly or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Server settings hydrated from the environment and ``.env``."""

    database_url: str = env_field("postgresql://localhost:5432/novo", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/novo", "SHARED_FS_ROOT")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviors; allows in-process fallbacks and OAuth code stubs.",
    )
    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")

    # Separate secrets so an access credential can never verify as a refresh credential
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("novo", "JWT_ISSUER")
    jwt_audience: str = env_field("novo-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)
    clock_skew_seconds: int = env_field(0, "CLOCK_SKEW_SECONDS", ge=0)

    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    refresh_cookie_path: str = env_field("/auth/refresh-token", "REFRESH_COOKIE_PATH")

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_redirect_base_url: str = env_field("http://localhost:8000", "OAUTH_REDIRECT_BASE_URL")
    frontend_origin: str = env_field("http://localhost:5173", "FRONTEND_ORIGIN")
    oauth_state_ttl_minutes: int = env_field(10, "OAUTH_STATE_TTL_MINUTES", gt=0)
    oauth_handoff_ttl_minutes: int = env_field(5, "OAUTH_HANDOFF_TTL_MINUTES", gt=0)

    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(5, "REGISTER_RATE_LIMIT_PER_MINUTE")

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(**load_env_values(cls))

    @property
    def secure_cookies(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION

    @field_validator("app_env", mode="before")
    @classmethod
    def _normalize_app_env(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("frontend_origin", "oauth_redirect_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("refresh_cookie_path")
    @classmethod
    def _validate_cookie_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("refresh cookie path must be absolute")
        return value

    @field_validator("jwt_secret", "jwt_refresh_secret")
    @classmethod
    def _ensure_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        fs_root = info.data.get("shared_fs_root") or "/srv/novo"
        filename = ".jwt_secret" if info.field_name == "jwt_secret" else ".jwt_refresh_secret"
        return _persisted_secret(fs_root, filename)


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
