from __future__ import annotations

import ipaddress
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from guardian.logging import get_logger

logger = get_logger(__name__)

# HMAC-SHA-512 wants a key at least as long as its output
_MIN_JWT_SECRET_LENGTH = 32


def _split_csv(value: str | None) -> list[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Deployment settings for the auth service.

    Every field names the environment variable it is read from. Values in the
    process environment win over values in a local ``.env`` file.
    """

    database_url: str = env_field("postgresql://localhost:5432/guardian", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/guardian", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relax infrastructure checks for local runs and CI",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    token_ttl_minutes: int = env_field(
        60, "TOKEN_TTL_MINUTES", description="Absolute session and token lifetime"
    )

    rate_limit_max_attempts: int = env_field(5, "RATE_LIMIT_MAX_ATTEMPTS")
    rate_limit_window_minutes: int = env_field(5, "RATE_LIMIT_WINDOW_MINUTES")
    rate_limit_block_minutes: int = env_field(15, "RATE_LIMIT_BLOCK_MINUTES")
    rate_limit_retention_hours: int = env_field(24, "RATE_LIMIT_RETENTION_HOURS")
    rate_limit_cleanup_seconds: int = env_field(300, "RATE_LIMIT_CLEANUP_SECONDS")

    default_idle_timeout_minutes: int = env_field(
        30,
        "DEFAULT_IDLE_TIMEOUT_MINUTES",
        description="Idle timeout applied when a tenant record cannot be resolved",
    )
    session_retention_hours: int = env_field(24, "SESSION_RETENTION_HOURS")
    session_cache_max_entries: int = env_field(10000, "SESSION_CACHE_MAX_ENTRIES")
    session_cache_sweep_seconds: int = env_field(300, "SESSION_CACHE_SWEEP_SECONDS")
    session_cleanup_seconds: int = env_field(300, "SESSION_CLEANUP_SECONDS")

    audit_workers: int = env_field(5, "AUDIT_WORKERS")
    audit_queue_capacity: int = env_field(100, "AUDIT_QUEUE_CAPACITY")

    geo_lookup_url: str | None = env_field(
        None,
        "GEO_LOOKUP_URL",
        description="Template such as https://ipapi.co/{ip}/json/; unset disables remote lookups",
    )
    geo_lookup_timeout: float = env_field(2.0, "GEO_LOOKUP_TIMEOUT")
    trust_forwarded_headers: bool = env_field(False, "TRUST_FORWARDED_HEADERS")
    trusted_proxies: str = env_field(
        "127.0.0.1,::1",
        "TRUSTED_PROXIES",
        description="Comma-separated addresses or networks whose forwarding headers are honoured",
    )

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

    @field_validator("redis_url", "geo_lookup_url")
    @classmethod
    def _blank_as_none(cls, value: str | None) -> str | None:
        if value is None or not str(value).strip():
            return None
        return value

    @field_validator(
        "token_ttl_minutes",
        "rate_limit_max_attempts",
        "rate_limit_window_minutes",
        "rate_limit_block_minutes",
        "rate_limit_retention_hours",
        "rate_limit_cleanup_seconds",
        "default_idle_timeout_minutes",
        "session_retention_hours",
        "session_cache_max_entries",
        "session_cache_sweep_seconds",
        "session_cleanup_seconds",
        "audit_workers",
        "audit_queue_capacity",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("trusted_proxies")
    @classmethod
    def _validate_trusted_proxies(cls, value: str) -> str:
        for entry in _split_csv(value):
            try:
                ipaddress.ip_network(entry, strict=False)
            except ValueError as exc:
                raise ValueError(f"invalid trusted proxy {entry!r}") from exc
        return value

    @property
    def trusted_proxy_networks(self) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
        return [ipaddress.ip_network(entry, strict=False) for entry in _split_csv(self.trusted_proxies)]

    @field_validator("geo_lookup_timeout")
    @classmethod
    def _require_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < _MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        # Generated secrets are persisted so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/guardian"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup_failed", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
            else:
                if len(persisted) >= _MIN_JWT_SECRET_LENGTH:
                    return persisted

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
            os.replace(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
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
