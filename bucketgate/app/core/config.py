import json
import re
from typing import Annotated, Any
from urllib.parse import quote

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_USER_ID_HEADERS = ["x-user-id", "x-userid", "x-auth-user"]


def _parse_header_names(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip().lower() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but accept "x-user-id, x-auth-user" style values too.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip().lower() for v in parsed]
            return [v for v in items if v]

    parts = [p.strip().strip("\"'").lower() for p in re.split(r"[,\s]+", raw)]
    seen: set[str] = set()
    result: list[str] = []
    for part in parts:
        if not part or part in seen:
            continue
        seen.add(part)
        result.append(part)
    return result


class Settings(BaseSettings):
    """Rate limiter settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - configuration mistakes raise instead of being logged
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Shared store (Redis) settings
    redis_enabled: bool = True
    redis_url_override: str = Field(default="", validation_alias="REDIS_URL")
    redis_host: str = "127.0.0.1"
    redis_port: int = 6379
    redis_username: str = ""
    redis_password: str = Field(
        default="", validation_alias=AliasChoices("REDIS_PASSWORD", "REDIS_PASS")
    )
    redis_db: int = 0
    redis_tls: bool = False

    # Connection behaviour
    redis_socket_timeout: float = 2.0  # Seconds per socket read/write
    redis_connect_timeout: float = 2.0  # Seconds to establish a connection
    redis_reconnect_step_ms: int = 100  # Linear backoff step
    redis_reconnect_cap_ms: int = 3000  # Backoff ceiling
    redis_reconnect_attempts: int = 3

    # Rate limiting settings
    rate_limit_store_timeout_ms: int = 500  # Bound on a single bucket round trip
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when the store is unavailable
    )
    rate_limits_disabled: bool = False  # Global kill switch
    rate_limit_shadow_mode: bool = False  # Observe every limiter without blocking
    rate_limit_multiplier: float = 1.0  # Scales the audience policy table
    rate_limit_max_tracked_shapes: int = 10000
    rate_limit_memory_max_entries: int = 10000

    # Headers an upstream auth layer uses to pass the authenticated user id.
    rate_limit_user_id_headers: Annotated[list[str], NoDecode] = list(
        DEFAULT_USER_ID_HEADERS
    )

    @field_validator("rate_limit_user_id_headers", mode="before")
    @classmethod
    def decode_user_id_headers(cls, v: Any) -> list[str]:
        return _parse_header_names(v)

    @property
    def redis_url(self) -> str:
        """Build the shared store connection URL.

        Priority:
        1. redis_url_override (from REDIS_URL env var or .env file)
        2. Built from redis_* settings
        """
        if self.redis_url_override.strip():
            return self.redis_url_override.strip()

        scheme = "rediss" if self.redis_tls else "redis"
        auth = ""
        if self.redis_password:
            auth = f"{quote(self.redis_username, safe='')}:{quote(self.redis_password, safe='')}@"
        elif self.redis_username:
            auth = f"{quote(self.redis_username, safe='')}@"
        return f"{scheme}://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @field_validator(
        "redis_reconnect_step_ms",
        "redis_reconnect_cap_ms",
        "rate_limit_store_timeout_ms",
    )
    @classmethod
    def validate_milliseconds_positive(cls, v: int) -> int:
        """Validate millisecond durations are positive."""
        if v < 1:
            raise ValueError("Millisecond durations must be at least 1")
        return v

    @field_validator("redis_socket_timeout", "redis_connect_timeout")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator(
        "rate_limit_max_tracked_shapes",
        "rate_limit_memory_max_entries",
    )
    @classmethod
    def validate_capacity_positive(cls, v: int) -> int:
        """Validate bookkeeping sizes are positive."""
        if v < 1:
            raise ValueError("size values must be at least 1")
        return v

    @field_validator("rate_limit_multiplier")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("rate_limit_multiplier must be positive")
        return v

    @field_validator("redis_reconnect_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 0:
            raise ValueError("redis_reconnect_attempts cannot be negative")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)


# Global settings instance
settings = Settings()
