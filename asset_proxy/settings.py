from __future__ import annotations

import logging
import re

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_LOG_LEVEL_ALIASES = {
    "trace": "DEBUG",
    "warn": "WARNING",
    "fatal": "CRITICAL",
    "panic": "CRITICAL",
}


def parse_duration(value: object) -> float:
    """Parse ``"500ms"``, ``"60s"``, ``"1m30s"`` or a plain number into seconds."""
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        msg = f"invalid duration {value!r}"
        raise ValueError(msg)
    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass
    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position == 0 or position != len(text):
        msg = f"invalid duration {value!r}"
        raise ValueError(msg)
    return total


class ProxySettings(BaseSettings):
    """Configuration for the asset proxy, read from the environment."""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    server_port: int = Field(default=8080, validation_alias="SERVER_PORT")
    log_level: str = Field(default="error", validation_alias="LOG_LEVEL")
    tls_cert_file: str | None = Field(default=None, validation_alias="TLS_CERT_FILE")
    tls_key_file: str | None = Field(default=None, validation_alias="TLS_KEY_FILE")
    idle_timeout: float = Field(default=60.0, validation_alias="IDLE_TIMEOUT")
    shutdown_timeout: float = Field(default=10.0, validation_alias="SHUTDOWN_TIMEOUT")
    s3_get_timeout: float = Field(default=60.0, validation_alias="S3_GET_TIMEOUT")

    upstream_url: str = Field(
        default="http://minio:9000",
        validation_alias="MINIO_UPSTREAM_URL",
    )
    bucket_path_prefix: str = Field(
        default="/frontend-assets",
        validation_alias="BUCKET_PATH_PREFIX",
    )
    spa_entrypoint_path: str = Field(
        default="/index.html",
        validation_alias="SPA_ENTRYPOINT_PATH",
    )
    region: str = Field(default="us-east-1", validation_alias="AWS_REGION")
    max_retry_attempts: int = Field(default=3, validation_alias="S3_MAX_ATTEMPTS")

    access_key_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "PUSHCACHE_AWS_ACCESS_KEY_ID",
            "AWS_ACCESS_KEY_ID",
        ),
    )
    secret_access_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "PUSHCACHE_AWS_SECRET_ACCESS_KEY",
            "AWS_SECRET_ACCESS_KEY",
        ),
    )

    @field_validator(
        "idle_timeout", "shutdown_timeout", "s3_get_timeout", mode="before"
    )
    @classmethod
    def _parse_duration(cls, value: object) -> float:
        return parse_duration(value)

    @field_validator("tls_cert_file", "tls_key_file", mode="before")
    @classmethod
    def _empty_as_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("spa_entrypoint_path")
    @classmethod
    def _leading_slash(cls, value: str) -> str:
        value = value.strip()
        if value and not value.startswith("/"):
            return f"/{value}"
        return value

    @property
    def python_log_level(self) -> str:
        """``log_level`` as a :mod:`logging` level name, ``ERROR`` if unknown."""
        level = _LOG_LEVEL_ALIASES.get(self.log_level.strip().lower())
        if level is None:
            level = self.log_level.strip().upper()
        if level not in logging.getLevelNamesMapping():
            return "ERROR"
        return level

    @property
    def tls_enabled(self) -> bool:
        return bool(self.tls_cert_file and self.tls_key_file)

    @property
    def fallback_enabled(self) -> bool:
        return bool(self.spa_entrypoint_path)

    @property
    def has_static_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)


def load_settings_from_env() -> ProxySettings:
    """Load proxy settings from environment variables.

    Returns:
        ProxySettings instance populated from environment variables.
    """
    return ProxySettings()
