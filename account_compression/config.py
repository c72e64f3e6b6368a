"""Configuration loading from environment variables."""

import logging
import os

from pydantic import BaseModel, Field, field_validator, model_validator

from account_compression.core.constants import ALL_DEPTH_SIZE_PAIRS, MAX_BUFFER_SIZE, MAX_DEPTH

ENV_PREFIX = "ACCOUNT_COMPRESSION_"


class TreeConfig(BaseModel):
    """Dimensions used when creating new trees."""
    max_depth: int = Field(14, ge=1, le=MAX_DEPTH)
    max_buffer_size: int = Field(64, ge=1, le=MAX_BUFFER_SIZE)
    strict_sizes: bool = False

    @model_validator(mode="after")
    def check_pair(self) -> "TreeConfig":
        if self.strict_sizes and (self.max_depth, self.max_buffer_size) not in ALL_DEPTH_SIZE_PAIRS:
            raise ValueError(
                f"Unsupported depth/buffer size pair ({self.max_depth}, {self.max_buffer_size})"
            )
        return self


class LogConfig(BaseModel):
    level: str = "warning"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid = {"debug", "info", "warning", "error"}
        if v.lower() not in valid:
            raise ValueError(f"Invalid log level: {v}. Must be one of {sorted(valid)}")
        return v.lower()


class CompressionConfig(BaseModel):
    tree: TreeConfig = Field(default_factory=TreeConfig)
    log: LogConfig = Field(default_factory=LogConfig)


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"{ENV_PREFIX}{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower())
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int) -> int:
    val = _env(key, str(default))
    try:
        return int(val)
    except ValueError as e:
        raise ValueError(f"{ENV_PREFIX}{key} must be an integer, got {val!r}") from e


def load_config() -> CompressionConfig:
    """Load configuration from ACCOUNT_COMPRESSION_* environment variables."""
    return CompressionConfig(
        tree=TreeConfig(
            max_depth=_env_int("MAX_DEPTH", 14),
            max_buffer_size=_env_int("MAX_BUFFER_SIZE", 64),
            strict_sizes=_env_bool("STRICT_SIZES", False),
        ),
        log=LogConfig(
            level=_env("LOG_LEVEL", "warning"),
        ),
    )


def setup_logging(config: LogConfig) -> None:
    """Send log records to stderr at the configured level."""
    logging.basicConfig(
        level=getattr(logging, config.level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
