"""
Configuration management for the local IPC transport.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (--config path)
3. Environment variables (LOCAL_IPC_* prefix, __ for nesting)
4. Explicit overrides, e.g. from command-line arguments (highest precedence)
"""

from __future__ import annotations

import os
import socket
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from local_ipc.errors import ConfigurationError
from local_ipc.ipc.protocol import (
    DEFAULT_RECV_BUFFER_SIZE,
    DEFAULT_SOCKET_PATH,
    DEFAULT_TIMEOUT,
)

# =============================================================================
# IPC Configuration
# =============================================================================


class IPCConfig(BaseModel):
    """Local socket transport configuration.

    Attributes:
        socket_path: Filesystem path of the local socket.
        timeout_seconds: Bound applied to connect, send, receive and the
            server's connection wait.
        recv_buffer_size: Size of a single underlying receive call.
        quiescence_seconds: How long a drained socket must stay silent
            before a payload is considered complete (0 = first empty poll).
        backlog: Listen backlog for the server socket.
    """

    socket_path: str = Field(
        default=DEFAULT_SOCKET_PATH,
        description="Filesystem path of the local socket",
    )
    timeout_seconds: float = Field(
        default=DEFAULT_TIMEOUT,
        gt=0,
        description="Timeout in seconds for connect, send, receive and accept wait",
    )
    recv_buffer_size: int = Field(
        default=DEFAULT_RECV_BUFFER_SIZE,
        ge=1,
        description="Bytes requested per underlying recv() call",
    )
    quiescence_seconds: float = Field(
        default=0.0,
        ge=0,
        description="Silence required before a drained payload is complete",
    )
    backlog: int = Field(
        default=socket.SOMAXCONN,
        ge=1,
        description="Listen backlog for the server socket",
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout (stderr otherwise).
        json_format: Whether to emit JSON log lines.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error, critical",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=True,
        description="Whether to emit JSON formatted log lines",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        ipc: Socket transport settings.
        logging: Logging configuration.
    """

    ipc: IPCConfig = Field(
        default_factory=IPCConfig,
        description="Socket transport settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _load_env_config(prefix: str = "LOCAL_IPC_") -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore separator, for example
    LOCAL_IPC_IPC__TIMEOUT_SECONDS=5. Values are kept as strings; the
    pydantic models convert them to each field's type.

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.

    Raises:
        ConfigurationError: If one variable names a section that another
            variable sets to a plain value.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})
            if not isinstance(current, dict):
                raise ConfigurationError(
                    f"conflicting environment variables for {key}",
                    details={"variable": key},
                )

        if isinstance(current.get(parts[-1]), dict):
            raise ConfigurationError(
                f"conflicting environment variables for {key}",
                details={"variable": key},
            )
        current[parts[-1]] = value

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = "LOCAL_IPC_",
    overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to a YAML configuration file, if any.
        env_prefix: Prefix for environment variables.
        overrides: Values applied last, typically parsed from the command line.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If the specified config file doesn't exist.
        ValidationError: If configuration is invalid.
        ConfigurationError: If environment variables conflict.

    Example:
        >>> config = load_config(overrides={"ipc": {"timeout_seconds": 5}})
        >>> config.ipc.timeout_seconds
        5.0
    """
    config_dict: dict[str, Any] = {}

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(Path(config_path)))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    return AppConfig(**config_dict)
