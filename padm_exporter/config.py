"""Configuration loading module.

This module handles:
- Reading the YAML configuration file
- Substituting ${ENV_VAR} placeholders (e.g. credentials kept in .env)
- Validating options and applying defaults with pydantic
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from padm_exporter.exporter import RESERVED_METRIC_NAMES
from padm_exporter.variables import VariableDefinition

# Configure module logger
logger = logging.getLogger(__name__)

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


class ConfigError(Exception):
    """Exception raised when the configuration is missing or invalid."""
    pass


def split_listen_addr(listen_addr: str) -> Tuple[str, int]:
    """Split a listen address into host and port.

    Example:
        >>> split_listen_addr("0.0.0.0:8080")
        ('0.0.0.0', 8080)
        >>> split_listen_addr("[::]:9120")
        ('::', 9120)
    """
    host, sep, port = listen_addr.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"listen_addr must be host:port, got {listen_addr!r}")

    port_num = int(port)
    if not 0 < port_num < 65536:
        raise ValueError(f"listen_addr port out of range: {port_num}")

    return host.strip("[]") or "0.0.0.0", port_num


class ExporterConfig(BaseModel):
    """Validated exporter configuration.

    See config.example.yaml for a documented example.
    """
    host: str
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    scheme: Literal["http", "https"] = "https"
    tls_insecure: bool = False
    username: str
    password: str
    variables: List[VariableDefinition] = Field(min_length=1)

    interval: float = Field(default=30.0, gt=0)
    listen_addr: str = "0.0.0.0:8080"
    log_level: str = "info"
    timeout: float = Field(default=10.0, gt=0)

    token_ttl: float = Field(default=300.0, gt=0)
    token_margin: float = Field(default=30.0, ge=0)

    retry_cap: int = Field(default=3, ge=0)
    backoff_base: float = Field(default=1.0, ge=0)
    backoff_max: float = Field(default=10.0, ge=0)
    stale_after: Optional[float] = Field(default=None, gt=0)

    @field_validator("host", "username", "password")
    @classmethod
    def not_empty(cls, v: str) -> str:
        """Reject empty values (e.g. an unset ${ENV_VAR})."""
        if not v.strip():
            raise ValueError("must not be empty")
        return v

    @field_validator("host")
    @classmethod
    def bare_host(cls, v: str) -> str:
        if "://" in v or "/" in v:
            raise ValueError("host must be a bare host name, use 'scheme' and 'port' for the rest")
        return v

    @field_validator("listen_addr")
    @classmethod
    def valid_listen_addr(cls, v: str) -> str:
        split_listen_addr(v)
        return v

    @field_validator("log_level")
    @classmethod
    def valid_log_level(cls, v: str) -> str:
        if v.lower() not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return v.lower()

    @model_validator(mode="after")
    def check_consistency(self) -> "ExporterConfig":
        if self.token_margin >= self.token_ttl:
            raise ValueError("token_margin must be smaller than token_ttl")

        seen = set()
        families: Dict[str, VariableDefinition] = {}
        for definition in self.variables:
            if definition.key in seen:
                raise ValueError(f"duplicate variable: {definition.key}")
            seen.add(definition.key)

            if definition.family in RESERVED_METRIC_NAMES:
                raise ValueError(f"variable '{definition.name}': metric name {definition.family} is reserved")

            # Definitions sharing a metric render into one family
            first = families.setdefault(definition.family, definition)
            for attr in ("type", "value_label", "info"):
                if getattr(first, attr) != getattr(definition, attr):
                    raise ValueError(
                        f"variables '{first.name}' and '{definition.name}' share metric "
                        f"{definition.family} but differ in {attr}"
                    )
        return self

    @property
    def base_url(self) -> str:
        """Base URL of the PADM API, e.g. https://padm.local:8443"""
        host = self.host
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        url = f"{self.scheme}://{host}"
        if self.port is not None:
            url += f":{self.port}"
        return url

    @property
    def listen_host(self) -> str:
        return split_listen_addr(self.listen_addr)[0]

    @property
    def listen_port(self) -> int:
        return split_listen_addr(self.listen_addr)[1]

    @property
    def staleness_threshold(self) -> float:
        """Seconds without a successful update before a sample is stale."""
        if self.stale_after is not None:
            return self.stale_after
        return 3 * self.interval


def _substitute_env_vars(obj: Any) -> Any:
    """Recursively substitute ${ENV_VAR} placeholders with environment values."""
    if isinstance(obj, str):
        return re.sub(r"\$\{(\w+)\}", lambda m: os.getenv(m.group(1), ""), obj)

    elif isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}

    elif isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]

    return obj


def load_config(config_path: str) -> ExporterConfig:
    """Load and validate the exporter configuration file.

    Args:
        config_path: Path to the YAML configuration file

    Returns:
        Validated ExporterConfig

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    config_file = Path(config_path)
    if not config_file.is_file():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(config_file, "r") as f:
            raw_config = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read {config_path}: {e}") from e

    if not isinstance(raw_config, dict):
        raise ConfigError(f"{config_path}: expected a mapping at the top level")

    raw_config = _substitute_env_vars(raw_config)

    try:
        config = ExporterConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e

    logger.info(f"Configuration loaded: host={config.host}, "
                f"variables={len(config.variables)}, "
                f"interval={config.interval}s, "
                f"listen_addr={config.listen_addr}")
    return config
