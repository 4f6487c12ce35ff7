"""Settings for hostwire clients.

Values are resolved from four sources; earlier ones win:

1. ``runtime_overrides`` passed to :func:`create_settings`
2. ``HOSTWIRE_*`` environment variables, ``__`` separating sections
   (``HOSTWIRE_TRANSPORT__CHUNK_SIZE=65536``)
3. ``~/.hostwire/config.yaml`` or an explicit file
4. model defaults

A ``.env`` next to the YAML file is read into the environment first, which
is where host tokens usually live.

Example::

    settings = get_settings()
    web = settings.host("web-1")
    print(web.control_endpoint)
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import (
    BaseModel,
    Field,
    PositiveFloat,
    PositiveInt,
    SecretStr,
    ValidationError,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from hostwire.core.exceptions import ConfigurationError
from hostwire.core.keystore import DEFAULT_ITERATIONS, MAX_ITERATIONS, MIN_ITERATIONS


DEFAULT_CONFIG_DIR = Path.home() / ".hostwire"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS = ("json", "console")


class HostConfig(BaseModel):
    """Where an agent listens and the token it expects."""

    address: str
    control_port: PositiveInt = 7101
    bulk_port: PositiveInt = 7102
    token: SecretStr

    @field_validator("address")
    @classmethod
    def strip_address(cls, v: str) -> str:
        address = v.strip()
        if not address:
            raise ValueError("address must not be blank")
        return address

    @property
    def control_endpoint(self) -> str:
        return f"{self.address}:{self.control_port}"

    @property
    def bulk_endpoint(self) -> str:
        return f"{self.address}:{self.bulk_port}"


class TransportConfig(BaseModel):
    """Timeouts in seconds, sizes in bytes."""

    connect_timeout: PositiveFloat = 10.0
    handshake_timeout: PositiveFloat = 10.0
    max_record_size: PositiveInt = 16 * 1024 * 1024
    chunk_size: PositiveInt = 256 * 1024


class SecurityConfig(BaseModel):
    pbkdf2_iterations: int = Field(DEFAULT_ITERATIONS, ge=MIN_ITERATIONS, le=MAX_ITERATIONS)


class LoggingConfig(BaseModel):
    """structlog output: level, renderer and stream."""

    level: str = "INFO"
    format: str = "json"
    output: str = "stdout"

    @field_validator("level")
    @classmethod
    def normalise_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log level {v!r} is not one of {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("format")
    @classmethod
    def check_format(cls, v: str) -> str:
        if v not in LOG_FORMATS:
            raise ValueError(f"log format {v!r} is not one of {', '.join(LOG_FORMATS)}")
        return v


class RegistryConfig(BaseModel):
    max_hosts: PositiveInt = 256


class Settings(BaseSettings):
    """Everything a client process needs, including the known hosts.

    The ``logging`` section is stored as ``logging_config`` and read back
    through the ``logging`` property.
    """

    model_config = SettingsConfigDict(
        env_prefix="HOSTWIRE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    transport: TransportConfig = Field(default_factory=TransportConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    logging_config: LoggingConfig = Field(default_factory=LoggingConfig, alias="logging")
    hosts: Dict[str, HostConfig] = Field(default_factory=dict)

    @property
    def logging(self) -> LoggingConfig:
        return self.logging_config

    def host(self, name: str) -> HostConfig:
        """Look up a configured host.

        Raises:
            ConfigurationError: ``name`` is not under ``hosts``.
        """
        if name not in self.hosts:
            raise ConfigurationError(
                config_path="hosts",
                key=name,
                message=f"No host named '{name}' is configured",
            )
        return self.hosts[name]


def load_yaml_file(path: Path) -> Dict[str, Any]:
    """Read one YAML file that must hold a mapping.

    An empty file reads as ``{}``.

    Raises:
        ConfigurationError: The file is missing, unparsable or not a mapping.
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigurationError(str(path), message=f"Config file not found: {path}") from None

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(str(path), message=f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            str(path),
            expected_type="mapping",
            message=f"{path} must contain a mapping at the top level",
        )
    return data


def load_system_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Read the config file, falling back to ``~/.hostwire/config.yaml``.

    Only the fallback is optional; an explicit path must exist.
    """
    if path is not None:
        return load_yaml_file(Path(path).expanduser())

    fallback = DEFAULT_CONFIG_DIR / "config.yaml"
    return load_yaml_file(fallback) if fallback.exists() else {}


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay mappings left to right, merging nested mappings key by key."""
    merged: Dict[str, Any] = {}
    for layer in configs:
        for key, value in layer.items():
            below = merged.get(key)
            if isinstance(below, dict) and isinstance(value, dict):
                value = merge_configs(below, value)
            merged[key] = value
    return merged


def create_settings(
    system_config_path: Optional[Path] = None,
    runtime_overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Build Settings from the file, the environment and ``runtime_overrides``.

    Raises:
        ConfigurationError: A layer could not be read, or the merged values
            do not validate.
    """
    if system_config_path:
        source = Path(system_config_path).expanduser()
    else:
        source = DEFAULT_CONFIG_DIR / "config.yaml"

    dotenv_path = source.parent / ".env"
    if dotenv_path.exists():
        load_dotenv(dotenv_path)

    values = merge_configs(load_system_config(system_config_path), runtime_overrides or {})
    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigurationError(
            str(source),
            message=f"Settings validation failed for {source}: {e}",
        ) from e


_settings: Optional[Settings] = None
_settings_lock = threading.Lock()


def get_settings(force_reload: bool = False, **kwargs: Any) -> Settings:
    """Return the shared Settings, building them on first use.

    ``kwargs`` go to :func:`create_settings` and only matter when the
    settings are (re)built.
    """
    global _settings
    with _settings_lock:
        if _settings is None or force_reload:
            _settings = create_settings(**kwargs)
        return _settings


def reset_settings() -> None:
    """Forget the shared Settings; the next get_settings() rebuilds them."""
    global _settings
    with _settings_lock:
        _settings = None
