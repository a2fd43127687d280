"""
Configuration management and validation for Parley.

Provides configuration loading, validation, and management for the
negotiation engine, the completion provider and the plan server.
"""

import os
import yaml
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from pydantic import BaseModel, Field, ValidationError, field_validator

from parley.exceptions import ConfigurationError


OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class ObservabilityConfig(BaseModel):
    """OpenTelemetry export settings; exporters are only installed when enabled."""
    enabled: bool = False
    service_name: str = "parley"
    service_version: str = "0.1.0"
    environment: str = "development"
    otlp_endpoint: str = "http://localhost:4317"
    trace_sampling_ratio: float = Field(default=1.0, ge=0.0, le=1.0)
    export_timeout: int = Field(default=30, gt=0)
    resource_attributes: Dict[str, str] = Field(default_factory=dict)


class LoggingConfig(BaseModel):
    """Console and rotating-file logging settings."""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    format: str = Field(default="structured", pattern="^(structured|simple)$")
    directory: Optional[str] = "~/.parley/logs"
    max_file_size: int = Field(default=10 * 1024 * 1024, gt=0)  # 10MB
    backup_count: int = Field(default=5, ge=1)
    include_trace: bool = True
    environment: str = "development"


class ProviderConfig(BaseModel):
    """Configuration for the OpenRouter-compatible completion provider."""
    base_url: str = OPENROUTER_BASE_URL
    api_key: Optional[str] = None
    referer: str = "https://parley.coey.dev"
    title: str = "Parley"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4096, gt=0)
    timeout: float = Field(default=120.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    min_context_length: int = Field(default=4096, ge=0)

    @field_validator('base_url')
    @classmethod
    def strip_trailing_slash(cls, v):
        """Normalise the base URL."""
        return v.rstrip("/")


class NegotiationConfig(BaseModel):
    """Configuration for the negotiation turn loop."""
    max_rounds: int = Field(default=20, ge=1)
    turn_delay_seconds: float = Field(default=0.5, ge=0.0)
    channel_max_size: int = Field(default=256, ge=1)


class ServerConfig(BaseModel):
    """Configuration for the plan server."""
    host: str = "localhost"
    port: int = Field(default=8000, ge=1, le=65535)
    request_timeout: int = Field(default=300, gt=0)
    enable_cors: bool = False
    cors_origins: List[str] = Field(default_factory=list)


class ParleyConfig(BaseModel):
    """Root configuration object."""
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    negotiation: NegotiationConfig = Field(default_factory=NegotiationConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    # Global settings
    debug: bool = False
    config_file_path: Optional[str] = None


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


# Environment variable -> (config path, converter)
ENV_OVERRIDES: Dict[str, Tuple[Tuple[str, ...], Callable[[str], Any]]] = {
    "OPENROUTER_API_KEY": (("provider", "api_key"), str),
    "PARLEY_PROVIDER_URL": (("provider", "base_url"), str),
    "PARLEY_LOG_LEVEL": (("logging", "level"), str.upper),
    "PARLEY_HOST": (("server", "host"), str),
    "PARLEY_PORT": (("server", "port"), int),
    "PARLEY_MAX_ROUNDS": (("negotiation", "max_rounds"), int),
    "PARLEY_TURN_DELAY": (("negotiation", "turn_delay_seconds"), float),
    "PARLEY_DEBUG": (("debug",), _parse_bool),
    "OTEL_EXPORTER_OTLP_ENDPOINT": (("observability", "otlp_endpoint"), str),
}

DEFAULT_CONFIG_PATH = "~/.parley/config.yaml"
CONFIG_SEARCH_PATHS = (DEFAULT_CONFIG_PATH, "./config/parley.yaml", "./parley.yaml")

# Never written to a config file: secrets and runtime-only fields
_UNPERSISTED_FIELDS = {"provider": {"api_key"}, "config_file_path": True, "debug": True}


class ConfigurationManager:
    """Loads ``ParleyConfig`` from YAML with environment overrides.

    Resolution order for the file: the explicit path, ``PARLEY_CONFIG_PATH``,
    then the first existing entry of ``CONFIG_SEARCH_PATHS``. A missing file
    is created with defaults. Environment variables in ``ENV_OVERRIDES`` win
    over file values.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._resolve_config_path()
        self.config: Optional[ParleyConfig] = None

    @staticmethod
    def _resolve_config_path() -> str:
        env_path = os.environ.get("PARLEY_CONFIG_PATH")
        if env_path:
            return env_path
        for candidate in CONFIG_SEARCH_PATHS:
            if Path(candidate).expanduser().exists():
                return str(Path(candidate).expanduser())
        return DEFAULT_CONFIG_PATH

    def load_config(self, config_path: Optional[str] = None) -> ParleyConfig:
        """Read, overlay and validate the configuration.

        Raises:
            ConfigurationError: On unreadable or malformed YAML, a bad
                environment value, or a schema violation
        """
        if config_path:
            self.config_path = config_path
        config_file = Path(self.config_path).expanduser()

        try:
            if not config_file.exists():
                self._write_defaults(config_file)
            with open(config_file, 'r') as f:
                file_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {config_file}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file {config_file}: {e}")

        if not isinstance(file_data, dict):
            raise ConfigurationError(f"Config file {config_file} must contain a mapping")

        try:
            self.config = ParleyConfig.model_validate(self._apply_environment(file_data))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {config_file}: {e}")

        self.config.config_file_path = str(config_file)
        return self.config

    def _write_defaults(self, config_file: Path) -> None:
        config_file.parent.mkdir(parents=True, exist_ok=True)
        defaults = ParleyConfig().model_dump(mode="json", exclude=_UNPERSISTED_FIELDS)
        with open(config_file, 'w') as f:
            yaml.dump(defaults, f, default_flow_style=False, sort_keys=False)

    @staticmethod
    def _apply_environment(config_data: Dict[str, Any]) -> Dict[str, Any]:
        for env_var, (path, convert) in ENV_OVERRIDES.items():
            raw = os.environ.get(env_var)
            if raw is None:
                continue
            try:
                value = convert(raw)
            except ValueError:
                raise ConfigurationError(f"Invalid value for {env_var}: {raw!r}")

            section = config_data
            for key in path[:-1]:
                section = section.setdefault(key, {})
            section[path[-1]] = value
        return config_data

    def get_config(self) -> ParleyConfig:
        """Return the loaded configuration.

        Raises:
            ConfigurationError: If ``load_config`` has not run yet
        """
        if self.config is None:
            raise ConfigurationError("Configuration not loaded; call load_config() first")
        return self.config

    def validate_config(self) -> List[str]:
        """Check the loaded configuration for settings that work but are risky."""
        config = self.get_config()
        checks = [
            (config.debug and config.observability.environment == "production",
             "Debug mode enabled in production environment"),
            (not config.provider.api_key,
             "No provider API key configured (set OPENROUTER_API_KEY)"),
            (not config.provider.base_url.startswith("https://"),
             f"Provider base URL is not HTTPS: {config.provider.base_url}"),
            (config.negotiation.turn_delay_seconds > 5,
             "Inter-turn delay above 5 seconds slows negotiations noticeably"),
        ]
        return [message for failed, message in checks if failed]


def load_config(config_path: Optional[str] = None) -> ParleyConfig:
    """Load configuration with a fresh manager."""
    return ConfigurationManager(config_path).load_config()
