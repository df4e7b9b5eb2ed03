import os
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from qwenproxy.core.logging import get_logger


__all__ = [
    "ConfigurationError",
    "LoggingSettings",
    "SecuritySettings",
    "ServerSettings",
    "Settings",
    "StorageSettings",
    "UploadSettings",
    "UpstreamSettings",
    "get_settings",
]

DEFAULT_CONFIG_FILENAMES = ("qwenproxy.toml", ".qwenproxy.toml")


class ConfigurationError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


def _split_csv(value: Any) -> Any:
    """Accept a list or a comma-separated string and return a comma-joined string."""
    if value is None:
        return ""
    if isinstance(value, list | tuple):
        return ",".join(str(item).strip() for item in value if str(item).strip())
    return value


class ServerSettings(BaseModel):
    """Server-specific configuration settings."""

    host: str = Field(
        default="127.0.0.1",
        description="Server host address",
    )

    port: int = Field(
        default=8000,
        description="Server port number",
        ge=1,
        le=65535,
    )

    reload: bool = Field(
        default=False,
        description="Enable auto-reload for development",
    )


class LoggingSettings(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    format: str = Field(
        default="auto",
        description="Logging output format: 'console' for development, 'json' for production, 'auto' for automatic selection",
    )

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        upper_v = v.upper()
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v

    @field_validator("format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate and normalize log format."""
        lower_v = v.lower()
        valid_formats = ["auto", "console", "json"]
        if lower_v not in valid_formats:
            raise ValueError(f"Invalid log format: {v}. Must be one of {valid_formats}")
        return lower_v


class SecuritySettings(BaseModel):
    """Client-facing authentication settings."""

    auth_token: SecretStr | None = Field(
        default=None,
        description="Bearer token clients must present (optional, proxy is open when unset)",
    )

    @field_validator("auth_token", mode="before")
    @classmethod
    def validate_auth_token(cls, v: Any) -> Any:
        """Treat empty strings as unset."""
        if v is None or v == "":
            return None
        if isinstance(v, str):
            return SecretStr(v)
        return v


class UpstreamSettings(BaseModel):
    """Upstream chat service configuration."""

    base_url: str = Field(
        default="https://chat.qwen.ai",
        description="Base URL of the upstream chat service",
    )

    chat_path: str = Field(default="/api/chat/completions")

    models_path: str = Field(default="/api/models")

    sts_path: str = Field(
        default="/api/v1/files/getstsToken",
        description="Endpoint that issues temporary object-storage credentials",
    )

    user_agent: str = Field(
        default="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
    )

    default_model: str = Field(
        default="qwen-max",
        description="Model used when the inbound request does not name one",
    )

    stream_model_fallback: str = Field(
        default="qwen",
        description="Model name emitted in stream chunks when upstream omits it",
    )

    timeout_connect: float = Field(default=10.0, gt=0)

    timeout_read: float = Field(default=300.0, gt=0)

    api_keys: str = Field(
        default="",
        description="Comma-separated primary tokens imported into the pool at startup",
    )

    ssxmod_itna: str = Field(
        default="",
        description="Comma-separated session cookies imported into the pool at startup",
    )

    invalidate_on_status: list[int] | None = Field(
        default=None,
        description=(
            "Upstream status codes that invalidate the credentials used. "
            "None invalidates on any 4xx response."
        ),
    )

    @field_validator("api_keys", "ssxmod_itna", mode="before")
    @classmethod
    def validate_csv(cls, v: Any) -> Any:
        return _split_csv(v)

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def api_key_list(self) -> list[str]:
        return [k.strip() for k in self.api_keys.split(",") if k.strip()]

    @property
    def ssxmod_itna_list(self) -> list[str]:
        return [k.strip() for k in self.ssxmod_itna.split(",") if k.strip()]

    @property
    def chat_url(self) -> str:
        return f"{self.base_url}{self.chat_path}"

    @property
    def models_url(self) -> str:
        return f"{self.base_url}{self.models_path}"

    @property
    def sts_url(self) -> str:
        return f"{self.base_url}{self.sts_path}"

    def should_invalidate(self, status_code: int) -> bool:
        """Whether an upstream status signals unhealthy credentials."""
        if self.invalidate_on_status is not None:
            return status_code in self.invalidate_on_status
        return 400 <= status_code < 500


class StorageSettings(BaseModel):
    """Credential store configuration."""

    backend: str = Field(
        default="json",
        description="Credential store backend: 'json' (durable file) or 'memory'",
    )

    path: Path = Field(
        default_factory=lambda: Path.home() / ".qwenproxy" / "credentials.json",
        description="Location of the JSON credential store",
    )

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        lower_v = v.lower()
        if lower_v not in ("json", "memory"):
            raise ValueError(
                f"Invalid storage backend: {v}. Must be 'json' or 'memory'"
            )
        return lower_v


class UploadSettings(BaseModel):
    """Inline attachment upload configuration."""

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Total attempts for the temporary credential exchange",
    )

    backoff_initial: float = Field(
        default=1.0,
        ge=0,
        description="Delay in seconds before the first retry, doubled for each further retry",
    )

    backoff_max: float = Field(default=4.0, ge=0)

    endpoint_template: str = Field(
        default="https://{region}.aliyuncs.com",
        description="Object-storage endpoint, formatted with the issued region",
    )

    addressing_style: str = Field(
        default="virtual",
        description="'virtual' (bucket in host name) or 'path' (bucket in path)",
    )

    @field_validator("addressing_style")
    @classmethod
    def validate_addressing_style(cls, v: str) -> str:
        lower_v = v.lower()
        if lower_v not in ("virtual", "path"):
            raise ValueError(
                f"Invalid addressing style: {v}. Must be 'virtual' or 'path'"
            )
        return lower_v


class Settings(BaseSettings):
    """
    Configuration settings for the Qwen proxy.

    Settings are loaded from environment variables, .env files, and TOML configuration files.
    Environment variables take precedence over TOML values. Nested sections use
    ``__`` as delimiter, e.g. ``UPSTREAM__API_KEYS`` or ``SECURITY__AUTH_TOKEN``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    server: ServerSettings = Field(
        default_factory=ServerSettings,
        description="Server configuration settings",
    )

    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration",
    )

    security: SecuritySettings = Field(
        default_factory=SecuritySettings,
        description="Client authentication settings",
    )

    upstream: UpstreamSettings = Field(
        default_factory=UpstreamSettings,
        description="Upstream chat service settings",
    )

    storage: StorageSettings = Field(
        default_factory=StorageSettings,
        description="Credential store settings",
    )

    upload: UploadSettings = Field(
        default_factory=UploadSettings,
        description="Inline attachment upload settings",
    )

    @property
    def server_url(self) -> str:
        """Get the complete server URL."""
        return f"http://{self.server.host}:{self.server.port}"

    @classmethod
    def load_toml_config(cls, toml_path: Path) -> dict[str, Any]:
        """Load configuration from a TOML file."""
        try:
            with toml_path.open("rb") as f:
                return tomllib.load(f)
        except OSError as e:
            raise ConfigurationError(
                f"Cannot read TOML config file {toml_path}: {e}"
            ) from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML syntax in {toml_path}: {e}") from e

    @classmethod
    def from_config(
        cls, config_path: Path | str | None = None, **kwargs: Any
    ) -> "Settings":
        """Create Settings from an optional TOML file, with env taking precedence."""
        if config_path is None:
            config_path_env = os.environ.get("CONFIG_FILE")
            if config_path_env:
                config_path = Path(config_path_env)

        if isinstance(config_path, str):
            config_path = Path(config_path)

        if config_path is None:
            config_path = find_toml_config_file()

        config_data: dict[str, Any] = {}
        if config_path and config_path.exists():
            config_data = cls.load_toml_config(config_path)
            get_logger(__name__).info(
                "config_file_loaded", path=str(config_path), category="config"
            )

        settings = cls(**kwargs)

        for section, values in config_data.items():
            if not hasattr(settings, section) or not isinstance(values, dict):
                continue
            current = getattr(settings, section)
            if not isinstance(current, BaseModel):
                continue
            merged = current.model_dump()
            for key, value in values.items():
                env_key = f"{section.upper()}__{key.upper()}"
                if os.getenv(env_key) is None and key not in kwargs.get(section, {}):
                    merged[key] = value
            try:
                setattr(settings, section, type(current).model_validate(merged))
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid [{section}] section in {config_path}: {e}"
                ) from e

        return settings


def find_toml_config_file() -> Path | None:
    """Return the first TOML config file found in the working directory."""
    for name in DEFAULT_CONFIG_FILENAMES:
        candidate = Path.cwd() / name
        if candidate.is_file():
            return candidate
    return None


@lru_cache
def get_settings() -> Settings:
    """Get the global settings instance."""
    try:
        return Settings.from_config()
    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(f"Configuration error: {e}") from e
