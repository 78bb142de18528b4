"""
Configuration settings management for RecipeVault.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.recipevault/config.yaml by default, with the
path overridable via the RECIPEVAULT_CONFIG environment variable.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".recipevault"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

# Uploads larger than this are rejected before decoding (50 MiB)
DEFAULT_MAX_FILE_SIZE = 50 * 1024 * 1024


@dataclass
class ImportConfig:
    """Bundle import settings."""

    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    reject_malicious_content: bool = False


@dataclass
class SchedulerConfig:
    """Automatic backup scheduler settings."""

    tick_interval_seconds: int = 3600
    batch_size: int = 5
    max_failures: int = 3
    retry_delay_seconds: int = 3600


@dataclass
class LocalProviderConfig:
    """Local folder provider configuration."""

    enabled: bool = True
    root: str = str(DEFAULT_CONFIG_DIR / "cloud")


@dataclass
class DropboxConfig:
    """Dropbox-specific configuration."""

    enabled: bool = False
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    folder: str = "/Apps/Recipe Book"


@dataclass
class GoogleDriveConfig:
    """Google Drive-specific configuration."""

    enabled: bool = False
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    folder_name: str = "Recipe Book Backups"


@dataclass
class ProvidersConfig:
    """Cloud storage provider settings."""

    request_timeout: int = 60
    local: LocalProviderConfig = field(default_factory=LocalProviderConfig)
    dropbox: DropboxConfig = field(default_factory=DropboxConfig)
    google_drive: GoogleDriveConfig = field(default_factory=GoogleDriveConfig)


@dataclass
class SecurityConfig:
    """Token encryption and OAuth state settings."""

    token_key: str = ""
    oauth_state_ttl_seconds: int = 600


@dataclass
class Settings:
    """
    Complete RecipeVault configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with RECIPEVAULT_.

    Attributes:
        data_dir: Directory for the database and key files.
        work_dir: Directory for generated and downloaded bundle files.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        imports: Bundle import settings.
        scheduler: Automatic backup scheduler settings.
        providers: Cloud storage provider settings.
        security: Token encryption and OAuth state settings.
    """

    data_dir: str = str(DEFAULT_CONFIG_DIR / "data")
    work_dir: str = str(DEFAULT_CONFIG_DIR / "work")
    log_level: str = "INFO"

    imports: ImportConfig = field(default_factory=ImportConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from RECIPEVAULT_CONFIG environment variable if set,
    otherwise returns the default path (~/.recipevault/config.yaml).

    Returns:
        Path to the configuration file.
    """
    env_path = os.environ.get("RECIPEVAULT_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses RECIPEVAULT_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    The token key is never written; supply it through RECIPEVAULT_TOKEN_KEY
    or the key file created by ``recipevault init``.

    Args:
        settings: Settings instance to save.
        config_path: Optional path to configuration file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    general = data.get("recipevault", {})

    if "data_dir" in general:
        settings.data_dir = str(general["data_dir"])
    if "work_dir" in general:
        settings.work_dir = str(general["work_dir"])
    if "log_level" in general:
        settings.log_level = str(general["log_level"]).upper()

    imports = data.get("import", {})
    if "max_file_size" in imports:
        settings.imports.max_file_size = int(imports["max_file_size"])
    if "reject_malicious_content" in imports:
        settings.imports.reject_malicious_content = bool(imports["reject_malicious_content"])

    scheduler = data.get("scheduler", {})
    if "tick_interval_seconds" in scheduler:
        settings.scheduler.tick_interval_seconds = int(scheduler["tick_interval_seconds"])
    if "batch_size" in scheduler:
        settings.scheduler.batch_size = int(scheduler["batch_size"])
    if "max_failures" in scheduler:
        settings.scheduler.max_failures = int(scheduler["max_failures"])
    if "retry_delay_seconds" in scheduler:
        settings.scheduler.retry_delay_seconds = int(scheduler["retry_delay_seconds"])

    providers = data.get("providers", {})
    if "request_timeout" in providers:
        settings.providers.request_timeout = int(providers["request_timeout"])

    if "local" in providers:
        local = providers["local"]
        settings.providers.local.enabled = local.get("enabled", True)
        settings.providers.local.root = str(local.get("root", settings.providers.local.root))

    if "dropbox" in providers:
        dropbox = providers["dropbox"]
        settings.providers.dropbox.enabled = dropbox.get("enabled", False)
        settings.providers.dropbox.client_id = dropbox.get("client_id", "")
        settings.providers.dropbox.client_secret = dropbox.get("client_secret", "")
        settings.providers.dropbox.redirect_uri = dropbox.get("redirect_uri", "")
        settings.providers.dropbox.folder = dropbox.get("folder", "/Apps/Recipe Book")

    if "google_drive" in providers:
        drive = providers["google_drive"]
        settings.providers.google_drive.enabled = drive.get("enabled", False)
        settings.providers.google_drive.client_id = drive.get("client_id", "")
        settings.providers.google_drive.client_secret = drive.get("client_secret", "")
        settings.providers.google_drive.redirect_uri = drive.get("redirect_uri", "")
        settings.providers.google_drive.folder_name = drive.get(
            "folder_name", "Recipe Book Backups"
        )

    security = data.get("security", {})
    if "oauth_state_ttl_seconds" in security:
        settings.security.oauth_state_ttl_seconds = int(security["oauth_state_ttl_seconds"])

    return settings


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "RECIPEVAULT_DATA_DIR": ("data_dir", str),
        "RECIPEVAULT_WORK_DIR": ("work_dir", str),
        "RECIPEVAULT_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "RECIPEVAULT_MAX_FILE_SIZE": ("imports.max_file_size", int),
        "RECIPEVAULT_REJECT_MALICIOUS": ("imports.reject_malicious_content", _parse_bool),
        "RECIPEVAULT_LOCAL_ROOT": ("providers.local.root", str),
        "RECIPEVAULT_DROPBOX_CLIENT_ID": ("providers.dropbox.client_id", str),
        "RECIPEVAULT_DROPBOX_CLIENT_SECRET": ("providers.dropbox.client_secret", str),
        "RECIPEVAULT_GOOGLE_CLIENT_ID": ("providers.google_drive.client_id", str),
        "RECIPEVAULT_GOOGLE_CLIENT_SECRET": ("providers.google_drive.client_secret", str),
        "RECIPEVAULT_TOKEN_KEY": ("security.token_key", str),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            try:
                _set_nested_attr(settings, attr_path, converter(value))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {e}") from e

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    if settings.imports.max_file_size < 1:
        raise ConfigurationError("max_file_size must be at least 1 byte")

    if settings.scheduler.batch_size < 1:
        raise ConfigurationError("scheduler batch_size must be at least 1")

    if settings.scheduler.max_failures < 1:
        raise ConfigurationError("scheduler max_failures must be at least 1")

    if settings.scheduler.tick_interval_seconds < 1:
        raise ConfigurationError("scheduler tick_interval_seconds must be at least 1")

    if settings.security.oauth_state_ttl_seconds < 1:
        raise ConfigurationError("oauth_state_ttl_seconds must be at least 1")


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "recipevault": {
            "data_dir": settings.data_dir,
            "work_dir": settings.work_dir,
            "log_level": settings.log_level,
        },
        "import": {
            "max_file_size": settings.imports.max_file_size,
            "reject_malicious_content": settings.imports.reject_malicious_content,
        },
        "scheduler": {
            "tick_interval_seconds": settings.scheduler.tick_interval_seconds,
            "batch_size": settings.scheduler.batch_size,
            "max_failures": settings.scheduler.max_failures,
            "retry_delay_seconds": settings.scheduler.retry_delay_seconds,
        },
        "providers": {
            "request_timeout": settings.providers.request_timeout,
            "local": {
                "enabled": settings.providers.local.enabled,
                "root": settings.providers.local.root,
            },
            "dropbox": {
                "enabled": settings.providers.dropbox.enabled,
                "client_id": settings.providers.dropbox.client_id,
                "client_secret": settings.providers.dropbox.client_secret,
                "redirect_uri": settings.providers.dropbox.redirect_uri,
                "folder": settings.providers.dropbox.folder,
            },
            "google_drive": {
                "enabled": settings.providers.google_drive.enabled,
                "client_id": settings.providers.google_drive.client_id,
                "client_secret": settings.providers.google_drive.client_secret,
                "redirect_uri": settings.providers.google_drive.redirect_uri,
                "folder_name": settings.providers.google_drive.folder_name,
            },
        },
        "security": {
            "oauth_state_ttl_seconds": settings.security.oauth_state_ttl_seconds,
        },
    }
