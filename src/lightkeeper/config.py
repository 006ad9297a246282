"""Configuration management for Lightkeeper.

Settings are resolved in three layers: dataclass defaults, then a YAML file in
the data directory (or the file named by ``LIGHTKEEPER_CONFIG``), then
environment variables.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


logger = logging.getLogger(__name__)


# Environment variable -> config attribute
ENV_OVERRIDES = {
    "LIGHTKEEPER_DATA_DIR": "data_dir",
    "NYLAS_API_URL": "nylas_api_url",
    "NYLAS_API_KEY": "nylas_api_key",
    "NYLAS_GRANT_ID": "nylas_grant_id",
    "CALENDAR_SYNC_INTERVAL_MINUTES": "calendar_sync_interval_minutes",
    "SYNC_USER_TIMEOUT_SECONDS": "sync_user_timeout_seconds",
    "LIGHTKEEPER_SCHEDULER_ENABLED": "scheduler_enabled",
    "EMAIL_SCAN_INTERVAL_MINUTES": "email_scan_interval_minutes",
    "LIGHTKEEPER_EMAIL_SCAN_ENABLED": "email_scan_enabled",
    "JWT_SECRET": "jwt_secret",
    "LOG_LEVEL": "log_level",
}


@dataclass
class ConfigModel:
    """Global configuration model for Lightkeeper."""

    # Storage
    data_dir: str = "~/.lightkeeper"
    database_name: str = "lightkeeper.db"

    # External calendar provider
    nylas_api_url: str = "https://api.us.nylas.com"
    nylas_api_key: Optional[str] = None
    nylas_grant_id: Optional[str] = None
    provider_timeout_seconds: int = 30

    # Calendar sync
    calendar_sync_interval_minutes: int = 15
    calendar_sync_window_days: int = 30
    calendar_fetch_limit: int = 100
    sync_user_timeout_seconds: int = 300
    scheduler_enabled: bool = True
    reverse_sync_title_prefix: str = "[Lightkeeper] "

    # Email ingestion
    email_scan_interval_minutes: int = 1
    email_fetch_limit: int = 50
    email_confidence_threshold: float = 0.5
    email_scan_enabled: bool = True

    # Web app
    jwt_secret: Optional[str] = None
    access_token_expire_minutes: int = 24 * 60
    cors_origins: List[str] = field(default_factory=lambda: [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ])
    log_level: str = "INFO"

    def __post_init__(self):
        """Normalize paths and coerce values that may arrive as strings."""
        self.data_dir = os.path.expanduser(str(self.data_dir))

        for int_field in ("calendar_sync_interval_minutes", "calendar_sync_window_days",
                          "calendar_fetch_limit", "sync_user_timeout_seconds",
                          "provider_timeout_seconds", "access_token_expire_minutes",
                          "email_scan_interval_minutes", "email_fetch_limit"):
            value = getattr(self, int_field)
            default = _field_default(int_field)
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning(f"Invalid value for {int_field}: {value!r}, using {default}")
                value = default
            if value <= 0:
                logger.warning(f"{int_field} must be positive, using {default}")
                value = default
            setattr(self, int_field, value)

        try:
            threshold = float(self.email_confidence_threshold)
        except (TypeError, ValueError):
            threshold = _field_default("email_confidence_threshold")
            logger.warning(f"Invalid value for email_confidence_threshold, using {threshold}")
        self.email_confidence_threshold = min(1.0, max(0.0, threshold))

        for flag in ("scheduler_enabled", "email_scan_enabled"):
            value = getattr(self, flag)
            if isinstance(value, str):
                setattr(self, flag, value.strip().lower() in ("1", "true", "yes", "on"))

        self.log_level = str(self.log_level).upper()

    @property
    def provider_configured(self) -> bool:
        """True when both the provider API key and grant are set."""
        return bool(self.nylas_api_key and self.nylas_grant_id)

    def get_database_path(self) -> Path:
        """Get the SQLite database path."""
        return Path(self.data_dir) / self.database_name

    def get_config_path(self) -> Path:
        """Get the config file path."""
        return Path(self.data_dir) / "config.yaml"

    def ensure_data_dir(self) -> Path:
        """Create the data directory if needed and return it."""
        path = Path(self.data_dir)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        """Convert config to a dictionary, masking secrets by default."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        if not include_secrets:
            for secret in ("nylas_api_key", "jwt_secret"):
                if data.get(secret):
                    data[secret] = "***"
        return data

    def to_yaml(self) -> str:
        """Serialize config to YAML."""
        return yaml.dump(self.to_dict(include_secrets=True), default_flow_style=False)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> "ConfigModel":
        """Deserialize config from YAML, ignoring unknown keys."""
        data = yaml.safe_load(yaml_str) or {}
        if not isinstance(data, dict):
            raise TypeError(f"Config must be a mapping, got {type(data).__name__}")
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})


def _field_default(name: str) -> Any:
    for f in fields(ConfigModel):
        if f.name == name:
            return f.default
    raise KeyError(name)


def apply_env_overrides(config: ConfigModel, environ: Optional[Dict[str, str]] = None) -> ConfigModel:
    """Apply environment variable overrides to a config.

    Args:
        config: Config to update
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        A new ConfigModel with overrides applied
    """
    environ = os.environ if environ is None else environ
    data = {f.name: getattr(config, f.name) for f in fields(config)}

    for env_name, attr in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is not None and value != "":
            data[attr] = value

    return ConfigModel(**data)


class Config:
    """Configuration manager for Lightkeeper."""

    _instance: Optional[ConfigModel] = None

    @classmethod
    def load(cls, config_path: Optional[Path] = None,
             environ: Optional[Dict[str, str]] = None) -> ConfigModel:
        """Load configuration from file and environment."""
        if cls._instance is not None:
            return cls._instance

        environ = os.environ if environ is None else environ
        config = ConfigModel(data_dir=environ.get("LIGHTKEEPER_DATA_DIR") or ConfigModel.data_dir)

        if config_path is None:
            env_path = environ.get("LIGHTKEEPER_CONFIG")
            config_path = Path(env_path) if env_path else config.get_config_path()

        if config_path.exists():
            try:
                config = ConfigModel.from_yaml(config_path.read_text())
                logger.info(f"Loaded configuration from {config_path}")
            except (OSError, yaml.YAMLError, TypeError) as e:
                logger.warning(f"Failed to load config from {config_path}: {e}; using defaults")

        config = apply_env_overrides(config, environ)
        cls._instance = config
        return config

    @classmethod
    def save(cls, config: ConfigModel, config_path: Optional[Path] = None) -> None:
        """Save configuration to file."""
        if config_path is None:
            config_path = config.get_config_path()

        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(config.to_yaml())
        logger.info(f"Configuration saved to {config_path}")

    @classmethod
    def get(cls) -> ConfigModel:
        """Get the current configuration instance."""
        if cls._instance is None:
            cls._instance = cls.load()
        return cls._instance

    @classmethod
    def set(cls, config: ConfigModel) -> None:
        """Install a configuration instance (tests, embedding)."""
        cls._instance = config

    @classmethod
    def reset(cls) -> None:
        """Forget the cached configuration."""
        cls._instance = None


def get_config() -> ConfigModel:
    """Get the current configuration."""
    return Config.get()


def load_config(config_path: Optional[Path] = None) -> ConfigModel:
    """Load configuration from file."""
    return Config.load(config_path)


def reset_config() -> None:
    """Reset the cached configuration (for testing)."""
    Config.reset()
