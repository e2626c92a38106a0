"""Configuration management using Pydantic Settings."""

import logging
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

VALID_WINNERS = {"local", "remote"}


class CalendarConfig(BaseSettings):
    """Configuration for a single remote calendar collection."""

    url: str
    display_name: str | None = None
    enabled: bool = True
    read_only: bool = False
    # Falls back to sync.interval_minutes when unset
    interval_minutes: int | None = None

    @field_validator("url", mode="before")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate collection URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("Calendar URL must start with http:// or https://")
        return v

    @field_validator("interval_minutes")
    @classmethod
    def validate_interval(cls, v: int | None) -> int | None:
        if v is not None and v <= 0:
            raise ValueError("interval_minutes must be positive")
        return v


class MergeConfig(BaseSettings):
    """Field-level policy for the ``merge`` resolution mode.

    Attributes:
        title/location/start_time/end_time: Which side wins the field, 'local' or 'remote'
        description_separator: Inserted between the two descriptions when they differ
        annotate: Append a block recording every remote value that lost
    """

    title: str = "local"
    location: str = "local"
    start_time: str = "local"
    end_time: str = "local"
    description_separator: str = "\n\n---\n\n"
    annotate: bool = True

    @field_validator("title", "location", "start_time", "end_time", mode="before")
    @classmethod
    def validate_winner(cls, v: str) -> str:
        """Validate field winner."""
        v = v.lower()
        if v not in VALID_WINNERS:
            raise ValueError(f"Merge winner must be one of: {', '.join(sorted(VALID_WINNERS))}")
        return v


class SyncConfig(BaseSettings):
    """Sync engine tuning."""

    interval_minutes: int = 15
    conflict_tolerance_seconds: int = 60
    max_backoff_minutes: int = 240
    # Domain part of UIDs generated for locally created appointments
    uid_domain: str = "calbridge"
    merge: MergeConfig = Field(default_factory=MergeConfig)

    @field_validator("interval_minutes", "max_backoff_minutes")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Intervals must be positive")
        return v

    @field_validator("conflict_tolerance_seconds")
    @classmethod
    def validate_tolerance(cls, v: int) -> int:
        if v < 0:
            raise ValueError("conflict_tolerance_seconds cannot be negative")
        return v


class CalDAVConfig(BaseSettings):
    """Connection settings for the CalDAV account."""

    url: str | None = None
    username: str | None = None
    password: str | None = None
    email: str | None = None
    request_timeout: int = 30
    ssl_verify_cert: bool = True

    @field_validator("url", mode="before")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate CalDAV URL format."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("CalDAV URL must start with http:// or https://")
        return v

    @field_validator("request_timeout")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("request_timeout must be positive")
        return v

    def get_password(self) -> str | None:
        """
        Get CalDAV password from keyring or config.

        Priority:
        1. System keyring (if username is configured)
        2. Config/environment variable (fallback)

        Returns:
            Password if found, None otherwise
        """
        if self.username:
            try:
                from calbridge.utils.credentials import CredentialStore

                password = CredentialStore().get_password(self.url, self.username)
                if password:
                    logger.debug("Using CalDAV password from system keyring")
                    return password
            except Exception as e:
                logger.warning(f"Failed to retrieve password from keyring: {e}")

        if self.password:
            logger.debug("Using CalDAV password from config/environment")
            return self.password

        return None


class GeneralConfig(BaseSettings):
    """General application configuration."""

    log_level: str = "INFO"
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".calbridge")
    log_file_name: str = "calbridge.log"
    log_file_max_bytes: int = 5 * 1024 * 1024
    log_file_backup_count: int = 3
    # Runtime metadata, never written back to the config file
    config_file: Path | None = Field(default=None, exclude=True)

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v

    @field_validator("data_dir", mode="before")
    @classmethod
    def expand_data_dir(cls, v: str | Path) -> Path:
        """Expand user home directory in data directory path."""
        return Path(v).expanduser().resolve()


class AppConfig(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CALBRIDGE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    caldav: CalDAVConfig = Field(default_factory=CalDAVConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    # Short name -> collection
    calendars: dict[str, CalendarConfig] = Field(default_factory=dict)

    @classmethod
    def load_from_file(cls, config_path: Path) -> "AppConfig":
        """Load configuration from a TOML file."""
        if not config_path.exists():
            logger.warning(f"Config file not found: {config_path}, using defaults")
            return cls()

        import tomllib

        with open(config_path, "rb") as f:
            config_dict = tomllib.load(f)

        return cls(**config_dict)

    def save_to_file(self, config_path: Path) -> None:
        """Save configuration to a TOML file."""
        import tomli_w

        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_dict = self.model_dump(mode="json", exclude_none=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(config_dict, f)

        logger.info(f"Configuration saved to {config_path}")

    def ensure_data_dir(self) -> None:
        """Ensure data directory exists."""
        self.general.data_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Data directory: {self.general.data_dir}")

    def interval_for(self, calendar_id: str) -> int:
        """Sync interval for a calendar URL, honouring per-calendar overrides."""
        for cal in self.calendars.values():
            if cal.url == calendar_id and cal.interval_minutes:
                return cal.interval_minutes
        return self.sync.interval_minutes

    @property
    def appointments_db_path(self) -> Path:
        """Path to the local appointment store."""
        return self.general.data_dir / "appointments.db"

    @property
    def sync_db_path(self) -> Path:
        """Path to the sync state database (calendars, conflicts)."""
        return self.general.data_dir / "sync.db"

    @property
    def sync_logs_db_path(self) -> Path:
        return self.general.data_dir / "sync_logs.db"

    @property
    def default_config_path(self) -> Path:
        """Get default configuration file path."""
        return self.general.data_dir / "config.toml"


# Global configuration instance
_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig()
        _config.ensure_data_dir()
    return _config


def set_config(config: AppConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
    _config.ensure_data_dir()


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load configuration from file or create default."""
    if config_path is None:
        config = AppConfig()
        config_path = config.default_config_path

    if config_path.exists():
        config = AppConfig.load_from_file(config_path)
    else:
        config = AppConfig()

    config.general.config_file = config_path
    set_config(config)
    return config
