"""
Configuration management using Pydantic models.

Two layers:
- ``AppSettings``: process settings from environment variables
  (``GEMINIWEB_*``) and an optional .env file
- ``UserConfig``: user preferences persisted in the config root as
  ``config.toml``, ``config.json`` or ``config.yaml``; unknown keys are kept
  and written back unchanged
"""

import json
import logging
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional

import tomli_w
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from geminiweb.core.atomic_io import atomic_write_text
from geminiweb.domain.errors import ConfigurationError
from geminiweb.domain.model_catalog import DEFAULT_MODEL, available_models

logger = logging.getLogger(__name__)

CONFIG_FILE_NAMES = ("config.toml", "config.json", "config.yaml")


class AppSettings(BaseSettings):
    """Process-level settings loaded from environment variables."""

    home: Path = Field(default=Path("~/.geminiweb"), description="Config root directory")
    log_level: str = "WARNING"
    log_file: Optional[Path] = None

    # Transport
    request_timeout: float = 60.0
    send_deadline: float = 180.0
    upload_timeout: float = 120.0
    max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0

    model_config = SettingsConfigDict(
        env_prefix="GEMINIWEB_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("home", mode="after")
    @classmethod
    def expand_home(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("log_level", mode="after")
    @classmethod
    def normalize_level(cls, value: str) -> str:
        return value.upper()


class UserConfig(BaseModel):
    """User preferences; extra keys survive a load/save cycle."""

    model_config = ConfigDict(extra="allow")

    default_model: str = DEFAULT_MODEL.value
    verbose: bool = False
    auto_close: bool = True
    close_delay_seconds: int = Field(default=3, ge=0)
    auto_re_init: bool = True
    copy_to_clipboard: bool = False
    markdown_style: str = "dark"
    tui_theme: str = "default"

    @field_validator("default_model", mode="after")
    @classmethod
    def validate_model(cls, value: str) -> str:
        if value not in available_models():
            raise ValueError(f"unknown model '{value}'")
        return value

    @classmethod
    def from_raw(cls, data: Dict[str, Any]) -> "UserConfig":
        """Validate, replacing invalid known fields with their defaults."""
        data = dict(data)
        try:
            return cls(**data)
        except ValidationError as exc:
            invalid = {err["loc"][0] for err in exc.errors() if err.get("loc")}
            for key in invalid:
                logger.warning("Invalid config value for %s, using default", key)
                data.pop(key, None)
            return cls(**data)


class ConfigManager:
    """Locates, loads and saves configuration under the config root."""

    def __init__(self, settings: Optional[AppSettings] = None):
        self._app_settings = settings
        self._user_config: Optional[UserConfig] = None
        self._config_path: Optional[Path] = None

    @property
    def app_settings(self) -> AppSettings:
        """Get application settings (cached)."""
        if self._app_settings is None:
            self._app_settings = AppSettings()
            logger.debug("Application settings loaded")
        return self._app_settings

    @property
    def home(self) -> Path:
        return self.app_settings.home

    @property
    def history_dir(self) -> Path:
        return self.home / "history"

    @property
    def cookies_path(self) -> Path:
        return self.home / "cookies.json"

    @property
    def images_dir(self) -> Path:
        return self.home / "images"

    def _search_paths(self) -> List[Path]:
        return [self.home / name for name in CONFIG_FILE_NAMES]

    def _load_file_with_error_handling(self, path: Path) -> Optional[Dict[str, Any]]:
        """Load one config file; parse errors are logged and treated as absent."""
        try:
            if path.suffix == ".toml":
                with open(path, "rb") as f:
                    data = tomllib.load(f)
            else:
                with open(path, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f) if path.suffix == ".yaml" else json.load(f)
        except (tomllib.TOMLDecodeError, yaml.YAMLError, json.JSONDecodeError) as e:
            logger.error("Config parsing error in %s: %s", path, e, exc_info=True)
            return None
        except OSError as e:
            logger.error("Unexpected error reading %s: %s", path, e, exc_info=True)
            return None

        if not isinstance(data, dict):
            logger.error("Invalid config format in %s: expected mapping, got %s", path, type(data).__name__)
            return None
        logger.info("Loaded config from %s", path)
        return data

    @property
    def user_config(self) -> UserConfig:
        """Get user configuration (cached). Defaults when no file exists."""
        if self._user_config is None:
            data: Dict[str, Any] = {}
            for path in self._search_paths():
                if path.exists():
                    self._config_path = path
                    data = self._load_file_with_error_handling(path) or {}
                    break
            self._user_config = UserConfig.from_raw(data)
        return self._user_config

    @property
    def config_path(self) -> Path:
        """File the config was read from, or where it will be written (JSON by default)."""
        _ = self.user_config
        return self._config_path or self.home / "config.json"

    def save_user_config(self, config: Optional[UserConfig] = None) -> Path:
        """Write the config back in the format it was read from."""
        config = config or self.user_config
        path = self.config_path
        data = config.model_dump(exclude_none=True)
        if path.suffix == ".toml":
            content = tomli_w.dumps(data)
        elif path.suffix == ".yaml":
            content = yaml.safe_dump(data, sort_keys=False)
        else:
            content = json.dumps(data, indent=2) + "\n"
        try:
            atomic_write_text(path, content)
        except OSError as exc:
            raise ConfigurationError(f"Failed to write {path}: {exc}") from exc
        self._user_config = config
        logger.info("Saved config to %s", path)
        return path

    def update_user_config(self, **changes: Any) -> UserConfig:
        merged = {**self.user_config.model_dump(), **changes}
        try:
            updated = UserConfig(**merged)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid config value: {exc.errors()[0]['msg']}") from exc
        self.save_user_config(updated)
        return updated
