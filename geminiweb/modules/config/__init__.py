"""Configuration module."""

from .config_manager import AppSettings, ConfigManager, UserConfig
from .cookies import CookieStore, parse_cookies

__all__ = [
    "AppSettings",
    "ConfigManager",
    "CookieStore",
    "UserConfig",
    "parse_cookies",
]
