"""Configuration singleton with ENV > config file > default resolution."""

import json
import os
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

from discordauth.config import env

# Every recognised setting and its default. Keys double as ENV variable names.
DEFAULTS: Dict[str, Any] = {
    "DISCORD_CLIENT_ID": "",
    "DISCORD_CLIENT_SECRET": "",
    "DISCORD_BOT_TOKEN": "",
    "DISCORD_SERVER_ID": "",
    "DISCORD_DEFAULT_ROLES": "",
    "DISCORD_ADMIN_ROLE": "Admin",
    "DISCORD_API_BASE": "https://discord.com/api/v10",
    "DISCORD_SCOPES": "identify email",
    "JELLYFIN_URL": "http://localhost:8096",
    "JELLYFIN_API_KEY": "",
    "AUTH_PROVIDER_ID": "DiscordAuth.DiscordAuthenticationProvider",
    "LOGIN_TIMEOUT": 30,
    "RECONCILE_WORKERS": 4,
    "HTTP_TIMEOUT": 10,
    "LINKS_API_TOKEN": "",
}


def load_config_file(path: Optional[Path] = None) -> Dict[str, Any]:
    """Read the JSON settings file. Missing or unreadable files yield an empty dict."""
    config_path = Path(path) if path is not None else env.CONFIG_FILE
    try:
        with open(config_path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def parse_id_list(value: Any) -> list[str]:
    """Split a comma-separated (or list) setting into trimmed, non-empty ids."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        raw_values = [str(item) for item in value]
    else:
        raw_values = str(value).split(",")
    return [item.strip() for item in raw_values if item.strip()]


class Config:
    """
    Configuration singleton that provides live settings access.

    Settings are resolved with priority: ENV var > config file > default.
    Values are cached and can be refreshed when the config file changes.
    """

    _instance: Optional['Config'] = None
    _lock = Lock()

    def __new__(cls) -> 'Config':
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._cache: Dict[str, Any] = {}
        self._from_env: set[str] = set()
        self._cache_lock = Lock()
        self._config_path: Optional[Path] = None
        self._initialized = True
        self._loaded = False

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        with self._cache_lock:
            if self._loaded:
                return
            self._load_settings()

    def _load_settings(self) -> None:
        file_values = load_config_file(self._config_path)

        self._cache.clear()
        self._from_env.clear()
        for key, default in DEFAULTS.items():
            env_value = os.environ.get(key)
            if env_value is not None and env_value != "":
                self._cache[key] = env_value
                self._from_env.add(key)
            elif key in file_values:
                self._cache[key] = file_values[key]
            else:
                self._cache[key] = default

        self._loaded = True

    def use_file(self, path: Optional[Path]) -> None:
        """Point the singleton at another settings file (None restores the default)."""
        with self._cache_lock:
            self._config_path = Path(path) if path is not None else None
            self._loaded = False

    def refresh(self) -> None:
        """
        Reload all settings from the environment and config file.

        Call this after the config file is edited so the singleton reflects
        the new values.
        """
        with self._cache_lock:
            self._loaded = False
            self._load_settings()

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a setting value by key.

        Args:
            key: The setting key (e.g., 'DISCORD_SERVER_ID')
            default: Default value if setting not found

        Returns:
            The setting value, or default if not found
        """
        self._ensure_loaded()
        return self._cache.get(key, default)

    def __getattr__(self, name: str) -> Any:
        """Allow attribute-style access, e.g. config.DISCORD_SERVER_ID."""
        if name.startswith('_'):
            raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

        self._ensure_loaded()

        if name in self._cache:
            return self._cache[name]

        if hasattr(env, name):
            return getattr(env, name)

        raise AttributeError(f"Setting '{name}' not found in config or env")

    def is_from_env(self, key: str) -> bool:
        """Check if a setting's value comes from an environment variable."""
        self._ensure_loaded()
        return key in self._from_env

    def get_all(self) -> Dict[str, Any]:
        """Get all cached settings as a dictionary."""
        self._ensure_loaded()
        return dict(self._cache)


# Global singleton instance
config = Config()
