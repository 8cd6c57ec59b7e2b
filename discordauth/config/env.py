"""Deployment-level settings read once from the environment."""

import os
import secrets
from pathlib import Path


def string_to_bool(value: str) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


CONFIG_DIR = Path(os.getenv("CONFIG_DIR", "/config"))
CONFIG_FILE = CONFIG_DIR / "discord_auth.json"
LINKS_DB_PATH = CONFIG_DIR / "discord_links.db"

LOG_ROOT = Path(os.getenv("LOG_ROOT", "/var/log/"))
LOG_DIR = LOG_ROOT / "discordauth"
LOG_FILE = LOG_DIR / "discordauth.log"
ENABLE_LOGGING = string_to_bool(os.getenv("ENABLE_LOGGING", "true"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

FLASK_HOST = os.getenv("FLASK_HOST", "0.0.0.0")
FLASK_PORT = int(os.getenv("FLASK_PORT", "8097"))
DEBUG = string_to_bool(os.getenv("DEBUG", "false"))

# Sessions only carry the OAuth state parameter, so a per-process key is acceptable.
SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
