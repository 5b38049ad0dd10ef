"""Relay server configuration.

All settings can be overridden via environment variables.
An optional env file is loaded first (RELAY_ENV_FILE, default ./.env).
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

_env_path = Path(os.environ.get("RELAY_ENV_FILE", ".env"))
load_dotenv(_env_path)


class ConfigurationError(Exception):
    """A required setting is missing or unusable."""


# --- Server ---
RELAY_HOST = os.environ.get("RELAY_HOST", "0.0.0.0")
RELAY_PORT = int(os.environ.get("RELAY_PORT", "8082"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# --- Backend agent (Archie) ---
CLAWDBOT_TOKEN = os.environ.get("CLAWDBOT_TOKEN", "")
AGENT_URL = os.environ.get("AGENT_URL", "http://127.0.0.1:18789").rstrip("/")
AGENT_SESSION_KEY = os.environ.get("AGENT_SESSION_KEY", "agent:main:main")
AGENT_MODEL = os.environ.get("AGENT_MODEL", "clawdbot:main")
AGENT_TIMEOUT = float(os.environ.get("AGENT_TIMEOUT", "120"))
DEFAULT_SYSTEM_PROMPT = os.environ.get(
    "DEFAULT_SYSTEM_PROMPT",
    "You are Archie, a concise and helpful assistant.",
)

# --- Telegram relay (optional) ---
TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID = os.environ.get("TELEGRAM_CHAT_ID", "")
TELEGRAM_API_URL = os.environ.get("TELEGRAM_API_URL", "https://api.telegram.org").rstrip("/")

# --- Authentication (OpenID Connect ID tokens) ---
_DEFAULT_CLIENT_ID = "archie-relay.apps.googleusercontent.com"
OAUTH_CLIENT_ID = os.environ.get("OAUTH_CLIENT_ID") or _DEFAULT_CLIENT_ID
OAUTH_ISSUERS = [
    i.strip()
    for i in os.environ.get("OAUTH_ISSUERS", "accounts.google.com,https://accounts.google.com").split(",")
    if i.strip()
]
JWKS_URL = os.environ.get("JWKS_URL", "https://www.googleapis.com/oauth2/v3/certs")
JWKS_CACHE_TTL = int(os.environ.get("JWKS_CACHE_TTL", "3600"))
JWKS_MIN_REFRESH_INTERVAL = int(os.environ.get("JWKS_MIN_REFRESH_INTERVAL", "60"))
ALLOWED_EMAIL = os.environ.get("ALLOWED_EMAIL", "").strip()

# --- Event streams ---
KEEPALIVE_INTERVAL = float(os.environ.get("KEEPALIVE_INTERVAL", "15"))
EMIT_TIMEOUT = float(os.environ.get("EMIT_TIMEOUT", "5"))
STREAM_QUEUE_SIZE = int(os.environ.get("STREAM_QUEUE_SIZE", "100"))

# Settings the process refuses to start without.
_REQUIRED = {
    "CLAWDBOT_TOKEN": CLAWDBOT_TOKEN,
}


def missing_required() -> list[str]:
    """Return the names of required settings that are empty."""
    return [name for name, value in _REQUIRED.items() if not value]


def validate():
    """Raise ConfigurationError if a required setting is missing."""
    missing = missing_required()
    if missing:
        raise ConfigurationError(f"{', '.join(missing)} environment variable is not set")


def configure_logging(level: str = LOG_LEVEL):
    """Install the root handler for the relay.* loggers."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(name)s] %(levelname)s %(message)s",
    )
