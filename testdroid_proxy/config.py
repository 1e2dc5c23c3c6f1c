"""Server configuration and API key management."""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass, field
from pathlib import Path

from testdroid_proxy.models import SelectionStrategy

logger = logging.getLogger("testdroid-proxy.config")

CONFIG_DIR = Path.home() / ".testdroid-proxy"
API_KEY_FILE = CONFIG_DIR / "api-key"
USER_CONFIG_FILE = CONFIG_DIR / "config.json"


@dataclass
class ServerConfig:
    """Configuration for the testdroid proxy server."""

    host: str = "0.0.0.0"
    port: int = 80
    cloud_url: str = "https://cloud.testdroid.com"
    username: str = ""
    password: str = field(default="", repr=False)
    # Credentials used to sign build URLs handed to the flashing job
    client_id: str = ""
    access_token: str = field(default="", repr=False)
    proxy_host: str = "127.0.0.1"
    flash_project: str = "flash-fxos"
    default_retries: int = 2
    session_timeout: int | None = None
    selection: SelectionStrategy = SelectionStrategy.FIRST
    api_key: str = field(default="", repr=False)

    def __post_init__(self) -> None:
        self.selection = SelectionStrategy(self.selection)
        if not self.api_key:
            self.api_key = self._load_api_key()

    @staticmethod
    def _load_api_key() -> str:
        """Load the API key if one was generated. An empty key disables auth."""
        if API_KEY_FILE.exists():
            return API_KEY_FILE.read_text().strip()
        return ""

    @staticmethod
    def regenerate_api_key() -> str:
        """Generate a new API key, replacing the existing one."""
        CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        key = secrets.token_urlsafe(32)
        API_KEY_FILE.write_text(key)
        API_KEY_FILE.chmod(0o600)
        return key


def read_user_config() -> dict:
    """Read user config from ~/.testdroid-proxy/config.json. Returns {} if missing or invalid."""
    if not USER_CONFIG_FILE.exists():
        return {}
    try:
        config = json.loads(USER_CONFIG_FILE.read_text())
    except Exception as e:
        logger.warning("Failed to read config file %s: %s", USER_CONFIG_FILE, e)
        return {}
    if not isinstance(config, dict):
        logger.warning("Ignoring config file %s: expected a JSON object", USER_CONFIG_FILE)
        return {}
    return config
