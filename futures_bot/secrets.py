"""Binance API credentials.

Looked up in order, first complete source wins:

* ``BINANCE_API_KEY`` / ``BINANCE_API_SECRET``
* a JSON file ``{"api_key": ..., "api_secret": ...}`` at ``config_path``,
  ``$BINANCE_CONFIG_PATH`` or ``~/.binance_config.json``
"""
import json
import os
from pathlib import Path
from typing import NamedTuple, Optional

from .logging_setup import logger

ENV_API_KEY = "BINANCE_API_KEY"
ENV_API_SECRET = "BINANCE_API_SECRET"
ENV_CONFIG_PATH = "BINANCE_CONFIG_PATH"
DEFAULT_CONFIG_FILE = Path.home() / ".binance_config.json"


class BinanceCredentials(NamedTuple):
    api_key: str
    api_secret: str

    def __repr__(self) -> str:
        return f"BinanceCredentials(api_key='{self.api_key[:4]}...', api_secret='***')"

    @classmethod
    def from_env(cls) -> Optional["BinanceCredentials"]:
        api_key, api_secret = os.getenv(ENV_API_KEY), os.getenv(ENV_API_SECRET)
        if api_key and api_secret:
            return cls(api_key, api_secret)
        return None

    @classmethod
    def from_file(cls, path: Path) -> Optional["BinanceCredentials"]:
        """Read a credentials file; None when it does not exist or lacks a field.

        Raises:
            ValueError: If the file exists but cannot be read as JSON
        """
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise ValueError(f"Failed to load config from {path}: {e}") from e
        if data.get("api_key") and data.get("api_secret"):
            return cls(data["api_key"], data["api_secret"])
        return None


def _config_file(config_path: Optional[str]) -> Path:
    return Path(config_path or os.getenv(ENV_CONFIG_PATH) or DEFAULT_CONFIG_FILE)


def load_credentials(config_path: Optional[str] = None) -> BinanceCredentials:
    """Return the first complete set of credentials.

    Raises:
        ValueError: If no source holds both the key and the secret
    """
    credentials = BinanceCredentials.from_env()
    if credentials is not None:
        logger.debug("Binance credentials loaded from environment")
        return credentials

    path = _config_file(config_path)
    credentials = BinanceCredentials.from_file(path)
    if credentials is not None:
        logger.debug(f"Binance credentials loaded from {path}")
        return credentials

    raise ValueError(
        f"Missing Binance credentials: set {ENV_API_KEY} and {ENV_API_SECRET}, "
        f"or write api_key/api_secret to {path} (location overridable with {ENV_CONFIG_PATH})"
    )
