import json
import os
import logging
from pathlib import Path
from typing import Dict, Any

logger = logging.getLogger(__name__)

class CredentialManager:
    """
    Manages the venue API client credentials.

    GUARANTEES:
    - Credentials come from an optional JSON file, overridden by the
      DERIBIT_CLIENT_ID / DERIBIT_CLIENT_SECRET environment variables.
    - No credentials stored in version control.
    - A missing or unreadable file yields empty credentials instead of an error;
      authentication then fails at first use.
    """

    ENV_KEYS = {
        "client_id": "DERIBIT_CLIENT_ID",
        "client_secret": "DERIBIT_CLIENT_SECRET",
    }

    def __init__(self, config_path: str = "config/credentials.json"):
        self.path = Path(config_path)
        self._cache: Dict[str, Any] = {}
        self._load()

    def _load(self):
        if self.path.exists():
            try:
                with open(self.path, "r") as f:
                    self._cache = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning(f"Could not read credentials file {self.path}: {e}")
                self._cache = {}

    def get(self, key: str, default: Any = None) -> Any:
        """Retrieves a credential value, environment first."""
        env_key = self.ENV_KEYS.get(key)
        if env_key and os.environ.get(env_key):
            return os.environ[env_key]
        return self._cache.get(key, default)

    def get_all(self) -> Dict[str, Any]:
        return {key: self.get(key, "") for key in self.ENV_KEYS}

    @property
    def has_client_credentials(self) -> bool:
        return bool(self.get("client_id")) and bool(self.get("client_secret"))
