"""
Account configuration and credential storage.

Accounts are read from ``accounts.json`` in the config directory. API keys
never go in that file: they live in ``credentials.json`` (mode 0600) or in
``TIMEBAR_API_KEY_<ACCOUNT>`` environment variables.
"""

import json
import os
import re
from pathlib import Path
from typing import Dict, Optional

from shared.exceptions import ConfigError
from shared.logging_config import get_client_logger
from shared.models import AccountConfig, AppConfig, Dialect
from shared.utils import get_config_path

logger = get_client_logger()

ACCOUNTS_FILE = "accounts.json"
CREDENTIALS_FILE = "credentials.json"


class ConfigLoader:
    """Loads and writes accounts.json"""

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir) if config_dir else get_config_path()

    @property
    def config_file(self) -> Path:
        return self.config_dir / ACCOUNTS_FILE

    def load(self) -> AppConfig:
        """Load configuration. A missing file yields an empty configuration."""
        if not self.config_file.exists():
            logger.info(f"No config at {self.config_file}, starting without accounts")
            return AppConfig()

        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"{self.config_file} is not valid JSON (line {e.lineno}, column {e.colno}: {e.msg})")
        except OSError as e:
            raise ConfigError(f"Cannot read {self.config_file}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"{self.config_file} must contain a JSON object")

        try:
            return AppConfig.from_dict(data)
        except (ValueError, TypeError, KeyError) as e:
            raise ConfigError(f"Invalid configuration in {self.config_file}: {e}")

    def save(self, config: AppConfig) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, 'w', encoding='utf-8') as f:
            json.dump(config.to_dict(), f, indent=2, sort_keys=True)

    def write_sample(self) -> bool:
        """Write a sample config for first-time setup. Returns False if one exists."""
        if self.config_file.exists():
            return False
        sample = AppConfig(accounts=[
            AccountConfig(
                id="mycompany",
                label="My Company",
                url="https://mycompany.odoo.com",
                database="mycompany",
                username="user@example.com",
                dialect=Dialect.AUTO,
            )
        ])
        self.save(sample)
        logger.info(f"Wrote sample config to {self.config_file}")
        return True


def _env_key_name(account_id: str) -> str:
    return "TIMEBAR_API_KEY_" + re.sub(r'[^A-Za-z0-9]', '_', account_id).upper()


class CredentialStore:
    """Secret lookup by account id"""

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir) if config_dir else get_config_path()

    @property
    def credentials_file(self) -> Path:
        return self.config_dir / CREDENTIALS_FILE

    def _load(self) -> Dict[str, str]:
        if not self.credentials_file.exists():
            return {}
        try:
            with open(self.credentials_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to read {self.credentials_file}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def get_api_key(self, account_id: str) -> Optional[str]:
        """Return the API key for an account, or None when absent"""
        from_env = os.getenv(_env_key_name(account_id))
        if from_env and from_env.strip():
            return from_env.strip()
        value = self._load().get(account_id)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    def set_api_key(self, account_id: str, api_key: str) -> None:
        """Store an API key (overwrites if exists)"""
        data = self._load()
        data[account_id] = api_key.strip()
        self.config_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.credentials_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)

    def delete_api_key(self, account_id: str) -> bool:
        data = self._load()
        if account_id not in data:
            return False
        del data[account_id]
        fd = os.open(self.credentials_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        return True
