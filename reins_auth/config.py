"""Shared Reins auth configuration utilities.

Centralises reading of ~/.reins/configuration.json so the credential store,
the OAuth listener and the auth service agree on paths and timeouts.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import dotenv_values

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

REINS_CONFIG_FILE = Path.home() / ".reins" / "configuration.json"
DATA_DIR_ENV = "REINS_DATA_DIR"
CREDENTIAL_KEY_ENV = "REINS_CREDENTIAL_KEY"

DEFAULT_CALLBACK_HOST = "127.0.0.1"
DEFAULT_CALLBACK_PATH = "/callback"
DEFAULT_CALLBACK_TIMEOUT_SECONDS = 120.0
DEFAULT_REFRESH_BUFFER_SECONDS = 300.0


def get_reins_config(config_file: Path | None = None) -> dict[str, Any]:
    """Load reins configuration from ~/.reins/configuration.json."""
    path = config_file or REINS_CONFIG_FILE
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_data_root() -> Path:
    """Return the data directory (REINS_DATA_DIR, else ~/.reins)."""
    override = os.environ.get(DATA_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".reins"


def get_credential_key(dotenv_path: Path | None = None) -> str | None:
    """Return the store encryption key from the environment or a .env file.

    The key is only ever read here; it is never written back or logged.
    """
    value = os.environ.get(CREDENTIAL_KEY_ENV)
    if value:
        return value
    path = dotenv_path or Path.cwd() / ".env"
    if path.exists():
        return dotenv_values(path).get(CREDENTIAL_KEY_ENV) or None
    return None


# ---------------------------------------------------------------------------
# AuthConfig – shared across store, listener and service
# ---------------------------------------------------------------------------


@dataclass
class AuthConfig:
    """Auth configuration loaded from ~/.reins/configuration.json and the environment."""

    data_root: Path = field(default_factory=get_data_root)
    encryption_secret: str | None = field(default_factory=get_credential_key, repr=False)
    credential_file: Path | None = None
    callback_host: str = DEFAULT_CALLBACK_HOST
    callback_path: str = DEFAULT_CALLBACK_PATH
    callback_timeout_seconds: float = DEFAULT_CALLBACK_TIMEOUT_SECONDS
    refresh_buffer_seconds: float = DEFAULT_REFRESH_BUFFER_SECONDS

    def __post_init__(self) -> None:
        self.data_root = Path(self.data_root).expanduser()
        if self.credential_file is None:
            self.credential_file = self.data_root / "credentials" / "store.enc.json"
        else:
            self.credential_file = Path(self.credential_file).expanduser()


def load_auth_config(config_file: Path | None = None) -> AuthConfig:
    """Build ``AuthConfig`` from the ``auth`` section of the config file.

    Unknown keys are ignored; environment variables win over file values for
    the data root and the encryption key.
    """
    section = get_reins_config(config_file).get("auth", {})
    if not isinstance(section, dict):
        section = {}

    kwargs: dict[str, Any] = {}
    if section.get("data_root") and not os.environ.get(DATA_DIR_ENV):
        kwargs["data_root"] = Path(section["data_root"])
    if section.get("credential_file"):
        kwargs["credential_file"] = Path(section["credential_file"])
    for key in ("callback_host", "callback_path"):
        if isinstance(section.get(key), str):
            kwargs[key] = section[key]
    for key in ("callback_timeout_seconds", "refresh_buffer_seconds"):
        if isinstance(section.get(key), int | float):
            kwargs[key] = float(section[key])
    return AuthConfig(**kwargs)
