"""Local CLI configuration and credential storage.

The :class:`Config` record is passed explicitly to everything that needs it.
Non-secret settings live in ``<config dir>/config.json``; the bearer token is
kept in the OS keyring, keyed by the normalised controller URL.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlsplit, urlunsplit

import keyring
from keyring.errors import KeyringError

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "FLEETCTL_CONFIG_DIR"
KEYRING_SERVICE = "fleetctl"
DEFAULT_ADMIN_PORT = 8443
DEFAULT_API_VERSION = 18

# Present on the appliance image only.
_APPLIANCE_MARKER = "/mnt/state/config"


@dataclass
class Config:
    url: str = ""
    provider: str = ""
    insecure: bool = False
    debug: bool = False
    api_version: int = DEFAULT_API_VERSION
    bearer_token: str = ""
    expires_at: str = ""
    device_id: str = ""
    primary_controller_version: str = ""
    timeout: float = 20.0

    @property
    def hostname(self) -> str:
        """Hostname of the configured controller URL."""
        return urlsplit(self.url).hostname or ""

    def expired_at_valid(self, now: Optional[datetime] = None) -> bool:
        if not self.expires_at:
            return False
        try:
            expires = datetime.fromisoformat(self.expires_at)
        except ValueError:
            return False
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return now < expires

    def check_auth(self) -> bool:
        """True when a usable, unexpired token and a controller URL are configured."""
        if not self.bearer_token or not self.url or not self.provider:
            return False
        return self.expired_at_valid()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        # Secrets never go to disk.
        data.pop("bearer_token")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def config_dir() -> Path:
    """Configuration directory.

    Precedence: ``$FLEETCTL_CONFIG_DIR``, ``$XDG_CONFIG_HOME/fleetctl``,
    ``%AppData%/fleetctl`` on Windows, ``~/.config/fleetctl``.
    """
    name = "fleetctl"
    if os.environ.get(CONFIG_DIR_ENV):
        return Path(os.environ[CONFIG_DIR_ENV])
    if os.environ.get("XDG_CONFIG_HOME"):
        return Path(os.environ["XDG_CONFIG_HOME"]) / name
    if sys.platform == "win32" and os.environ.get("AppData"):
        return Path(os.environ["AppData"]) / name
    return Path.home() / ".config" / name


def _config_path() -> Path:
    return config_dir() / "config.json"


def load_config() -> Config:
    """Load the config file, then apply ``FLEETCTL_URL`` / ``FLEETCTL_BEARER`` overrides."""
    path = _config_path()
    data: dict[str, Any] = {}
    if path.exists():
        try:
            data = json.loads(path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", path, exc)
            data = {}
    cfg = Config.from_dict(data)
    if os.environ.get("FLEETCTL_URL"):
        cfg.url = normalize_url(os.environ["FLEETCTL_URL"])
    if os.environ.get("FLEETCTL_BEARER"):
        cfg.bearer_token = os.environ["FLEETCTL_BEARER"]
    elif cfg.url:
        cfg.bearer_token = load_token(cfg.url) or ""
    return cfg


def save_config(cfg: Config) -> None:
    """Persist non-secret settings to ``config.json`` and the token to the keyring."""
    path = _config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(cfg.to_dict(), indent=2) + "\n")
    path.chmod(0o600)
    if cfg.bearer_token and cfg.url:
        store_token(cfg.url, cfg.bearer_token)


def store_token(url: str, token: str) -> None:
    keyring.set_password(KEYRING_SERVICE, url, token)


def load_token(url: str) -> Optional[str]:
    try:
        return keyring.get_password(KEYRING_SERVICE, url)
    except KeyringError as exc:
        logger.debug("Failed to read token from keyring: %s", exc)
        return None


def clear_token(url: str) -> None:
    try:
        keyring.delete_password(KEYRING_SERVICE, url)
    except KeyringError as exc:
        logger.debug("Failed to delete token from keyring: %s", exc)


def normalize_url(url: str) -> str:
    """Return the admin API URL for a controller address.

    Forces ``https``, defaults the port to 8443 and the path to ``/admin``.
    """
    if not url:
        raise ValueError("Invalid URL")
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    parts = urlsplit(url)
    if not parts.hostname:
        raise ValueError(f"Invalid URL {url!r}")
    port = parts.port or DEFAULT_ADMIN_PORT
    return urlunsplit(("https", f"{parts.hostname}:{port}", "/admin", "", ""))


def is_on_appliance() -> bool:
    return os.path.exists(_APPLIANCE_MARKER)
