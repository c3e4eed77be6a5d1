"""Persisted settings for FlowVault.

This module provides:
- get_config_dir, get_settings_file: Location of the settings file
- Settings: Backend credentials, vault location, trigger tuning and the
  persisted route cache
- SettingsStore: JSON load/save of Settings

A missing or unreadable settings file yields defaults; unknown keys are
ignored.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from flowvault.core.config import BackendConfig

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 120
MIN_POLL_INTERVAL = 15
DEFAULT_CONTROL_PORT = 48213


def get_config_dir() -> Path:
    """Get the configuration directory for FlowVault.

    Returns:
        Path to ~/.flowvault or equivalent.
    """
    return Path.home() / ".flowvault"


def get_settings_file() -> Path:
    """Get the path to the settings file."""
    return get_config_dir() / "settings.json"


@dataclass
class Settings:
    """User settings.

    Attributes:
        backend_url: Base URL of the jobs backend.
        anon_key: Public API key of the backend.
        access_token: Session token of the signed-in user.
        last_user_id: Last signed-in user (filters the route cache on load).
        vault_path: Root folder of the vault.
        attachment_folder: Attachment folder preference.
        poll_interval: Seconds between background syncs.
        control_port: Local port of the watcher's control channel.
        sentry_dsn: Error reporting DSN ("" keeps reporting off).
        routes: Route cache contents, route id -> route record.
    """

    backend_url: str = ""
    anon_key: str = ""
    access_token: str = ""
    last_user_id: str = ""
    vault_path: str = ""
    attachment_folder: str = ""
    poll_interval: int = DEFAULT_POLL_INTERVAL
    control_port: int = DEFAULT_CONTROL_PORT
    sentry_dsn: str = ""
    routes: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Settings:
        """Create from a settings dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known and value is not None}
        settings = cls(**values)
        if not isinstance(settings.routes, dict):
            settings.routes = {}
        return settings

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return asdict(self)

    @property
    def effective_poll_interval(self) -> int:
        """Poll interval clamped to the minimum."""
        try:
            interval = int(self.poll_interval)
        except (TypeError, ValueError):
            interval = DEFAULT_POLL_INTERVAL
        return max(MIN_POLL_INTERVAL, interval)

    @property
    def vault_root(self) -> Path | None:
        """Vault root, or None if not configured."""
        if not self.vault_path:
            return None
        return Path(self.vault_path).expanduser()

    def backend_config(self) -> BackendConfig:
        """Backend configuration derived from these settings."""
        return BackendConfig(
            url=self.backend_url,
            anon_key=self.anon_key,
            access_token=self.access_token,
            user_id=self.last_user_id,
        )


class SettingsStore:
    """Reads and writes settings as JSON.

    Usage:
        store = SettingsStore()
        settings = store.load()
        settings.vault_path = "~/Notes"
        store.save(settings)
    """

    def __init__(self, path: Path | None = None) -> None:
        """Initialize the store.

        Args:
            path: Settings file (defaults to ~/.flowvault/settings.json).
        """
        self._path = path or get_settings_file()
        self._settings: Settings | None = None

    @property
    def path(self) -> Path:
        """Get the settings file path."""
        return self._path

    def load(self) -> Settings:
        """Load settings, falling back to defaults."""
        data: dict[str, Any] = {}
        if self._path.exists():
            try:
                loaded = json.loads(self._path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Ignoring unreadable settings %s: %s", self._path, e)
            else:
                if isinstance(loaded, dict):
                    data = loaded
                else:
                    logger.warning("Ignoring malformed settings %s", self._path)
        self._settings = Settings.from_dict(data)
        return self._settings

    def save(self, settings: Settings) -> None:
        """Write settings to disk."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(settings.to_dict(), indent=2), encoding="utf-8")
        self._settings = settings

    def save_routes(self, routes: dict[str, dict[str, Any]]) -> None:
        """Persist the route cache contents."""
        settings = self._settings or self.load()
        settings.routes = routes
        self.save(settings)
        logger.debug("Persisted %d cached route(s)", len(routes))
