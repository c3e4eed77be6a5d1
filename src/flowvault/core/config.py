"""Shared configuration classes for flowvault.

This module defines configuration classes used by the gateway and the CLI.
"""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_SERVICE_TYPE = "obsidian"
DEFAULT_BATCH_SIZE = 10


@dataclass
class BackendConfig:
    """Configuration for connecting to the jobs backend.

    The backend exposes a PostgREST API under ``/rest/v1`` and object
    storage under ``/storage/v1``.

    Attributes:
        url: Base URL of the backend (e.g., "https://abc.supabase.co").
        anon_key: Public API key sent with every request.
        access_token: Session token of the signed-in user.
        user_id: Identifier of the signed-in user (scopes route reads).
        timeout: Request timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
        service_type: Connection service tag a route must match to be eligible.
        batch_size: Maximum number of jobs fetched per sync cycle.
    """

    url: str
    anon_key: str
    access_token: str = ""
    user_id: str = ""
    timeout: float = 30.0
    verify_ssl: bool = True
    service_type: str = DEFAULT_SERVICE_TYPE
    batch_size: int = DEFAULT_BATCH_SIZE

    def __post_init__(self) -> None:
        """Normalize backend URL."""
        self.url = self.url.strip().rstrip("/")
        self.anon_key = self.anon_key.strip()

    @property
    def is_configured(self) -> bool:
        """Check that both URL and API key are present."""
        return bool(self.url) and bool(self.anon_key)

    @property
    def is_signed_in(self) -> bool:
        """Check that a session token is available."""
        return bool(self.access_token)
