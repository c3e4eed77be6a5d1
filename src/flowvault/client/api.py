"""HTTP gateway for the jobs backend.

This module provides:
- Job, RouteRecord: Rows read from the backend
- BackendClient: Async client for the REST table API and object storage
- parse_storage_url: Recognize the backend's own storage object URLs

Only the queries the delivery engine needs are exposed: fetch eligible
jobs, fetch one route, conditionally acknowledge a job and download
attachment bytes.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from urllib.parse import quote, unquote, urlparse

import httpx

from flowvault.core.config import BackendConfig
from flowvault.core.types import JobStatus

logger = logging.getLogger(__name__)

_STORAGE_PATH_RE = re.compile(
    r"^/storage/v1/object/(?:(?:public|authenticated)/)?([^/]+)/(.+)$"
)


class GatewayError(Exception):
    """Base exception for backend errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(GatewayError):
    """Session missing, expired or not allowed."""


class NotFoundError(GatewayError):
    """Resource not found."""


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class RouteRecord:
    """Route row as stored by the backend or the local cache.

    Fields that older rows may lack are optional here; the route cache
    turns a record into a validated route before delivery uses it.
    """

    id: str
    name: str = ""
    user_id: str | None = None
    destination_location: str | None = None
    append_to_existing: bool | None = None
    include_original_file: bool | None = None
    title_template: str | None = None
    is_active: bool = True
    connection_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _FIELDS = (
        "id",
        "name",
        "user_id",
        "destination_location",
        "append_to_existing",
        "include_original_file",
        "title_template",
        "is_active",
        "connection_id",
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RouteRecord:
        """Create from API response or cached dictionary."""
        extra = {k: v for k, v in data.items() if k not in cls._FIELDS}
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "",
            user_id=data.get("user_id"),
            destination_location=data.get("destination_location"),
            append_to_existing=data.get("append_to_existing"),
            include_original_file=data.get("include_original_file"),
            title_template=data.get("title_template"),
            is_active=bool(data.get("is_active", True)),
            connection_id=data.get("connection_id"),
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the settings store (unknown columns preserved)."""
        data = dict(self.extra)
        for name in self._FIELDS:
            data[name] = getattr(self, name)
        return data


@dataclass
class Job:
    """Job row awaiting delivery.

    Attributes:
        id: Job identifier.
        created_at: Creation timestamp (delivery order key).
        route_id: Route the job belongs to.
        formatted_content: Formatted note body, preferred when present.
        transcribed_text: Raw transcription, used when no formatted body exists.
        final_title: Title chosen upstream.
        original_filename: Name of the uploaded source file.
        original_file_url: Direct URL of the source file, if any.
        metadata: Free-form metadata (may point at the source file).
        status: Lifecycle status.
        destination_url: Where the job was delivered, once acknowledged.
    """

    id: str
    created_at: datetime | None = None
    route_id: str | None = None
    formatted_content: str | None = None
    transcribed_text: str | None = None
    final_title: str | None = None
    original_filename: str | None = None
    original_file_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    status: str = JobStatus.TRANSCRIBED.value
    destination_url: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        """Create from API response dictionary."""
        return cls(
            id=str(data["id"]),
            created_at=_parse_timestamp(data.get("created_at")),
            route_id=data.get("route_id"),
            formatted_content=data.get("formatted_content"),
            transcribed_text=data.get("transcribed_text"),
            final_title=data.get("final_title"),
            original_filename=data.get("original_filename"),
            original_file_url=data.get("original_file_url"),
            metadata=data.get("metadata") or {},
            status=data.get("status") or JobStatus.TRANSCRIBED.value,
            destination_url=data.get("destination_url"),
        )

    @property
    def content(self) -> str | None:
        """Body to deliver: formatted content, else transcribed text."""
        return self.formatted_content or self.transcribed_text or None


@dataclass
class JobState:
    """Delivery state of a single job (deep-link follow-up read)."""

    status: str
    destination_url: str | None


def parse_storage_url(url: str) -> tuple[str, str] | None:
    """Extract (bucket, name) from a backend storage object URL.

    Args:
        url: Absolute URL of a storage object.

    Returns:
        (bucket, object name) or None if the URL is not a storage URL.
    """
    try:
        path = urlparse(url).path
    except ValueError:
        return None
    match = _STORAGE_PATH_RE.match(path)
    if not match:
        return None
    return match.group(1), unquote(match.group(2))


class BackendClient:
    """Async HTTP client for the jobs backend."""

    def __init__(
        self,
        config: BackendConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the backend client.

        Args:
            config: Backend configuration (URL, keys, timeout).
            transport: Optional transport override (tests).
        """
        self._config = config
        self._client = httpx.AsyncClient(
            base_url=config.url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            headers={
                "apikey": config.anon_key,
                "Authorization": f"Bearer {config.access_token or config.anon_key}",
            },
            transport=transport,
        )

    @property
    def config(self) -> BackendConfig:
        """Backend configuration."""
        return self._config

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> BackendClient:
        """Context manager entry."""
        return self

    async def __aexit__(self, *args: object) -> None:
        """Context manager exit."""
        await self.close()

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code in (401, 403):
            raise AuthenticationError("Invalid or expired session", response.status_code)
        if response.status_code == 404:
            raise NotFoundError("Resource not found", 404)
        if response.status_code >= 400:
            raise GatewayError(self._error_detail(response), response.status_code)
        return response

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(data, dict):
            return str(data.get("message") or data.get("error") or data)
        return str(data)

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, mapping transport failures to GatewayError."""
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise GatewayError(f"{method} {url} failed: {e}") from e
        return self._handle_response(response)

    # === Jobs ===

    async def fetch_eligible_jobs(self, limit: int | None = None) -> list[Job]:
        """Fetch jobs ready for delivery, oldest first.

        Only jobs whose route is active and whose route connection matches
        this client's service type are returned.

        Args:
            limit: Maximum number of jobs (defaults to the configured batch size).

        Returns:
            List of jobs ordered by creation time ascending.

        Raises:
            GatewayError: On transport or query failure.
        """
        params = {
            "select": "*,routes!inner(*,connections!inner(service_type))",
            "status": f"eq.{JobStatus.TRANSCRIBED.value}",
            "routes.is_active": "eq.true",
            "routes.connections.service_type": f"eq.{self._config.service_type}",
            "order": "created_at.asc",
            "limit": str(limit or self._config.batch_size),
        }
        response = await self._request("GET", "/rest/v1/jobs", params=params)
        rows = response.json()
        if not isinstance(rows, list):
            raise GatewayError("Unexpected jobs payload")
        return [Job.from_dict(row) for row in rows]

    async def acknowledge_delivered(
        self,
        job_id: str,
        expected_status: str,
        destination_url: str,
    ) -> bool:
        """Mark a job delivered if it still has the expected status.

        Args:
            job_id: Job identifier.
            expected_status: Status the job must still have.
            destination_url: Where the job was written.

        Returns:
            True if the job was updated, False if its status had already moved on.

        Raises:
            GatewayError: If the write itself fails.
        """
        response = await self._request(
            "PATCH",
            "/rest/v1/jobs",
            params={"id": f"eq.{job_id}", "status": f"eq.{expected_status}"},
            json={
                "status": JobStatus.DELIVERED.value,
                "destination_url": destination_url,
            },
            headers={"Prefer": "return=representation"},
        )
        rows = response.json() if response.content else []
        return bool(rows)

    async def fetch_job_state(self, job_id: str) -> JobState | None:
        """Read a job's status and recorded destination.

        Args:
            job_id: Job identifier.

        Returns:
            JobState, or None if the job does not exist.
        """
        response = await self._request(
            "GET",
            "/rest/v1/jobs",
            params={"select": "status,destination_url", "id": f"eq.{job_id}"},
        )
        rows = response.json()
        if not rows:
            return None
        return JobState(
            status=rows[0].get("status", ""),
            destination_url=rows[0].get("destination_url"),
        )

    # === Routes ===

    async def fetch_route(self, route_id: str) -> RouteRecord | None:
        """Fetch a single route owned by the signed-in user.

        Args:
            route_id: Route identifier.

        Returns:
            RouteRecord, or None if no such route exists.
        """
        params = {"select": "*", "id": f"eq.{route_id}"}
        if self._config.user_id:
            params["user_id"] = f"eq.{self._config.user_id}"
        response = await self._request("GET", "/rest/v1/routes", params=params)
        rows = response.json()
        if not rows:
            return None
        return RouteRecord.from_dict(rows[0])

    # === Storage ===

    async def download_attachment(self, bucket: str, name: str) -> bytes:
        """Download an object from storage.

        Args:
            bucket: Storage bucket.
            name: Object name within the bucket.

        Returns:
            Raw object bytes.
        """
        response = await self._request(
            "GET", f"/storage/v1/object/{quote(bucket)}/{quote(name)}"
        )
        return response.content
