"""Route configuration cache.

This module provides:
- ResolvedRoute: A route with every field delivery depends on present
- RouteCache: Route id -> cached record, refreshed from the backend when stale

A cached record is stale when its destination location is blank or its
include-original flag is unknown. ``RouteCache.resolve`` is the only place
a record becomes a ``ResolvedRoute``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from flowvault.client.api import RouteRecord
from flowvault.client.sync.types import InvalidRouteError, RouteNotFoundError
from flowvault.client.vault import normalize_path

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)


class RouteSource(Protocol):
    """Anything that can fetch a route by id (the backend gateway)."""

    async def fetch_route(self, route_id: str) -> RouteRecord | None: ...


@dataclass(frozen=True)
class ResolvedRoute:
    """Validated route configuration.

    Attributes:
        id: Route identifier.
        destination: Normalized destination (folder, or file in append mode).
        append_to_existing: Append every job to one fixed file.
        include_original_file: Fetch and embed the job's original file.
        title_template: Optional template for note titles.
    """

    id: str
    destination: str
    append_to_existing: bool
    include_original_file: bool
    title_template: str | None = None

    @classmethod
    def from_record(cls, record: RouteRecord) -> ResolvedRoute:
        """Validate a record.

        Raises:
            InvalidRouteError: If a required field is missing.
        """
        if is_stale(record):
            if record.include_original_file is None:
                raise InvalidRouteError(f"Route {record.id} missing include_original_file")
            raise InvalidRouteError(f"Route {record.id} missing destination_location")
        return cls(
            id=record.id,
            destination=normalize_path((record.destination_location or "").strip()),
            append_to_existing=bool(record.append_to_existing),
            include_original_file=bool(record.include_original_file),
            title_template=record.title_template or None,
        )


def is_stale(record: RouteRecord | None) -> bool:
    """Check whether a cached record lacks fields delivery needs."""
    if record is None:
        return True
    if not (record.destination_location or "").strip():
        return True
    return record.include_original_file is None


class RouteCache:
    """In-memory route cache backed by the settings store.

    Usage:
        cache = RouteCache(client, settings.routes, on_change=store.save_routes)
        route = await cache.resolve(job.route_id)
    """

    def __init__(
        self,
        source: RouteSource,
        entries: Mapping[str, dict[str, Any]] | None = None,
        on_change: Callable[[dict[str, dict[str, Any]]], None] | None = None,
        user_id: str | None = None,
    ) -> None:
        """Initialize the cache.

        Args:
            source: Gateway used to refresh stale entries.
            entries: Persisted route records keyed by route id.
            on_change: Called with the full serialized cache after a refresh.
            user_id: When set, persisted entries owned by other users are dropped.
        """
        self._source = source
        self._on_change = on_change
        self._routes: dict[str, RouteRecord] = {}
        for route_id, data in (entries or {}).items():
            try:
                record = RouteRecord.from_dict({"id": route_id, **data})
            except (KeyError, TypeError, ValueError):
                logger.warning("Dropping unreadable cached route %s", route_id)
                continue
            if user_id and record.user_id and record.user_id != user_id:
                continue
            self._routes[route_id] = record

    def __contains__(self, route_id: object) -> bool:
        return route_id in self._routes

    def __len__(self) -> int:
        return len(self._routes)

    def get(self, route_id: str) -> RouteRecord | None:
        """Cached record for a route, without refreshing."""
        return self._routes.get(route_id)

    def put(self, record: RouteRecord) -> None:
        """Store a record (overwrites any previous entry) and persist."""
        self._routes[record.id] = record
        if self._on_change:
            self._on_change(self.to_dict())

    def to_dict(self) -> dict[str, dict[str, Any]]:
        """Serialize every cached record."""
        return {route_id: record.to_dict() for route_id, record in self._routes.items()}

    async def resolve(self, route_id: str) -> ResolvedRoute:
        """Return a usable route, refreshing it from the backend when stale.

        Raises:
            RouteNotFoundError: If the backend has no such route.
            InvalidRouteError: If the refreshed route still lacks required fields.
        """
        record = self._routes.get(route_id)
        if record is not None and not is_stale(record):
            logger.debug("Using cached route %s", route_id)
            return ResolvedRoute.from_record(record)

        logger.info("Refreshing route %s (missing or incomplete in cache)", route_id)
        fresh = await self._source.fetch_route(route_id)
        if fresh is None:
            raise RouteNotFoundError(route_id)
        self.put(fresh)
        return ResolvedRoute.from_record(fresh)
