"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError and subclasses: Delivery failure taxonomy
- DeliveryResult: One delivered job within a cycle
- SyncReport: Detailed outcome of one sync cycle
- SyncTrigger: Sources that can start a cycle
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum, auto
from typing import Any


class SyncError(Exception):
    """Base exception for sync errors."""


class InvalidJobError(SyncError):
    """Job lacks a field required for delivery."""


class InvalidRouteError(SyncError):
    """Route lacks required configuration even after a refresh."""


class RouteNotFoundError(SyncError):
    """Route id has no backing record."""

    def __init__(self, route_id: str) -> None:
        self.route_id = route_id
        super().__init__(f"Route {route_id} not found")


class AttachmentError(SyncError):
    """Original file could not be resolved, downloaded or stored."""


class SyncTrigger(IntEnum):
    """Source of a sync request."""

    TIMER = auto()  # Startup tick and poll interval
    FOCUS = auto()  # Window/app focus hook
    DEEP_LINK = auto()  # flowvault://sync URL
    COMMAND = auto()  # Explicit user command

    @property
    def is_silent(self) -> bool:
        """Background triggers never surface notices."""
        return self in (SyncTrigger.TIMER, SyncTrigger.FOCUS)


@dataclass
class DeliveryResult:
    """A job written to the vault during one cycle.

    Attributes:
        timestamp: When the write completed.
        path: Final vault-relative path.
        title: Display title used for reporting.
        job_id: Originating job.
    """

    timestamp: datetime
    path: str
    title: str
    job_id: str


@dataclass
class SyncReport:
    """Detailed result of one sync cycle.

    Attributes:
        success: Whether the cycle ran to completion.
        entries: Delivered jobs in delivery order.
        jobs_found: Number of jobs in the fetched batch.
        error: Error message when the cycle failed or was skipped.
        skipped: True when the cycle never started (another one was running).
    """

    success: bool
    entries: list[DeliveryResult] = field(default_factory=list)
    jobs_found: int = 0
    error: str | None = None
    skipped: bool = False

    @property
    def paths(self) -> list[str]:
        """Written paths in delivery order."""
        return [entry.path for entry in self.entries]

    def to_message(self) -> dict[str, Any]:
        """Convert to a control channel reply."""
        return {
            "ok": self.success,
            "skipped": self.skipped,
            "jobs_found": self.jobs_found,
            "error": self.error,
            "entries": [
                {
                    "timestamp": entry.timestamp.isoformat(),
                    "path": entry.path,
                    "title": entry.title,
                    "job_id": entry.job_id,
                }
                for entry in self.entries
            ],
        }

    def entry_for(self, job_id: str) -> DeliveryResult | None:
        """Entry delivered for a job, if any."""
        for entry in self.entries:
            if entry.job_id == job_id:
                return entry
        return None
