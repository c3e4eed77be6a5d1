"""Shared types for flowvault."""

from __future__ import annotations

from enum import Enum


class SyncPhase(str, Enum):
    """Phase of the sync coordinator.

    Feeds the status line; ERROR records that the last cycle failed.
    """

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class JobStatus(str, Enum):
    """Job lifecycle statuses observed by the delivery engine."""

    TRANSCRIBED = "transcribed"
    DELIVERED = "delivered"
