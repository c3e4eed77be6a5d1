"""Core module - Shared configuration and types."""

from flowvault.core.config import BackendConfig
from flowvault.core.types import JobStatus, SyncPhase

__all__ = [
    # Config
    "BackendConfig",
    # Types
    "JobStatus",
    "SyncPhase",
]
