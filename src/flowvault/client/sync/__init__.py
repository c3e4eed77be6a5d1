"""Delivery of backend jobs into the vault.

Architecture:
    Trigger (timer/focus/deep link/command) → SyncCoordinator → DeliveryEngine → Vault

Components:
- **RouteCache**: Route configuration cache, refreshed when a record is incomplete
- **AttachmentFetcher**: Best-effort download of a job's original file
- **DeliveryEngine**: Writes one job as a new note or appends it to a fixed note
- **SyncCoordinator**: Single guarded entry point; delivers then acknowledges, in order
- **SyncDaemon**: Poll loop and local control server feeding the coordinator

All public symbols are re-exported here.
"""

from flowvault.client.sync.attachments import (
    AttachmentFetcher,
    AttachmentSource,
    find_attachment_source,
)
from flowvault.client.sync.coordinator import (
    SyncContext,
    SyncCoordinator,
)
from flowvault.client.sync.daemon import SyncDaemon
from flowvault.client.sync.engine import (
    DeliveryEngine,
    append_heading,
    display_title,
    note_title,
    render_title_template,
)
from flowvault.client.sync.routes import (
    ResolvedRoute,
    RouteCache,
    is_stale,
)
from flowvault.client.sync.types import (
    AttachmentError,
    DeliveryResult,
    InvalidJobError,
    InvalidRouteError,
    RouteNotFoundError,
    SyncError,
    SyncReport,
    SyncTrigger,
)

__all__ = [
    # Attachments
    "AttachmentFetcher",
    "AttachmentSource",
    "find_attachment_source",
    # Coordinator
    "SyncContext",
    "SyncCoordinator",
    "SyncDaemon",
    # Engine
    "DeliveryEngine",
    "append_heading",
    "display_title",
    "note_title",
    "render_title_template",
    # Routes
    "ResolvedRoute",
    "RouteCache",
    "is_stale",
    # Types
    "AttachmentError",
    "DeliveryResult",
    "InvalidJobError",
    "InvalidRouteError",
    "RouteNotFoundError",
    "SyncError",
    "SyncReport",
    "SyncTrigger",
]
