"""Long-running watcher hosting every sync trigger.

This module provides:
- SyncDaemon: Poll loop plus local control server, both feeding one
  SyncCoordinator so a single busy flag guards every trigger

Lifecycle:
1. Start the focus cooldown
2. Open the control server on 127.0.0.1
3. Run the startup timer tick, then one tick per poll interval
4. Serve sync/focus/deep_link/status messages in between
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import TYPE_CHECKING, Any

from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from flowvault.client.control import (
    CONTROL_HOST,
    MSG_DEEP_LINK,
    MSG_FOCUS,
    MSG_STATUS,
    MSG_SYNC,
)
from flowvault.client.settings import MIN_POLL_INTERVAL

if TYPE_CHECKING:
    from websockets.asyncio.server import ServerConnection

    from flowvault.client.sync.coordinator import SyncCoordinator

logger = logging.getLogger(__name__)


class SyncDaemon:
    """Timer loop and control server around a coordinator.

    Usage:
        daemon = SyncDaemon(coordinator, poll_interval=120, port=48213)
        await daemon.run()  # until stop() is called
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        poll_interval: float,
        port: int,
        host: str = CONTROL_HOST,
    ) -> None:
        """Initialize the daemon.

        Args:
            coordinator: Coordinator every trigger goes through.
            poll_interval: Seconds between timer ticks (clamped to the minimum).
            port: Control server port (0 picks a free port).
            host: Control server interface.
        """
        self._coordinator = coordinator
        self._poll_interval = max(float(MIN_POLL_INTERVAL), float(poll_interval))
        self._port = port
        self._host = host
        self._stop = asyncio.Event()
        self._bound_port: int | None = None

    @property
    def poll_interval(self) -> float:
        """Get the effective poll interval."""
        return self._poll_interval

    @property
    def port(self) -> int | None:
        """Port the control server is bound to, once running."""
        return self._bound_port

    def stop(self) -> None:
        """Ask the run loop to exit."""
        self._stop.set()

    async def handle_message(self, data: dict[str, Any]) -> dict[str, Any]:
        """Dispatch one control message to the coordinator.

        Args:
            data: Decoded message.

        Returns:
            JSON-serializable reply.
        """
        msg_type = data.get("type")
        logger.debug("Control message: %s", msg_type)

        if msg_type == MSG_SYNC:
            report = await self._coordinator.sync_with_logs()
            return report.to_message()
        if msg_type == MSG_FOCUS:
            report = await self._coordinator.on_window_focus()
            return report.to_message()
        if msg_type == MSG_DEEP_LINK:
            job_id = data.get("job") or None
            path = await self._coordinator.on_deep_link(str(job_id) if job_id else None)
            return {"ok": True, "path": path}
        if msg_type == MSG_STATUS:
            context = self._coordinator.context
            return {"ok": True, "status": context.status_text, "syncing": context.is_syncing}
        return {"ok": False, "error": f"Unknown message type: {msg_type}"}

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Serve one control connection."""
        try:
            async for raw in websocket:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8")
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    await websocket.send(json.dumps({"ok": False, "error": "Invalid JSON"}))
                    continue
                if not isinstance(data, dict):
                    await websocket.send(json.dumps({"ok": False, "error": "Expected an object"}))
                    continue
                reply = await self.handle_message(data)
                await websocket.send(json.dumps(reply))
        except ConnectionClosed:
            logger.debug("Control client disconnected")

    async def _poll_loop(self) -> None:
        """Startup tick, then one tick per poll interval until stopped."""
        while not self._stop.is_set():
            await self._coordinator.on_timer_tick()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=self._poll_interval)

    async def run(self) -> None:
        """Run until stop() is called."""
        self._coordinator.mark_startup()
        async with serve(self._handle_connection, self._host, self._port) as server:
            sockets = list(server.sockets)
            self._bound_port = sockets[0].getsockname()[1] if sockets else self._port
            logger.info(
                "Watching: polling every %.0fs, control channel on %s:%s",
                self._poll_interval,
                self._host,
                self._bound_port,
            )
            await self._poll_loop()
        logger.info("Watcher stopped")
