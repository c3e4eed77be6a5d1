"""WebSocket client for the local control channel.

This module provides:
- send_command: Send one JSON message to a running watcher and await its reply

Architecture:
    CLI / OS deep link (send_command) ──ws──► watcher (SyncDaemon) ──► SyncCoordinator

Messages:
    {"type": "sync"}                     explicit sync command
    {"type": "focus"}                    window/app focus hook
    {"type": "deep_link", "job": id}     flowvault://sync deep link
    {"type": "status"}                   current status line
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

logger = logging.getLogger(__name__)

CONTROL_HOST = "127.0.0.1"

MSG_SYNC = "sync"
MSG_FOCUS = "focus"
MSG_DEEP_LINK = "deep_link"
MSG_STATUS = "status"


def control_url(port: int) -> str:
    """WebSocket URL of the control channel."""
    return f"ws://{CONTROL_HOST}:{port}"


async def send_command(
    port: int,
    message: dict[str, Any],
    connect_timeout: float = 2.0,
    reply_timeout: float | None = None,
) -> dict[str, Any] | None:
    """Send a message to the running watcher.

    Args:
        port: Control channel port.
        message: JSON message to send.
        connect_timeout: Seconds to wait for the connection.
        reply_timeout: Seconds to wait for the reply (None waits for the
            whole cycle to finish).

    Returns:
        Decoded reply, or None if no watcher is listening.
    """
    try:
        async with connect(control_url(port), open_timeout=connect_timeout) as ws:
            await ws.send(json.dumps(message))
            raw = await asyncio.wait_for(ws.recv(), timeout=reply_timeout)
    except (OSError, TimeoutError, WebSocketException) as e:
        logger.debug("Control channel on port %d unavailable: %s", port, e)
        return None

    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        reply = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Invalid reply from watcher: %s", raw[:100])
        return None
    return reply if isinstance(reply, dict) else None
