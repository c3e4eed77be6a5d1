"""Cross-platform desktop notices for FlowVault.

This module provides:
- Native OS notifications (Windows toast, macOS notification center, Linux notify-send)
- notify_error, notify_delivered: Notices shown for explicit sync triggers

Background (timer/focus) syncs never call into this module.
"""

from __future__ import annotations

import logging
import platform
import subprocess
from dataclasses import dataclass
from enum import Enum, auto

logger = logging.getLogger(__name__)

APP_NAME = "FlowVault"


class NotificationType(Enum):
    """Type of notification."""

    INFO = auto()
    ERROR = auto()


@dataclass
class Notification:
    """A notice to display."""

    title: str
    message: str
    type: NotificationType = NotificationType.INFO


def _notify_windows(notification: Notification) -> bool:
    title = notification.title.replace("'", "''")
    message = notification.message.replace("'", "''")
    ps_script = (
        "[Windows.UI.Notifications.ToastNotificationManager, Windows.UI.Notifications, "
        "ContentType = WindowsRuntime] | Out-Null;"
        "$xml = [Windows.UI.Notifications.ToastNotificationManager]::GetTemplateContent("
        "[Windows.UI.Notifications.ToastTemplateType]::ToastText02);"
        f"$xml.GetElementsByTagName('text').Item(0).InnerText = '{title}';"
        f"$xml.GetElementsByTagName('text').Item(1).InnerText = '{message}';"
        "$toast = [Windows.UI.Notifications.ToastNotification]::new($xml);"
        f"[Windows.UI.Notifications.ToastNotificationManager]::CreateToastNotifier('{APP_NAME}')"
        ".Show($toast)"
    )
    try:
        subprocess.run(
            ["powershell", "-ExecutionPolicy", "Bypass", "-Command", ps_script],
            capture_output=True,
            check=False,
            creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
        )
        return True
    except OSError as e:
        logger.debug("Windows notification failed: %s", e)
        return False


def _notify_macos(notification: Notification) -> bool:
    title = notification.title.replace('"', '\\"')
    message = notification.message.replace('"', '\\"')
    try:
        subprocess.run(
            ["osascript", "-e", f'display notification "{message}" with title "{title}"'],
            capture_output=True,
            check=True,
        )
        return True
    except (OSError, subprocess.CalledProcessError) as e:
        logger.debug("macOS notification failed: %s", e)
        return False


def _notify_linux(notification: Notification) -> bool:
    urgency = "critical" if notification.type == NotificationType.ERROR else "normal"
    try:
        subprocess.run(
            [
                "notify-send",
                "--urgency", urgency,
                "--app-name", APP_NAME,
                notification.title,
                notification.message,
            ],
            capture_output=True,
            check=True,
        )
        return True
    except FileNotFoundError:
        logger.debug("notify-send not found")
        return False
    except (OSError, subprocess.CalledProcessError) as e:
        logger.debug("Linux notification failed: %s", e)
        return False


def send_notification(notification: Notification) -> bool:
    """Send a system notification.

    Args:
        notification: The notification to send.

    Returns:
        True if notification was sent, False if failed or unavailable.
    """
    system = platform.system()

    if system == "Windows":
        return _notify_windows(notification)
    if system == "Darwin":
        return _notify_macos(notification)
    if system == "Linux":
        return _notify_linux(notification)
    logger.warning("Notifications not supported on %s", system)
    return False


def notify_error(message: str) -> bool:
    """Show a failed-sync notice."""
    return send_notification(Notification(
        title=f"{APP_NAME} - Error",
        message=message,
        type=NotificationType.ERROR,
    ))


def notify_delivered(count: int) -> bool:
    """Show how many notes an explicit sync delivered.

    Returns:
        True if a notice was sent (nothing is shown for zero).
    """
    if count <= 0:
        return False
    suffix = "" if count == 1 else "s"
    return send_notification(Notification(
        title=f"{APP_NAME} - Sync Complete",
        message=f"Delivered {count} item{suffix}",
    ))
