"""Deep links and destination URLs.

This module provides:
- FlowVaultURL: Parsing of flowvault:// deep links
- build_destination_url, parse_destination_url: The URL recorded on a
  delivered job, and its inverse
- open_file: Open a vault note with the system's default application
- Protocol handler registration for Linux (xdg-mime) and Windows (registry)

URL Format:
    flowvault://sync               sync, then open the last delivered note
    flowvault://sync?job=<id>      sync, then open the note of job <id>
    flowvault://open?path=<rel>    open a vault-relative note

Security:
    Paths are normalized before use; ".." segments and paths escaping the
    vault are rejected.
"""

from __future__ import annotations

import logging
import os
import platform
import re
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import parse_qs, quote, unquote, urlparse

from flowvault.client.vault import VaultPathError, normalize_path

logger = logging.getLogger(__name__)

SCHEME = "flowvault"
ACTIONS = ("sync", "open")
DESTINATION_URL_PREFIX = "obsidian://open?file="

_DESKTOP_FILE = "flowvault-handler.desktop"
_REGISTRY_KEY = rf"Software\Classes\{SCHEME}"
_FILE_PARAM_RE = re.compile(r"[?&]file=([^&]+)")


class ProtocolError(Exception):
    """Base exception for protocol handler errors."""


class InvalidURLError(ProtocolError):
    """Raised when URL format is invalid."""


class RegistrationError(ProtocolError):
    """Raised when protocol registration fails."""


@dataclass
class FlowVaultURL:
    """Parsed flowvault:// URL.

    Attributes:
        action: "sync" or "open"
        job_id: Target job of a sync link
        path: Vault-relative path of an open link
        raw_url: The original URL string
    """

    action: str
    job_id: str | None = None
    path: str | None = None
    raw_url: str = ""

    @classmethod
    def parse(cls, url: str) -> FlowVaultURL:
        """Parse a flowvault:// URL.

        Raises:
            InvalidURLError: If the URL is malformed or the action unknown
        """
        if not url:
            raise InvalidURLError("URL cannot be empty")

        parsed = urlparse(url.strip())
        if parsed.scheme != SCHEME:
            raise InvalidURLError(f"Invalid scheme: {parsed.scheme}, expected '{SCHEME}'")

        action = parsed.netloc or parsed.path.strip("/")
        if action not in ACTIONS:
            raise InvalidURLError(f"Unknown action: {action or '(none)'}")

        params = parse_qs(parsed.query)
        job_id = (params.get("job") or [None])[0] or None

        path = None
        if action == "open":
            raw_path = (params.get("path") or [""])[0]
            if not raw_path:
                raise InvalidURLError("Missing 'path' parameter")
            path = validate_path(unquote(raw_path))

        return cls(action=action, job_id=job_id, path=path, raw_url=url)


def validate_path(path: str) -> str:
    """Normalize a vault-relative path received from outside.

    Raises:
        InvalidURLError: If the path is empty or traverses upwards
    """
    try:
        normalized = normalize_path(path)
    except VaultPathError as e:
        raise InvalidURLError(str(e)) from e
    if not normalized:
        raise InvalidURLError("Path resolves to empty")
    if re.match(r"^[A-Za-z]:", normalized):
        raise InvalidURLError("Absolute paths not allowed")
    return normalized


def resolve_file_path(vault_root: Path, relative_path: str) -> Path:
    """Resolve a vault-relative path to an absolute path inside the vault.

    Raises:
        InvalidURLError: If the path escapes the vault
    """
    absolute_path = (vault_root / validate_path(relative_path)).resolve()
    try:
        absolute_path.relative_to(vault_root.resolve())
    except ValueError as e:
        raise InvalidURLError(f"Path escapes vault: {relative_path}") from e
    return absolute_path


def open_file(file_path: Path) -> None:
    """Open a file with the system's default application.

    Raises:
        FileNotFoundError: If file doesn't exist
        OSError: If file cannot be opened
    """
    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")

    system = platform.system()
    if system == "Windows":
        os.startfile(str(file_path))  # type: ignore[attr-defined]
    elif system == "Darwin":
        subprocess.run(["open", str(file_path)], check=True)
    else:
        subprocess.run(["xdg-open", str(file_path)], check=True)


def build_destination_url(path: str) -> str:
    """URL recorded on a job once it has been delivered to ``path``."""
    return f"{DESTINATION_URL_PREFIX}{quote(normalize_path(path), safe='')}"


def parse_destination_url(url: str) -> str | None:
    """Vault-relative path from a recorded destination URL.

    Leading slashes (left by older deliveries into the vault root) are
    dropped.
    """
    match = _FILE_PARAM_RE.search(url or "")
    if not match:
        return None
    path = unquote(match.group(1)).lstrip("/")
    return path or None


# =============================================================================
# Platform-specific protocol registration
# =============================================================================


def _handler_command() -> str:
    """Command line the OS runs for a flowvault:// URL."""
    if getattr(sys, "frozen", False):
        return f'"{sys.executable}"'
    return f'"{sys.executable}" -m flowvault.client.cli'


def _applications_dir() -> Path:
    return Path.home() / ".local" / "share" / "applications"


def _register_linux() -> None:
    apps_dir = _applications_dir()
    desktop_content = (
        "[Desktop Entry]\n"
        "Type=Application\n"
        "Name=FlowVault\n"
        f"Comment=Handle {SCHEME}:// links\n"
        f"Exec={_handler_command()} open-url %u\n"
        "Terminal=false\n"
        "NoDisplay=true\n"
        f"MimeType=x-scheme-handler/{SCHEME};\n"
    )
    try:
        apps_dir.mkdir(parents=True, exist_ok=True)
        (apps_dir / _DESKTOP_FILE).write_text(desktop_content)
        subprocess.run(
            ["xdg-mime", "default", _DESKTOP_FILE, f"x-scheme-handler/{SCHEME}"],
            check=True,
            capture_output=True,
        )
    except (OSError, subprocess.CalledProcessError) as e:
        raise RegistrationError(f"Failed to register with xdg-mime: {e}") from e
    subprocess.run(["update-desktop-database", str(apps_dir)], check=False, capture_output=True)


def _unregister_linux() -> None:
    desktop_file = _applications_dir() / _DESKTOP_FILE
    try:
        desktop_file.unlink(missing_ok=True)
    except OSError as e:
        raise RegistrationError(f"Failed to remove {desktop_file}: {e}") from e


def _register_windows() -> None:
    import winreg  # type: ignore[import-not-found]

    try:
        with winreg.CreateKey(winreg.HKEY_CURRENT_USER, _REGISTRY_KEY) as key:  # type: ignore[attr-defined]
            winreg.SetValue(key, "", winreg.REG_SZ, "URL:FlowVault Protocol")  # type: ignore[attr-defined]
            winreg.SetValueEx(key, "URL Protocol", 0, winreg.REG_SZ, "")  # type: ignore[attr-defined]
        command_path = rf"{_REGISTRY_KEY}\shell\open\command"
        with winreg.CreateKey(winreg.HKEY_CURRENT_USER, command_path) as key:  # type: ignore[attr-defined]
            winreg.SetValue(key, "", winreg.REG_SZ, f'{_handler_command()} open-url "%1"')  # type: ignore[attr-defined]
    except OSError as e:
        raise RegistrationError(f"Failed to register on Windows: {e}") from e


def _unregister_windows() -> None:
    import winreg  # type: ignore[import-not-found]

    # Subkeys must go before their parent
    for path in (rf"{_REGISTRY_KEY}\shell\open\command", rf"{_REGISTRY_KEY}\shell\open",
                 rf"{_REGISTRY_KEY}\shell", _REGISTRY_KEY):
        try:
            winreg.DeleteKey(winreg.HKEY_CURRENT_USER, path)  # type: ignore[attr-defined]
        except FileNotFoundError:
            continue
        except OSError as e:
            raise RegistrationError(f"Failed to unregister on Windows: {e}") from e


def register_protocol() -> None:
    """Register the flowvault:// handler for the current platform.

    Raises:
        RegistrationError: If registration fails or platform not supported
    """
    system = platform.system()
    if system == "Linux":
        _register_linux()
    elif system == "Windows":
        _register_windows()
    else:
        raise RegistrationError(f"Unsupported platform: {system}")
    logger.info("Registered %s:// handler on %s", SCHEME, system)


def unregister_protocol() -> None:
    """Unregister the flowvault:// handler for the current platform.

    Raises:
        RegistrationError: If unregistration fails or platform not supported
    """
    system = platform.system()
    if system == "Linux":
        _unregister_linux()
    elif system == "Windows":
        _unregister_windows()
    else:
        raise RegistrationError(f"Unsupported platform: {system}")


def is_registered() -> bool:
    """Check if the flowvault:// handler is registered."""
    system = platform.system()
    if system == "Linux":
        return (_applications_dir() / _DESKTOP_FILE).exists()
    if system == "Windows":
        import winreg  # type: ignore[import-not-found]

        try:
            with winreg.OpenKey(  # type: ignore[attr-defined]
                winreg.HKEY_CURRENT_USER,  # type: ignore[attr-defined]
                rf"{_REGISTRY_KEY}\shell\open\command",
            ):
                return True
        except OSError:
            return False
    return False
