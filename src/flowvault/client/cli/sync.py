"""Sync commands for FlowVault CLI.

Commands:
- sync: Deliver pending jobs now
- watch: Run the watcher (startup tick, poll loop, control channel)
- focus: Focus hook for desktop integrations
- status: Show the watcher's status line
- open-url: Handle a flowvault:// URL

sync, focus and open-url forward to a running watcher over the control
channel so every trigger shares its busy flag. Without a watcher they run
the coordinator in this process; the sync lock file in the config
directory still keeps two processes from running cycles at once.
"""

from __future__ import annotations

import asyncio
import contextlib
import subprocess
import sys
from collections.abc import AsyncIterator, Callable
from typing import Any

import click
from filelock import FileLock

from flowvault.client.api import BackendClient
from flowvault.client.control import (
    MSG_DEEP_LINK,
    MSG_FOCUS,
    MSG_STATUS,
    MSG_SYNC,
    send_command,
)
from flowvault.client.notifications import notify_delivered, notify_error
from flowvault.client.protocol import (
    FlowVaultURL,
    InvalidURLError,
    open_file,
    resolve_file_path,
)
from flowvault.client.settings import Settings, SettingsStore, get_config_dir
from flowvault.client.sync import (
    AttachmentFetcher,
    DeliveryEngine,
    RouteCache,
    SyncCoordinator,
    SyncDaemon,
)
from flowvault.client.telemetry import init_error_tracking
from flowvault.client.vault import Vault

# Held for the length of a cycle by every flowvault process
SYNC_LOCK_NAME = "sync.lock"


def _load_settings() -> tuple[Settings, SettingsStore]:
    store = SettingsStore()
    settings = store.load()
    if settings.vault_root is None:
        click.echo("Error: Vault not configured. Run 'flowvault configure --vault PATH' first.", err=True)
        sys.exit(1)
    return settings, store


@contextlib.asynccontextmanager
async def open_coordinator(
    settings: Settings,
    store: SettingsStore,
    notifier: Callable[[str], None] | None = notify_error,
) -> AsyncIterator[SyncCoordinator]:
    """Build the delivery stack from settings.

    Args:
        settings: Loaded settings (vault must be configured).
        store: Store that persists route cache refreshes.
        notifier: Notice callback for failed explicit triggers.

    Yields:
        Coordinator ready to run cycles.
    """
    init_error_tracking(settings.sentry_dsn)
    config = settings.backend_config()
    vault = Vault(settings.vault_root, settings.attachment_folder)
    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(config_dir / SYNC_LOCK_NAME))
    async with BackendClient(config) as client:
        fetcher = AttachmentFetcher(client, vault, timeout=config.timeout)
        try:
            routes = RouteCache(
                client,
                settings.routes,
                on_change=store.save_routes,
                user_id=settings.last_user_id or None,
            )
            engine = DeliveryEngine(routes, vault, fetcher)
            yield SyncCoordinator(
                client,
                engine,
                config=config,
                notifier=notifier,
                batch_size=config.batch_size,
                lock=lock,
            )
        finally:
            await fetcher.close()


def _print_report(reply: dict[str, Any]) -> bool:
    """Print a cycle reply; return True if the cycle succeeded."""
    if reply.get("skipped"):
        click.echo(reply.get("error") or "Sync skipped.")
        return True

    for entry in reply.get("entries") or []:
        click.echo(f"  + {entry['path']}  ({entry['title']})")

    count = len(reply.get("entries") or [])
    if not reply.get("ok"):
        if count:
            click.echo(f"Delivered {count} item(s) before the error.")
        click.echo(click.style(f"Error: {reply.get('error')}", fg="red"), err=True)
        return False

    if count == 0:
        click.echo(f"Nothing to deliver ({reply.get('jobs_found', 0)} job(s) found).")
    else:
        click.echo(f"Delivered {count} item(s).")
    return True


@click.command()
@click.option("--notify", is_flag=True, help="Show a desktop notice with the result.")
def sync(notify: bool) -> None:
    """Deliver pending jobs into the vault now."""
    settings, store = _load_settings()

    async def _run() -> dict[str, Any]:
        reply = await send_command(settings.control_port, {"type": MSG_SYNC})
        if reply is not None:
            return reply
        notifier = notify_error if notify else None
        async with open_coordinator(settings, store, notifier=notifier) as coordinator:
            report = await coordinator.sync_with_logs()
        return report.to_message()

    reply = asyncio.run(_run())
    ok = _print_report(reply)
    if notify and ok:
        notify_delivered(len(reply.get("entries") or []))
    if not ok:
        sys.exit(1)


@click.command()
def focus() -> None:
    """Report that the vault app gained focus.

    Meant for desktop integrations. Ignored while a sync runs or shortly
    after startup or a deep link.
    """
    settings, store = _load_settings()

    async def _run() -> dict[str, Any]:
        reply = await send_command(settings.control_port, {"type": MSG_FOCUS})
        if reply is not None:
            return reply
        async with open_coordinator(settings, store, notifier=None) as coordinator:
            report = await coordinator.on_window_focus()
        return report.to_message()

    _print_report(asyncio.run(_run()))


@click.command()
def status() -> None:
    """Show the watcher's status."""
    settings = SettingsStore().load()
    reply = asyncio.run(send_command(settings.control_port, {"type": MSG_STATUS}, reply_timeout=5.0))
    if reply is None:
        click.echo("Watcher: NOT RUNNING")
        return
    click.echo("Watcher: RUNNING")
    click.echo(f"Status: {reply.get('status')}")


@click.command()
def watch() -> None:
    """Run the watcher until interrupted.

    Syncs at startup and every poll interval, and serves sync, focus and
    deep-link requests from other flowvault invocations.
    """
    settings, store = _load_settings()

    if asyncio.run(send_command(settings.control_port, {"type": MSG_STATUS}, reply_timeout=5.0)):
        click.echo(f"Error: A watcher is already running on port {settings.control_port}.", err=True)
        sys.exit(1)

    async def _run() -> None:
        async with open_coordinator(settings, store) as coordinator:
            daemon = SyncDaemon(
                coordinator,
                poll_interval=settings.effective_poll_interval,
                port=settings.control_port,
            )
            await daemon.run()

    click.echo(f"Watching vault {settings.vault_root} (Ctrl+C to stop)")
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("\nStopping...")
    except OSError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@click.command("open-url")
@click.argument("url")
def open_url(url: str) -> None:
    """Handle a flowvault:// URL.

    URL is the flowvault:// URL to handle.

    This command is typically called by the operating system
    when clicking a flowvault:// link.
    """
    try:
        parsed = FlowVaultURL.parse(url)
    except InvalidURLError as e:
        click.echo(f"Invalid URL: {e}", err=True)
        sys.exit(1)

    settings, store = _load_settings()
    vault_root = settings.vault_root

    if parsed.action == "sync":

        async def _run() -> str | None:
            message = {"type": MSG_DEEP_LINK, "job": parsed.job_id}
            reply = await send_command(settings.control_port, message)
            if reply is not None:
                return reply.get("path")
            async with open_coordinator(settings, store) as coordinator:
                return await coordinator.on_deep_link(parsed.job_id)

        path = asyncio.run(_run())
        if not path:
            click.echo("Nothing to open.")
            return
    else:
        path = parsed.path

    try:
        file_path = resolve_file_path(vault_root, path)
        open_file(file_path)
    except InvalidURLError as e:
        click.echo(f"Invalid path: {e}", err=True)
        sys.exit(1)
    except FileNotFoundError as e:
        click.echo(f"File not found: {e}", err=True)
        sys.exit(1)
    except (OSError, subprocess.CalledProcessError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Opened: {file_path}")
