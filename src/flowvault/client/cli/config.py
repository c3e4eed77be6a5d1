"""Configuration command for FlowVault CLI.

Commands:
- configure: Update settings, or show them when no option is given
"""

from __future__ import annotations

import click

from flowvault.client.settings import SettingsStore


def _mask(secret: str) -> str:
    if not secret:
        return "(not set)"
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:4]}...{secret[-4:]}"


@click.command()
@click.option("--backend-url", default=None, help="Backend base URL.")
@click.option("--anon-key", default=None, help="Backend public API key.")
@click.option("--access-token", default=None, help="Session token of the signed-in user.")
@click.option("--user-id", default=None, help="Signed-in user id.")
@click.option(
    "--vault",
    "vault_path",
    default=None,
    type=click.Path(file_okay=False),
    help="Vault root folder.",
)
@click.option(
    "--attachment-folder",
    default=None,
    help="Attachment folder ('.' = next to note, './sub' = relative to note).",
)
@click.option("--poll-interval", type=int, default=None, help="Seconds between background syncs.")
@click.option("--control-port", type=int, default=None, help="Port of the watcher's control channel.")
@click.option("--sentry-dsn", default=None, help="Error reporting DSN ('' turns reporting off).")
def configure(
    backend_url: str | None,
    anon_key: str | None,
    access_token: str | None,
    user_id: str | None,
    vault_path: str | None,
    attachment_folder: str | None,
    poll_interval: int | None,
    control_port: int | None,
    sentry_dsn: str | None,
) -> None:
    """Update FlowVault settings.

    Without options, prints the current settings.
    """
    store = SettingsStore()
    settings = store.load()

    updates = {
        "backend_url": backend_url,
        "anon_key": anon_key,
        "access_token": access_token,
        "last_user_id": user_id,
        "vault_path": vault_path,
        "attachment_folder": attachment_folder,
        "poll_interval": poll_interval,
        "control_port": control_port,
        "sentry_dsn": sentry_dsn,
    }
    changed = {key: value for key, value in updates.items() if value is not None}

    if changed:
        if user_id is not None and user_id != settings.last_user_id:
            # Cached routes belong to the previous account
            settings.routes = {}
        for key, value in changed.items():
            setattr(settings, key, value)
        store.save(settings)
        click.echo(f"Settings saved to {store.path}")
        if poll_interval is not None and settings.effective_poll_interval != poll_interval:
            click.echo(f"Note: poll interval raised to {settings.effective_poll_interval}s minimum")
        return

    click.echo(f"Settings file: {store.path}")
    click.echo(f"Backend URL: {settings.backend_url or '(not set)'}")
    click.echo(f"Anon key: {_mask(settings.anon_key)}")
    click.echo(f"Access token: {_mask(settings.access_token)}")
    click.echo(f"User id: {settings.last_user_id or '(not set)'}")
    click.echo(f"Vault: {settings.vault_path or '(not set)'}")
    click.echo(f"Attachment folder: {settings.attachment_folder or '(default)'}")
    click.echo(f"Poll interval: {settings.effective_poll_interval}s")
    click.echo(f"Control port: {settings.control_port}")
    click.echo(f"Error reporting: {'enabled' if settings.sentry_dsn else 'disabled'}")
    click.echo(f"Cached routes: {len(settings.routes)}")
