"""Deep-link handler commands for FlowVault CLI.

Commands:
- register-protocol: Route flowvault:// links to 'flowvault open-url'
- unregister-protocol: Remove that routing
- protocol-status: Show whether "note ready" links reach flowvault
"""

from __future__ import annotations

import sys

import click

from flowvault.client.protocol import (
    SCHEME,
    RegistrationError,
    is_registered,
    register_protocol,
    unregister_protocol,
)

_LINK_EXAMPLES = f"{SCHEME}://sync?job=<id> and {SCHEME}://open?path=<note>"


@click.command("register-protocol")
def register_protocol_cmd() -> None:
    """Let "note ready" links sync and open the delivered note.

    After registration the desktop hands flowvault:// links to
    'flowvault open-url', which forwards sync links to a running watcher
    (or syncs here) and opens the resulting note.
    """
    try:
        if is_registered():
            click.echo(f"{SCHEME}:// links already open with flowvault.")
            return

        register_protocol()
        click.echo(f"{SCHEME}:// links now sync and open notes ({_LINK_EXAMPLES}).")
    except RegistrationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@click.command("unregister-protocol")
def unregister_protocol_cmd() -> None:
    """Stop handling flowvault:// links.

    Notes already in the vault are untouched; only the link routing goes away.
    """
    try:
        if not is_registered():
            click.echo(f"{SCHEME}:// links are not handled by flowvault.")
            return

        unregister_protocol()
        click.echo(f"{SCHEME}:// links no longer open with flowvault.")
    except RegistrationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@click.command("protocol-status")
def protocol_status() -> None:
    """Show whether "note ready" links reach flowvault."""
    if is_registered():
        click.echo("Deep links: REGISTERED")
        click.echo(f"Handles {_LINK_EXAMPLES}.")
    else:
        click.echo("Deep links: NOT REGISTERED")
        click.echo("Run 'flowvault register-protocol' so \"note ready\" links deliver and open notes.")
