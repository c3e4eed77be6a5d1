"""Command-line interface for FlowVault.

This module provides the main CLI entry point and assembles all commands.

Commands:
- configure: Set backend credentials, vault location and trigger tuning
- sync: Deliver pending jobs now
- watch: Run the watcher (poll loop and control channel)
- focus: Report that the vault app gained focus
- status: Show the watcher's status line
- open-url: Handle a flowvault:// URL
- register-protocol: Register flowvault:// URL handler
- unregister-protocol: Unregister flowvault:// URL handler
- protocol-status: Check protocol registration status
"""

from __future__ import annotations

import logging

import click

from flowvault.client.cli.config import configure
from flowvault.client.cli.protocol import (
    protocol_status,
    register_protocol_cmd,
    unregister_protocol_cmd,
)
from flowvault.client.cli.sync import focus, open_url, status, sync, watch


def setup_logging(verbose: bool) -> None:
    """Attach a stderr handler to the flowvault logger."""
    flowvault_logger = logging.getLogger("flowvault")
    for handler in flowvault_logger.handlers[:]:
        flowvault_logger.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    flowvault_logger.addHandler(handler)
    flowvault_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    flowvault_logger.propagate = False


@click.group()
@click.version_option(package_name="flowvault")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def cli(verbose: bool) -> None:
    """FlowVault - deliver processed notes into a local vault."""
    setup_logging(verbose)


# Settings
cli.add_command(configure)

# Sync commands
cli.add_command(sync)
cli.add_command(watch)
cli.add_command(focus)
cli.add_command(status)

# Protocol commands
cli.add_command(open_url)
cli.add_command(register_protocol_cmd)
cli.add_command(unregister_protocol_cmd)
cli.add_command(protocol_status)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "main",
    "setup_logging",
]
