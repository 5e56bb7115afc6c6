"""Command-line interface for PullAgent.

This module provides the main CLI entry point and assembles all commands.

Commands:
- agent: Run an agent that uploads its file on request
- trigger: Ask an agent to upload its file
- status: Show a transfer
- artifact: Print a download URL for a verified transfer
- list: List an agent's transfers
- stale: List transfers stuck in pending
"""

from __future__ import annotations

import click

from pullagent.client.cli.agent import agent
from pullagent.client.cli.transfers import artifact, list_cmd, stale, status, trigger


@click.group()
@click.version_option(package_name="pullagent")
@click.option(
    "--server-url",
    envvar="PULLAGENT_SERVER_URL",
    default="http://localhost:8000",
    show_default=True,
    help="Base URL of the PullAgent server.",
)
@click.option(
    "--api-key",
    envvar="PULLAGENT_API_KEY",
    default=None,
    help="API key for the /api routes (env: PULLAGENT_API_KEY).",
)
@click.pass_context
def cli(ctx: click.Context, server_url: str, api_key: str | None) -> None:
    """PullAgent - Pull files from agents into object storage."""
    ctx.ensure_object(dict)
    ctx.obj["server_url"] = server_url
    ctx.obj["api_key"] = api_key


# Agent command
cli.add_command(agent)

# Initiator commands
cli.add_command(trigger)
cli.add_command(status)
cli.add_command(artifact)
cli.add_command(list_cmd)
cli.add_command(stale)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = ["cli", "main"]
