"""Initiator commands for PullAgent CLI.

Commands:
- trigger: Ask an agent to upload its file
- status: Show a transfer
- artifact: Print a download URL for a verified transfer
- list: List an agent's transfers
- stale: List transfers stuck in pending
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, NoReturn

import click

if TYPE_CHECKING:
    from pullagent.client.api import InitiatorClient, RemoteTransfer


def _client(ctx: click.Context) -> InitiatorClient:
    from pullagent.client.api import InitiatorClient

    return InitiatorClient(ctx.obj["server_url"], api_key=ctx.obj["api_key"])


def _fail(message: str) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _echo_transfer(transfer: RemoteTransfer) -> None:
    click.echo(f"Transfer: {transfer.id}")
    click.echo(f"  Agent:   {transfer.agent_id}")
    click.echo(f"  Name:    {transfer.display_name}")
    click.echo(f"  Object:  {transfer.object_key}")
    click.echo(f"  Status:  {transfer.status}")
    if transfer.size is not None:
        click.echo(f"  Size:    {transfer.size} bytes")
    if transfer.digest:
        click.echo(f"  SHA-256: {transfer.digest}")
    if transfer.failure_category:
        click.echo(f"  Failure: {transfer.failure_category} ({transfer.failure_reason})")
    click.echo(f"  Created: {transfer.created_at.isoformat()}")
    click.echo(f"  Updated: {transfer.updated_at.isoformat()}")


def _echo_table(transfers: list[RemoteTransfer]) -> None:
    if not transfers:
        click.echo("No transfers.")
        return
    for t in transfers:
        click.echo(f"{t.id}  {t.status:<9}  {t.created_at.isoformat()}  {t.display_name}")


@click.command()
@click.argument("agent_id")
@click.option("--name", "display_name", default=None, help="Name the downloaded file gets.")
@click.option("--requested-by", default=None, help="Who asked for the file (recorded with the transfer).")
@click.option("--reason", default=None, help="Why the file is needed (recorded with the transfer).")
@click.pass_context
def trigger(
    ctx: click.Context,
    agent_id: str,
    display_name: str | None,
    requested_by: str | None,
    reason: str | None,
) -> None:
    """Ask AGENT_ID to upload its file."""
    from pullagent.client.api import APIError

    with _client(ctx) as client:
        try:
            transfer = client.trigger(agent_id, display_name, requested_by, reason)
        except APIError as e:
            _fail(str(e))
    click.echo(f"Triggered transfer {transfer.id} ({transfer.status})")
    click.echo(f"  Object: {transfer.object_key}")


@click.command()
@click.argument("transfer_id")
@click.pass_context
def status(ctx: click.Context, transfer_id: str) -> None:
    """Show transfer TRANSFER_ID."""
    from pullagent.client.api import APIError

    with _client(ctx) as client:
        try:
            transfer = client.get_transfer(transfer_id)
        except APIError as e:
            _fail(str(e))
    _echo_transfer(transfer)


@click.command()
@click.argument("transfer_id")
@click.pass_context
def artifact(ctx: click.Context, transfer_id: str) -> None:
    """Print a download URL for verified transfer TRANSFER_ID."""
    from pullagent.client.api import APIError

    with _client(ctx) as client:
        try:
            result = client.get_artifact(transfer_id)
        except APIError as e:
            _fail(str(e))
    click.echo(result.url)
    click.echo(f"Expires at {result.expires_at.isoformat()}", err=True)


@click.command("list")
@click.argument("agent_id")
@click.pass_context
def list_cmd(ctx: click.Context, agent_id: str) -> None:
    """List transfers of AGENT_ID, newest first."""
    from pullagent.client.api import APIError

    with _client(ctx) as client:
        try:
            transfers = client.list_transfers(agent_id)
        except APIError as e:
            _fail(str(e))
    _echo_table(transfers)


@click.command()
@click.option(
    "--older-than-minutes",
    "-m",
    type=int,
    default=15,
    show_default=True,
    help="Report transfers pending for longer than this.",
)
@click.pass_context
def stale(ctx: click.Context, older_than_minutes: int) -> None:
    """List transfers stuck in pending."""
    from pullagent.client.api import APIError

    with _client(ctx) as client:
        try:
            transfers = client.list_stale(older_than_minutes * 60)
        except APIError as e:
            _fail(str(e))
    _echo_table(transfers)
