"""Agent command for PullAgent CLI.

Commands:
- agent: Connect to the server and upload the file on request
"""

from __future__ import annotations

import logging
import sys
import time
from pathlib import Path

import click


def _setup_logging(verbose: bool) -> None:
    """Log pullagent messages to stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
    pullagent_logger = logging.getLogger("pullagent")
    pullagent_logger.handlers = [handler]
    pullagent_logger.setLevel(logging.DEBUG if verbose else logging.INFO)


@click.command()
@click.option(
    "--agent-id",
    envvar="PULLAGENT_AGENT_ID",
    required=True,
    help="Identifier this agent receives commands for.",
)
@click.option(
    "--token",
    envvar="PULLAGENT_AGENT_TOKEN",
    default="",
    help="Agent token expected by the server (env: PULLAGENT_AGENT_TOKEN).",
)
@click.option(
    "--file",
    "file_path",
    envvar="PULLAGENT_FILE_PATH",
    required=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="File uploaded when a command arrives.",
)
@click.option("--max-concurrent", type=int, default=4, show_default=True, help="Uploads sending data at once.")
@click.option("--insecure", is_flag=True, help="Do not verify SSL certificates.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def agent(
    ctx: click.Context,
    agent_id: str,
    token: str,
    file_path: Path,
    max_concurrent: int,
    insecure: bool,
    verbose: bool,
) -> None:
    """Run an agent until interrupted.

    The agent dials out to the server, so it can run behind NAT. Each upload
    command makes it stream FILE to the URL in the command and report back.
    """
    from pullagent.agent.connection import AgentConnection
    from pullagent.agent.runner import TransferRunner
    from pullagent.agent.uploader import StreamingUploader
    from pullagent.core.config import AgentConfig
    from pullagent.core.sanitize import is_valid_agent_id

    if not is_valid_agent_id(agent_id):
        click.echo(f"Error: invalid agent id: {agent_id!r}", err=True)
        sys.exit(1)

    if not file_path.is_file():
        click.echo(f"Warning: {file_path} does not exist yet; uploads will fail until it does.", err=True)

    _setup_logging(verbose)

    config = AgentConfig(
        server_url=ctx.obj["server_url"],
        agent_id=agent_id,
        token=token,
        source_path=file_path,
        verify_ssl=not insecure,
        max_concurrent=max_concurrent,
    )

    connection = AgentConnection(config)
    uploader = StreamingUploader(timeout=config.timeout, verify_ssl=config.verify_ssl)
    runner = TransferRunner(
        connection,
        config.source_path,
        uploader=uploader,
        max_attempts=config.max_attempts,
        base_delay=config.base_delay,
        max_workers=config.max_concurrent,
    )
    runner.start(config.agent_id)
    connection.start()

    click.echo(f"Agent {agent_id} serving {file_path} via {config.ws_url}")
    click.echo("Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nStopping agent...")
    finally:
        # Uploads still running are abandoned with the process; the shared
        # uploader stays open under them.
        runner.stop()
        connection.stop()
