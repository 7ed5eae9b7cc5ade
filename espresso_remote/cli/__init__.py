"""CLI interface for espresso-remote.

Command groups are split by functionality into sibling modules.
"""

import logging

import click
from dotenv import load_dotenv

from espresso_remote import __version__

# Load environment variables (ESPRESSO_REMOTE_*) from .env file
load_dotenv(override=True)

logger = logging.getLogger(__name__)


@click.group(invoke_without_command=True)
@click.option(
    "--version",
    is_flag=True,
    help="Show the espresso-remote version and exit.",
)
@click.pass_context
def main(ctx: click.Context, version: bool) -> None:
    """espresso-remote - run Quantum ESPRESSO pipelines on remote hosts.

    \b
      espresso-remote profiles list           List remote profiles
      espresso-remote profiles show TITLE     Preview a profile's job script
      espresso-remote stage DIR -k band       Write inputs and script only
      espresso-remote submit DIR -k dos --profile cluster
    """
    if version:
        click.echo(__version__)
        ctx.exit()

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def register_commands() -> None:
    """Register all command groups with the main CLI."""
    from espresso_remote.cli.profiles import profiles
    from espresso_remote.cli.run import stage, submit

    main.add_command(profiles)
    main.add_command(stage)
    main.add_command(submit)


# Register commands at import time
register_commands()

__all__ = ["main"]


if __name__ == "__main__":
    main()
