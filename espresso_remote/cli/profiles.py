"""Profiles commands - inspect remote execution profiles."""

from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from espresso_remote.errors import ConfigurationError
from espresso_remote.profile import RemoteProfile, load_profiles
from espresso_remote.settings import get_profiles_file

console = Console()

profiles_file_option = click.option(
    "--profiles-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Profiles YAML file (default: from settings).",
)


def load_profile(title: str, profiles_file: Path | None = None) -> RemoteProfile:
    """Look up one profile by title.

    Raises:
        click.ClickException: If the file is invalid or has no such profile.
    """
    path = profiles_file or get_profiles_file()
    try:
        found = load_profiles(path)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    if title not in found:
        raise click.ClickException(f"configuration: no profile named {title!r} in {path}")
    return found[title]


@click.group()
def profiles() -> None:
    """Inspect remote execution profiles.

    \b
      espresso-remote profiles list         List profiles
      espresso-remote profiles show TITLE   Preview job command and script
    """
    pass


@profiles.command("list")
@profiles_file_option
def profiles_list(profiles_file: Path | None) -> None:
    """List profiles from the profiles file."""
    path = profiles_file or get_profiles_file()
    try:
        found = load_profiles(path)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    if not found:
        console.print(f"[yellow]No profiles found in {path}[/yellow]")
        return

    table = Table(title="Remote Profiles")
    table.add_column("Title", style="cyan")
    table.add_column("Host", style="white")
    table.add_column("Port", style="dim")
    table.add_column("User", style="white")
    table.add_column("Work directory", style="dim")

    for profile in found.values():
        table.add_row(
            profile.title,
            profile.host or "",
            str(profile.int_port()),
            profile.user or "",
            profile.work_directory or "~",
        )

    console.print(table)


@profiles.command("show")
@click.argument("title")
@profiles_file_option
@click.option("--mpi", default=1, show_default=True, help="MPI processes.")
@click.option("--omp", default=1, show_default=True, help="OpenMP threads.")
def profiles_show(title: str, profiles_file: Path | None, mpi: int, omp: int) -> None:
    """Show the job command and script rendered for TITLE."""
    profile = load_profile(title, profiles_file)

    console.print(f"[bold]{profile.title}[/bold] {profile.user or ''}@{profile.host or ''}:{profile.int_port()}")
    console.print("[cyan]Job command:[/cyan]")
    console.print(profile.render_job_command("espresso.sh"), markup=False, highlight=False)
    console.print("[cyan]Job script:[/cyan]")
    console.print(profile.render_job_script(None, mpi, omp), markup=False, highlight=False)
