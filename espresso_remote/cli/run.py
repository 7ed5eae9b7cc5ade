"""Stage and submit commands - run a project's pipeline on a remote host."""

import logging
from pathlib import Path

import click
from rich.console import Console

from espresso_remote.cli.logging import configure_cli_logging
from espresso_remote.cli.profiles import load_profile, profiles_file_option
from espresso_remote.errors import EspressoRemoteError
from espresso_remote.pipeline import RunKind
from espresso_remote.profile import RemoteProfile
from espresso_remote.project import DEFAULT_PREFIX, LocalProject
from espresso_remote.remote.session import RemoteExecutionSession

logger = logging.getLogger(__name__)

console = Console()

_KIND_CHOICES = [kind.value for kind in RunKind]


def _common_options(func):
    options = [
        click.argument(
            "project_dir",
            type=click.Path(exists=True, file_okay=False, path_type=Path),
        ),
        click.option(
            "--kind",
            "-k",
            type=click.Choice(_KIND_CHOICES, case_sensitive=False),
            required=True,
            help="Calculation to run.",
        ),
        click.option("--mpi", default=1, show_default=True, help="MPI processes per run."),
        click.option("--omp", default=1, show_default=True, help="OpenMP threads per process."),
        click.option("--prefix", default=DEFAULT_PREFIX, show_default=True, help="Calculation prefix."),
        click.option("--related-file", default=None, help="Structure file name used in input titles."),
        profiles_file_option,
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _session(
    project_dir: Path,
    kind: str,
    profile: RemoteProfile,
    mpi: int,
    omp: int,
    prefix: str,
    related_file: str | None,
) -> RemoteExecutionSession:
    project = LocalProject(project_dir, prefix=prefix, related_file_name=related_file)
    return RemoteExecutionSession(project, profile, RunKind.parse(kind), num_mpi=mpi, num_omp=omp)


@click.command()
@_common_options
@click.option("--profile", "profile_title", default=None, help="Profile whose script template is used.")
@click.option("-v", "--verbose", is_flag=True, help="Show INFO-level logs.")
def stage(
    project_dir: Path,
    kind: str,
    mpi: int,
    omp: int,
    prefix: str,
    related_file: str | None,
    profiles_file: Path | None,
    profile_title: str | None,
    verbose: bool,
) -> None:
    """Write inputs and the job script for PROJECT_DIR without submitting."""
    configure_cli_logging("stage", profile=profile_title, verbose=verbose)
    profile = load_profile(profile_title, profiles_file) if profile_title else RemoteProfile("default")

    session = _session(project_dir, kind, profile, mpi, omp, prefix, related_file)
    try:
        staged = session.stage()
    except EspressoRemoteError as e:
        raise click.ClickException(str(e)) from e

    for stage_record, path in zip(staged.stages, staged.input_files, strict=True):
        console.print(f"[green]✓[/green] {stage_record.tag}: {path.name}")
    for path in staged.resource_files:
        console.print(f"[dim]  resource {path}[/dim]")
    console.print(f"[cyan]Script {staged.script_file}[/cyan]")
    console.print(staged.script_text, markup=False, highlight=False)


@click.command()
@_common_options
@click.option("--profile", "profile_title", required=True, help="Remote profile to submit to.")
@click.option("-v", "--verbose", is_flag=True, help="Show INFO-level logs.")
def submit(
    project_dir: Path,
    kind: str,
    mpi: int,
    omp: int,
    prefix: str,
    related_file: str | None,
    profiles_file: Path | None,
    profile_title: str,
    verbose: bool,
) -> None:
    """Stage PROJECT_DIR and submit it to a remote host."""
    log_file = configure_cli_logging("submit", profile=profile_title, verbose=verbose)
    profile = load_profile(profile_title, profiles_file)

    session = _session(project_dir, kind, profile, mpi, omp, prefix, related_file)
    if not session.submit():
        error = session.last_error
        logger.debug("Full log at %s", log_file)
        raise click.ClickException(str(error) if error else "submission failed")

    console.print(f"[green]✓ Submitted {session.run_kind.label} to {profile.title}[/green]")
