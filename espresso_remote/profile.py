"""Remote execution profiles.

A :class:`RemoteProfile` names one remote host together with the two
templates used to run a calculation there:

- the **job command** run over SSH to submit the script
  (default ``qsub ${JOB_SCRIPT}``)
- the **job script** that wraps the Quantum ESPRESSO command lines
  (default: a PBS script, see :data:`DEFAULT_JOB_SCRIPT`)

Profiles are identified by their title alone; two profiles with the same
title compare equal whatever their host. Profiles are read from a YAML file
(see :func:`load_profiles`)::

    - title: cluster
      host: login.example.org
      user: alice
      key_path: ~/.ssh/id_ed25519
      work_directory: /scratch/alice/qe
      module_commands: module load qe/7.2
      job_command: sbatch ${JOB_SCRIPT}
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from espresso_remote.errors import ConfigurationError
from espresso_remote.template import (
    JOB_SCRIPT,
    MODULE_COMMANDS,
    NUM_CPUS,
    NUM_MPIS,
    NUM_OMPS,
    QE_COMMAND,
    processor_bindings,
    substitute,
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 22

DEFAULT_JOB_COMMAND = f"qsub ${{{JOB_SCRIPT}}}"

DEFAULT_JOB_SCRIPT = "\n".join(
    [
        "#!/bin/sh",
        "#PBS -q QUEUE",
        f"#PBS -l select=1:ncpus=${{{NUM_CPUS}}}:mpiprocs=${{{NUM_MPIS}}}"
        f":ompthreads=${{{NUM_OMPS}}}",
        "#PBS -l walltime=0:30:00",
        "#PBS -W group_list=GROUP",
        "",
        'if [ ! -z "${PBS_O_WORKDIR}" ]; then',
        "  cd ${PBS_O_WORKDIR}",
        "fi",
        "",
        "# Load required modules",
        f"${{{MODULE_COMMANDS}}}",
        "",
        f"${{{QE_COMMAND}}}",
        "",
        "",
    ]
)


class RemoteProfile:
    """A named remote-execution target.

    Attributes:
        title: Unique, case-sensitive identity of the profile.
        host: Remote host name or address.
        port: Port as entered by the user; see :meth:`int_port`.
        user: Login name.
        password: Password, or passphrase of the private key.
        key_path: Path of a private key file. Setting a key does not clear
            the password; both are handed to the transport.
        work_directory: Remote directory files are uploaded to and the
            job command runs in. Blank means the login directory.
        module_commands: Environment setup text (``module load ...``).
        job_command: Submission command template.
        job_script: Job script template.
    """

    def __init__(
        self,
        title: str,
        *,
        host: str | None = None,
        port: str | int | None = DEFAULT_PORT,
        user: str | None = None,
        password: str | None = None,
        key_path: str | None = None,
        work_directory: str | None = None,
        module_commands: str | None = None,
        job_command: str | None = None,
        job_script: str | None = None,
    ):
        if not title:
            raise ValueError("profile title is empty")
        self._title = title
        self.host = host
        self.port = None if port is None else str(port)
        self.user = user
        self.password = password
        self.key_path = key_path
        self.work_directory = work_directory
        self.module_commands = module_commands
        self.job_command = job_command if job_command is not None else DEFAULT_JOB_COMMAND
        self.job_script = job_script if job_script is not None else DEFAULT_JOB_SCRIPT

    @property
    def title(self) -> str:
        return self._title

    def int_port(self) -> int:
        """Port as an integer, falling back to 22 when unset or unparsable."""
        if self.port is None:
            return DEFAULT_PORT
        try:
            return int(self.port.strip())
        except ValueError:
            logger.debug("Invalid port %r for profile %s, using %d", self.port, self.title, DEFAULT_PORT)
            return DEFAULT_PORT

    def render_job_command(self, script_name: str | None = None) -> str:
        """Render the submission command for a script file name."""
        name = script_name.strip() if script_name else ""
        bindings = {JOB_SCRIPT: name} if name else {}
        return substitute(self.job_command, bindings)

    def render_job_script(
        self,
        commands: str | Iterable[str] | None = None,
        num_mpi: int = -1,
        num_omp: int = -1,
    ) -> str:
        """Render the job script.

        Args:
            commands: Quantum ESPRESSO command line(s). A sequence is joined
                with one newline after each entry.
            num_mpi: MPI process count; bound only when >= 1.
            num_omp: OpenMP thread count; bound only when >= 1.

        Returns:
            The script text. ``MODULE_COMMANDS`` is always substituted,
            with an empty string when no module commands are set.
        """
        if commands is not None and not isinstance(commands, str):
            commands = "".join(f"{line}\n" for line in commands if line is not None)

        bindings = processor_bindings(num_mpi, num_omp)
        qe_command = commands.strip() if commands else ""
        if qe_command:
            bindings[QE_COMMAND] = qe_command
        bindings[MODULE_COMMANDS] = (self.module_commands or "").strip()
        return substitute(self.job_script, bindings)

    def __eq__(self, other: object) -> bool:
        if self is other:
            return True
        if not isinstance(other, RemoteProfile):
            return NotImplemented
        return self._title == other._title

    def __hash__(self) -> int:
        return hash(self._title)

    def __str__(self) -> str:
        return self._title

    def __repr__(self) -> str:
        return f"RemoteProfile(title={self._title!r}, host={self.host!r}, user={self.user!r})"


# ─── Profiles file ──────────────────────────────────────────────────────────


class ProfileConfig(BaseModel):
    """Schema of one profile entry in the profiles YAML file."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1)
    host: str | None = None
    port: str | int | None = DEFAULT_PORT
    user: str | None = None
    password: str | None = None
    key_path: str | None = None
    work_directory: str | None = None
    module_commands: str | None = None
    job_command: str | None = None
    job_script: str | None = None

    def to_profile(self) -> RemoteProfile:
        return RemoteProfile(**self.model_dump())


def parse_profiles(data: Any) -> dict[str, RemoteProfile]:
    """Build profiles from already-loaded YAML data.

    Accepts a list of entries or a mapping of title → entry (the title key
    fills in a missing ``title`` field).

    Raises:
        ConfigurationError: On schema errors or duplicate titles.
    """
    if data is None:
        return {}
    if isinstance(data, dict):
        entries = [{"title": title, **(entry or {})} for title, entry in data.items()]
    elif isinstance(data, list):
        entries = data
    else:
        raise ConfigurationError(f"profiles must be a list or mapping, got {type(data).__name__}")

    profiles: dict[str, RemoteProfile] = {}
    for entry in entries:
        try:
            profile = ProfileConfig.model_validate(entry).to_profile()
        except ValidationError as e:
            raise ConfigurationError(f"invalid profile entry: {e}") from e
        if profile.title in profiles:
            raise ConfigurationError(f"duplicate profile title: {profile.title}")
        profiles[profile.title] = profile
    return profiles


def load_profiles(path: str | Path) -> dict[str, RemoteProfile]:
    """Load profiles from a YAML file, keyed by title.

    A missing file yields no profiles.
    """
    path = Path(path).expanduser()
    if not path.exists():
        logger.debug("No profiles file at %s", path)
        return {}
    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"cannot parse {path}: {e}") from e
    return parse_profiles(data)
