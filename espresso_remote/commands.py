"""Argument vectors for the Quantum ESPRESSO executables."""

from __future__ import annotations

from enum import Enum

from espresso_remote.settings import get_bin_dir, get_mpi_launcher

# Stands in for the input file name until a stage knows its own file name.
INPUT_PLACEHOLDER = "__INP_NAME__"


class CommandKind(str, Enum):
    """External program run by a pipeline stage."""

    pwscf = "pwscf"
    dos = "dos"
    projwfc = "projwfc"
    bands = "bands"

    @property
    def executable(self) -> str:
        return _EXECUTABLES[self]


_EXECUTABLES = {
    CommandKind.pwscf: "pw.x",
    CommandKind.dos: "dos.x",
    CommandKind.projwfc: "projwfc.x",
    CommandKind.bands: "bands.x",
}


def build_command(
    kind: CommandKind,
    input_name: str,
    num_processes: int = 1,
    *,
    unix: bool = True,
) -> list[str]:
    """Build the argument vector for one program run.

    Args:
        kind: Program to run.
        input_name: Input file name passed with ``-input``.
        num_processes: MPI process count. Values below 1 are treated as 1;
            the MPI launcher is only prepended for more than one process.
        unix: True for commands run on a remote Unix host, where the
            executable is looked up on the remote PATH. False for local
            commands, which use the configured binary directory when set.

    Returns:
        The argument vector, e.g. ``["mpirun", "-np", "4", "pw.x", "-input", "scf.in"]``.
    """
    name = input_name.strip() if input_name else ""
    if not name:
        raise ValueError("input file name is empty")

    executable = kind.executable
    if not unix and (bin_dir := get_bin_dir()) is not None:
        executable = str(bin_dir / executable)

    num_processes = max(1, num_processes)
    argv: list[str] = []
    if num_processes > 1:
        argv.extend([get_mpi_launcher(), "-np", str(num_processes)])
    argv.extend([executable, "-input", name])
    return argv
