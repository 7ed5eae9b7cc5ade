"""Shared test fixtures.

Everything runs offline: projects live in ``tmp_path`` and the SSH backend
is replaced by :class:`FakeTransport`, which records what a session sends.

Fixtures:
- Sample pw.x / dos.x / bands.x inputs
- InMemoryProject implementing the Project protocol
- FakeTransport with configurable failures and exit status
- Settings isolated from any pyproject.toml and ESPRESSO_REMOTE_* variables
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from espresso_remote import settings
from espresso_remote.document import InputDocument, parse_input
from espresso_remote.errors import TransportError
from espresso_remote.pipeline import RunKind
from espresso_remote.profile import RemoteProfile
from espresso_remote.project import BandPaths, ProjectStatus

# =============================================================================
# Sample inputs
# =============================================================================

SCF_INPUT = """\
&CONTROL
  calculation = 'scf'
  prefix = 'old'
  verbosity = 'high'
  outdir = '/tmp/old'
/
&SYSTEM
  ibrav = 0
  celldm(1) = 10.2
  celldm(3) = 1.5
  cosab = 0.5
  nat = 2
  ntyp = 1
  ecutwfc = 30.0
/
&ELECTRONS
  conv_thr = 1.0d-8
/
ATOMIC_SPECIES
  Si 28.086 Si.pbe.UPF
ATOMIC_POSITIONS {crystal}
  Si 0.00 0.00 0.00
  Si 0.25 0.25 0.25
K_POINTS {automatic}
  4 4 4 0 0 0
CELL_PARAMETERS {bohr}
  -5.1 0.0 5.1
  0.0 5.1 5.1
  -5.1 5.1 0.0
"""

DOS_INPUT = """\
&CONTROL
  calculation = 'nscf'
/
&SYSTEM
  ibrav = 2
  celldm(1) = 10.2
  nat = 2
  ntyp = 1
  ecutwfc = 30.0
  occupations = 'smearing'
/
&ELECTRONS
/
&DOS
  degauss = 0.01
/
&PROJWFC
  degauss = 0.01
/
ATOMIC_SPECIES
  Si 28.086 Si.pbe.UPF
ATOMIC_POSITIONS {crystal}
  Si 0.00 0.00 0.00
  Si 0.25 0.25 0.25
K_POINTS {automatic}
  8 8 8 0 0 0
"""

BAND_INPUT = """\
&CONTROL
  calculation = 'bands'
/
&SYSTEM
  ibrav = 2
  celldm(1) = 10.2
  nat = 2
  ntyp = 1
  ecutwfc = 30.0
  nspin = 2
/
&ELECTRONS
/
&BANDS
  lsym = .FALSE.
/
ATOMIC_SPECIES
  Si 28.086 Si.pbe.UPF
ATOMIC_POSITIONS {crystal}
  Si 0.00 0.00 0.00
  Si 0.25 0.25 0.25
K_POINTS {crystal_b}
3
  0.0 0.0 0.0 20 !gG
  0.5 0.0 0.5 20 !X
  0.5 0.5 0.5 1 !L
"""


# =============================================================================
# In-memory project
# =============================================================================


class InMemoryProject:
    """Project whose base inputs and records live in memory.

    Only staged files are written, into ``directory``.
    """

    def __init__(
        self,
        directory: Path,
        inputs: dict[RunKind, str] | None = None,
        prefix: str = "si",
        related_file_name: str | None = "si.cif",
    ):
        self._directory = directory
        self._inputs = {kind: parse_input(text) for kind, text in (inputs or {}).items()}
        self._prefix = prefix
        self._related = related_file_name
        self._lock = threading.RLock()
        self.status = ProjectStatus()
        self.band_paths = BandPaths()
        self.status_saves = 0
        self.band_path_saves = 0

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def prefix_name(self) -> str:
        return self._prefix

    @property
    def related_file_name(self) -> str | None:
        return self._related

    @property
    def exit_file_name(self) -> str:
        return f"{self._prefix}.exit"

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def base_input(self, run_kind) -> InputDocument | None:
        return self._inputs.get(run_kind)

    def input_file_name(self, tag: str) -> str:
        return f"{self._prefix}.{tag}.in"

    def log_file_name(self, tag: str) -> str:
        return f"{self._prefix}.{tag}.log"

    def err_file_name(self, tag: str) -> str:
        return f"{self._prefix}.{tag}.err"

    def save_status(self) -> None:
        self.status_saves += 1

    def save_band_paths(self) -> None:
        self.band_path_saves += 1


# =============================================================================
# Fake transport
# =============================================================================


@dataclass
class FakeTransport:
    """Records every transport call a session makes.

    Attributes:
        exit_status: Exit status reported by the exec channel.
        stdout: Output the remote command produces.
        fail_uploads: Remote file names whose upload raises ``upload_error``.
        upload_error: Exception type raised for a failed upload.
        connect_error: Raised from ``connect`` when set.
        polls_before_close: ``is_closed`` calls answering False first;
            None keeps the channel open forever.
    """

    exit_status: int = 0
    stdout: str = "1234.pbs\n"
    stderr: str = ""
    fail_uploads: set[str] = field(default_factory=set)
    upload_error: type[Exception] = TransportError
    connect_error: Exception | None = None
    polls_before_close: int | None = 0

    connects: list[dict] = field(default_factory=list)
    work_directories: list[str | None] = field(default_factory=list)
    uploads: list[tuple[Path, str]] = field(default_factory=list)
    commands: list[str] = field(default_factory=list)
    closed: list[str] = field(default_factory=list)

    def connect(self, host, port, user, *, password=None, key_path=None, timeout=30.0):
        self.connects.append(
            {
                "host": host,
                "port": port,
                "user": user,
                "password": password,
                "key_path": key_path,
                "timeout": timeout,
            }
        )
        if self.connect_error is not None:
            raise self.connect_error
        return _FakeConnection(self)


class _FakeConnection:
    def __init__(self, transport: FakeTransport):
        self.transport = transport

    def open_file_channel(self, work_directory):
        self.transport.work_directories.append(work_directory)
        return _FakeFileChannel(self.transport)

    def open_exec_channel(self, command):
        self.transport.commands.append(command)
        return _FakeExecHandle(self.transport)

    def close(self):
        self.transport.closed.append("connection")


class _FakeFileChannel:
    def __init__(self, transport: FakeTransport):
        self.transport = transport

    def send(self, local_path, remote_name):
        if remote_name in self.transport.fail_uploads:
            raise self.transport.upload_error(f"failed to upload {remote_name}")
        self.transport.uploads.append((Path(local_path), remote_name))

    def close(self):
        self.transport.closed.append("file")


class _FakeExecHandle:
    def __init__(self, transport: FakeTransport):
        self.transport = transport
        self._stdout = transport.stdout
        self._stderr = transport.stderr
        self._polls = 0

    def read_stdout(self):
        out, self._stdout = self._stdout, ""
        return out

    def read_stderr(self):
        err, self._stderr = self._stderr, ""
        return err

    def is_closed(self):
        limit = self.transport.polls_before_close
        if limit is None:
            return False
        self._polls += 1
        return self._polls > limit

    def exit_status(self):
        return self.transport.exit_status

    def close(self):
        self.transport.closed.append("exec")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path_factory, monkeypatch):
    """Keep settings independent of the developer's environment."""
    for name in (
        "ESPRESSO_REMOTE_PSEUDO_DIR",
        "ESPRESSO_REMOTE_POLL_INTERVAL",
        "ESPRESSO_REMOTE_CONNECT_TIMEOUT",
        "ESPRESSO_REMOTE_STRICT_UPLOADS",
        "ESPRESSO_REMOTE_MPI_LAUNCHER",
        "ESPRESSO_REMOTE_BIN_DIR",
        "ESPRESSO_REMOTE_PROFILES_FILE",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path_factory.mktemp("cwd"))
    settings._load_pyproject_settings.cache_clear()
    yield
    settings._load_pyproject_settings.cache_clear()


@pytest.fixture
def pseudo_dir(tmp_path, monkeypatch) -> Path:
    """Pseudopotential directory holding Si.pbe.UPF."""
    directory = tmp_path / "pseudos"
    directory.mkdir()
    (directory / "Si.pbe.UPF").write_text("<UPF version='2.0.1'>\n")
    monkeypatch.setenv("ESPRESSO_REMOTE_PSEUDO_DIR", str(directory))
    return directory


@pytest.fixture
def project_dir(tmp_path) -> Path:
    directory = tmp_path / "project"
    directory.mkdir()
    return directory


@pytest.fixture
def project(project_dir, pseudo_dir) -> InMemoryProject:
    return InMemoryProject(
        project_dir,
        {
            RunKind.single_energy: SCF_INPUT,
            RunKind.relax: SCF_INPUT.replace("'scf'", "'relax'"),
            RunKind.molecular_dynamics: SCF_INPUT.replace("'scf'", "'md'"),
            RunKind.density_of_states: DOS_INPUT,
            RunKind.band_structure: BAND_INPUT,
        },
    )


@pytest.fixture
def profile(tmp_path) -> RemoteProfile:
    return RemoteProfile(
        "cluster",
        host="login.example.org",
        user="alice",
        password="secret",
        work_directory="/scratch/alice/qe",
        module_commands="module load qe/7.2\n",
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
