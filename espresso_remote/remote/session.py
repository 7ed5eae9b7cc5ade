"""One remote submission, from staging files to the remote exit status.

A :class:`RemoteExecutionSession` walks a fixed sequence of states::

    idle → staged → connected → uploaded → submitted → succeeded
      └──────────┴──────────┴──────────┴──────────┴──→ failed

1. **stage**: resolve the pipeline, write each kept stage's input into the
   project directory and render the job script.
2. **connect**: open an SSH connection with the profile's credentials.
3. **upload**: send the script, the inputs and the pseudopotential files
   into the profile's work directory.
4. **submit**: run the profile's job command there and wait for its exit
   status. Stage post-actions and the project status update only run after
   a zero exit status.

All transport handles are closed exactly once, whatever the outcome.

Usage::

    session = RemoteExecutionSession(project, profile, RunKind.band_structure, num_mpi=4)
    if not session.submit():
        print(session.last_error)
"""

from __future__ import annotations

import logging
import re
import shlex
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from espresso_remote.document import InputDocument
from espresso_remote.errors import (
    ConfigurationError,
    EspressoRemoteError,
    RemoteExitError,
    SessionCancelled,
    SessionError,
    StagingError,
    TransportError,
)
from espresso_remote.pipeline import (
    RunKind,
    Stage,
    prepare_input,
    resolve,
    update_project_status,
)
from espresso_remote.profile import RemoteProfile
from espresso_remote.project import Project
from espresso_remote.remote.transport import (
    Connection,
    ExecHandle,
    FileChannel,
    ParamikoTransport,
    Transport,
)
from espresso_remote.settings import (
    get_connect_timeout,
    get_poll_interval,
    get_pseudo_dir,
    get_strict_uploads,
)

logger = logging.getLogger(__name__)

SCRIPT_EXTENSIONS = (
    ("#!/bin/sh", ".sh"),
    ("#!/bin/bash", ".bash"),
    ("#!/bin/csh", ".csh"),
    ("#!/bin/tcsh", ".tcsh"),
    ("#!/bin/zsh", ".zsh"),
)
DEFAULT_SCRIPT_EXTENSION = ".sh"

_LINE_BREAKS = re.compile(r"[\r\n]+")


class SessionState(str, Enum):
    idle = "idle"
    staged = "staged"
    connected = "connected"
    uploaded = "uploaded"
    submitted = "submitted"
    succeeded = "succeeded"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.succeeded, SessionState.failed)


_NEXT_STATE = {
    SessionState.idle: SessionState.staged,
    SessionState.staged: SessionState.connected,
    SessionState.connected: SessionState.uploaded,
    SessionState.uploaded: SessionState.submitted,
    SessionState.submitted: SessionState.succeeded,
}


@dataclass
class StagedSubmission:
    """Files written locally for one submission."""

    stages: list[Stage]
    commands: list[str]
    input_files: list[Path]
    resource_files: list[Path]
    script_file: Path
    script_text: str


@dataclass
class SubmissionResult:
    """Outcome of a successful submission."""

    script_file: Path
    uploaded: list[str] = field(default_factory=list)
    exit_status: int = 0
    output: str = ""
    error_output: str = ""


def script_extension(script_text: str) -> str:
    """File extension matching the script's shebang line."""
    for shebang, ext in SCRIPT_EXTENSIONS:
        if script_text.startswith(shebang):
            return ext
    return DEFAULT_SCRIPT_EXTENSION


def normalize_line_endings(text: str) -> str:
    """Collapse every run of CR/LF characters into one ``\\n``."""
    return _LINE_BREAKS.sub("\n", text)


def remote_command(job_command: str, work_directory: str | None) -> str:
    """Prefix a job command with ``cd`` into the work directory, if any."""
    directory = (work_directory or "").strip()
    if not directory:
        return job_command
    return f"cd {shlex.quote(directory)} && {job_command}"


def _pseudo_dir(document: InputDocument) -> Path:
    control = document.namelist("CONTROL")
    value = control.get_string("pseudo_dir") if control is not None else None
    return Path(value).expanduser() if value else get_pseudo_dir()


class RemoteExecutionSession:
    """Drives one submission of a project's pipeline to a remote host.

    Args:
        project: Project whose inputs are staged and whose status is
            updated after success.
        profile: Remote host and templates.
        run_kind: Calculation to run.
        num_mpi: MPI processes per program run.
        num_omp: OpenMP threads per process.
        transport: SSH backend; defaults to :class:`ParamikoTransport`.
        cancel_event: Setting it stops the wait for the remote command.
        poll_interval: Seconds between output checks; defaults to settings.
        connect_timeout: SSH connect timeout; defaults to settings.
        strict_uploads: Abort on the first failed upload instead of skipping
            the file; defaults to settings.
    """

    def __init__(
        self,
        project: Project,
        profile: RemoteProfile,
        run_kind: RunKind | str,
        *,
        num_mpi: int = 1,
        num_omp: int = 1,
        transport: Transport | None = None,
        cancel_event: threading.Event | None = None,
        poll_interval: float | None = None,
        connect_timeout: float | None = None,
        strict_uploads: bool | None = None,
    ):
        self.project = project
        self.profile = profile
        self.run_kind = run_kind if isinstance(run_kind, RunKind) else RunKind.parse(str(run_kind))
        self.num_mpi = max(1, num_mpi)
        self.num_omp = max(1, num_omp)
        self.transport: Transport = transport if transport is not None else ParamikoTransport()
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self.poll_interval = poll_interval if poll_interval is not None else get_poll_interval()
        self.connect_timeout = connect_timeout if connect_timeout is not None else get_connect_timeout()
        self.strict_uploads = strict_uploads if strict_uploads is not None else get_strict_uploads()

        self._state = SessionState.idle
        self.staged: StagedSubmission | None = None
        self.last_error: EspressoRemoteError | None = None
        self._connection: Connection | None = None
        self._file_channel: FileChannel | None = None
        self._exec_handle: ExecHandle | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    def _advance(self, target: SessionState) -> None:
        if _NEXT_STATE.get(self._state) is not target:
            raise SessionError(f"cannot move from {self._state.value} to {target.value}")
        logger.debug("Session %s → %s", self._state.value, target.value)
        self._state = target

    def _fail(self, error: EspressoRemoteError) -> None:
        self.last_error = error
        if not self._state.is_terminal:
            self._state = SessionState.failed

    def cancel(self) -> None:
        """Request cancellation; a running wait on the remote command stops."""
        self.cancel_event.set()

    # ─── Staging ────────────────────────────────────────────────────────────

    def stage(self) -> StagedSubmission:
        """Write stage inputs and the job script into the project directory.

        Can be called on its own as a dry run.

        Raises:
            PipelineError: If the pipeline cannot be resolved.
            StagingError: If the directory is unusable or nothing was written.
        """
        if self._state is not SessionState.idle:
            raise SessionError(f"cannot stage a session in state {self._state.value}")
        try:
            self.staged = self._stage()
        except EspressoRemoteError as e:
            self._fail(e)
            raise
        except Exception as e:
            error = StagingError(f"staging {self.run_kind.label} failed: {e}")
            self._fail(error)
            raise error from e
        self._advance(SessionState.staged)
        return self.staged

    def _stage(self) -> StagedSubmission:
        directory = Path(self.project.directory)
        if not directory.is_dir():
            raise StagingError(f"project directory {directory} does not exist")

        stages = resolve(self.run_kind, self.project)
        base = prepare_input(self.run_kind, self.project)

        exit_file = directory / self.project.exit_file_name
        try:
            exit_file.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Cannot delete %s: %s", exit_file, e)

        kept: list[Stage] = []
        commands: list[str] = []
        input_files: list[Path] = []
        resources: dict[Path, None] = {}

        for stage in stages:
            edited = stage.editor(self.project, base)
            if edited is None:
                logger.debug("Stage %s dropped by its editor", stage.tag)
                continue
            if not stage.condition(self.project, edited):
                logger.debug("Stage %s skipped by its condition", stage.tag)
                continue

            command = stage.command_line(self.num_mpi)
            input_file = directory / stage.input_name
            try:
                input_file.write_text(edited.to_text())
            except OSError as e:
                logger.warning("Cannot write %s, dropping stage %s: %s", input_file, stage.tag, e)
                continue

            for name in (stage.log_name, stage.err_name):
                try:
                    (directory / name).unlink(missing_ok=True)
                except OSError as e:
                    logger.warning("Cannot delete stale %s: %s", name, e)

            kept.append(stage)
            commands.append(command)
            input_files.append(input_file)
            self._collect_pseudos(edited, resources)
            logger.debug("Staged %s: %s", stage.tag, command)

        if not commands:
            raise StagingError(f"no {self.run_kind.label} stage could be staged")

        script_text = normalize_line_endings(
            self.profile.render_job_script(commands, self.num_mpi, self.num_omp)
        )
        script_file = directory / f"{self.project.prefix_name.strip()}{script_extension(script_text)}"
        try:
            script_file.write_text(script_text)
        except OSError as e:
            raise StagingError(f"cannot write job script {script_file}: {e}") from e

        logger.info("Staged %d of %d stages, script %s", len(kept), len(stages), script_file.name)
        return StagedSubmission(
            stages=kept,
            commands=commands,
            input_files=input_files,
            resource_files=list(resources),
            script_file=script_file,
            script_text=script_text,
        )

    def _collect_pseudos(self, document: InputDocument, resources: dict[Path, None]) -> None:
        pseudo_dir = _pseudo_dir(document)
        for species in document.species():
            path = (pseudo_dir / species.pseudo_file).expanduser().resolve()
            if path in resources:
                continue
            if not path.is_file():
                logger.warning("Pseudopotential %s for %s not found, not uploading", path, species.name)
                continue
            resources[path] = None

    # ─── Remote steps ───────────────────────────────────────────────────────

    def _connect(self) -> None:
        profile = self.profile
        host = (profile.host or "").strip()
        user = (profile.user or "").strip()
        if not host:
            raise ConfigurationError(f"profile {profile.title} has no host")
        if not user:
            raise ConfigurationError(f"profile {profile.title} has no user")

        key_path = (profile.key_path or "").strip() or None
        if key_path is not None and not Path(key_path).expanduser().is_file():
            raise ConfigurationError(f"private key {key_path} is not a file")

        port = profile.int_port()
        logger.info("Connecting to %s@%s:%d", user, host, port)
        self._connection = self.transport.connect(
            host,
            port,
            user,
            password=profile.password or None,
            key_path=key_path,
            timeout=self.connect_timeout,
        )
        self._advance(SessionState.connected)

    def _upload(self) -> list[str]:
        assert self._connection is not None and self.staged is not None
        self._file_channel = self._connection.open_file_channel(self.profile.work_directory)

        files = [self.staged.script_file, *self.staged.input_files, *self.staged.resource_files]
        uploaded: list[str] = []
        for path in files:
            try:
                self._file_channel.send(path, path.name)
            except Exception as e:
                if self.strict_uploads:
                    if isinstance(e, TransportError):
                        raise
                    raise TransportError(f"failed to upload {path.name}: {e}") from e
                logger.warning("Skipping %s: %s", path.name, e)
                continue
            logger.info("Uploaded %s", path.name)
            uploaded.append(path.name)
        self._advance(SessionState.uploaded)
        return uploaded

    def _execute(self) -> tuple[int, str, str]:
        assert self._connection is not None and self.staged is not None
        job_command = self.profile.render_job_command(self.staged.script_file.name)
        command = remote_command(job_command, self.profile.work_directory)
        logger.info("Executing: %s", command)

        self._exec_handle = self._connection.open_exec_channel(command)
        self._advance(SessionState.submitted)

        stdout: list[str] = []
        stderr: list[str] = []
        while True:
            stdout.append(self._exec_handle.read_stdout())
            stderr.append(self._exec_handle.read_stderr())
            if self._exec_handle.is_closed():
                break
            if self.cancel_event.wait(self.poll_interval):
                raise SessionCancelled("cancelled while waiting for the remote command")

        stdout.append(self._exec_handle.read_stdout())
        stderr.append(self._exec_handle.read_stderr())
        output, error_output = "".join(stdout), "".join(stderr)
        exit_status = self._exec_handle.exit_status()

        if output:
            logger.info("Command output: %s", output.strip())
        if error_output:
            logger.warning("Command error output: %s", error_output.strip())
        logger.info("Command exited with status %d", exit_status)
        return exit_status, output, error_output

    def _disconnect(self) -> None:
        handles = (self._exec_handle, self._file_channel, self._connection)
        self._exec_handle = self._file_channel = self._connection = None
        for handle in handles:
            if handle is None:
                continue
            try:
                handle.close()
            except Exception as e:
                logger.warning("Error while closing %r: %s", handle, e)

    def _apply_post_actions(self) -> None:
        assert self.staged is not None
        # The job is already queued remotely; a failed local save only loses status.
        for stage in self.staged.stages:
            try:
                stage.post_action(self.project)
            except Exception as e:
                logger.error("Post-action of stage %s failed: %s", stage.tag, e)
        try:
            update_project_status(self.project, self.run_kind)
        except Exception as e:
            logger.error("Cannot save project status: %s", e)

    # ─── Entry points ───────────────────────────────────────────────────────

    def run(self) -> SubmissionResult:
        """Stage (unless already staged), upload and submit.

        Returns:
            Result with the remote exit status and output.

        Raises:
            EspressoRemoteError: A typed error naming the failing step.
        """
        if self._state is SessionState.idle:
            self.stage()
        if self._state is not SessionState.staged:
            raise SessionError(f"cannot run a session in state {self._state.value}")
        assert self.staged is not None

        try:
            self._connect()
            uploaded = self._upload()
            exit_status, output, error_output = self._execute()
            if exit_status != 0:
                raise RemoteExitError(exit_status, error_output or output)
        except EspressoRemoteError as e:
            self._fail(e)
            raise
        except Exception as e:
            error = TransportError(f"unexpected error after state {self._state.value}: {e}")
            self._fail(error)
            raise error from e
        finally:
            self._disconnect()

        self._apply_post_actions()
        self._advance(SessionState.succeeded)
        return SubmissionResult(
            script_file=self.staged.script_file,
            uploaded=uploaded,
            exit_status=exit_status,
            output=output,
            error_output=error_output,
        )

    def submit(self) -> bool:
        """Run the session and report success as a boolean.

        The error of a failed run is logged and kept on :attr:`last_error`.
        """
        try:
            self.run()
        except EspressoRemoteError as e:
            logger.error("Submission of %s to %s failed: %s", self.run_kind.label, self.profile.title, e)
            self.last_error = e
            return False
        return True
