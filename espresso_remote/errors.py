"""Typed errors raised while resolving pipelines and submitting jobs.

Every error carries a short ``kind`` string so that callers (the CLI, a GUI,
a batch driver) can report *why* a submission failed without parsing
messages:

- ``configuration``: the remote profile cannot be used (blank host/user,
  missing key file, invalid profile data)
- ``pipeline``: the calculation pipeline cannot be resolved
- ``io``: local input or script files could not be written
- ``transport``: SSH connect, upload or exec failed
- ``remote_exit``: the submission command exited non-zero
- ``cancelled``: the session was cancelled while waiting on the remote side
- ``session``: the session was driven out of order
"""

from __future__ import annotations


class EspressoRemoteError(Exception):
    """Base class for all espresso-remote errors."""

    kind = "error"

    def __init__(self, message: str, *, kind: str | None = None):
        if kind is not None:
            self.kind = kind
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class ConfigurationError(EspressoRemoteError):
    """Raised when a remote profile is unusable.

    Detected before any connection attempt is made.
    """

    kind = "configuration"


class PipelineError(EspressoRemoteError):
    """Raised when a pipeline cannot be resolved or is malformed."""

    kind = "pipeline"


class StagingError(EspressoRemoteError):
    """Raised when input or script files cannot be written locally."""

    kind = "io"


class TransportError(EspressoRemoteError):
    """Raised when the SSH transport fails to connect, upload or execute."""

    kind = "transport"


class RemoteExitError(EspressoRemoteError):
    """Raised when the remote submission command exits with non-zero status."""

    kind = "remote_exit"

    def __init__(self, exit_status: int, output: str = ""):
        self.exit_status = exit_status
        self.output = output
        super().__init__(f"remote command exited with status {exit_status}")


class SessionCancelled(EspressoRemoteError):
    """Raised when a session is cancelled while polling the remote command."""

    kind = "cancelled"


class SessionError(EspressoRemoteError):
    """Raised on an illegal session state transition."""

    kind = "session"
