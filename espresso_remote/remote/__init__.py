"""
Remote submission over SSH.

- RemoteExecutionSession: stage, upload and submit one pipeline run
- Transport / Connection / FileChannel / ExecHandle: the SSH backend contract
- ParamikoTransport: default backend
"""

from espresso_remote.remote.session import (
    RemoteExecutionSession,
    SessionState,
    StagedSubmission,
    SubmissionResult,
)
from espresso_remote.remote.transport import (
    Connection,
    ExecHandle,
    FileChannel,
    ParamikoTransport,
    Transport,
)

__all__ = [
    "Connection",
    "ExecHandle",
    "FileChannel",
    "ParamikoTransport",
    "RemoteExecutionSession",
    "SessionState",
    "StagedSubmission",
    "SubmissionResult",
    "Transport",
]
