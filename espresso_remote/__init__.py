"""Prepare and submit multi-stage Quantum ESPRESSO jobs to remote hosts over SSH."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("espresso-remote")
except PackageNotFoundError:
    __version__ = "0.0.0"

from espresso_remote.errors import EspressoRemoteError
from espresso_remote.pipeline import RunKind, Stage, resolve
from espresso_remote.profile import RemoteProfile, load_profiles
from espresso_remote.project import LocalProject, Project

__all__ = [
    "__version__",
    "EspressoRemoteError",
    "LocalProject",
    "Project",
    "RemoteProfile",
    "RunKind",
    "Stage",
    "load_profiles",
    "resolve",
]
