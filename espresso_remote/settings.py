"""Settings loaded from the nearest pyproject.toml [tool.espresso-remote] section.

Configuration keys::

    [tool.espresso-remote]
    pseudo-dir = "~/espresso/pseudos"   # pseudopotential search path
    poll-interval = 0.1                  # seconds between remote output checks
    connect-timeout = 30                 # SSH connect timeout in seconds
    strict-uploads = false               # abort when any upload fails
    mpi-launcher = "mpirun"              # prefix for multi-process commands
    bin-dir = "/opt/qe/bin"              # local Quantum ESPRESSO binaries
    profiles-file = "~/.espresso-remote/profiles.yaml"

All settings support environment variable overrides (ESPRESSO_REMOTE_* prefix).
"""

import os
from functools import cache
from pathlib import Path

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore[import-not-found]

CONFIG_DIR = Path.home() / ".espresso-remote"

DEFAULT_POLL_INTERVAL = 0.1
DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_MPI_LAUNCHER = "mpirun"


@cache
def _load_pyproject_settings() -> dict:
    """Load settings from the nearest pyproject.toml [tool.espresso-remote] section.

    Walks up from the current working directory so that a calculation
    directory can carry its own configuration.

    Returns:
        Dictionary of settings, empty dict if no file or section is found.
    """
    current = Path.cwd().resolve()
    while True:
        candidate = current / "pyproject.toml"
        if candidate.is_file():
            try:
                data = tomllib.loads(candidate.read_text())
            except (OSError, tomllib.TOMLDecodeError):
                return {}
            return data.get("tool", {}).get("espresso-remote", {})
        if current == current.parent:
            return {}
        current = current.parent


def _get(key: str, env_var: str):
    """Return env override, else the pyproject value, else None."""
    if env := os.getenv(env_var):
        return env
    return _load_pyproject_settings().get(key)


def _parse_bool(value: str | bool) -> bool:
    """Parse a boolean value from string or bool."""
    if isinstance(value, bool):
        return value
    return value.lower() in ("true", "1", "yes")


def get_pseudo_dir() -> Path:
    """Get the pseudopotential directory written into every input.

    Priority: ESPRESSO_REMOTE_PSEUDO_DIR env → [pseudo-dir] → ~/.espresso-remote/pseudos.
    """
    value = _get("pseudo-dir", "ESPRESSO_REMOTE_PSEUDO_DIR")
    if value:
        return Path(value).expanduser()
    return CONFIG_DIR / "pseudos"


def get_poll_interval() -> float:
    """Seconds to sleep between checks for remote command output.

    Priority: ESPRESSO_REMOTE_POLL_INTERVAL env → [poll-interval] → 0.1.
    """
    value = _get("poll-interval", "ESPRESSO_REMOTE_POLL_INTERVAL")
    return float(value) if value is not None else DEFAULT_POLL_INTERVAL


def get_connect_timeout() -> float:
    """SSH connect timeout in seconds.

    Priority: ESPRESSO_REMOTE_CONNECT_TIMEOUT env → [connect-timeout] → 30.
    """
    value = _get("connect-timeout", "ESPRESSO_REMOTE_CONNECT_TIMEOUT")
    return float(value) if value is not None else DEFAULT_CONNECT_TIMEOUT


def get_strict_uploads() -> bool:
    """Whether a single failed upload aborts the whole submission.

    Priority: ESPRESSO_REMOTE_STRICT_UPLOADS env → [strict-uploads] → False.
    """
    value = _get("strict-uploads", "ESPRESSO_REMOTE_STRICT_UPLOADS")
    return _parse_bool(value) if value is not None else False


def get_mpi_launcher() -> str:
    """Command used to start multi-process runs (e.g. ``mpirun``, ``srun``)."""
    value = _get("mpi-launcher", "ESPRESSO_REMOTE_MPI_LAUNCHER")
    return str(value) if value else DEFAULT_MPI_LAUNCHER


def get_bin_dir() -> Path | None:
    """Directory holding local Quantum ESPRESSO executables, if configured.

    Only used for commands run on this machine; remote commands rely on the
    remote PATH (set up through the profile's module commands).
    """
    value = _get("bin-dir", "ESPRESSO_REMOTE_BIN_DIR")
    return Path(value).expanduser() if value else None


def get_profiles_file() -> Path:
    """Path of the YAML file listing remote profiles."""
    value = _get("profiles-file", "ESPRESSO_REMOTE_PROFILES_FILE")
    if value:
        return Path(value).expanduser()
    return CONFIG_DIR / "profiles.yaml"
