"""CLI logging configuration with file output.

Every CLI command logs to a rotating file under
``~/.local/share/espresso-remote/logs/`` and to the console through rich.
Log files are split by command *and* profile::

    <command>_<profile>.log   # e.g. submit_cluster.log
    <command>.log             # when no profile is involved

Follow a submission live with::

    tail -f ~/.local/share/espresso-remote/logs/submit_cluster.log
"""

from __future__ import annotations

import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.logging import RichHandler

# Standard log directory follows XDG convention
LOG_DIR = Path.home() / ".local" / "share" / "espresso-remote" / "logs"

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")


def get_log_dir() -> Path:
    """Return the CLI log directory, creating it if needed."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    return LOG_DIR


def get_log_file(command: str, profile: str | None = None) -> Path:
    """Return the log file path for a CLI command and profile title.

    Profile titles are free text, so characters unsafe in file names are
    replaced with ``_``.
    """
    stem = f"{command}_{_UNSAFE_NAME.sub('_', profile)}" if profile else command
    return get_log_dir() / f"{stem}.log"


def configure_cli_logging(
    command: str,
    *,
    profile: str | None = None,
    verbose: bool = False,
    console_level: int | None = None,
    file_level: int = logging.DEBUG,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 3,
) -> Path:
    """Configure logging for a CLI command.

    Sets up:
    - File handler: DEBUG-level rotating log at
      ``~/.local/share/espresso-remote/logs/<command>_<profile>.log``
    - Console handler: WARNING, or INFO when verbose

    Args:
        command: CLI command name (e.g., "stage", "submit")
        profile: Remote profile title, splits the log file per profile
        verbose: If True, set console to INFO level
        console_level: Override console level (takes precedence over verbose)
        file_level: File log level (default: DEBUG)
        max_bytes: Max size per log file before rotation
        backup_count: Number of rotated backups to keep

    Returns:
        Path to the log file
    """
    log_file = get_log_file(command, profile=profile)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    package_logger = logging.getLogger("espresso_remote")

    # Remove handlers from earlier calls to avoid duplicates
    for handler in package_logger.handlers[:]:
        if isinstance(handler, (logging.FileHandler, RichHandler)):
            package_logger.removeHandler(handler)
            handler.close()

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(file_level)
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    package_logger.addHandler(file_handler)

    if console_level is None:
        console_level = logging.INFO if verbose else logging.WARNING
    console_handler = RichHandler(show_path=False, rich_tracebacks=False)
    console_handler.setLevel(console_level)
    package_logger.addHandler(console_handler)

    # NOTSET would defer to the root logger's WARNING threshold
    lowest = min(file_level, console_level)
    if package_logger.level == logging.NOTSET or package_logger.level > lowest:
        package_logger.setLevel(lowest)

    return log_file
