"""Calculation project contract and a filesystem-backed implementation.

Pipelines and sessions only see a project through the :class:`Project`
protocol: where its files live, how they are named, its base inputs per
calculation kind, and the status and band-path records they update after a
successful submission.

:class:`LocalProject` keeps everything in one directory::

    <directory>/
    ├── .project/
    │   ├── scf.in          # base input per run kind (value of RunKind)
    │   ├── dos.in
    │   ├── status.json
    │   └── bandpaths.json
    ├── espresso.scf.in     # staged inputs, logs and error files
    ├── espresso.scf.log
    └── espresso.exit
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from espresso_remote.document import InputDocument, parse_input

logger = logging.getLogger(__name__)

PROJECT_DATA_DIR = ".project"
DEFAULT_PREFIX = "espresso"


@dataclass
class ProjectStatus:
    """How far each kind of calculation has progressed in a project."""

    scf_count: int = 0
    opt_done: bool = False
    md_count: int = 0
    dos_count: int = 0
    band_done: bool = False

    @property
    def is_scf_done(self) -> bool:
        return self.scf_count > 0

    def update_scf_count(self) -> None:
        self.scf_count += 1

    def update_opt_done(self) -> None:
        self.opt_done = True

    def update_md_count(self) -> None:
        self.md_count += 1

    def update_dos_count(self) -> None:
        self.dos_count += 1

    def update_band_done(self) -> None:
        self.band_done = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectStatus:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class BandPaths:
    """Labels of the high-symmetry points along a band path.

    A point without a label holds None.
    """

    labels: list[str | None] = field(default_factory=list)

    @property
    def num_points(self) -> int:
        return len(self.labels)

    def label(self, index: int) -> str | None:
        return self.labels[index]

    def set_label(self, index: int, label: str | None) -> None:
        self.labels[index] = label

    def to_dict(self) -> dict[str, Any]:
        return {"labels": list(self.labels)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BandPaths:
        return cls(labels=list(data.get("labels", [])))


@runtime_checkable
class Project(Protocol):
    """What a pipeline needs from a calculation project."""

    @property
    def directory(self) -> Path: ...

    @property
    def prefix_name(self) -> str: ...

    @property
    def related_file_name(self) -> str | None: ...

    @property
    def exit_file_name(self) -> str: ...

    @property
    def status(self) -> ProjectStatus: ...

    @property
    def band_paths(self) -> BandPaths: ...

    @property
    def lock(self) -> threading.RLock: ...

    def base_input(self, run_kind: Any) -> InputDocument | None: ...

    def input_file_name(self, tag: str) -> str: ...

    def log_file_name(self, tag: str) -> str: ...

    def err_file_name(self, tag: str) -> str: ...

    def save_status(self) -> None: ...

    def save_band_paths(self) -> None: ...


class LocalProject:
    """A project stored in a local directory.

    Args:
        directory: Project directory; inputs, logs and the job script are
            written here.
        prefix: Calculation prefix, used for ``prefix`` in every input and
            as the stem of staged file names.
        related_file_name: Name of the structure file the project was
            created from, used in input titles.
    """

    def __init__(
        self,
        directory: str | Path,
        prefix: str = DEFAULT_PREFIX,
        related_file_name: str | None = None,
    ):
        self._directory = Path(directory)
        self._prefix = prefix
        self._related_file_name = related_file_name
        self._lock = threading.RLock()
        self._status: ProjectStatus | None = None
        self._band_paths: BandPaths | None = None

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def data_directory(self) -> Path:
        return self._directory / PROJECT_DATA_DIR

    @property
    def prefix_name(self) -> str:
        return self._prefix

    @property
    def related_file_name(self) -> str | None:
        return self._related_file_name

    @property
    def exit_file_name(self) -> str:
        return f"{self._prefix}.exit"

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def input_file_name(self, tag: str) -> str:
        return f"{self._prefix}.{tag}.in"

    def log_file_name(self, tag: str) -> str:
        return f"{self._prefix}.{tag}.log"

    def err_file_name(self, tag: str) -> str:
        return f"{self._prefix}.{tag}.err"

    # ─── Base inputs ────────────────────────────────────────────────────────

    def _base_input_path(self, run_kind: Any) -> Path:
        key = getattr(run_kind, "value", run_kind)
        return self.data_directory / f"{key}.in"

    def base_input(self, run_kind: Any) -> InputDocument | None:
        """Parse the stored base input for a run kind, or None if absent."""
        path = self._base_input_path(run_kind)
        if not path.is_file():
            logger.debug("No base input at %s", path)
            return None
        return parse_input(path.read_text())

    def set_base_input(self, run_kind: Any, document: InputDocument) -> Path:
        """Store the base input for a run kind."""
        path = self._base_input_path(run_kind)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(document.to_text())
        return path

    # ─── Status and band paths ──────────────────────────────────────────────

    def _read_json(self, name: str) -> dict[str, Any]:
        path = self.data_directory / name
        if not path.is_file():
            return {}
        try:
            return json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable %s: %s", path, e)
            return {}

    def _write_json(self, name: str, data: dict[str, Any]) -> None:
        self.data_directory.mkdir(parents=True, exist_ok=True)
        (self.data_directory / name).write_text(json.dumps(data, indent=2))

    @property
    def status(self) -> ProjectStatus:
        with self._lock:
            if self._status is None:
                self._status = ProjectStatus.from_dict(self._read_json("status.json"))
            return self._status

    def save_status(self) -> None:
        with self._lock:
            self._write_json("status.json", self.status.to_dict())

    @property
    def band_paths(self) -> BandPaths:
        with self._lock:
            if self._band_paths is None:
                self._band_paths = BandPaths.from_dict(self._read_json("bandpaths.json"))
            return self._band_paths

    def save_band_paths(self) -> None:
        with self._lock:
            self._write_json("bandpaths.json", self.band_paths.to_dict())

    def __repr__(self) -> str:
        return f"LocalProject({str(self._directory)!r}, prefix={self._prefix!r})"
