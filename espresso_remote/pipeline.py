"""Calculation pipelines: the ordered stages run for each kind of calculation.

Each :class:`RunKind` maps to one :class:`PipelineShape`, a table of parallel
per-stage columns (program, tag, condition, editor, parser, post-action).
:func:`resolve` turns a shape into concrete :class:`Stage` records for one
project, with file names filled in from the project's naming scheme.

=====================  ==========================================================
Run kind               Stages (program tag)
=====================  ==========================================================
single_energy          pw.x scf
relax                  pw.x opt
molecular_dynamics     pw.x md
density_of_states      pw.x scf, pw.x nscf, dos.x dos, projwfc.x pdos
band_structure         pw.x scf, pw.x bands, bands.x band.up, bands.x band.down
=====================  ==========================================================

Every stage editor receives the run kind's normalized base input (see
:func:`prepare_input`) and returns the document that stage writes, or None
to drop the stage.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from functools import partial

from espresso_remote.commands import INPUT_PLACEHOLDER, CommandKind, build_command
from espresso_remote.document import InputDocument
from espresso_remote.errors import PipelineError
from espresso_remote.project import Project
from espresso_remote.settings import get_pseudo_dir

logger = logging.getLogger(__name__)


class RunKind(str, Enum):
    """Kind of calculation requested for a project."""

    single_energy = "scf"
    relax = "opt"
    molecular_dynamics = "md"
    density_of_states = "dos"
    band_structure = "band"

    @property
    def label(self) -> str:
        return _LABELS[self]

    @classmethod
    def parse(cls, text: str) -> RunKind:
        """Look up a run kind by value, name or label, ignoring case."""
        key = text.strip().lower()
        for kind in cls:
            if key in (kind.value, kind.name, kind.label.lower()):
                return kind
        raise PipelineError(f"unknown run kind: {text!r}")

    def __str__(self) -> str:
        return self.label


_LABELS = {
    RunKind.single_energy: "SCF",
    RunKind.relax: "Optimize",
    RunKind.molecular_dynamics: "MD",
    RunKind.density_of_states: "DOS",
    RunKind.band_structure: "Band",
}


class ParserKind(str, Enum):
    """Result parser that consumes a stage's log file."""

    scf = "scf"
    geometry = "geometry"
    md_geometry = "md_geometry"
    fermi = "fermi"
    band_path = "band_path"
    void = "void"


Condition = Callable[[Project, InputDocument], bool]
Editor = Callable[[Project, InputDocument], "InputDocument | None"]
PostAction = Callable[[Project], None]


@dataclass(frozen=True)
class Stage:
    """One program run inside a pipeline."""

    index: int
    tag: str
    command_kind: CommandKind
    condition: Condition
    editor: Editor
    input_name: str
    log_name: str
    err_name: str
    parser: ParserKind
    post_action: PostAction

    def command_line(self, num_processes: int = 1) -> str:
        """Shell command line for this stage with redirected streams.

        Returns:
            e.g. ``pw.x -input espresso.scf.in </dev/null 1>espresso.scf.log 2>espresso.scf.err``
        """
        argv = build_command(self.command_kind, INPUT_PLACEHOLDER, num_processes)
        tokens = [self.input_name if token == INPUT_PLACEHOLDER else token for token in argv]
        return " ".join(tokens) + f" </dev/null 1>{self.log_name} 2>{self.err_name}"


# ─── Input normalization ────────────────────────────────────────────────────

_DERIVED_LATTICE_KEYS = (
    "b",
    "c",
    "cosab",
    "cosac",
    "cosbc",
    "celldm(2)",
    "celldm(3)",
    "celldm(4)",
    "celldm(5)",
    "celldm(6)",
)


def normalize_input(document: InputDocument, project: Project, run_kind: RunKind) -> InputDocument:
    """Adjust an input in place for running in the project directory.

    Args:
        document: Input to modify.
        project: Supplies the title, prefix and related file name.
        run_kind: Its label goes into the title.

    Returns:
        The same document, for chaining.
    """
    file_name = (project.related_file_name or "").strip()
    prefix = (project.prefix_name or "").strip()

    control = document.namelist("CONTROL")
    if control is not None:
        if file_name:
            control.set_string("title", f"{file_name}({run_kind.label})")
        if prefix:
            control.set_string("prefix", prefix)
        if "wf_collect" not in control:
            control.set_bool("wf_collect", True)
        control.remove("verbosity")
        control.set_string("outdir", "./")
        control.set_string("wfcdir", "./")
        control.set_string("pseudo_dir", str(get_pseudo_dir()))

    system = document.namelist("SYSTEM")
    if system is not None and system.get_int("ibrav") == 0:
        if document.cell_units() in ("bohr", "angstrom"):
            system.remove("a")
            system.remove("celldm(1)")
        for key in _DERIVED_LATTICE_KEYS:
            system.remove(key)

    dos = document.namelist("DOS")
    if dos is not None:
        if prefix:
            dos.set_string("prefix", prefix)
            dos.set_string("fildos", f"{prefix}.dos")
        dos.set_string("outdir", "./")

    projwfc = document.namelist("PROJWFC")
    if projwfc is not None:
        if prefix:
            projwfc.set_string("prefix", prefix)
            projwfc.set_string("filpdos", prefix)
        projwfc.set_string("outdir", "./")

    bands = document.namelist("BANDS")
    if bands is not None:
        if prefix:
            bands.set_string("prefix", prefix)
            bands.set_string("filband", f"{prefix}.band1")
            bands.set_int("spin_component", 1)
        bands.set_string("outdir", "./")

    return document


def prepare_input(run_kind: RunKind, project: Project) -> InputDocument:
    """Normalized copy of the project's base input for a run kind.

    Raises:
        PipelineError: If the project has no base input for the run kind.
    """
    base = project.base_input(run_kind)
    if base is None:
        raise PipelineError(f"project has no {run_kind.label} input")
    return normalize_input(base.copy(), project, run_kind)


# ─── Conditions ─────────────────────────────────────────────────────────────


def _always(project: Project, document: InputDocument) -> bool:
    return True


def _unless_scf_done(project: Project, document: InputDocument) -> bool:
    """Skip the ground-state run when an scf or relax result already exists."""
    status = getattr(project, "status", None)
    if status is None:
        return True
    return not (status.is_scf_done or status.opt_done)


def _unless_tetrahedra(project: Project, document: InputDocument) -> bool:
    """projwfc.x only runs for non-tetrahedron occupations."""
    system = document.namelist("SYSTEM")
    if system is None:
        return False
    occupations = system.get_string("occupations") or ""
    return not occupations.startswith("tetrahedra")


def _if_spin_polarized(project: Project, document: InputDocument) -> bool:
    system = document.namelist("SYSTEM")
    if system is None:
        return False
    return system.get_int("nspin", 1) == 2


# ─── Editors ────────────────────────────────────────────────────────────────


def _identity(project: Project, document: InputDocument) -> InputDocument:
    return document


def _scf_input(project: Project, document: InputDocument, *, run_kind: RunKind) -> InputDocument | None:
    """Replace the input with the project's normalized scf input."""
    base = project.base_input(RunKind.single_energy)
    if base is None:
        logger.warning("Project has no SCF input, dropping %s scf stage", run_kind.label)
        return None
    return normalize_input(base.copy(), project, run_kind)


def _spin_down_bands(project: Project, document: InputDocument) -> InputDocument:
    """Copy of a bands.x input switched to the second spin component."""
    edited = document.copy()
    bands = edited.namelist("BANDS")
    if bands is not None:
        filband = bands.get_string("filband")
        if filband:
            bands.set_string("filband", filband[:-1] + "2")
        bands.set_int("spin_component", 2)
    return edited


# ─── Post-actions ───────────────────────────────────────────────────────────

_KPOINT_LABELS = {"gg": "Γ", "gs": "Σ", "gs1": "Σ1"}


def _nothing(project: Project) -> None:
    return None


def update_project_status(project: Project, run_kind: RunKind) -> None:
    """Record a completed run of ``run_kind`` and save the status."""
    with project.lock:
        status = project.status
        if run_kind is RunKind.single_energy:
            status.update_scf_count()
        elif run_kind is RunKind.relax:
            status.update_opt_done()
        elif run_kind is RunKind.molecular_dynamics:
            status.update_md_count()
        elif run_kind is RunKind.density_of_states:
            status.update_dos_count()
        elif run_kind is RunKind.band_structure:
            status.update_band_done()
        project.save_status()
    logger.debug("Updated project status for %s", run_kind.label)


def _count_scf(project: Project) -> None:
    update_project_status(project, RunKind.single_energy)


def copy_band_labels(project: Project) -> bool:
    """Copy k-point labels of the band input onto the project's band path.

    Labels ``gG``, ``gS`` and ``gS1`` (any case) become Γ, Σ and Σ1. Points
    without a label keep their stored one.

    Returns:
        True if labels were copied and saved. Nothing is copied when either
        side is empty or the input lists fewer k-points than the band path.
    """
    base = project.base_input(RunKind.band_structure)
    if base is None:
        return False
    k_points = base.copy().k_points()
    if not k_points:
        return False

    with project.lock:
        band_paths = project.band_paths
        num_points = band_paths.num_points
        if num_points < 1:
            return False
        if len(k_points) < num_points:
            logger.debug("Band input has %d k-points for %d path points", len(k_points), num_points)
            return False

        for i in range(num_points):
            label = k_points[i].label
            if label:
                band_paths.set_label(i, _KPOINT_LABELS.get(label.lower(), label))
        project.save_band_paths()
    return True


def _copy_band_labels(project: Project) -> None:
    copy_band_labels(project)


# ─── Pipeline shapes ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PipelineShape:
    """Per-stage columns for one run kind; all must have the same length."""

    command_kinds: tuple[CommandKind, ...]
    tags: tuple[str, ...]
    conditions: tuple[Condition, ...]
    editors: tuple[Editor, ...]
    parsers: tuple[ParserKind, ...]
    post_actions: tuple[PostAction, ...]

    def __len__(self) -> int:
        return len(self.command_kinds)

    def validate(self) -> None:
        lengths = {
            "command_kinds": len(self.command_kinds),
            "tags": len(self.tags),
            "conditions": len(self.conditions),
            "editors": len(self.editors),
            "parsers": len(self.parsers),
            "post_actions": len(self.post_actions),
        }
        if len(set(lengths.values())) != 1:
            raise PipelineError(f"pipeline columns differ in length: {lengths}")


def _single_stage(tag: str, parser: ParserKind) -> PipelineShape:
    return PipelineShape(
        command_kinds=(CommandKind.pwscf,),
        tags=(tag,),
        conditions=(_always,),
        editors=(_identity,),
        parsers=(parser,),
        post_actions=(_nothing,),
    )


def _dos_shape() -> PipelineShape:
    return PipelineShape(
        command_kinds=(CommandKind.pwscf, CommandKind.pwscf, CommandKind.dos, CommandKind.projwfc),
        tags=("scf", "nscf", "dos", "pdos"),
        conditions=(_unless_scf_done, _always, _always, _unless_tetrahedra),
        editors=(
            partial(_scf_input, run_kind=RunKind.density_of_states),
            _identity,
            _identity,
            _identity,
        ),
        parsers=(ParserKind.scf, ParserKind.fermi, ParserKind.void, ParserKind.void),
        post_actions=(_count_scf, _nothing, _nothing, _nothing),
    )


def _band_shape() -> PipelineShape:
    return PipelineShape(
        command_kinds=(CommandKind.pwscf, CommandKind.pwscf, CommandKind.bands, CommandKind.bands),
        tags=("scf", "bands", "band.up", "band.down"),
        conditions=(_unless_scf_done, _always, _always, _if_spin_polarized),
        editors=(
            partial(_scf_input, run_kind=RunKind.band_structure),
            _identity,
            _identity,
            _spin_down_bands,
        ),
        parsers=(ParserKind.scf, ParserKind.void, ParserKind.band_path, ParserKind.void),
        post_actions=(_count_scf, _nothing, _copy_band_labels, _nothing),
    )


PIPELINE_SHAPES: dict[RunKind, Callable[[], PipelineShape]] = {
    RunKind.single_energy: partial(_single_stage, "scf", ParserKind.scf),
    RunKind.relax: partial(_single_stage, "opt", ParserKind.geometry),
    RunKind.molecular_dynamics: partial(_single_stage, "md", ParserKind.md_geometry),
    RunKind.density_of_states: _dos_shape,
    RunKind.band_structure: _band_shape,
}


def resolve(
    run_kind: RunKind | str,
    project: Project,
    shapes: dict[RunKind, Callable[[], PipelineShape]] | None = None,
) -> list[Stage]:
    """Ordered stages for a run kind, bound to a project's file names.

    Args:
        run_kind: Run kind, or text accepted by :meth:`RunKind.parse`.
        project: Supplies input, log and error file names.
        shapes: Shape table override; defaults to :data:`PIPELINE_SHAPES`.

    Raises:
        PipelineError: For an unknown run kind, a malformed shape or blank
            file names.
    """
    if not isinstance(run_kind, RunKind):
        run_kind = RunKind.parse(str(run_kind))
    table = PIPELINE_SHAPES if shapes is None else shapes
    builder = table.get(run_kind)
    if builder is None:
        raise PipelineError(f"no pipeline for {run_kind.label}")

    shape = builder()
    shape.validate()

    stages: list[Stage] = []
    for i in range(len(shape)):
        tag = shape.tags[i]
        names = (
            project.input_file_name(tag),
            project.log_file_name(tag),
            project.err_file_name(tag),
        )
        input_name, log_name, err_name = ((name or "").strip() for name in names)
        if not (input_name and log_name and err_name):
            raise PipelineError(f"project gives no file names for stage {tag!r}")
        stages.append(
            Stage(
                index=i,
                tag=tag,
                command_kind=shape.command_kinds[i],
                condition=shape.conditions[i],
                editor=shape.editors[i],
                input_name=input_name,
                log_name=log_name,
                err_name=err_name,
                parser=shape.parsers[i],
                post_action=shape.post_actions[i],
            )
        )
    logger.debug("Resolved %s pipeline: %s", run_kind.label, [s.tag for s in stages])
    return stages
