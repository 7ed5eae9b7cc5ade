"""Tests for pipeline resolution, input normalization and post-actions."""

import threading

import pytest

from espresso_remote.commands import CommandKind
from espresso_remote.document import parse_input
from espresso_remote.errors import PipelineError
from espresso_remote.pipeline import (
    PIPELINE_SHAPES,
    ParserKind,
    PipelineShape,
    RunKind,
    copy_band_labels,
    normalize_input,
    prepare_input,
    resolve,
    update_project_status,
)
from espresso_remote.project import BandPaths
from tests.conftest import BAND_INPUT, DOS_INPUT, SCF_INPUT, InMemoryProject


class TestRunKind:
    @pytest.mark.parametrize(
        "text,kind",
        [
            ("scf", RunKind.single_energy),
            ("Optimize", RunKind.relax),
            ("MOLECULAR_DYNAMICS", RunKind.molecular_dynamics),
            ("dos", RunKind.density_of_states),
            ("band", RunKind.band_structure),
        ],
    )
    def test_parse(self, text, kind):
        assert RunKind.parse(text) is kind

    def test_parse_unknown(self):
        with pytest.raises(PipelineError):
            RunKind.parse("phonon")

    def test_labels(self):
        assert [k.label for k in RunKind] == ["SCF", "Optimize", "MD", "DOS", "Band"]


class TestResolve:
    """Stage shapes per run kind."""

    def test_every_run_kind_has_a_shape(self):
        assert set(PIPELINE_SHAPES) == set(RunKind)

    @pytest.mark.parametrize(
        "kind,tag,parser",
        [
            (RunKind.single_energy, "scf", ParserKind.scf),
            (RunKind.relax, "opt", ParserKind.geometry),
            (RunKind.molecular_dynamics, "md", ParserKind.md_geometry),
        ],
    )
    def test_single_stage_kinds(self, project, kind, tag, parser):
        stages = resolve(kind, project)
        assert len(stages) == 1
        stage = stages[0]
        assert stage.tag == tag
        assert stage.command_kind is CommandKind.pwscf
        assert stage.parser is parser
        assert stage.input_name == f"si.{tag}.in"
        assert stage.log_name == f"si.{tag}.log"
        assert stage.err_name == f"si.{tag}.err"
        assert stage.condition(project, parse_input(SCF_INPUT)) is True

    def test_dos_shape(self, project):
        stages = resolve(RunKind.density_of_states, project)
        assert [s.tag for s in stages] == ["scf", "nscf", "dos", "pdos"]
        assert [s.command_kind for s in stages] == [
            CommandKind.pwscf,
            CommandKind.pwscf,
            CommandKind.dos,
            CommandKind.projwfc,
        ]
        assert [s.parser for s in stages] == [
            ParserKind.scf,
            ParserKind.fermi,
            ParserKind.void,
            ParserKind.void,
        ]
        assert [s.index for s in stages] == [0, 1, 2, 3]

    def test_band_shape(self, project):
        stages = resolve("band", project)
        assert [s.tag for s in stages] == ["scf", "bands", "band.up", "band.down"]
        assert [s.command_kind for s in stages] == [
            CommandKind.pwscf,
            CommandKind.pwscf,
            CommandKind.bands,
            CommandKind.bands,
        ]
        assert [s.parser for s in stages] == [
            ParserKind.scf,
            ParserKind.void,
            ParserKind.band_path,
            ParserKind.void,
        ]

    def test_mismatched_columns(self, project):
        def broken() -> PipelineShape:
            shape = PIPELINE_SHAPES[RunKind.density_of_states]()
            return PipelineShape(
                command_kinds=shape.command_kinds,
                tags=shape.tags,
                conditions=shape.conditions[:3],
                editors=shape.editors,
                parsers=shape.parsers,
                post_actions=shape.post_actions,
            )

        with pytest.raises(PipelineError, match="length"):
            resolve(RunKind.density_of_states, project, shapes={RunKind.density_of_states: broken})

    def test_missing_shape(self, project):
        with pytest.raises(PipelineError):
            resolve(RunKind.relax, project, shapes={})

    def test_command_line(self, project):
        stage = resolve(RunKind.single_energy, project)[0]
        assert stage.command_line(1) == "pw.x -input si.scf.in </dev/null 1>si.scf.log 2>si.scf.err"
        assert stage.command_line(4).startswith("mpirun -np 4 pw.x -input si.scf.in ")


class TestNormalizeInput:
    def test_control(self, project, pseudo_dir):
        document = prepare_input(RunKind.single_energy, project)
        control = document.namelist("CONTROL")

        assert control.get_string("title") == "si.cif(SCF)"
        assert control.get_string("prefix") == "si"
        assert control.get_bool("wf_collect") is True
        assert "verbosity" not in control
        assert control.get_string("outdir") == "./"
        assert control.get_string("wfcdir") == "./"
        assert control.get_string("pseudo_dir") == str(pseudo_dir)

    def test_existing_wf_collect_kept(self, project):
        document = parse_input(SCF_INPUT.replace("calculation = 'scf'", "wf_collect = .FALSE."))
        normalize_input(document, project, RunKind.single_energy)
        assert document.namelist("CONTROL").get_bool("wf_collect") is False

    def test_no_title_without_related_file(self, project_dir, pseudo_dir):
        project = InMemoryProject(project_dir, {RunKind.single_energy: SCF_INPUT}, related_file_name=None)
        document = prepare_input(RunKind.single_energy, project)
        assert "title" not in document.namelist("CONTROL")

    def test_explicit_cell_strips_lattice_scalars(self, project):
        system = prepare_input(RunKind.single_energy, project).namelist("SYSTEM")
        for key in ("celldm(1)", "celldm(3)", "cosab", "a"):
            assert key not in system
        assert system.get_int("nat") == 2

    def test_alat_cell_keeps_primary_dimension(self, project):
        document = parse_input(SCF_INPUT.replace("CELL_PARAMETERS {bohr}", "CELL_PARAMETERS {alat}"))
        normalize_input(document, project, RunKind.single_energy)
        system = document.namelist("SYSTEM")
        assert system.get("celldm(1)") == "10.2"
        assert "celldm(3)" not in system
        assert "cosab" not in system

    def test_lattice_kept_outside_ibrav_zero(self, project):
        document = parse_input(SCF_INPUT.replace("ibrav = 0", "ibrav = 4"))
        normalize_input(document, project, RunKind.single_energy)
        system = document.namelist("SYSTEM")
        assert system.get("celldm(3)") == "1.5"
        assert system.get("cosab") == "0.5"

    def test_post_processing_namelists(self, project):
        dos = prepare_input(RunKind.density_of_states, project)
        assert dos.namelist("DOS").get_string("fildos") == "si.dos"
        assert dos.namelist("DOS").get_string("prefix") == "si"
        assert dos.namelist("PROJWFC").get_string("filpdos") == "si"
        assert dos.namelist("PROJWFC").get_string("outdir") == "./"

        band = prepare_input(RunKind.band_structure, project)
        bands = band.namelist("BANDS")
        assert bands.get_string("filband") == "si.band1"
        assert bands.get_int("spin_component") == 1

    def test_base_input_not_modified(self, project):
        prepare_input(RunKind.single_energy, project)
        base = project.base_input(RunKind.single_energy)
        assert base.namelist("CONTROL").get_string("prefix") == "old"

    def test_missing_base_input(self, project_dir):
        project = InMemoryProject(project_dir, {})
        with pytest.raises(PipelineError):
            prepare_input(RunKind.relax, project)


class TestConditions:
    def test_scf_stage_skipped_when_scf_done(self, project):
        stage = resolve(RunKind.density_of_states, project)[0]
        document = parse_input(SCF_INPUT)
        assert stage.condition(project, document) is True

        project.status.scf_count = 1
        assert stage.condition(project, document) is False

    def test_scf_stage_skipped_when_relax_done(self, project):
        stage = resolve(RunKind.band_structure, project)[0]
        project.status.opt_done = True
        assert stage.condition(project, parse_input(SCF_INPUT)) is False

    @pytest.mark.parametrize(
        "occupations,expected",
        [("smearing", True), ("tetrahedra", False), ("tetrahedra_opt", False), ("TETRAHEDRA", True)],
    )
    def test_pdos_depends_on_occupations(self, project, occupations, expected):
        stage = resolve(RunKind.density_of_states, project)[3]
        document = parse_input(DOS_INPUT.replace("'smearing'", f"'{occupations}'"))
        assert stage.condition(project, document) is expected

    def test_pdos_runs_without_occupations(self, project):
        stage = resolve(RunKind.density_of_states, project)[3]
        document = parse_input(DOS_INPUT.replace("occupations = 'smearing'", ""))
        assert stage.condition(project, document) is True

    def test_spin_down_needs_nspin_two(self, project):
        stage = resolve(RunKind.band_structure, project)[3]
        assert stage.condition(project, parse_input(BAND_INPUT)) is True
        assert stage.condition(project, parse_input(BAND_INPUT.replace("nspin = 2", "nspin = 1"))) is False
        assert stage.condition(project, parse_input(BAND_INPUT.replace("nspin = 2", ""))) is False

    def test_missing_system_namelist(self, project):
        document = parse_input("&BANDS\n/\n")
        assert resolve(RunKind.band_structure, project)[3].condition(project, document) is False
        assert resolve(RunKind.density_of_states, project)[3].condition(project, document) is False


class TestEditors:
    def test_first_stage_uses_scf_input(self, project):
        stage = resolve(RunKind.density_of_states, project)[0]
        base = prepare_input(RunKind.density_of_states, project)
        edited = stage.editor(project, base)

        assert edited is not base
        assert edited.namelist("CONTROL").get_string("calculation") == "scf"
        assert edited.namelist("CONTROL").get_string("title") == "si.cif(DOS)"
        assert edited.namelist("DOS") is None

    def test_first_stage_dropped_without_scf_input(self, project_dir):
        project = InMemoryProject(project_dir, {RunKind.band_structure: BAND_INPUT})
        stage = resolve(RunKind.band_structure, project)[0]
        assert stage.editor(project, prepare_input(RunKind.band_structure, project)) is None

    def test_middle_stages_pass_input_through(self, project):
        base = prepare_input(RunKind.band_structure, project)
        stages = resolve(RunKind.band_structure, project)
        assert stages[1].editor(project, base) is base
        assert stages[2].editor(project, base) is base

    def test_spin_down_editor(self, project):
        base = prepare_input(RunKind.band_structure, project)
        edited = resolve(RunKind.band_structure, project)[3].editor(project, base)

        assert edited is not base
        assert edited.namelist("BANDS").get_string("filband") == "si.band2"
        assert edited.namelist("BANDS").get_int("spin_component") == 2
        assert base.namelist("BANDS").get_string("filband") == "si.band1"


class TestPostActions:
    def test_update_project_status(self, project):
        update_project_status(project, RunKind.single_energy)
        update_project_status(project, RunKind.relax)
        update_project_status(project, RunKind.molecular_dynamics)
        update_project_status(project, RunKind.density_of_states)
        update_project_status(project, RunKind.band_structure)

        status = project.status
        assert status.scf_count == 1
        assert status.opt_done is True
        assert status.md_count == 1
        assert status.dos_count == 1
        assert status.band_done is True
        assert project.status_saves == 5

    def test_first_stage_counts_scf(self, project):
        resolve(RunKind.density_of_states, project)[0].post_action(project)
        assert project.status.scf_count == 1
        assert project.status_saves == 1

    def test_copy_band_labels(self, project):
        project.band_paths = BandPaths([None, None, "old"])
        assert copy_band_labels(project) is True
        assert project.band_paths.labels == ["Γ", "X", "L"]
        assert project.band_path_saves == 1

    def test_copy_band_labels_greek_names(self, project_dir):
        text = BAND_INPUT.replace("!X", "!gs").replace("!L", "!GS1")
        project = InMemoryProject(project_dir, {RunKind.band_structure: text})
        project.band_paths = BandPaths([None, None, None])
        copy_band_labels(project)
        assert project.band_paths.labels == ["Γ", "Σ", "Σ1"]

    def test_copy_band_labels_letter_points(self, project_dir):
        card = "K_POINTS {tpiba_b}\n3\n gG 20\n X 20\n gS1 1\n"
        text = BAND_INPUT[: BAND_INPUT.index("K_POINTS")] + card
        project = InMemoryProject(project_dir, {RunKind.band_structure: text})
        project.band_paths = BandPaths([None, None, None])

        assert copy_band_labels(project) is True
        assert project.band_paths.labels == ["Γ", "X", "Σ1"]

    def test_unlabelled_points_keep_stored_label(self, project_dir):
        text = BAND_INPUT.replace(" !X", "")
        project = InMemoryProject(project_dir, {RunKind.band_structure: text})
        project.band_paths = BandPaths(["a", "b", "c"])
        copy_band_labels(project)
        assert project.band_paths.labels == ["Γ", "b", "L"]

    def test_too_few_k_points(self, project):
        project.band_paths = BandPaths([None] * 4)
        assert copy_band_labels(project) is False
        assert project.band_paths.labels == [None] * 4
        assert project.band_path_saves == 0

    def test_empty_band_path(self, project):
        assert copy_band_labels(project) is False
        assert project.band_path_saves == 0

    def test_band_label_stage(self, project):
        project.band_paths = BandPaths([None, None, None])
        resolve(RunKind.band_structure, project)[2].post_action(project)
        assert project.band_paths.labels == ["Γ", "X", "L"]


class TestConcurrentUpdates:
    """Status and band path edits from several sessions share the project lock."""

    def test_status_counters(self, project):
        barrier = threading.Barrier(8)

        def bump():
            barrier.wait()
            update_project_status(project, RunKind.density_of_states)

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert project.status.dos_count == 8
        assert project.status_saves == 8

    def test_band_labels_with_status_updates(self, project):
        project.band_paths = BandPaths([None, None, None])
        barrier = threading.Barrier(6)

        def work(index):
            barrier.wait()
            if index % 2:
                copy_band_labels(project)
            else:
                update_project_status(project, RunKind.single_energy)

        threads = [threading.Thread(target=work, args=(i,)) for i in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert project.band_paths.labels == ["Γ", "X", "L"]
        assert project.band_path_saves == 3
        assert project.status.scf_count == 3
        assert project.status_saves == 3
