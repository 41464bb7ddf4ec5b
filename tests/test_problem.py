from __future__ import annotations

import logging
import unittest
from dataclasses import replace

import numpy as np
import pytest

from cardiosim.boundary import Electrodes
from cardiosim.cells import AbstractCardiacCell, AbstractCardiacCellFactory, PlaneStimulusCellFactory
from cardiosim.checkpoint import CheckpointReader, CheckpointWriter, checkpoint_path
from cardiosim.errors import CheckpointIOError, ConfigurationError, ResumeConflict, SolverFailure
from cardiosim.events import Event
from cardiosim.mesh import Mesh
from cardiosim.models import ProblemConfig, ProblemState, SlabMeshSpec
from cardiosim.output_modifiers import AbstractOutputModifier, ActivationOutputModifier, SingleTraceOutputModifier
from cardiosim.parallel import SerialGroup
from cardiosim.paths import resolve_output_dir
from cardiosim.postprocessing import PostProcessingDispatcher
from cardiosim.problem import CardiacProblem
from cardiosim.progress import PROGRESS_FILENAME
from cardiosim.solver import AbstractCardiacSolver
from cardiosim.variants import BidomainVariant, BidomainWithBathVariant, MonodomainVariant


class ConstantCell(AbstractCardiacCell):
    state_variable_names = ("V", "Cai")

    def __init__(self, cai: float, voltage: float = -80.0) -> None:
        self.cai = cai
        self.voltage = voltage
        super().__init__()

    def initial_state(self) -> list[float]:
        return [self.voltage, self.cai]

    def evaluate_derivatives(self, time, y):
        return np.zeros_like(y)

    def get_ionic_current(self, y=None) -> float:
        return 0.0


class ConstantCellFactory(AbstractCardiacCellFactory):
    def create_cardiac_cell_for_tissue_node(self, node_index):
        return ConstantCell(2.5)

    def create_cardiac_cell2(self, node_index):
        return ConstantCell(7.0)


class ScriptedSolver(AbstractCardiacSolver):
    """Every unknown grows by the elapsed time; optionally fails from ``fail_at`` on."""

    def __init__(self, tissue, bcc, shape, fail_at=None, log=None, failure=SolverFailure) -> None:
        super().__init__(tissue, bcc, shape)
        self.fail_at = fail_at
        self.failure = failure
        self.log = log if log is not None else []

    def solve(self):
        self.log.append((self._t0, self._t1, self.boundary_conditions_container))
        if self.fail_at is not None and self._t0 >= self.fail_at - 1e-12:
            raise self.failure(f"injected failure at t={self._t0:g}")
        return super().solve()

    def _advance(self, state, t, dt):
        return state + dt


class ScriptedVariant(MonodomainVariant):
    def __init__(self, fail_at=None, has_bath=False, failure=SolverFailure) -> None:
        self.fail_at = fail_at
        self.failure = failure
        self.has_bath = has_bath
        self.log = []
        self.solvers = []

    def create_solver(self, tissue, boundary_conditions, config):
        solver = ScriptedSolver(tissue, boundary_conditions, self.shape, self.fail_at, self.log, self.failure)
        self.solvers.append(solver)
        return solver


class ScriptedBathVariant(BidomainWithBathVariant):
    def __init__(self, electrodes) -> None:
        super().__init__(electrodes)
        self.log = []

    def create_solver(self, tissue, boundary_conditions, config):
        return ScriptedSolver(tissue, boundary_conditions, self.shape, log=self.log)


class RecordingModifier(AbstractOutputModifier):
    def __init__(self) -> None:
        super().__init__("unused.txt")
        self.calls = []

    def initialise_at_start(self, factory) -> None:
        self.calls.append(("start",))

    def process_solution_at_timestep(self, time, solution, problem_dim) -> None:
        self.calls.append(("step", round(time, 10), solution.values.copy()))

    def finalise_at_end(self) -> None:
        self.calls.append(("end",))


class RecordingGroup(SerialGroup):
    def __init__(self) -> None:
        self.ops = []

    def barrier(self, label: str = "") -> None:
        self.ops.append(("barrier", label))

    def any_true(self, flag: bool) -> bool:
        self.ops.append(("any_true", bool(flag)))
        return super().any_true(flag)


def _two_node_mesh(permutation=None, group=None) -> Mesh:
    return Mesh(np.array([[0.0], [1.0]]), np.array([[0, 1]]), permutation=permutation, group=group)


def _config(**overrides) -> ProblemConfig:
    values = dict(
        simulation_duration=0.1,
        pde_time_step=0.1,
        ode_time_step=0.1,
        printing_time_step=0.1,
        output_directory="two_node",
        output_filename_prefix="res",
    )
    values.update(overrides)
    return ProblemConfig(**values)


def _problem(variant=None, config=None, factory=None, mesh=None) -> CardiacProblem:
    problem = CardiacProblem(factory or ConstantCellFactory(), variant or ScriptedVariant(), config or _config())
    problem.set_mesh(mesh or _two_node_mesh())
    problem.initialise()
    return problem


def _read(config: ProblemConfig) -> CheckpointReader:
    return CheckpointReader(config.output_directory, config.output_filename_prefix)


def test_two_node_run_writes_initial_and_final_rows() -> None:
    config = _config()
    problem = _problem(config=config)
    problem.solve()

    assert problem.state is ProblemState.COMPLETED
    assert problem.solver is None
    assert problem.get_current_time() == pytest.approx(0.1)
    with _read(config) as reader:
        assert reader.get_variable_names() == ["V"]
        assert reader.get_number_of_rows() == 2
        assert np.allclose(reader.get_unlimited_dimension_values(), [0.0, 0.1])
        assert np.allclose(reader.get_variable_over_nodes("V", 0), [-80.0, -80.0])
        assert np.allclose(reader.get_variable_over_nodes("V", 1), problem.get_solution().values)
    assert np.allclose(problem.get_solution().values, [-79.9, -79.9])

    factory = problem.get_mesh().get_distributed_vector_factory()
    assert factory.live_count == 1
    problem.close()
    assert factory.live_count == 0


def test_progress_file_records_completion() -> None:
    config = _config(simulation_duration=0.2)
    problem = _problem(config=config)
    problem.solve()
    lines = (resolve_output_dir(config.output_directory) / PROGRESS_FILENAME).read_text().splitlines()
    assert lines[0] == "Starting to solve"
    assert "100% completed" in lines
    assert lines[-2:] == ["Finalising", "Completed"]
    problem.close()


def test_failure_mid_run_keeps_written_rows_and_releases_everything() -> None:
    config = _config(simulation_duration=0.5)
    problem = _problem(ScriptedVariant(fail_at=0.2), config)
    factory = problem.get_mesh().get_distributed_vector_factory()

    with pytest.raises(SolverFailure, match="injected failure"):
        problem.solve()

    assert problem.state is ProblemState.FAILED
    assert problem.solver is None
    assert problem.get_current_time() == pytest.approx(0.2)
    assert np.allclose(problem.get_solution().values, [-79.8, -79.8])
    assert factory.created_count == 3
    assert factory.live_count == 1
    with _read(config) as reader:
        assert np.allclose(reader.get_unlimited_dimension_values(), [0.0, 0.1, 0.2])
    progress = (resolve_output_dir(config.output_directory) / PROGRESS_FILENAME).read_text()
    assert "Completed" not in progress

    problem.close()
    assert factory.live_count == 0


def test_failure_on_first_step_releases_initial_condition() -> None:
    config = _config(simulation_duration=0.3)
    problem = _problem(ScriptedVariant(fail_at=0.0), config)
    factory = problem.get_mesh().get_distributed_vector_factory()

    with pytest.raises(SolverFailure):
        problem.solve()

    assert problem.get_solution() is None
    assert factory.live_count == 0
    with _read(config) as reader:
        assert reader.get_number_of_rows() == 1


@pytest.mark.parametrize("failure", [SolverFailure, RuntimeError, ValueError])
def test_any_solver_error_is_shared_with_the_group(failure) -> None:
    group = RecordingGroup()
    problem = _problem(ScriptedVariant(fail_at=0.1, failure=failure), _config(simulation_duration=0.3),
                       mesh=_two_node_mesh(group=group))

    with pytest.raises(failure, match="injected failure"):
        problem.solve()

    flags = [flag for op, flag in group.ops if op == "any_true"]
    assert flags.count(True) == 1
    assert problem.state is ProblemState.FAILED
    problem.close()


def test_writer_failure_mid_run_unwinds_like_a_solver_failure(monkeypatch) -> None:
    config = _config(simulation_duration=0.5)
    problem = _problem(config=config)
    factory = problem.get_mesh().get_distributed_vector_factory()
    error = CheckpointIOError("disk full")
    write_row = CheckpointWriter.write_row

    def failing_write_row(self, time, columns):
        if time >= 0.2 - 1e-12:
            raise error
        write_row(self, time, columns)

    monkeypatch.setattr(CheckpointWriter, "write_row", failing_write_row)
    with pytest.raises(CheckpointIOError) as info:
        problem.solve()

    assert info.value is error
    assert problem.state is ProblemState.FAILED
    assert problem.solver is None
    assert factory.live_count == 1
    assert np.allclose(problem.get_solution().values, [-79.8, -79.8])
    with _read(config) as reader:
        assert np.allclose(reader.get_unlimited_dimension_values(), [0.0, 0.1])

    problem.close()
    assert factory.live_count == 0


def test_post_processing_failure_marks_the_run_failed(monkeypatch) -> None:
    config = _config(simulation_duration=0.2)
    problem = _problem(config=config)

    def broken_convert(self):
        raise RuntimeError("converter broke")

    monkeypatch.setattr(PostProcessingDispatcher, "convert", broken_convert)
    with pytest.raises(RuntimeError, match="converter broke"):
        problem.solve()

    assert problem.state is ProblemState.FAILED
    assert not problem.events.is_running(Event.EVERYTHING)
    lines = (resolve_output_dir(config.output_directory) / PROGRESS_FILENAME).read_text().splitlines()
    assert lines[-1] == "Finalising"
    assert "Completed" not in lines
    problem.close()


def test_resume_extends_the_same_file_without_duplicate_rows() -> None:
    config = _config(simulation_duration=0.2)
    variant = ScriptedVariant()
    problem = _problem(variant, config)
    problem.solve()
    problem.solve(replace(config, simulation_duration=0.4))

    assert len(variant.solvers) == 2
    with _read(config) as reader:
        assert np.allclose(reader.get_unlimited_dimension_values(), [0.0, 0.1, 0.2, 0.3, 0.4], atol=1e-12)
        assert np.allclose(reader.get_variable_over_time("V", 0), [-80.0, -79.9, -79.8, -79.7, -79.6])
    factory = problem.get_mesh().get_distributed_vector_factory()
    problem.close()
    assert factory.live_count == 0


def test_resume_into_new_directory_starts_a_fresh_file() -> None:
    config = _config()
    problem = _problem(config=config)
    problem.solve()
    second = replace(config, simulation_duration=0.2, output_directory="second")
    problem.solve(second)
    with _read(second) as reader:
        assert np.allclose(reader.get_unlimited_dimension_values(), [0.1, 0.2])
    problem.close()


def test_resuming_from_an_earlier_archive_is_refused(tmp_path) -> None:
    config = _config()
    first = _problem(config=config)
    first.solve()
    first.save_state(tmp_path / "state.npz")
    first.solve(replace(config, simulation_duration=0.2))
    first.close()

    path = checkpoint_path(config.output_directory, config.output_filename_prefix)
    before = path.read_bytes()

    second = _problem(config=config)
    second.load_state(tmp_path / "state.npz")
    assert second.get_current_time() == pytest.approx(0.1)
    with pytest.raises(ResumeConflict):
        second.solve(replace(config, simulation_duration=0.3))

    assert path.read_bytes() == before
    assert second.state is ProblemState.FAILED
    assert np.allclose(second.get_solution().values, [-79.9, -79.9])
    factory = second.get_mesh().get_distributed_vector_factory()
    second.close()
    assert factory.live_count == 0


def test_output_modifiers_see_every_committed_step_in_order() -> None:
    config = _config(simulation_duration=0.2)
    problem = _problem(config=config)
    recorder = RecordingModifier()
    trace = SingleTraceOutputModifier("trace.txt", 1, config.output_directory)
    activation = ActivationOutputModifier("activation.txt", -79.95, config.output_directory)
    for modifier in (recorder, trace, activation):
        problem.add_output_modifier(modifier)
    problem.solve()

    assert [call[0] for call in recorder.calls] == ["start", "step", "step", "step", "end"]
    assert [call[1] for call in recorder.calls[1:4]] == [0.0, 0.1, 0.2]
    assert np.allclose(recorder.calls[2][2], [-79.9, -79.9])

    assert len(trace.path.read_text().splitlines()) == 3
    rows = [line.split("\t") for line in activation.path.read_text().splitlines()]
    assert [row[0] for row in rows] == ["0", "1"]
    assert all(float(row[1]) == pytest.approx(0.1) and row[2] == "-1" for row in rows)
    problem.close()


def test_extra_variables_are_written_with_zeros_on_bath_nodes() -> None:
    mesh = Mesh(
        np.array([[0.0], [1.0], [2.0]]),
        np.array([[0, 1], [1, 2]]),
        node_regions=np.array([0, 0, 1]),
        element_regions=np.array([0, 1]),
    )
    config = _config(output_variables=("Cai", "Cai__IDX__1"))
    problem = _problem(ScriptedVariant(has_bath=True), config, mesh=mesh)
    problem.solve()
    with _read(config) as reader:
        assert reader.get_variable_names() == ["V", "Cai", "Cai__IDX__1"]
        assert reader.get_unit("Cai") == "unknown_units"
        assert np.allclose(reader.get_variable_over_nodes("Cai", 1), [2.5, 2.5, 0.0])
        assert np.allclose(reader.get_variable_over_nodes("Cai__IDX__1", 0), [7.0, 7.0, 0.0])
    problem.close()


def test_electrode_times_are_visited_and_swap_boundary_conditions() -> None:
    electrodes = Electrodes(magnitude=1.0, start_time=0.15, duration=0.1)
    variant = ScriptedBathVariant(electrodes)
    config = _config(simulation_duration=0.4)
    problem = _problem(variant, config)
    problem.solve()

    starts = [round(t0, 10) for t0, _, _ in variant.log]
    assert starts == [0.0, 0.1, 0.15, 0.2, 0.25, 0.3]
    containers = {round(t0, 10): bcc for t0, _, bcc in variant.log}
    assert containers[0.15] is electrodes.get_boundary_conditions_container()
    assert containers[0.2] is electrodes.get_boundary_conditions_container()
    assert containers[0.25] is problem.get_boundary_conditions_container()
    assert containers[0.1] is problem.get_boundary_conditions_container()
    with _read(config) as reader:
        assert reader.get_number_of_rows() == 7
        assert reader.get_variable_names() == ["V", "Phi_e"]
    problem.close()


def test_output_subset_and_original_ordering() -> None:
    config = _config()
    problem = _problem(config=config)
    problem.set_output_nodes([1])
    problem.solve()
    with _read(config) as reader:
        assert not reader.is_data_complete()
        assert list(reader.get_incomplete_node_map()) == [1]
    problem.close()

    ordered = _config(output_directory="ordered", output_using_original_node_ordering=True)
    problem = _problem(config=ordered, mesh=_two_node_mesh(permutation=[1, 0]))
    problem.solve()
    with _read(ordered) as reader:
        assert list(reader.get_permutation()) == [1, 0]
    problem.close()

    identity = _config(output_directory="identity", output_using_original_node_ordering=True)
    problem = _problem(config=identity, mesh=_two_node_mesh(permutation=[0, 1]))
    problem.solve()
    with _read(identity) as reader:
        assert reader.get_permutation() is None
    problem.close()


def test_write_info_logs_ranges(caplog) -> None:
    problem = _problem()
    problem.set_write_info()
    with caplog.at_level(logging.INFO, logger="cardiosim"):
        problem.solve()
    assert "V: min" in caplog.text
    problem.close()


def test_without_printing_nothing_is_written() -> None:
    config = _config(output_directory="", output_filename_prefix="")
    problem = _problem(config=config)
    problem.print_output(False)
    problem.solve()
    assert problem.state is ProblemState.COMPLETED
    with pytest.raises(ConfigurationError):
        problem.get_data_reader()
    problem.close()


class PreSolveCheckTests(unittest.TestCase):
    def test_missing_cell_factory(self) -> None:
        with self.assertRaises(ConfigurationError):
            CardiacProblem(None, ScriptedVariant(), _config())

    def test_tissue_needs_initialise(self) -> None:
        problem = CardiacProblem(ConstantCellFactory(), ScriptedVariant(), _config())
        with self.assertRaises(ConfigurationError):
            problem.get_tissue()
        with self.assertRaises(ConfigurationError):
            problem.solve()

    def test_mesh_can_only_be_set_once(self) -> None:
        problem = CardiacProblem(ConstantCellFactory(), ScriptedVariant(), _config())
        problem.set_mesh(_two_node_mesh())
        with self.assertRaises(ConfigurationError):
            problem.set_mesh(_two_node_mesh())

    def test_end_time_must_be_in_the_future(self) -> None:
        problem = _problem(config=_config(simulation_duration=0.0))
        with self.assertRaisesRegex(ConfigurationError, "future"):
            problem.solve()

    def test_output_location_required_when_printing(self) -> None:
        problem = _problem(config=_config(output_directory=""))
        with self.assertRaisesRegex(ConfigurationError, "print_output"):
            problem.solve()

    def test_pde_step_must_divide_end_time_and_no_file_is_created(self) -> None:
        config = _config(simulation_duration=0.25)
        problem = _problem(config=config)
        with self.assertRaisesRegex(ConfigurationError, "divide"):
            problem.solve()
        self.assertFalse(checkpoint_path(config.output_directory, config.output_filename_prefix).exists())

    def test_adaptivity_needs_a_controller(self) -> None:
        problem = _problem()
        with self.assertRaises(ValueError):
            problem.set_use_time_adaptivity_controller(True)

    def test_transmural_heterogeneities_need_factory_support(self) -> None:
        problem = CardiacProblem(ConstantCellFactory(), ScriptedVariant(), _config(transmural_heterogeneities=True))
        problem.set_mesh(_two_node_mesh())
        with self.assertRaises(ConfigurationError):
            problem.initialise()

    def test_missing_mesh_definition(self) -> None:
        problem = CardiacProblem(ConstantCellFactory(), ScriptedVariant(), _config())
        with self.assertRaisesRegex(ConfigurationError, "No mesh given"):
            problem.initialise()


def test_monodomain_slab_excites_from_stimulated_end() -> None:
    config = ProblemConfig(
        simulation_duration=1.0,
        pde_time_step=0.1,
        ode_time_step=0.01,
        printing_time_step=0.5,
        output_directory="slab",
        output_filename_prefix="mono",
        slab_mesh=SlabMeshSpec(0.1, (1.0,)),
    )
    problem = CardiacProblem(PlaneStimulusCellFactory(), MonodomainVariant(), config)
    problem.initialise()
    problem.solve()

    voltage = problem.get_solution().values
    assert problem.get_mesh().num_nodes == 11
    assert np.all(np.isfinite(voltage))
    assert voltage[0] > 0.3
    assert voltage[-1] < 0.1
    with _read(config) as reader:
        assert np.allclose(reader.get_unlimited_dimension_values(), [0.0, 0.5, 1.0])
        assert np.allclose(reader.get_variable_over_nodes("V", 2), voltage)
    problem.close()


def test_bidomain_slab_pins_extracellular_potential() -> None:
    config = ProblemConfig(
        simulation_duration=0.2,
        pde_time_step=0.1,
        ode_time_step=0.05,
        printing_time_step=0.1,
        output_directory="slab",
        output_filename_prefix="bi",
        slab_mesh=SlabMeshSpec(0.1, (0.5,)),
    )
    problem = CardiacProblem(PlaneStimulusCellFactory(), BidomainVariant(), config)
    problem.initialise()
    problem.solve()

    nodes = problem.get_solution().as_nodes()
    assert nodes.shape == (6, 2)
    assert np.all(np.isfinite(nodes))
    assert nodes[0, 1] == pytest.approx(0.0, abs=1e-12)
    with _read(config) as reader:
        assert reader.get_variable_names() == ["V", "Phi_e"]
        assert reader.get_number_of_rows() == 3
    problem.close()
