from __future__ import annotations

import unittest

import meshio
import numpy as np
import pytest

from cardiosim.boundary import BoundaryConditionsContainer, Electrodes
from cardiosim.cells import (
    AbstractCardiacCell,
    AbstractCardiacCellFactory,
    BathCell,
    FitzHughNagumoCell,
    PlaneStimulusCellFactory,
    SimpleStimulus,
)
from cardiosim.errors import ConfigurationError, SolverFailure
from cardiosim.mesh import Mesh
from cardiosim.models import BIDOMAIN_SHAPE, MONODOMAIN_SHAPE, ProblemConfig
from cardiosim.solver import FixedTimeAdaptivityController, MonodomainSolver
from cardiosim.tissue import CardiacTissue, assemble_lumped_mass, assemble_stiffness


def _tissue(mesh: Mesh, factory=None, has_bath: bool = False, **config) -> CardiacTissue:
    factory = factory or PlaneStimulusCellFactory(stimulus_magnitude=0.0)
    factory.set_mesh(mesh)
    return CardiacTissue(factory, mesh, ProblemConfig(simulation_duration=1.0, **config), has_bath=has_bath)


class ExplodingCell(AbstractCardiacCell):
    state_variable_names = ("V",)

    def initial_state(self):
        return [0.0]

    def evaluate_derivatives(self, time, y):
        return np.full_like(y, np.nan)

    def get_ionic_current(self, y=None):
        return 0.0


class ExplodingFactory(AbstractCardiacCellFactory):
    def create_cardiac_cell_for_tissue_node(self, node_index):
        return ExplodingCell()


def test_stimulus_windows() -> None:
    stimulus = SimpleStimulus(2.0, 1.0, start=1.0, period=5.0)
    assert stimulus.current(0.5) == 0.0
    assert stimulus.current(1.5) == 2.0
    assert stimulus.current(2.5) == 0.0
    assert stimulus.current(6.5) == 2.0
    with pytest.raises(ValueError):
        SimpleStimulus(1.0, 2.0, period=1.0)


def test_fitzhugh_nagumo_rest_and_stimulus() -> None:
    cell = FitzHughNagumoCell(stimulus=SimpleStimulus(1.0, 0.5))
    assert np.allclose(cell.evaluate_derivatives(1.0, np.zeros(2)), [0.0, 0.0])
    assert np.allclose(cell.evaluate_derivatives(0.0, np.zeros(2)), [1.0, 0.0])
    assert cell.get_any_variable("I_stim", 0.25) == 1.0
    assert cell.get_any_variable("w") == 0.0
    with pytest.raises(ValueError):
        cell.get_any_variable("Cai")
    cell.solve_and_update_state(0.0, 0.1)
    assert cell.get_voltage() > 0.09
    with pytest.raises(ValueError):
        cell.solve_and_update_state(1.0, 0.5)


def test_bath_cell_is_static() -> None:
    cell = BathCell()
    cell.set_voltage(3.0)
    cell.solve_and_update_state(0.0, 1.0)
    assert cell.get_voltage() == 3.0


class SlabMeshTests(unittest.TestCase):
    def test_node_and_element_counts(self) -> None:
        for step, dims, nodes, elements in [
            (0.1, (1.0,), 11, 10),
            (0.5, (1.0, 1.0), 9, 8),
            (1.0, (1.0, 1.0, 1.0), 8, 6),
        ]:
            mesh = Mesh.construct_regular_slab_mesh(step, *dims)
            self.assertEqual(mesh.num_nodes, nodes)
            self.assertEqual(mesh.num_elements, elements)
            self.assertEqual(mesh.element_dimension, len(dims))

    def test_step_must_divide_width(self) -> None:
        with self.assertRaises(ConfigurationError):
            Mesh.construct_regular_slab_mesh(0.3, 1.0)

    def test_boundary_nodes(self) -> None:
        self.assertEqual(list(Mesh.construct_regular_slab_mesh(0.1, 1.0).boundary_nodes()), [0, 10])
        sheet = Mesh.construct_regular_slab_mesh(0.5, 1.0, 1.0)
        self.assertEqual(list(sheet.boundary_nodes()), [0, 1, 2, 3, 5, 6, 7, 8])

    def test_operators_conserve_volume_and_constants(self) -> None:
        mesh = Mesh.construct_regular_slab_mesh(0.5, 1.0, 1.0)
        self.assertAlmostEqual(float(assemble_lumped_mass(mesh).sum()), 1.0)
        stiffness = assemble_stiffness(mesh, 2.0)
        self.assertTrue(np.allclose(stiffness @ np.ones(mesh.num_nodes), 0.0))
        self.assertTrue(np.allclose((stiffness - stiffness.T).toarray(), 0.0))


def test_mesh_round_trips_through_meshio(tmp_path) -> None:
    source = meshio.Mesh(
        np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [1.0, 1.0, 0.0], [0.0, 1.0, 0.0]]),
        [("triangle", np.array([[0, 1, 2], [0, 2, 3]]))],
        point_data={"region": np.array([0, 0, 1, 1])},
        cell_data={"region": [np.array([0, 1])]},
    )
    path = tmp_path / "square.vtu"
    meshio.write(str(path), source)

    mesh = Mesh.from_file(path)
    assert mesh.space_dimension == 2
    assert mesh.num_elements == 2
    assert list(mesh.node_regions) == [0, 0, 1, 1]
    assert list(mesh.element_regions) == [0, 1]
    assert mesh.is_node_in_bath(2)
    with pytest.raises(ConfigurationError):
        Mesh.from_file(tmp_path / "missing.vtu")


def test_tissue_with_bath_uses_bath_cells_and_conductivities() -> None:
    mesh = Mesh(
        np.array([[0.0], [1.0], [2.0]]),
        np.array([[0, 1], [1, 2]]),
        node_regions=np.array([0, 0, 1]),
        element_regions=np.array([0, 1]),
    )
    tissue = _tissue(mesh, has_bath=True)
    assert isinstance(tissue.get_cardiac_cell(2), BathCell)
    assert isinstance(tissue.get_cardiac_cell(0), FitzHughNagumoCell)
    assert tissue.is_node_in_bath(2)
    with pytest.raises(ConfigurationError, match="no second"):
        tissue.get_cardiac_cell2(0)
    assert tissue.intracellular_stiffness[1, 2] == 0.0
    assert tissue.extracellular_stiffness[1, 2] == pytest.approx(-7.0)


def test_tissue_cell_states_round_trip() -> None:
    tissue = _tissue(Mesh.construct_regular_slab_mesh(0.5, 1.0))
    states = tissue.get_cell_states()
    states[1][:] = [0.2, 0.1]
    tissue.set_cell_states(states)
    assert tissue.get_cardiac_cell(1).get_voltage() == 0.2
    with pytest.raises(ValueError):
        tissue.set_cell_states(states[:1])


def test_boundary_containers_and_electrodes() -> None:
    mesh = Mesh.construct_regular_slab_mesh(0.1, 1.0)
    bcc = BoundaryConditionsContainer.zero_neumann(mesh, 1)
    assert bcc.is_defined(0)
    assert not bcc.any_nonzero_neumann(0)
    with pytest.raises(IndexError):
        bcc.neumann_source(mesh.num_nodes, 1)

    electrodes = Electrodes(2.0, start_time=1.0, duration=0.5)
    with pytest.raises(ValueError):
        electrodes.build_container(mesh, 1)
    source = electrodes.build_container(mesh, 2).neumann_source(mesh.num_nodes, 1)
    assert source[0] == 2.0 and source[-1] == -2.0
    grounded = Electrodes(2.0, 1.0, 0.5, grounded=True).build_container(mesh, 2)
    assert grounded.neumann_source(mesh.num_nodes, 1).min() == 0.0

    assert not electrodes.switch_on(0.5)
    assert electrodes.switch_on(1.0)
    assert not electrodes.switch_on(1.2)
    assert not electrodes.switch_off(1.2)
    assert electrodes.switch_off(1.5)
    assert not electrodes.is_on


def test_monodomain_solver_keeps_rest_state() -> None:
    mesh = Mesh.construct_regular_slab_mesh(0.1, 1.0)
    tissue = _tissue(mesh)
    solver = MonodomainSolver(tissue, BoundaryConditionsContainer.zero_neumann(mesh, 1), MONODOMAIN_SHAPE)
    factory = mesh.get_distributed_vector_factory()
    initial = factory.create_vec(1)
    solver.set_times(0.0, 0.3)
    solver.set_initial_condition(initial)
    solver.set_time_step(0.1)
    result = solver.solve()
    assert result is not initial
    assert np.allclose(result.values, 0.0)
    assert factory.live_count == 2

    with pytest.raises(SolverFailure):
        solver.set_times(1.0, 1.0)
    with pytest.raises(ValueError):
        solver.set_boundary_conditions_container(BoundaryConditionsContainer(2))


def test_solver_reports_non_finite_state() -> None:
    mesh = Mesh.construct_regular_slab_mesh(0.5, 1.0)
    tissue = _tissue(mesh, factory=ExplodingFactory())
    solver = MonodomainSolver(tissue, BoundaryConditionsContainer(1), MONODOMAIN_SHAPE)
    solver.set_times(0.0, 0.1)
    solver.set_initial_condition(mesh.get_distributed_vector_factory().create_vec(1))
    solver.set_time_adaptivity_controller(FixedTimeAdaptivityController(0.05))
    with pytest.raises(SolverFailure, match="non-finite"):
        solver.solve()


def test_solver_rejects_mismatched_initial_condition() -> None:
    mesh = Mesh.construct_regular_slab_mesh(0.5, 1.0)
    solver = MonodomainSolver(_tissue(mesh), BoundaryConditionsContainer(1), MONODOMAIN_SHAPE)
    solver.set_times(0.0, 0.1)
    solver.set_time_step(0.1)
    solver.set_initial_condition(mesh.get_distributed_vector_factory().create_vec(BIDOMAIN_SHAPE.problem_dim))
    with pytest.raises(SolverFailure, match="unknowns per node"):
        solver.solve()
