from __future__ import annotations

import logging

import numpy as np

from .mesh import Mesh


logger = logging.getLogger(__name__)


class BoundaryConditionsContainer:
    """Neumann conditions per unknown, stored as nodal currents.

    A container is shared by reference between the problem and the solver it
    is handed to; replacing the problem's container does not copy it.
    """

    def __init__(self, problem_dim: int) -> None:
        if problem_dim < 1:
            raise ValueError("problem_dim must be >= 1.")
        self.problem_dim = problem_dim
        self._neumann: list[dict[int, float]] = [{} for _ in range(problem_dim)]

    @classmethod
    def zero_neumann(cls, mesh: Mesh, problem_dim: int) -> "BoundaryConditionsContainer":
        bcc = cls(problem_dim)
        for index in range(problem_dim):
            bcc.define_zero_neumann_on_mesh_boundary(mesh, index)
        return bcc

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self.problem_dim:
            raise IndexError(f"Unknown index {index} out of range for problem dimension {self.problem_dim}.")

    def define_zero_neumann_on_mesh_boundary(self, mesh: Mesh, index: int = 0) -> None:
        self._check_index(index)
        for node in mesh.boundary_nodes():
            self._neumann[index][int(node)] = 0.0

    def add_neumann_boundary_condition(self, node: int, value: float, index: int = 0) -> None:
        self._check_index(index)
        self._neumann[index][int(node)] = self._neumann[index].get(int(node), 0.0) + float(value)

    def is_defined(self, index: int = 0) -> bool:
        self._check_index(index)
        return bool(self._neumann[index])

    def any_nonzero_neumann(self, index: int = 0) -> bool:
        self._check_index(index)
        return any(v != 0.0 for v in self._neumann[index].values())

    def neumann_source(self, num_nodes: int, index: int = 0) -> np.ndarray:
        self._check_index(index)
        source = np.zeros(num_nodes, dtype=float)
        for node, value in self._neumann[index].items():
            source[node] += value
        return source


class Electrodes:
    """A pair of extracellular electrodes on opposite faces along *axis*.

    Total current *magnitude* enters through the face at the minimum
    coordinate and, unless *grounded*, leaves through the face at the maximum.
    """

    def __init__(
        self,
        magnitude: float,
        start_time: float,
        duration: float,
        axis: int = 0,
        grounded: bool = False,
    ) -> None:
        if duration <= 0:
            raise ValueError("Electrode duration must be positive.")
        self.magnitude = float(magnitude)
        self.start_time = float(start_time)
        self.duration = float(duration)
        self.axis = int(axis)
        self.grounded = grounded
        self._switched_on = False
        self._container: BoundaryConditionsContainer | None = None

    @property
    def switch_on_time(self) -> float:
        return self.start_time

    @property
    def switch_off_time(self) -> float:
        return self.start_time + self.duration

    @property
    def is_on(self) -> bool:
        return self._switched_on

    def build_container(self, mesh: Mesh, problem_dim: int) -> BoundaryConditionsContainer:
        if problem_dim < 2:
            raise ValueError("Electrodes need an extracellular unknown (problem_dim >= 2).")
        if not 0 <= self.axis < mesh.space_dimension:
            raise ValueError(f"Electrode axis {self.axis} out of range for a {mesh.space_dimension}-D mesh.")
        bcc = BoundaryConditionsContainer.zero_neumann(mesh, problem_dim)
        coords = mesh.nodes[:, self.axis]
        tolerance = 1e-10 * max(1.0, float(np.ptp(coords)))
        low_face = np.flatnonzero(coords <= coords.min() + tolerance)
        high_face = np.flatnonzero(coords >= coords.max() - tolerance)
        for node in low_face:
            bcc.add_neumann_boundary_condition(int(node), self.magnitude / low_face.size, index=1)
        if not self.grounded:
            for node in high_face:
                bcc.add_neumann_boundary_condition(int(node), -self.magnitude / high_face.size, index=1)
        self._container = bcc
        return bcc

    def get_boundary_conditions_container(self) -> BoundaryConditionsContainer:
        if self._container is None:
            raise RuntimeError("Electrodes have no boundary conditions yet; call build_container() first.")
        return self._container

    def switch_on(self, time: float, tolerance: float = 1e-10) -> bool:
        """Return True exactly once, when *time* first reaches the on-window."""
        if not self._switched_on and self.switch_on_time - tolerance <= time < self.switch_off_time - tolerance:
            self._switched_on = True
            logger.info("Electrodes switched on at t=%g", time)
            return True
        return False

    def switch_off(self, time: float, tolerance: float = 1e-10) -> bool:
        if self._switched_on and time >= self.switch_off_time - tolerance:
            self._switched_on = False
            logger.info("Electrodes switched off at t=%g", time)
            return True
        return False
