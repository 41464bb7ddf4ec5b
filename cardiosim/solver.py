from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import numpy as np
from scipy import sparse
from scipy.sparse import linalg as spla

from .boundary import BoundaryConditionsContainer
from .errors import SolverFailure
from .models import ProblemShape
from .tissue import CardiacTissue
from .vectors import FieldVector


logger = logging.getLogger(__name__)

_TIME_TOLERANCE = 1e-10


class TimeAdaptivityController(ABC):
    def __init__(self, min_dt: float, max_dt: float) -> None:
        if min_dt <= 0 or max_dt < min_dt:
            raise ValueError("Need 0 < min_dt <= max_dt.")
        self.min_dt = float(min_dt)
        self.max_dt = float(max_dt)

    @abstractmethod
    def _compute_time_step(self, time: float, solution: np.ndarray) -> float: ...

    def get_next_time_step(self, time: float, solution: np.ndarray) -> float:
        dt = float(self._compute_time_step(time, solution))
        return min(max(dt, self.min_dt), self.max_dt)


class FixedTimeAdaptivityController(TimeAdaptivityController):
    def __init__(self, dt: float) -> None:
        super().__init__(dt, dt)
        self.dt = float(dt)

    def _compute_time_step(self, time: float, solution: np.ndarray) -> float:
        return self.dt


class AbstractCardiacSolver(ABC):
    """Advances the stacked field from ``t0`` to ``t1`` in one collective call."""

    def __init__(
        self,
        tissue: CardiacTissue,
        boundary_conditions: BoundaryConditionsContainer,
        shape: ProblemShape,
    ) -> None:
        self.tissue = tissue
        self.mesh = tissue.mesh
        self.factory = self.mesh.get_distributed_vector_factory()
        self.shape = shape
        self._bcc = boundary_conditions
        self._t0: float | None = None
        self._t1: float | None = None
        self._dt: float | None = None
        self._initial_condition: FieldVector | None = None
        self._controller: TimeAdaptivityController | None = None
        self._lu_cache: dict[float, spla.SuperLU] = {}

    @property
    def boundary_conditions_container(self) -> BoundaryConditionsContainer:
        return self._bcc

    def set_boundary_conditions_container(self, bcc: BoundaryConditionsContainer) -> None:
        if bcc.problem_dim != self.shape.problem_dim:
            raise ValueError("Boundary conditions do not match the problem dimension.")
        self._bcc = bcc

    def set_times(self, t0: float, t1: float) -> None:
        if not t1 > t0:
            raise SolverFailure(f"Solver end time {t1} must be after start time {t0}.")
        self._t0 = float(t0)
        self._t1 = float(t1)

    def set_initial_condition(self, initial_condition: FieldVector) -> None:
        self._initial_condition = initial_condition

    def set_time_step(self, dt: float) -> None:
        if dt <= 0:
            raise ValueError("Time step must be positive.")
        self._dt = float(dt)

    def set_time_adaptivity_controller(self, controller: TimeAdaptivityController | None) -> None:
        self._controller = controller

    def solve(self) -> FieldVector:
        if self._initial_condition is None:
            raise SolverFailure("No initial condition has been set on the solver.")
        if self._t0 is None or self._t1 is None:
            raise SolverFailure("Solver times have not been set.")
        if self._dt is None and self._controller is None:
            raise SolverFailure("Solver time step has not been set.")
        dim = self.shape.problem_dim
        if self._initial_condition.stride != dim:
            raise SolverFailure(
                f"Initial condition has {self._initial_condition.stride} unknowns per node; expected {dim}."
            )

        state = self.factory.gather(self._initial_condition).reshape(-1, dim)
        t = self._t0
        tolerance = _TIME_TOLERANCE * max(1.0, abs(self._t1))
        while t < self._t1 - tolerance:
            if self._controller is not None:
                dt = self._controller.get_next_time_step(t, state)
            else:
                dt = self._dt
            dt = min(dt, self._t1 - t)
            state = self._advance(state, t, dt)
            if not np.all(np.isfinite(state)):
                raise SolverFailure(f"Solution became non-finite at t={t + dt:g}.")
            t += dt

        result = self.factory.create_vec(dim)
        result.values[:] = state[self.factory.low : self.factory.high].ravel()
        return result

    def _factorized(self, key: float, build) -> spla.SuperLU:
        cache_key = round(key, 12)
        lu = self._lu_cache.get(cache_key)
        if lu is None:
            lu = spla.splu(sparse.csc_matrix(build()))
            self._lu_cache[cache_key] = lu
        return lu

    def _cell_step(self, voltages: np.ndarray, t: float, dt: float) -> np.ndarray:
        low, high = self.factory.low, self.factory.high
        local = self.tissue.solve_cell_systems(voltages[low:high], t, t + dt)
        return self.factory.gather_local(local)

    def _voltage_operator(self, dt: float) -> spla.SuperLU:
        scale = self.tissue.chi_cm / dt

        def build():
            return sparse.diags(scale * self.tissue.lumped_mass) + self.tissue.intracellular_stiffness

        return self._factorized(dt, build)

    @abstractmethod
    def _advance(self, state: np.ndarray, t: float, dt: float) -> np.ndarray:
        """Return the global ``(nodes, problem_dim)`` state at ``t + dt``."""


class MonodomainSolver(AbstractCardiacSolver):
    def _advance(self, state: np.ndarray, t: float, dt: float) -> np.ndarray:
        v_star = self._cell_step(state[:, 0], t, dt)
        scale = self.tissue.chi_cm / dt
        rhs = scale * self.tissue.lumped_mass * v_star
        rhs += self._bcc.neumann_source(self.mesh.num_nodes, 0)
        v_new = self._voltage_operator(dt).solve(rhs)
        return v_new[:, None]


class BidomainSolver(AbstractCardiacSolver):
    """Decoupled bidomain step; the extracellular potential is pinned to zero at node 0."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._elliptic: spla.SuperLU | None = None

    def _elliptic_operator(self) -> spla.SuperLU:
        if self._elliptic is None:
            matrix = (self.tissue.intracellular_stiffness + self.tissue.extracellular_stiffness).tolil()
            matrix[0, :] = 0.0
            matrix[0, 0] = 1.0
            self._elliptic = spla.splu(sparse.csc_matrix(matrix))
        return self._elliptic

    def _advance(self, state: np.ndarray, t: float, dt: float) -> np.ndarray:
        n = self.mesh.num_nodes
        k_i = self.tissue.intracellular_stiffness
        v_star = self._cell_step(state[:, 0], t, dt)
        scale = self.tissue.chi_cm / dt
        rhs = scale * self.tissue.lumped_mass * v_star - k_i @ state[:, 1]
        rhs += self._bcc.neumann_source(n, 0)
        v_new = self._voltage_operator(dt).solve(rhs)

        rhs_e = -(k_i @ v_new) + self._bcc.neumann_source(n, 1)
        rhs_e[0] = 0.0
        phi_new = self._elliptic_operator().solve(rhs_e)
        return np.column_stack([v_new, phi_new])
