from __future__ import annotations

import math
from abc import ABC, abstractmethod

import numpy as np

from .errors import ConfigurationError
from .mesh import Mesh
from .models import DEFAULT_BATH_IDENTIFIERS


class ZeroStimulus:
    def current(self, time: float) -> float:
        return 0.0


class SimpleStimulus:
    """Square pulse of *magnitude* for *duration* from *start*, optionally repeated every *period*."""

    def __init__(self, magnitude: float, duration: float, start: float = 0.0, period: float | None = None) -> None:
        if duration < 0:
            raise ValueError("Stimulus duration must be non-negative.")
        if period is not None and period <= duration:
            raise ValueError("Stimulus period must exceed its duration.")
        self.magnitude = float(magnitude)
        self.duration = float(duration)
        self.start = float(start)
        self.period = period

    def current(self, time: float) -> float:
        offset = time - self.start
        if offset < 0:
            return 0.0
        if self.period is not None:
            offset = math.fmod(offset, self.period)
        # Small tolerance so a pulse ending on a step boundary is not cut short.
        return self.magnitude if offset <= self.duration + 1e-12 else 0.0


class AbstractCardiacCell(ABC):
    state_variable_names: tuple[str, ...] = ()
    voltage_index = 0

    def __init__(self, stimulus=None, ode_time_step: float = 0.01) -> None:
        if ode_time_step <= 0:
            raise ValueError("ode_time_step must be positive.")
        self.stimulus = stimulus or ZeroStimulus()
        self.ode_time_step = float(ode_time_step)
        self.state = np.array(self.initial_state(), dtype=float)

    @abstractmethod
    def initial_state(self) -> list[float]: ...

    @abstractmethod
    def evaluate_derivatives(self, time: float, y: np.ndarray) -> np.ndarray: ...

    @abstractmethod
    def get_ionic_current(self, y: np.ndarray | None = None) -> float: ...

    def get_voltage(self) -> float:
        return float(self.state[self.voltage_index])

    def set_voltage(self, value: float) -> None:
        self.state[self.voltage_index] = float(value)

    def get_any_variable(self, name: str, time: float = 0.0) -> float:
        if name in self.state_variable_names:
            return float(self.state[self.state_variable_names.index(name)])
        if name == "I_ion":
            return self.get_ionic_current()
        if name == "I_stim":
            return float(self.stimulus.current(time))
        raise ValueError(f"Cell model {type(self).__name__} has no variable named '{name}'.")

    def solve_and_update_state(self, t0: float, t1: float) -> None:
        """Forward Euler from *t0* to *t1* in steps of at most ``ode_time_step``."""
        if t1 < t0:
            raise ValueError("End time must not precede start time.")
        n_steps = max(1, int(math.ceil((t1 - t0) / self.ode_time_step - 1e-9)))
        dt = (t1 - t0) / n_steps
        y = self.state
        t = t0
        for _ in range(n_steps):
            y = y + dt * self.evaluate_derivatives(t, y)
            t += dt
        self.state = y


class FitzHughNagumoCell(AbstractCardiacCell):
    """FitzHugh-Nagumo (1961) excitable cell, dimensionless voltage."""

    state_variable_names = ("V", "w")

    def __init__(
        self,
        stimulus=None,
        ode_time_step: float = 0.01,
        alpha: float = -0.08,
        gamma: float = 3.0,
        epsilon: float = 0.005,
    ) -> None:
        self.alpha = alpha
        self.gamma = gamma
        self.epsilon = epsilon
        super().__init__(stimulus=stimulus, ode_time_step=ode_time_step)

    def initial_state(self) -> list[float]:
        return [0.0, 0.0]

    def get_ionic_current(self, y: np.ndarray | None = None) -> float:
        v, w = self.state if y is None else y
        return float(-(v * (v - self.alpha) * (1.0 - v) - w))

    def evaluate_derivatives(self, time: float, y: np.ndarray) -> np.ndarray:
        v, w = y
        dv = v * (v - self.alpha) * (1.0 - v) - w + self.stimulus.current(time)
        dw = self.epsilon * (v - self.gamma * w)
        return np.array([dv, dw], dtype=float)


class BathCell(AbstractCardiacCell):
    """Placeholder for bath nodes: no state dynamics, voltage pinned at zero."""

    state_variable_names = ("V",)

    def initial_state(self) -> list[float]:
        return [0.0]

    def get_ionic_current(self, y: np.ndarray | None = None) -> float:
        return 0.0

    def evaluate_derivatives(self, time: float, y: np.ndarray) -> np.ndarray:
        return np.zeros_like(y)

    def solve_and_update_state(self, t0: float, t1: float) -> None:
        return None


class AbstractCardiacCellFactory(ABC):
    def __init__(self, ode_time_step: float = 0.01) -> None:
        self.ode_time_step = ode_time_step
        self._mesh: Mesh | None = None

    def set_mesh(self, mesh: Mesh) -> None:
        self._mesh = mesh

    def get_mesh(self) -> Mesh:
        if self._mesh is None:
            raise ConfigurationError("The cell factory has no mesh; call set_mesh() first.")
        return self._mesh

    @abstractmethod
    def create_cardiac_cell_for_tissue_node(self, node_index: int) -> AbstractCardiacCell: ...

    def create_cardiac_cell2(self, node_index: int) -> AbstractCardiacCell | None:
        return None

    def create_cardiac_cell3(self, node_index: int) -> AbstractCardiacCell | None:
        return None

    def create_cell_for_node(
        self,
        node_index: int,
        bath_identifiers: tuple[int, ...] = DEFAULT_BATH_IDENTIFIERS,
    ) -> AbstractCardiacCell:
        if self.get_mesh().is_node_in_bath(node_index, bath_identifiers):
            return BathCell(ode_time_step=self.ode_time_step)
        return self.create_cardiac_cell_for_tissue_node(node_index)

    def fill_in_cellular_transmural_areas(self) -> None:
        raise ConfigurationError(
            f"{type(self).__name__} does not support cellular transmural heterogeneities."
        )


class PlaneStimulusCellFactory(AbstractCardiacCellFactory):
    """FitzHugh-Nagumo cells; nodes with x <= ``stimulus_plane`` receive a stimulus."""

    def __init__(
        self,
        stimulus_magnitude: float = 1.0,
        stimulus_duration: float = 0.5,
        stimulus_start: float = 0.0,
        stimulus_plane: float = 0.0,
        ode_time_step: float = 0.01,
    ) -> None:
        super().__init__(ode_time_step=ode_time_step)
        self.stimulus = SimpleStimulus(stimulus_magnitude, stimulus_duration, stimulus_start)
        self.stimulus_plane = stimulus_plane

    def create_cardiac_cell_for_tissue_node(self, node_index: int) -> AbstractCardiacCell:
        x = self.get_mesh().nodes[node_index, 0]
        stimulus = self.stimulus if x <= self.stimulus_plane + 1e-12 else ZeroStimulus()
        return FitzHughNagumoCell(stimulus=stimulus, ode_time_step=self.ode_time_step)
