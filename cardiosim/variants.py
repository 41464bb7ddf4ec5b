from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from .boundary import BoundaryConditionsContainer, Electrodes
from .cells import AbstractCardiacCellFactory
from .mesh import Mesh
from .models import BIDOMAIN_SHAPE, MONODOMAIN_SHAPE, ProblemConfig, ProblemShape
from .solver import AbstractCardiacSolver, BidomainSolver, MonodomainSolver
from .tissue import CardiacTissue

if TYPE_CHECKING:
    from .problem import CardiacProblem


logger = logging.getLogger(__name__)


class ProblemVariant(ABC):
    """What differs between monodomain, bidomain and bidomain-with-bath problems."""

    shape: ProblemShape = MONODOMAIN_SHAPE
    has_bath = False

    def create_tissue(
        self,
        cell_factory: AbstractCardiacCellFactory,
        mesh: Mesh,
        config: ProblemConfig,
    ) -> CardiacTissue:
        return CardiacTissue(cell_factory, mesh, config, has_bath=self.has_bath)

    @abstractmethod
    def create_solver(
        self,
        tissue: CardiacTissue,
        boundary_conditions: BoundaryConditionsContainer,
        config: ProblemConfig,
    ) -> AbstractCardiacSolver: ...

    def set_up_additional_stopping_times(self) -> list[float]:
        return []

    def set_electrodes(self, mesh: Mesh) -> None:
        return None

    def at_beginning_of_timestep(self, problem: "CardiacProblem", time: float) -> None:
        return None

    def on_end_of_timestep(self, problem: "CardiacProblem", time: float) -> None:
        return None


class MonodomainVariant(ProblemVariant):
    shape = MONODOMAIN_SHAPE

    def create_solver(self, tissue, boundary_conditions, config):
        return MonodomainSolver(tissue, boundary_conditions, self.shape)


class BidomainVariant(ProblemVariant):
    shape = BIDOMAIN_SHAPE

    def create_solver(self, tissue, boundary_conditions, config):
        return BidomainSolver(tissue, boundary_conditions, self.shape)


class BidomainWithBathVariant(BidomainVariant):
    """Bidomain with bath regions and optional extracellular electrodes.

    While the electrodes are on, the solver uses their boundary conditions;
    the problem's own container is put back when they switch off.
    """

    has_bath = True

    def __init__(self, electrodes: Electrodes | None = None) -> None:
        self.electrodes = electrodes

    def set_electrodes(self, mesh: Mesh) -> None:
        if self.electrodes is not None:
            self.electrodes.build_container(mesh, self.shape.problem_dim)

    def set_up_additional_stopping_times(self) -> list[float]:
        if self.electrodes is None:
            return []
        return [self.electrodes.switch_on_time, self.electrodes.switch_off_time]

    def at_beginning_of_timestep(self, problem: "CardiacProblem", time: float) -> None:
        if self.electrodes is not None and self.electrodes.switch_on(time):
            problem.solver.set_boundary_conditions_container(self.electrodes.get_boundary_conditions_container())

    def on_end_of_timestep(self, problem: "CardiacProblem", time: float) -> None:
        if self.electrodes is not None and self.electrodes.switch_off(time):
            problem.solver.set_boundary_conditions_container(problem.get_boundary_conditions_container())
