from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path

import numpy as np

from .paths import resolve_output_dir
from .vectors import DistributedVectorFactory, FieldVector


logger = logging.getLogger(__name__)


class AbstractOutputModifier(ABC):
    """Per-step hook notified with every committed solution."""

    def __init__(self, filename: str, directory: str | Path = "") -> None:
        self.filename = filename
        self.directory = directory
        self.factory: DistributedVectorFactory | None = None

    @property
    def path(self) -> Path:
        return resolve_output_dir(self.directory) / self.filename

    @abstractmethod
    def initialise_at_start(self, factory: DistributedVectorFactory) -> None: ...

    @abstractmethod
    def process_solution_at_timestep(self, time: float, solution: FieldVector, problem_dim: int) -> None: ...

    @abstractmethod
    def finalise_at_end(self) -> None: ...


class SingleTraceOutputModifier(AbstractOutputModifier):
    """Writes ``time<TAB>V`` for one global node; only its owner touches the file."""

    def __init__(self, filename: str, global_index: int, directory: str | Path = "") -> None:
        super().__init__(filename, directory)
        self.global_index = int(global_index)
        self._handle = None

    def initialise_at_start(self, factory: DistributedVectorFactory) -> None:
        if not 0 <= self.global_index < factory.problem_size:
            raise IndexError(f"Trace node {self.global_index} is not in the mesh.")
        self.factory = factory
        if factory.is_global_index_local(self.global_index):
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = self.path.open("w", encoding="utf-8")

    def process_solution_at_timestep(self, time: float, solution: FieldVector, problem_dim: int) -> None:
        if self._handle is None:
            return
        local = self.global_index - self.factory.low
        value = solution.values[local * problem_dim]
        self._handle.write(f"{time:.12g}\t{value:.12g}\n")

    def finalise_at_end(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None


class ActivationOutputModifier(AbstractOutputModifier):
    """First activation and first recovery time per node, -1 when never seen."""

    def __init__(self, filename: str, threshold: float, directory: str | Path = "") -> None:
        super().__init__(filename, directory)
        self.threshold = float(threshold)
        self.first_activation: np.ndarray | None = None
        self.first_recovery: np.ndarray | None = None

    def initialise_at_start(self, factory: DistributedVectorFactory) -> None:
        self.factory = factory
        self.first_activation = np.full(factory.local_size, -1.0)
        self.first_recovery = np.full(factory.local_size, -1.0)

    def process_solution_at_timestep(self, time: float, solution: FieldVector, problem_dim: int) -> None:
        voltage = solution.stripe(0) if problem_dim > 1 else solution.values
        above = voltage > self.threshold
        newly_active = above & (self.first_activation < 0)
        self.first_activation[newly_active] = time
        newly_recovered = ~above & (self.first_activation >= 0) & (self.first_recovery < 0)
        self.first_recovery[newly_recovered] = time

    def finalise_at_end(self) -> None:
        activation = self.factory.gather_to_master(self.first_activation)
        recovery = self.factory.gather_to_master(self.first_recovery)
        if activation is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as f:
            for node, (act, rec) in enumerate(zip(activation, recovery)):
                f.write(f"{node}\t{act:.12g}\t{rec:.12g}\n")
        logger.debug("Wrote activation times for %d nodes to %s", activation.size, self.path)
