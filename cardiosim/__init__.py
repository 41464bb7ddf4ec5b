"""Cardiac electrophysiology problem orchestration."""

from .boundary import BoundaryConditionsContainer, Electrodes
from .cells import FitzHughNagumoCell, PlaneStimulusCellFactory
from .checkpoint import CheckpointReader, CheckpointWriter
from .errors import CardioSimError, CheckpointIOError, ConfigurationError, ResumeConflict, SolverFailure
from .mesh import Mesh
from .models import ProblemConfig, ProblemState
from .problem import CardiacProblem
from .time_stepper import TimeStepper
from .variants import BidomainVariant, BidomainWithBathVariant, MonodomainVariant

__all__ = [
    "BidomainVariant",
    "BidomainWithBathVariant",
    "BoundaryConditionsContainer",
    "CardiacProblem",
    "CardioSimError",
    "CheckpointIOError",
    "CheckpointReader",
    "CheckpointWriter",
    "ConfigurationError",
    "Electrodes",
    "FitzHughNagumoCell",
    "Mesh",
    "MonodomainVariant",
    "PlaneStimulusCellFactory",
    "ProblemConfig",
    "ProblemState",
    "ResumeConflict",
    "SolverFailure",
    "TimeStepper",
]

__version__ = "0.1.0"
