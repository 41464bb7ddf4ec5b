from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from enum import Enum

from .errors import ConfigurationError


VISUALIZERS = {"meshalyzer", "cmgui", "vtk", "traces"}
DEFAULT_BATH_IDENTIFIERS = (1,)
TIME_STEP_TOLERANCE = 1e-10
_CELL_INDEX_MARKER = "__IDX__"
_VARIABLE_NAME = re.compile(r"^[A-Za-z0-9_]+$")


def is_region_bath(region: int, bath_identifiers: tuple[int, ...] = DEFAULT_BATH_IDENTIFIERS) -> bool:
    return int(region) in bath_identifiers


def divides(step: float, interval: float, tolerance: float = TIME_STEP_TOLERANCE) -> bool:
    """True when *interval* is a whole multiple of *step* to within *tolerance*."""
    return abs(interval - step * round(interval / step)) <= tolerance


def split_output_variable(name: str) -> tuple[str, int]:
    """Split ``Var__IDX__n`` into ``("Var", n)``; plain names select cell 0."""
    head, marker, tail = name.partition(_CELL_INDEX_MARKER)
    if not marker:
        return name, 0
    try:
        cell_index = int(tail)
    except ValueError as exc:
        raise ConfigurationError(f"Output variable '{name}' has a malformed cell index suffix.") from exc
    if cell_index not in (0, 1, 2):
        raise ConfigurationError(f"Output variable '{name}' selects cell {cell_index}; only 0, 1 and 2 exist.")
    return head, cell_index


class ProblemState(str, Enum):
    UNINITIALISED = "uninitialised"
    INITIALISED = "initialised"
    SOLVING = "solving"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ProblemShape:
    unknowns: tuple[str, ...] = ("V",)
    units: tuple[str, ...] = ("mV",)

    def __post_init__(self) -> None:
        if not self.unknowns:
            raise ConfigurationError("A problem needs at least one unknown.")
        if len(self.units) != len(self.unknowns):
            raise ConfigurationError("Every unknown needs a unit.")

    @property
    def problem_dim(self) -> int:
        return len(self.unknowns)


MONODOMAIN_SHAPE = ProblemShape(("V",), ("mV",))
BIDOMAIN_SHAPE = ProblemShape(("V", "Phi_e"), ("mV", "mV"))


@dataclass(frozen=True)
class SlabMeshSpec:
    inter_node_space: float              # cm
    dimensions: tuple[float, ...]        # cm, one entry per space dimension

    def __post_init__(self) -> None:
        object.__setattr__(self, "dimensions", tuple(float(v) for v in self.dimensions))
        if self.inter_node_space <= 0:
            raise ConfigurationError("inter_node_space must be positive.")
        if not 1 <= len(self.dimensions) <= 3:
            raise ConfigurationError("A slab mesh has between one and three dimensions.")
        if any(v <= 0 for v in self.dimensions):
            raise ConfigurationError("Slab dimensions must be positive.")


@dataclass(frozen=True)
class ApdMapSpec:
    percentage: float
    threshold: float

    def __post_init__(self) -> None:
        if not 0.0 < self.percentage < 100.0:
            raise ConfigurationError("APD percentage must lie strictly between 0 and 100.")


@dataclass(frozen=True)
class PostProcessingSpec:
    upstroke_time_thresholds: tuple[float, ...] = ()
    max_upstroke_velocity_thresholds: tuple[float, ...] = ()
    apd_maps: tuple[ApdMapSpec, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "upstroke_time_thresholds", tuple(float(v) for v in self.upstroke_time_thresholds))
        object.__setattr__(
            self, "max_upstroke_velocity_thresholds", tuple(float(v) for v in self.max_upstroke_velocity_thresholds)
        )
        object.__setattr__(self, "apd_maps", tuple(self.apd_maps))

    @property
    def requested(self) -> bool:
        return bool(self.upstroke_time_thresholds or self.max_upstroke_velocity_thresholds or self.apd_maps)


@dataclass(frozen=True)
class ProblemConfig:
    simulation_duration: float           # ms
    pde_time_step: float = 0.01          # ms
    ode_time_step: float = 0.01          # ms
    printing_time_step: float = 0.01     # ms
    output_directory: str = ""
    output_filename_prefix: str = ""
    output_variables: tuple[str, ...] = ()
    # --- mesh source (file wins over slab) ---
    mesh_file: str = ""
    slab_mesh: SlabMeshSpec | None = None
    # --- tissue parameters ---
    intracellular_conductivity: float = 1.75     # mS/cm
    extracellular_conductivity: float = 7.0      # mS/cm
    bath_conductivity: float = 7.0               # mS/cm
    surface_area_to_volume_ratio: float = 1400.0  # 1/cm
    capacitance: float = 1.0                     # uF/cm^2
    bath_identifiers: tuple[int, ...] = DEFAULT_BATH_IDENTIFIERS
    # --- output and post-processing ---
    visualizers: tuple[str, ...] = ()
    visualizer_output_precision: int = 0
    output_using_original_node_ordering: bool = False
    postprocessing: PostProcessingSpec = field(default_factory=PostProcessingSpec)
    transmural_heterogeneities: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "output_variables", tuple(str(v) for v in self.output_variables))
        object.__setattr__(self, "bath_identifiers", tuple(int(v) for v in self.bath_identifiers))
        object.__setattr__(self, "visualizers", tuple(str(v).strip().lower() for v in self.visualizers))
        if self.simulation_duration < 0 or not math.isfinite(self.simulation_duration):
            raise ConfigurationError("simulation_duration must be a non-negative finite number.")
        if self.pde_time_step <= 0:
            raise ConfigurationError("pde_time_step must be positive.")
        if self.ode_time_step <= 0:
            raise ConfigurationError("ode_time_step must be positive.")
        if self.printing_time_step <= 0:
            raise ConfigurationError("printing_time_step must be positive.")
        if self.ode_time_step > self.pde_time_step + TIME_STEP_TOLERANCE:
            raise ConfigurationError("ode_time_step must not exceed pde_time_step.")
        if not divides(self.pde_time_step, self.printing_time_step):
            raise ConfigurationError("printing_time_step should be a multiple of pde_time_step.")
        if self.capacitance <= 0 or self.surface_area_to_volume_ratio <= 0:
            raise ConfigurationError("capacitance and surface_area_to_volume_ratio must be positive.")
        if self.intracellular_conductivity < 0 or self.extracellular_conductivity < 0 or self.bath_conductivity < 0:
            raise ConfigurationError("Conductivities must be non-negative.")
        if self.visualizer_output_precision < 0:
            raise ConfigurationError("visualizer_output_precision must be non-negative.")
        unknown = sorted(set(self.visualizers) - VISUALIZERS)
        if unknown:
            allowed = ", ".join(sorted(VISUALIZERS))
            raise ConfigurationError(f"Unsupported visualizer(s) {unknown}. Supported values: {allowed}.")
        for name in self.output_variables:
            base, _ = split_output_variable(name)
            if not _VARIABLE_NAME.match(base):
                raise ConfigurationError(f"Output variable name '{name}' is not allowed.")

    @property
    def load_mesh(self) -> bool:
        return bool(self.mesh_file)

    @property
    def create_mesh(self) -> bool:
        return self.slab_mesh is not None

    @property
    def output_requested(self) -> bool:
        return bool(self.output_directory) and bool(self.output_filename_prefix)
