"""Derived maps and visualizer conversion of finished checkpoint files.

All work happens on rank 0; the other ranks wait at a barrier.  Every file is
rewritten from scratch, so running the same step twice on an unchanged
checkpoint gives identical output.
"""
from __future__ import annotations

import logging
from pathlib import Path

import meshio
import numpy as np
from matplotlib.figure import Figure

from .checkpoint import CheckpointReader
from .errors import CheckpointIOError
from .mesh import Mesh
from .models import PostProcessingSpec, ProblemConfig
from .parallel import ProcessGroup, default_group
from .paths import resolve_output_dir
from .storage import write_config_copy


logger = logging.getLogger(__name__)

MESHALYZER_SUBDIR = "output"
CMGUI_SUBDIR = "cmgui_output"
VTK_SUBDIR = "vtk_output"
TRACES_SUBDIR = "traces_output"
MAPS_SUBDIR = "output"

_MESHALYZER_ELEMENT_SUFFIX = {1: ".cnnx", 2: ".tri", 3: ".tetras"}
_CMGUI_SHAPE = {1: "line", 2: "simplex(2)*simplex", 3: "simplex(2;3)*simplex*simplex"}
_MAX_TRACES = 5


def _fmt(value: float, precision: int = 0) -> str:
    if precision:
        return f"{float(value):.{precision}g}"
    return repr(float(value))


def _threshold_label(value: float) -> str:
    return f"{float(value):g}"


def _upward_crossings(times: np.ndarray, values: np.ndarray, threshold: float) -> list[tuple[int, float]]:
    """(index of first row at or above *threshold*, interpolated crossing time)."""
    crossings = []
    for i in range(1, values.size):
        if values[i - 1] < threshold <= values[i]:
            frac = (threshold - values[i - 1]) / (values[i] - values[i - 1])
            crossings.append((i, float(times[i - 1] + frac * (times[i] - times[i - 1]))))
    return crossings


def _downward_crossing(times: np.ndarray, values: np.ndarray, level: float, start: int) -> tuple[int, float] | None:
    for i in range(max(start, 1), values.size):
        if values[i - 1] >= level > values[i]:
            frac = (values[i - 1] - level) / (values[i - 1] - values[i])
            return i, float(times[i - 1] + frac * (times[i] - times[i - 1]))
    return None


def _beats(times: np.ndarray, values: np.ndarray, threshold: float) -> list[tuple[int, int, float]]:
    """Split a trace into beats: (upstroke row, end row exclusive, upstroke time)."""
    beats = []
    for index, crossing_time in _upward_crossings(times, values, threshold):
        down = _downward_crossing(times, values, threshold, index)
        end = values.size if down is None else down[0]
        beats.append((index, end, crossing_time))
    return beats


def upstroke_times(times: np.ndarray, values: np.ndarray, threshold: float) -> list[float]:
    return [t for _, t in _upward_crossings(times, values, threshold)]


def max_upstroke_velocities(times: np.ndarray, values: np.ndarray, threshold: float) -> list[float]:
    if values.size < 2:
        return []
    velocity = np.diff(values) / np.diff(times)
    result = []
    for start, end, _ in _beats(times, values, threshold):
        result.append(float(np.max(velocity[start - 1 : end - 1])))
    return result


def action_potential_durations(
    times: np.ndarray,
    values: np.ndarray,
    percentage: float,
    threshold: float,
) -> list[float]:
    """APD at *percentage* repolarisation for every complete beat."""
    durations = []
    previous_end = 0
    for start, end, upstroke_time in _beats(times, values, threshold):
        rest = float(np.min(values[previous_end:start]))
        peak_row = start + int(np.argmax(values[start:end]))
        peak = float(values[peak_row])
        level = peak - percentage / 100.0 * (peak - rest)
        crossing = _downward_crossing(times, values, level, peak_row + 1)
        previous_end = end
        if crossing is None:
            continue
        durations.append(crossing[1] - upstroke_time)
    return durations


class PostProcessingWriter:
    """Writes per-node upstroke, velocity and APD maps from the voltage history."""

    def __init__(
        self,
        mesh: Mesh,
        directory: str | Path,
        prefix: str,
        spec: PostProcessingSpec,
        voltage_name: str = "V",
        precision: int = 0,
    ) -> None:
        self.mesh = mesh
        self.directory = resolve_output_dir(directory)
        self.prefix = prefix
        self.spec = spec
        self.voltage_name = voltage_name
        self.precision = precision

    def _write_map(self, filename: str, per_node: list[list[float]]) -> Path:
        path = self.directory / MAPS_SUBDIR / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            for values in per_node:
                f.write(" ".join(_fmt(v, self.precision) for v in values) + "\n")
        return path

    def write_post_processing_files(self) -> list[Path]:
        with CheckpointReader(self.directory, self.prefix) as reader:
            times = reader.get_unlimited_dimension_values()
            history = reader.get_variable_history(self.voltage_name)
        traces = [history[:, node] for node in range(history.shape[1])]
        written = []
        for threshold in self.spec.upstroke_time_thresholds:
            written.append(
                self._write_map(
                    f"UpstrokeTimeMap_{_threshold_label(threshold)}.dat",
                    [upstroke_times(times, trace, threshold) for trace in traces],
                )
            )
        for threshold in self.spec.max_upstroke_velocity_thresholds:
            written.append(
                self._write_map(
                    f"MaxUpstrokeVelocityMap_{_threshold_label(threshold)}.dat",
                    [max_upstroke_velocities(times, trace, threshold) for trace in traces],
                )
            )
        for apd in self.spec.apd_maps:
            written.append(
                self._write_map(
                    f"Apd_{_threshold_label(apd.percentage)}_{_threshold_label(apd.threshold)}_Map.dat",
                    [action_potential_durations(times, trace, apd.percentage, apd.threshold) for trace in traces],
                )
            )
        logger.info("Wrote %d post-processing maps", len(written))
        return written


def _mesh_in_output_ordering(mesh: Mesh, permutation: np.ndarray | None) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Nodes, elements and node regions numbered the way the checkpoint stores them."""
    if permutation is None:
        return mesh.nodes, mesh.elements, mesh.node_regions
    inverse = np.empty_like(permutation)
    inverse[permutation] = np.arange(permutation.size)
    return mesh.nodes[permutation], inverse[mesh.elements], mesh.node_regions[permutation]


class _Converter:
    subdirectory = ""

    def __init__(
        self,
        mesh: Mesh,
        directory: str | Path,
        prefix: str,
        use_original_ordering: bool = False,
        precision: int = 0,
    ) -> None:
        self.mesh = mesh
        self.directory = resolve_output_dir(directory)
        self.prefix = prefix
        self.use_original_ordering = use_original_ordering
        self.precision = precision

    @property
    def output_dir(self) -> Path:
        return self.directory / self.subdirectory

    def _geometry(self, reader: CheckpointReader) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        permutation = reader.get_permutation() if self.use_original_ordering else None
        return _mesh_in_output_ordering(self.mesh, permutation)

    def convert(self) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        with CheckpointReader(self.directory, self.prefix) as reader:
            if reader.get_num_nodes() != self.mesh.num_nodes:
                raise CheckpointIOError("Checkpoint and mesh disagree on the number of nodes.")
            self._write(reader)
        return self.output_dir

    def _write(self, reader: CheckpointReader) -> None:
        raise NotImplementedError


class MeshalyzerConverter(_Converter):
    subdirectory = MESHALYZER_SUBDIR

    def _write(self, reader: CheckpointReader) -> None:
        nodes, elements, _ = self._geometry(reader)
        times = reader.get_unlimited_dimension_values()
        for name in reader.get_variable_names():
            history = reader.get_variable_history(name)
            with (self.output_dir / f"{self.prefix}_{name}.dat").open("w", encoding="utf-8") as f:
                for row in history:
                    for value in row:
                        f.write(_fmt(value, self.precision) + "\n")
        with (self.output_dir / f"{self.prefix}_times.info").open("w", encoding="utf-8") as f:
            f.write(f"Number of timesteps {times.size}\n")
            f.write(f"timestep {_fmt(times[1] - times[0], self.precision) if times.size > 1 else 0}\n")
            f.write(f"First timestep {_fmt(times[0], self.precision) if times.size else 0}\n")
            f.write(f"Last timestep {_fmt(times[-1], self.precision) if times.size else 0}\n")

        padded = np.hstack([nodes, np.zeros((nodes.shape[0], 3 - nodes.shape[1]))])
        with (self.output_dir / f"{self.prefix}_mesh.pts").open("w", encoding="utf-8") as f:
            f.write(f"{padded.shape[0]}\n")
            for point in padded:
                f.write(" ".join(_fmt(c, self.precision) for c in point) + "\n")
        suffix = _MESHALYZER_ELEMENT_SUFFIX[self.mesh.element_dimension]
        with (self.output_dir / f"{self.prefix}_mesh{suffix}").open("w", encoding="utf-8") as f:
            f.write(f"{elements.shape[0]}\n")
            for element, region in zip(elements, self.mesh.element_regions):
                f.write(" ".join(str(int(n)) for n in element) + f" {int(region)}\n")


class CmguiConverter(_Converter):
    subdirectory = CMGUI_SUBDIR

    def __init__(self, *args, has_bath: bool = False, bath_identifiers: tuple[int, ...] = (1,), **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.has_bath = has_bath
        self.bath_identifiers = bath_identifiers

    def _write_exelem(self, path: Path, group: str, elements: np.ndarray) -> None:
        dim = self.mesh.element_dimension
        with path.open("w", encoding="utf-8") as f:
            f.write(f"Group name: {group}\n")
            f.write(f"Shape.  Dimension={dim}, {_CMGUI_SHAPE[dim]}\n")
            f.write("#Scale factor sets=0\n")
            f.write(f"#Nodes={elements.shape[1] if elements.size else dim + 1}\n")
            f.write("#Fields=0\n")
            for number, element in enumerate(elements, start=1):
                f.write(f"Element: {number} 0 0\n Nodes:\n")
                f.write(" " + " ".join(str(int(n) + 1) for n in element) + "\n")

    def _write(self, reader: CheckpointReader) -> None:
        nodes, elements, _ = self._geometry(reader)
        names = reader.get_variable_names()
        padded = np.hstack([nodes, np.zeros((nodes.shape[0], 3 - nodes.shape[1]))])

        with (self.output_dir / f"{self.prefix}.exnode").open("w", encoding="utf-8") as f:
            f.write(f"Group name: {self.prefix}\n#Fields=1\n")
            f.write("1) coordinates, coordinate, rectangular cartesian, #Components=3\n")
            for k, axis in enumerate("xyz", start=1):
                f.write(f" {axis}.  Value index={k}, #Derivatives=0\n")
            for number, point in enumerate(padded, start=1):
                f.write(f"Node: {number}\n " + " ".join(_fmt(c, self.precision) for c in point) + "\n")

        if self.has_bath:
            bath = np.isin(self.mesh.element_regions, self.bath_identifiers)
            self._write_exelem(self.output_dir / f"{self.prefix}.exelem", "tissue", elements[~bath])
            self._write_exelem(self.output_dir / f"{self.prefix}_bath.exelem", "bath", elements[bath])
        else:
            self._write_exelem(self.output_dir / f"{self.prefix}.exelem", self.prefix, elements)

        histories = [reader.get_variable_history(name) for name in names]
        for row in range(reader.get_number_of_rows()):
            with (self.output_dir / f"{self.prefix}_{row}.exnode").open("w", encoding="utf-8") as f:
                f.write(f"Group name: {self.prefix}\n#Fields={len(names)}\n")
                for k, name in enumerate(names, start=1):
                    f.write(f"{k}) {name} , field, rectangular cartesian, #Components=1\n")
                    f.write(f" {name}.  Value index={k}, #Derivatives=0\n")
                for node in range(nodes.shape[0]):
                    values = " ".join(_fmt(h[row, node], self.precision) for h in histories)
                    f.write(f"Node: {node + 1}\n {values}\n")


class VtkConverter(_Converter):
    subdirectory = VTK_SUBDIR

    def _write(self, reader: CheckpointReader) -> None:
        nodes, elements, regions = self._geometry(reader)
        points = np.hstack([nodes, np.zeros((nodes.shape[0], 3 - nodes.shape[1]))])
        point_data: dict[str, np.ndarray] = {"region": regions.astype(float)}
        for name in reader.get_variable_names():
            history = reader.get_variable_history(name)
            for row in range(history.shape[0]):
                point_data[f"{name}_{row:06d}"] = history[row]
        cell_type = {1: "line", 2: "triangle", 3: "tetra"}[self.mesh.element_dimension]
        vtk_mesh = meshio.Mesh(points, [(cell_type, elements)], point_data=point_data)
        meshio.write(str(self.output_dir / f"{self.prefix}.vtu"), vtk_mesh, file_format="vtu")


class TraceConverter(_Converter):
    """PNG of the primary variable over time at a few spread-out nodes."""

    subdirectory = TRACES_SUBDIR

    def _write(self, reader: CheckpointReader) -> None:
        times = reader.get_unlimited_dimension_values()
        name = reader.get_variable_names()[0]
        history = reader.get_variable_history(name)
        n_nodes = history.shape[1]
        picks = sorted(set(np.linspace(0, n_nodes - 1, min(_MAX_TRACES, n_nodes)).round().astype(int)))
        fig = Figure(figsize=(6.4, 4.0), dpi=100)
        ax = fig.add_subplot(111)
        for node in picks:
            ax.plot(times, history[:, node], label=f"node {node}")
        ax.set_xlabel(f"{reader.unlimited_name} ({reader.unlimited_unit})")
        ax.set_ylabel(f"{name} ({reader.get_unit(name)})")
        ax.legend(loc="best", fontsize="small")
        fig.tight_layout()
        fig.savefig(str(self.output_dir / f"{self.prefix}_{name}_traces.png"), metadata={"Software": None})


class PostProcessingDispatcher:
    def __init__(
        self,
        mesh: Mesh,
        config: ProblemConfig,
        output_dir: str | Path,
        prefix: str,
        has_bath: bool = False,
        output_subset: bool = False,
        use_original_ordering: bool = False,
        group: ProcessGroup | None = None,
    ) -> None:
        self.mesh = mesh
        self.config = config
        self.output_dir = resolve_output_dir(output_dir)
        self.prefix = prefix
        self.has_bath = has_bath
        self.output_subset = output_subset
        self.use_original_ordering = use_original_ordering
        self.group = group or default_group()

    def _on_master(self, work) -> list[Path]:
        produced: list[Path] = []
        error: Exception | None = None
        if self.group.is_master:
            try:
                produced = work()
            except Exception as exc:
                error = exc
        self.group.replicate_failure(error, CheckpointIOError)
        self.group.barrier("PostProcessingDispatcher")
        return produced

    def post_process(self) -> list[Path]:
        if not self.config.postprocessing.requested:
            return []
        writer = PostProcessingWriter(
            self.mesh,
            self.output_dir,
            self.prefix,
            self.config.postprocessing,
            precision=self.config.visualizer_output_precision,
        )
        return self._on_master(writer.write_post_processing_files)

    def _converter(self, visualizer: str) -> _Converter:
        kwargs = dict(
            use_original_ordering=self.use_original_ordering,
            precision=self.config.visualizer_output_precision,
        )
        if visualizer == "meshalyzer":
            return MeshalyzerConverter(self.mesh, self.output_dir, self.prefix, **kwargs)
        if visualizer == "cmgui":
            return CmguiConverter(
                self.mesh,
                self.output_dir,
                self.prefix,
                has_bath=self.has_bath,
                bath_identifiers=self.config.bath_identifiers,
                **kwargs,
            )
        if visualizer == "vtk":
            return VtkConverter(self.mesh, self.output_dir, self.prefix, **kwargs)
        if visualizer == "traces":
            return TraceConverter(self.mesh, self.output_dir, self.prefix, **kwargs)
        raise ValueError(f"Unknown visualizer '{visualizer}'.")

    def convert(self) -> list[Path]:
        # Converters need every node in the file.
        if self.output_subset or not self.config.visualizers:
            return []

        def work() -> list[Path]:
            produced = []
            for visualizer in sorted(set(self.config.visualizers)):
                subdir = self._converter(visualizer).convert()
                write_config_copy(self.config, subdir)
                produced.append(subdir)
                logger.info("Converted %s.h5 for %s", self.prefix, visualizer)
            return produced

        return self._on_master(work)

    def run(self) -> list[Path]:
        return self.post_process() + self.convert()
