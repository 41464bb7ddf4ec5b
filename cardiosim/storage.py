from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Any

import numpy as np

from .errors import ConfigurationError
from .models import ApdMapSpec, PostProcessingSpec, ProblemConfig, SlabMeshSpec


CONFIG_FORMAT_VERSION = 1
CONFIG_COPY_FILENAME = "ChasteParameters.json"


def _to_bool(val: Any) -> bool:
    if isinstance(val, bool):
        return val
    if isinstance(val, str):
        return val.lower() not in ("false", "0", "no", "")
    return bool(val)


def _write_json(path: Path, payload: dict[str, Any]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    return path


def _read_json(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text(encoding="utf-8"))


def serialize_config(config: ProblemConfig) -> dict[str, Any]:
    payload = asdict(config)
    payload["format_version"] = CONFIG_FORMAT_VERSION
    return payload


def _deserialize_postprocessing(raw: dict[str, Any] | None) -> PostProcessingSpec:
    if raw is None:
        return PostProcessingSpec()
    return PostProcessingSpec(
        upstroke_time_thresholds=tuple(float(v) for v in raw.get("upstroke_time_thresholds", ())),
        max_upstroke_velocity_thresholds=tuple(float(v) for v in raw.get("max_upstroke_velocity_thresholds", ())),
        apd_maps=tuple(
            ApdMapSpec(percentage=float(m["percentage"]), threshold=float(m["threshold"]))
            for m in raw.get("apd_maps", ())
        ),
    )


def deserialize_config(payload: dict[str, Any]) -> ProblemConfig:
    version = int(payload.get("format_version", CONFIG_FORMAT_VERSION))
    if version > CONFIG_FORMAT_VERSION:
        raise ConfigurationError(f"Config format version {version} is newer than this package supports.")
    if "simulation_duration" not in payload:
        raise ConfigurationError("Config is missing 'simulation_duration'.")
    slab_raw = payload.get("slab_mesh")
    slab = (
        SlabMeshSpec(
            inter_node_space=float(slab_raw["inter_node_space"]),
            dimensions=tuple(float(v) for v in slab_raw["dimensions"]),
        )
        if slab_raw
        else None
    )
    defaults = ProblemConfig(simulation_duration=0.0)
    return ProblemConfig(
        simulation_duration=float(payload["simulation_duration"]),
        pde_time_step=float(payload.get("pde_time_step", defaults.pde_time_step)),
        ode_time_step=float(payload.get("ode_time_step", defaults.ode_time_step)),
        printing_time_step=float(payload.get("printing_time_step", defaults.printing_time_step)),
        output_directory=str(payload.get("output_directory", "")),
        output_filename_prefix=str(payload.get("output_filename_prefix", "")),
        output_variables=tuple(str(v) for v in payload.get("output_variables", ())),
        mesh_file=str(payload.get("mesh_file", "")),
        slab_mesh=slab,
        intracellular_conductivity=float(
            payload.get("intracellular_conductivity", defaults.intracellular_conductivity)
        ),
        extracellular_conductivity=float(
            payload.get("extracellular_conductivity", defaults.extracellular_conductivity)
        ),
        bath_conductivity=float(payload.get("bath_conductivity", defaults.bath_conductivity)),
        surface_area_to_volume_ratio=float(
            payload.get("surface_area_to_volume_ratio", defaults.surface_area_to_volume_ratio)
        ),
        capacitance=float(payload.get("capacitance", defaults.capacitance)),
        bath_identifiers=tuple(int(v) for v in payload.get("bath_identifiers", defaults.bath_identifiers)),
        visualizers=tuple(str(v) for v in payload.get("visualizers", ())),
        visualizer_output_precision=int(payload.get("visualizer_output_precision", 0)),
        output_using_original_node_ordering=_to_bool(payload.get("output_using_original_node_ordering", False)),
        postprocessing=_deserialize_postprocessing(payload.get("postprocessing")),
        transmural_heterogeneities=_to_bool(payload.get("transmural_heterogeneities", False)),
    )


def save_config(config: ProblemConfig, path: str | Path) -> Path:
    return _write_json(Path(path), serialize_config(config))


def load_config(path: str | Path) -> ProblemConfig:
    return deserialize_config(_read_json(Path(path)))


def write_config_copy(config: ProblemConfig, directory: str | Path) -> Path:
    """Drop a copy of *config* next to converted output."""
    return save_config(config, Path(directory) / CONFIG_COPY_FILENAME)


def save_problem_state(
    path: str | Path,
    time: float,
    solution: np.ndarray,
    problem_dim: int,
    cell_states: list[np.ndarray],
) -> Path:
    """Archive the global solution and every node's cell state to an ``.npz`` file."""
    path = Path(path)
    if path.suffix != ".npz":
        path = path.with_suffix(".npz")
    path.parent.mkdir(parents=True, exist_ok=True)
    sizes = np.array([np.asarray(s).size for s in cell_states], dtype=int)
    offsets = np.concatenate([[0], np.cumsum(sizes)]).astype(int)
    values = (
        np.concatenate([np.asarray(s, dtype=float).ravel() for s in cell_states])
        if cell_states
        else np.zeros(0, dtype=float)
    )
    np.savez(
        str(path),
        time=np.array(float(time)),
        solution=np.asarray(solution, dtype=float).ravel(),
        problem_dim=np.array(int(problem_dim)),
        cell_state_offsets=offsets,
        cell_state_values=values,
    )
    return path


def load_problem_state(path: str | Path) -> dict[str, Any]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"No archived problem state at '{path}'.")
    with np.load(str(path), allow_pickle=False) as data:
        offsets = np.asarray(data["cell_state_offsets"], dtype=int)
        values = np.asarray(data["cell_state_values"], dtype=float)
        return {
            "time": float(data["time"]),
            "solution": np.asarray(data["solution"], dtype=float),
            "problem_dim": int(data["problem_dim"]),
            "cell_states": [values[offsets[i] : offsets[i + 1]].copy() for i in range(offsets.size - 1)],
        }
