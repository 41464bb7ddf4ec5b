"""HDF5 checkpoint files with one growable (time) dimension.

Layout of ``<directory>/<prefix>.h5``::

    Data          float64 (T, nodes, variables), resizable along T
                  attrs: "Variable Details" -> ["V(mV)", ...]
                         "IsDataComplete"   -> 1 or 0
                         "Unlimited Dataset" -> name of the time dataset
    Time          float64 (T,), attrs "Name", "Unit"
    NodeMap       int64 (nodes,), present when only a subset of nodes is stored
    Permutation   int64 (all nodes,), present when output uses original ordering

Rank 0 owns the file.  Every write is collective and row-atomic: a row is
either fully appended or the datasets are cut back to their previous length.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Mapping, Sequence

import h5py
import numpy as np

from .errors import CheckpointIOError, ResumeConflict
from .parallel import ProcessGroup
from .paths import resolve_output_dir
from .vectors import DistributedVectorFactory, FieldVector


logger = logging.getLogger(__name__)

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")
_DETAIL_PATTERN = re.compile(r"^(?P<name>[A-Za-z0-9_]+)\((?P<unit>.*)\)$")
_TARGET_CHUNK_BYTES = 1 << 20


def checkpoint_path(directory: str | Path, prefix: str) -> Path:
    return resolve_output_dir(directory) / f"{prefix}.h5"


def _decode(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


def _parse_details(raw) -> list[tuple[str, str]]:
    details = []
    for entry in np.atleast_1d(raw):
        match = _DETAIL_PATTERN.match(_decode(entry))
        if match is None:
            raise CheckpointIOError(f"Malformed variable description '{_decode(entry)}'.")
        details.append((match.group("name"), match.group("unit")))
    return details


def _read_schema(path: Path, dataset_name: str) -> dict:
    if not path.exists():
        raise CheckpointIOError(f"Checkpoint file '{path}' does not exist.")
    try:
        with h5py.File(path, "r") as f:
            if dataset_name not in f:
                raise CheckpointIOError(f"Checkpoint file '{path}' has no dataset '{dataset_name}'.")
            data = f[dataset_name]
            time_name = _decode(data.attrs["Unlimited Dataset"])
            times = f[time_name]
            return {
                "variables": _parse_details(data.attrs["Variable Details"]),
                "num_nodes": int(data.shape[1]),
                "complete": bool(int(data.attrs["IsDataComplete"])),
                "time_dataset": time_name,
                "unlimited_name": _decode(times.attrs["Name"]),
                "unlimited_unit": _decode(times.attrs["Unit"]),
                "times": np.array(times[...], dtype=float),
                "node_map": np.array(f["NodeMap"][...], dtype=int) if "NodeMap" in f else None,
                "permutation": np.array(f["Permutation"][...], dtype=int) if "Permutation" in f else None,
            }
    except CheckpointIOError:
        raise
    except (OSError, KeyError) as exc:
        raise CheckpointIOError(f"Could not read checkpoint '{path}': {exc}") from exc


class CheckpointReader:
    def __init__(self, directory: str | Path, prefix: str, dataset_name: str = "Data") -> None:
        self.path = checkpoint_path(directory, prefix)
        self.dataset_name = dataset_name
        schema = _read_schema(self.path, dataset_name)
        self._variables = schema["variables"]
        self._names = [name for name, _ in self._variables]
        self._num_nodes = schema["num_nodes"]
        self._complete = schema["complete"]
        self._times = schema["times"]
        self._node_map = schema["node_map"]
        self._permutation = schema["permutation"]
        self.unlimited_name = schema["unlimited_name"]
        self.unlimited_unit = schema["unlimited_unit"]
        self._file: h5py.File | None = h5py.File(self.path, "r")

    def __enter__(self) -> "CheckpointReader":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def _data(self) -> h5py.Dataset:
        if self._file is None:
            raise CheckpointIOError("Checkpoint reader has been closed.")
        return self._file[self.dataset_name]

    def _column(self, name: str) -> int:
        try:
            return self._names.index(name)
        except ValueError:
            raise CheckpointIOError(f"The file does not contain data for variable '{name}'.") from None

    def get_variable_names(self) -> list[str]:
        return list(self._names)

    def get_unit(self, name: str) -> str:
        return self._variables[self._column(name)][1]

    def get_unlimited_dimension_values(self) -> np.ndarray:
        return self._times.copy()

    def get_number_of_rows(self) -> int:
        return int(self._times.size)

    def get_num_nodes(self) -> int:
        return self._num_nodes

    def is_data_complete(self) -> bool:
        return self._complete

    def get_incomplete_node_map(self) -> np.ndarray:
        if self._node_map is None:
            return np.zeros(0, dtype=int)
        return self._node_map.copy()

    def get_permutation(self) -> np.ndarray | None:
        return None if self._permutation is None else self._permutation.copy()

    def get_variable_over_nodes(self, name: str, row: int = 0) -> np.ndarray:
        if not 0 <= row < self.get_number_of_rows():
            raise CheckpointIOError(f"Row {row} is out of range.")
        return np.array(self._data()[row, :, self._column(name)], dtype=float)

    def get_variable_over_time(self, name: str, node: int) -> np.ndarray:
        position = node
        if self._node_map is not None:
            hits = np.flatnonzero(self._node_map == node)
            if hits.size == 0:
                raise CheckpointIOError(f"The incomplete file does not contain info of node {node}.")
            position = int(hits[0])
        if not 0 <= position < self._num_nodes:
            raise CheckpointIOError(f"Node {node} is out of range.")
        return np.array(self._data()[:, position, self._column(name)], dtype=float)

    def get_variable_history(self, name: str) -> np.ndarray:
        """All rows of one variable, shape ``(rows, nodes)``."""
        return np.array(self._data()[:, :, self._column(name)], dtype=float)


class CheckpointWriter:
    """Collective writer for one checkpoint file.

    A fresh writer starts in define mode: declare the node dimension, the
    variables and the unlimited dimension, then call :meth:`end_define_mode`.
    With ``extend=True`` the schema is read back from the existing file and
    rows are appended after the stored ones.
    """

    def __init__(
        self,
        factory: DistributedVectorFactory,
        directory: str | Path,
        prefix: str,
        extend: bool = False,
        dataset_name: str = "Data",
        use_cache: bool = False,
        group: ProcessGroup | None = None,
        resume_time: float | None = None,
    ) -> None:
        if not prefix:
            raise CheckpointIOError("A checkpoint needs a non-empty filename prefix.")
        self.factory = factory
        self.group = group or factory.group
        self.directory = resolve_output_dir(directory)
        self.prefix = prefix
        self.path = self.directory / f"{prefix}.h5"
        self.dataset_name = dataset_name
        self.extend = extend
        self.use_cache = use_cache

        self._variables: list[tuple[str, str]] = []
        self._num_nodes: int | None = None
        self._node_subset: np.ndarray | None = None
        self._permutation: np.ndarray | None = None
        self._unlimited: tuple[str, str] | None = None
        self._estimated_rows = 1
        self._chunk_rows: int | None = None
        self._num_rows = 0
        self._last_time: float | None = None
        self._cache: list[tuple[float, np.ndarray]] = []
        self._file: h5py.File | None = None
        self._define_mode = not extend
        self._closed = False

        if extend:
            self._open_for_extension(resume_time)

    # -- context manager -------------------------------------------------
    def __enter__(self) -> "CheckpointWriter":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- define mode -----------------------------------------------------
    def _require_define_mode(self) -> None:
        if self._closed:
            raise CheckpointIOError("Checkpoint writer has been closed.")
        if not self._define_mode:
            raise CheckpointIOError("Cannot change the file layout outside define mode.")

    def define_fixed_dimension(self, num_nodes: int, node_subset: Sequence[int] | None = None) -> None:
        self._require_define_mode()
        if num_nodes != self.factory.problem_size:
            raise CheckpointIOError(
                f"Fixed dimension {num_nodes} does not match the {self.factory.problem_size} nodes of the mesh."
            )
        if node_subset is not None:
            subset = np.asarray(node_subset, dtype=int).ravel()
            if subset.size == 0:
                raise CheckpointIOError("A node subset must not be empty.")
            if np.any(np.diff(subset) <= 0):
                raise CheckpointIOError("Node subset must be strictly increasing.")
            if subset[0] < 0 or subset[-1] >= num_nodes:
                raise CheckpointIOError("Node subset refers to nodes that do not exist.")
            self._node_subset = subset
        self._num_nodes = int(num_nodes)

    def define_variable(self, name: str, unit: str) -> int:
        self._require_define_mode()
        if not _NAME_PATTERN.match(name):
            raise CheckpointIOError(f"Variable name '{name}' not allowed: may only contain alphanumeric characters or '_'.")
        if not re.match(r"^[A-Za-z0-9_/.\- ]*$", unit):
            raise CheckpointIOError(f"Variable unit '{unit}' not allowed.")
        if any(existing == name for existing, _ in self._variables):
            raise CheckpointIOError(f"Variable name '{name}' already in use.")
        self._variables.append((name, unit))
        return len(self._variables) - 1

    def define_unlimited_dimension(self, name: str, unit: str, estimated_count: int = 1) -> None:
        self._require_define_mode()
        if self._unlimited is not None:
            raise CheckpointIOError("The unlimited dimension can only be defined once.")
        if not _NAME_PATTERN.match(name):
            raise CheckpointIOError(f"Unlimited dimension name '{name}' not allowed.")
        self._unlimited = (name, unit)
        self._estimated_rows = max(1, int(estimated_count))

    def set_target_chunk_size(self, rows: int) -> None:
        self._require_define_mode()
        if rows < 1:
            raise CheckpointIOError("Target chunk size must be at least one row.")
        self._chunk_rows = int(rows)

    def apply_permutation(self, permutation: Sequence[int], unsafe_extend: bool = False) -> bool:
        """Store rows in the original node ordering; False when there is nothing to permute."""
        if self._closed:
            raise CheckpointIOError("Checkpoint writer has been closed.")
        if not self._define_mode and not unsafe_extend:
            raise CheckpointIOError("Cannot apply a permutation to a file that is being extended.")
        permutation = np.asarray(permutation, dtype=int).ravel()
        if permutation.size == 0 or np.array_equal(permutation, np.arange(permutation.size)):
            return False
        if self._node_subset is not None:
            raise CheckpointIOError("Permutation doesn't make sense when only a subset of nodes is written.")
        if permutation.size != self.factory.problem_size:
            raise CheckpointIOError("Permutation length does not match the number of nodes.")
        if not np.array_equal(np.sort(permutation), np.arange(permutation.size)):
            raise CheckpointIOError("Node permutation is not a permutation.")
        self._permutation = permutation
        return True

    def _chunk_shape(self, n_out: int, n_vars: int) -> tuple[int, int, int]:
        if self._chunk_rows is not None:
            rows = self._chunk_rows
        else:
            row_bytes = max(1, n_out * n_vars * 8)
            rows = max(1, min(self._estimated_rows, _TARGET_CHUNK_BYTES // row_bytes))
        return rows, n_out, n_vars

    def end_define_mode(self) -> None:
        self._require_define_mode()
        if self._num_nodes is None:
            raise CheckpointIOError("define_fixed_dimension() must be called before end_define_mode().")
        if not self._variables:
            raise CheckpointIOError("At least one variable must be defined.")
        if self._unlimited is None:
            raise CheckpointIOError("define_unlimited_dimension() must be called before end_define_mode().")

        error: CheckpointIOError | None = None
        if self.group.is_master:
            try:
                self._create_file()
            except CheckpointIOError as exc:
                error = exc
        self.group.replicate_failure(error, CheckpointIOError)
        self.group.barrier("CheckpointWriter::end_define_mode")
        self._define_mode = False

    def _create_file(self) -> None:
        n_out = self._num_nodes if self._node_subset is None else int(self._node_subset.size)
        n_vars = len(self._variables)
        unlimited_name, unlimited_unit = self._unlimited
        time_name = unlimited_name if self.dataset_name == "Data" else f"{self.dataset_name}_{unlimited_name}"
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            f = h5py.File(self.path, "w")
        except OSError as exc:
            raise CheckpointIOError(f"Could not create checkpoint '{self.path}': {exc}") from exc
        try:
            data = f.create_dataset(
                self.dataset_name,
                shape=(0, n_out, n_vars),
                maxshape=(None, n_out, n_vars),
                chunks=self._chunk_shape(n_out, n_vars),
                dtype="f8",
            )
            data.attrs["Variable Details"] = np.array(
                [f"{name}({unit})" for name, unit in self._variables], dtype=h5py.string_dtype()
            )
            data.attrs["IsDataComplete"] = 0 if self._node_subset is not None else 1
            data.attrs["Unlimited Dataset"] = time_name
            times = f.create_dataset(time_name, shape=(0,), maxshape=(None,), chunks=(max(1, self._estimated_rows),), dtype="f8")
            times.attrs["Name"] = unlimited_name
            times.attrs["Unit"] = unlimited_unit
            if self._node_subset is not None:
                f.create_dataset("NodeMap", data=self._node_subset)
            if self._permutation is not None:
                f.create_dataset("Permutation", data=self._permutation)
            f.flush()
        except (OSError, ValueError) as exc:
            f.close()
            raise CheckpointIOError(f"Could not lay out checkpoint '{self.path}': {exc}") from exc
        self._file = f
        logger.debug("Created checkpoint %s with %d variables over %d nodes", self.path, n_vars, n_out)

    # -- extend mode -----------------------------------------------------
    def _open_for_extension(self, resume_time: float | None) -> None:
        self.group.barrier("CheckpointWriter::extension check")
        schema: dict | CheckpointIOError | ResumeConflict | None = None
        if self.group.is_master:
            try:
                schema = _read_schema(self.path, self.dataset_name)
                times = schema["times"]
                if resume_time is not None and times.size and times[-1] > resume_time:
                    schema = ResumeConflict(
                        f"Attempting to extend {self.path} with results from time = {resume_time}, "
                        f"but it already contains results up to time = {times[-1]}. "
                        "Choose another output directory to direct results elsewhere."
                    )
            except CheckpointIOError as exc:
                schema = exc
        schema = self.group.bcast(schema)
        self.group.barrier("CheckpointWriter::extension check")
        if isinstance(schema, Exception):
            raise schema

        stored = schema["num_nodes"]
        if schema["node_map"] is None and stored != self.factory.problem_size:
            raise CheckpointIOError(
                f"Cannot extend {self.path}: it stores {stored} nodes but the mesh has {self.factory.problem_size}."
            )
        if schema["node_map"] is not None and schema["node_map"].max(initial=-1) >= self.factory.problem_size:
            raise CheckpointIOError(f"Cannot extend {self.path}: its node map refers to nodes outside the mesh.")

        self._variables = list(schema["variables"])
        self._num_nodes = self.factory.problem_size
        self._node_subset = schema["node_map"]
        self._permutation = schema["permutation"]
        self._unlimited = (schema["unlimited_name"], schema["unlimited_unit"])
        self._num_rows = int(schema["times"].size)
        self._last_time = float(schema["times"][-1]) if schema["times"].size else None

        error: CheckpointIOError | None = None
        if self.group.is_master:
            try:
                self._file = h5py.File(self.path, "a")
            except OSError as exc:
                error = CheckpointIOError(f"Could not reopen checkpoint '{self.path}': {exc}")
        self.group.replicate_failure(error, CheckpointIOError)
        logger.info("Extending checkpoint %s after %d stored rows", self.path, self._num_rows)

    def get_variable_by_name(self, name: str) -> int:
        for column, (existing, _) in enumerate(self._variables):
            if existing == name:
                return column
        raise CheckpointIOError(f"Variable '{name}' does not exist in this checkpoint.")

    # -- writing ---------------------------------------------------------
    @property
    def num_rows(self) -> int:
        return self._num_rows

    @property
    def variable_names(self) -> list[str]:
        return [name for name, _ in self._variables]

    @property
    def is_data_complete(self) -> bool:
        return self._node_subset is None

    def _assemble_local(self, columns: Mapping[int, np.ndarray | FieldVector]) -> np.ndarray:
        n_vars = len(self._variables)
        missing = sorted(set(range(n_vars)) - set(columns))
        if missing:
            raise CheckpointIOError(f"Row is missing columns {missing}; every variable must be written.")
        extra = sorted(set(columns) - set(range(n_vars)))
        if extra:
            raise CheckpointIOError(f"Row refers to undefined columns {extra}.")
        local = np.empty((self.factory.local_size, n_vars), dtype=float)
        for column, values in columns.items():
            if isinstance(values, FieldVector):
                values = values.values
            values = np.asarray(values, dtype=float).ravel()
            if values.size != self.factory.local_size:
                raise CheckpointIOError(
                    f"Column {column} has {values.size} local entries; expected {self.factory.local_size}."
                )
            local[:, column] = values
        return local

    def _select_output(self, full: np.ndarray) -> np.ndarray:
        if self._permutation is not None:
            full = full[self._permutation]
        if self._node_subset is not None:
            full = full[self._node_subset]
        return full

    def write_row(self, time: float, columns: Mapping[int, np.ndarray | FieldVector]) -> None:
        """Append one row.  *columns* maps column id to the local block of that variable."""
        if self._closed:
            raise CheckpointIOError("Checkpoint writer has been closed.")
        if self._define_mode:
            raise CheckpointIOError("Cannot write data while in define mode.")
        error: CheckpointIOError | None = None
        local = np.zeros((self.factory.local_size, len(self._variables)), dtype=float)
        try:
            local = self._assemble_local(columns)
            if self._last_time is not None and time < self._last_time:
                raise CheckpointIOError(
                    f"Time {time} precedes the last stored time {self._last_time}; rows must not go back in time."
                )
        except CheckpointIOError as exc:
            error = exc
        self.group.replicate_failure(error, CheckpointIOError)

        gathered = self.factory.gather_to_master(local.ravel())
        if self.group.is_master:
            try:
                row = self._select_output(gathered.reshape(self.factory.problem_size, len(self._variables)))
                if self.use_cache:
                    self._cache.append((float(time), row))
                else:
                    self._append_rows([float(time)], [row])
            except CheckpointIOError as exc:
                error = exc
        self.group.replicate_failure(error, CheckpointIOError)
        self._num_rows += 1
        self._last_time = float(time)

    def _append_rows(self, times: list[float], rows: list[np.ndarray]) -> None:
        if self._file is None:
            raise CheckpointIOError(f"Checkpoint '{self.path}' is not open.")
        data = self._file[self.dataset_name]
        time_data = self._file[_decode(data.attrs["Unlimited Dataset"])]
        start = data.shape[0]
        stop = start + len(rows)
        try:
            data.resize(stop, axis=0)
            data[start:stop] = np.stack(rows)
            time_data.resize(stop, axis=0)
            time_data[start:stop] = times
            self._file.flush()
        except (OSError, ValueError, TypeError) as exc:
            data.resize(start, axis=0)
            time_data.resize(start, axis=0)
            raise CheckpointIOError(f"Failed to append to checkpoint '{self.path}': {exc}") from exc

    def flush(self) -> None:
        """Write out cached rows; collective."""
        error: CheckpointIOError | None = None
        if self.group.is_master and self._cache:
            try:
                self._append_rows([t for t, _ in self._cache], [row for _, row in self._cache])
            except CheckpointIOError as exc:
                error = exc
            finally:
                self._cache.clear()
        self.group.replicate_failure(error, CheckpointIOError)

    def unlimited_values(self) -> np.ndarray:
        """Stored time values, including cached rows; collective."""
        values = None
        if self.group.is_master:
            stored = np.zeros(0, dtype=float)
            if self._file is not None:
                data = self._file[self.dataset_name]
                stored = np.array(self._file[_decode(data.attrs["Unlimited Dataset"])][...], dtype=float)
            values = np.concatenate([stored, np.array([t for t, _ in self._cache], dtype=float)])
        return self.group.bcast(values)

    def close(self) -> None:
        if self._closed:
            return
        try:
            if not self._define_mode:
                self.flush()
        finally:
            self._closed = True
            if self._file is not None:
                self._file.close()
                self._file = None
            self.group.barrier("CheckpointWriter::close")
