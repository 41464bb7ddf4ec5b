from __future__ import annotations

import numpy as np

from .parallel import ProcessGroup, concatenate_blocks, default_group


class FieldVector:
    """Locally owned block of a distributed, node-interleaved vector.

    Entry ``values[i * stride + k]`` holds unknown ``k`` of the ``i``-th
    locally owned node.  A vector is released exactly once; using it after
    that, or releasing it again, raises ``RuntimeError``.
    """

    def __init__(self, factory: "DistributedVectorFactory", stride: int, values: np.ndarray) -> None:
        self._factory = factory
        self._stride = int(stride)
        self._values: np.ndarray | None = values
        self._released = False

    @property
    def factory(self) -> "DistributedVectorFactory":
        return self._factory

    @property
    def stride(self) -> int:
        return self._stride

    @property
    def released(self) -> bool:
        return self._released

    @property
    def values(self) -> np.ndarray:
        if self._values is None:
            raise RuntimeError("Field vector has been released and can no longer be used.")
        return self._values

    def stripe(self, index: int) -> np.ndarray:
        if not 0 <= index < self._stride:
            raise IndexError(f"Stripe {index} out of range for stride {self._stride}.")
        return self.values[index::self._stride]

    def as_nodes(self) -> np.ndarray:
        """View of the local block shaped ``(local nodes, stride)``."""
        return self.values.reshape(-1, self._stride)

    def copy(self) -> "FieldVector":
        duplicate = self._factory.create_vec(self._stride)
        duplicate.values[:] = self.values
        return duplicate

    def global_values(self) -> np.ndarray:
        return self._factory.gather(self)

    def release(self) -> None:
        if self._released:
            raise RuntimeError("Field vector has already been released.")
        self._released = True
        self._values = None
        self._factory._on_release()

    def __repr__(self) -> str:
        state = "released" if self._released else f"{self.values.size} local entries"
        return f"FieldVector(stride={self._stride}, {state})"


class DistributedVectorFactory:
    """Contiguous block partition of ``num_items`` nodes over a process group."""

    def __init__(self, num_items: int, group: ProcessGroup | None = None) -> None:
        if num_items < 0:
            raise ValueError("num_items must be non-negative.")
        self.group = group or default_group()
        self.problem_size = int(num_items)
        base, extra = divmod(self.problem_size, self.group.size)
        self._counts = [base + (1 if r < extra else 0) for r in range(self.group.size)]
        self.low = int(sum(self._counts[: self.group.rank]))
        self.high = self.low + self._counts[self.group.rank]
        self._live = 0
        self._created = 0

    @property
    def local_size(self) -> int:
        return self.high - self.low

    @property
    def counts(self) -> list[int]:
        return list(self._counts)

    @property
    def live_count(self) -> int:
        """Number of vectors allocated by this factory and not yet released."""
        return self._live

    @property
    def created_count(self) -> int:
        return self._created

    def owned(self) -> range:
        return range(self.low, self.high)

    def is_global_index_local(self, index: int) -> bool:
        return self.low <= index < self.high

    def create_vec(self, stride: int = 1) -> FieldVector:
        if stride < 1:
            raise ValueError("stride must be >= 1.")
        self._live += 1
        self._created += 1
        return FieldVector(self, stride, np.zeros(self.local_size * stride, dtype=float))

    def from_global(self, values: np.ndarray, stride: int = 1) -> FieldVector:
        values = np.asarray(values, dtype=float).ravel()
        if values.size != self.problem_size * stride:
            raise ValueError(
                f"Global vector has {values.size} entries; expected {self.problem_size * stride}."
            )
        vec = self.create_vec(stride)
        vec.values[:] = values[self.low * stride : self.high * stride]
        return vec

    def gather_local(self, local: np.ndarray) -> np.ndarray:
        """Assemble per-rank local blocks into the global array on every rank."""
        return concatenate_blocks(self.group.allgather(np.asarray(local, dtype=float)))

    def gather(self, vec: FieldVector) -> np.ndarray:
        return self.gather_local(vec.values)

    def gather_to_master(self, local: np.ndarray) -> np.ndarray | None:
        blocks = self.group.gather(np.asarray(local, dtype=float))
        if blocks is None:
            return None
        return concatenate_blocks(blocks)

    def _on_release(self) -> None:
        self._live -= 1
