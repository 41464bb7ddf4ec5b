"""Process-group abstraction for SPMD runs.

Every process runs the same sequence of collective calls.  A failure seen on
one process has to be turned into a failure on all of them before anybody
enters the next collective call, otherwise the group deadlocks.  That is what
:meth:`ProcessGroup.replicate_failure` is for.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import numpy as np

from .errors import SolverFailure


logger = logging.getLogger(__name__)


class ProcessGroup(ABC):
    @property
    @abstractmethod
    def rank(self) -> int: ...

    @property
    @abstractmethod
    def size(self) -> int: ...

    @property
    def is_master(self) -> bool:
        return self.rank == 0

    @property
    def is_parallel(self) -> bool:
        return self.size > 1

    @abstractmethod
    def barrier(self, label: str = "") -> None: ...

    @abstractmethod
    def any_true(self, flag: bool) -> bool:
        """Group-wide logical OR."""

    @abstractmethod
    def allgather(self, value: Any) -> list[Any]: ...

    @abstractmethod
    def gather(self, value: Any) -> list[Any] | None:
        """Collect *value* from every rank on rank 0; other ranks get ``None``."""

    @abstractmethod
    def bcast(self, value: Any) -> Any:
        """Broadcast rank 0's *value* to every rank."""

    def replicate_failure(
        self,
        exc: BaseException | None,
        kind: type[Exception] = SolverFailure,
    ) -> None:
        """Raise on every rank if any rank failed.

        The rank that failed re-raises its own exception; the others raise
        *kind* so that every process leaves the collective section together.
        """
        failed = self.any_true(exc is not None)
        if not failed:
            return
        if exc is not None:
            raise exc
        raise kind(f"Another process failed; rank {self.rank} is bailing out.")


class SerialGroup(ProcessGroup):
    @property
    def rank(self) -> int:
        return 0

    @property
    def size(self) -> int:
        return 1

    def barrier(self, label: str = "") -> None:
        return None

    def any_true(self, flag: bool) -> bool:
        return bool(flag)

    def allgather(self, value: Any) -> list[Any]:
        return [value]

    def gather(self, value: Any) -> list[Any] | None:
        return [value]

    def bcast(self, value: Any) -> Any:
        return value


class MPIGroup(ProcessGroup):
    """Wraps an mpi4py communicator."""

    def __init__(self, comm: Any) -> None:
        self.comm = comm

    @classmethod
    def world(cls) -> "MPIGroup":
        from mpi4py import MPI

        return cls(MPI.COMM_WORLD)

    @property
    def rank(self) -> int:
        return int(self.comm.Get_rank())

    @property
    def size(self) -> int:
        return int(self.comm.Get_size())

    def barrier(self, label: str = "") -> None:
        if label:
            logger.debug("Barrier '%s' on rank %d", label, self.rank)
        self.comm.Barrier()

    def any_true(self, flag: bool) -> bool:
        return int(self.comm.allreduce(1 if flag else 0)) > 0

    def allgather(self, value: Any) -> list[Any]:
        return list(self.comm.allgather(value))

    def gather(self, value: Any) -> list[Any] | None:
        gathered = self.comm.gather(value, root=0)
        return list(gathered) if gathered is not None else None

    def bcast(self, value: Any) -> Any:
        return self.comm.bcast(value, root=0)


def default_group() -> ProcessGroup:
    return SerialGroup()


def concatenate_blocks(blocks: list[np.ndarray]) -> np.ndarray:
    if not blocks:
        return np.zeros(0, dtype=float)
    return np.concatenate([np.asarray(b, dtype=float).ravel() for b in blocks])


# Only print from rank 0
class RankFilter(logging.Filter):
    def __init__(self, group: ProcessGroup, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.group = group

    def filter(self, record):
        return 1 if self.group.rank == 0 else 0


def setup_logging(level: int = logging.INFO, group: ProcessGroup | None = None) -> logging.Logger:
    """Attach a rank-0 stream handler to the package logger."""
    group = group or default_group()
    package_logger = logging.getLogger("cardiosim")
    package_logger.setLevel(level)
    if not any(getattr(h, "_cardiosim_handler", False) for h in package_logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        handler._cardiosim_handler = True  # type: ignore[attr-defined]
        package_logger.addHandler(handler)
    for handler in package_logger.handlers:
        if getattr(handler, "_cardiosim_handler", False):
            handler.filters = [f for f in handler.filters if not isinstance(f, RankFilter)]
            handler.addFilter(RankFilter(group))
    return package_logger
