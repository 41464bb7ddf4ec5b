from __future__ import annotations

import itertools
import logging
from collections import Counter
from pathlib import Path

import meshio
import numpy as np

from .errors import ConfigurationError
from .models import DEFAULT_BATH_IDENTIFIERS, is_region_bath
from .parallel import ProcessGroup, default_group
from .vectors import DistributedVectorFactory


logger = logging.getLogger(__name__)

_CELL_TYPES_BY_DIMENSION = {3: "tetra", 2: "triangle", 1: "line"}
_DIMENSION_BY_CELL_TYPE = {v: k for k, v in _CELL_TYPES_BY_DIMENSION.items()}


class Mesh:
    """Simplicial mesh with per-node and per-element region codes.

    ``permutation[i]`` is the internal index of the node that was number ``i``
    in the original (file) ordering; an empty permutation means none was applied.
    """

    def __init__(
        self,
        nodes: np.ndarray,
        elements: np.ndarray,
        node_regions: np.ndarray | None = None,
        element_regions: np.ndarray | None = None,
        permutation: np.ndarray | None = None,
        group: ProcessGroup | None = None,
    ) -> None:
        nodes = np.asarray(nodes, dtype=float)
        if nodes.ndim == 1:
            nodes = nodes[:, None]
        elements = np.asarray(elements, dtype=int)
        if nodes.ndim != 2 or nodes.shape[0] == 0:
            raise ConfigurationError("A mesh needs at least one node.")
        if elements.ndim != 2 or elements.shape[0] == 0:
            raise ConfigurationError("A mesh needs at least one element.")
        if elements.min() < 0 or elements.max() >= nodes.shape[0]:
            raise ConfigurationError("Element connectivity refers to nodes that do not exist.")
        if elements.shape[1] - 1 > nodes.shape[1]:
            raise ConfigurationError("Element dimension exceeds space dimension.")

        self.nodes = nodes
        self.elements = elements
        self.node_regions = (
            np.zeros(nodes.shape[0], dtype=int) if node_regions is None else np.asarray(node_regions, dtype=int)
        )
        self.element_regions = (
            np.zeros(elements.shape[0], dtype=int)
            if element_regions is None
            else np.asarray(element_regions, dtype=int)
        )
        if self.node_regions.shape != (nodes.shape[0],):
            raise ConfigurationError("node_regions must have one entry per node.")
        if self.element_regions.shape != (elements.shape[0],):
            raise ConfigurationError("element_regions must have one entry per element.")
        self._permutation = np.zeros(0, dtype=int) if permutation is None else np.asarray(permutation, dtype=int)
        self.group = group or default_group()
        self._factory: DistributedVectorFactory | None = None
        self._boundary_nodes: np.ndarray | None = None

    @property
    def num_nodes(self) -> int:
        return int(self.nodes.shape[0])

    @property
    def num_elements(self) -> int:
        return int(self.elements.shape[0])

    @property
    def space_dimension(self) -> int:
        return int(self.nodes.shape[1])

    @property
    def element_dimension(self) -> int:
        return int(self.elements.shape[1] - 1)

    @property
    def is_distributed(self) -> bool:
        return self.group.is_parallel

    @property
    def node_permutation(self) -> np.ndarray:
        return self._permutation

    def get_distributed_vector_factory(self) -> DistributedVectorFactory:
        if self._factory is None:
            self._factory = DistributedVectorFactory(self.num_nodes, self.group)
        return self._factory

    def is_node_in_bath(self, index: int, bath_identifiers: tuple[int, ...] = DEFAULT_BATH_IDENTIFIERS) -> bool:
        return is_region_bath(self.node_regions[index], bath_identifiers)

    def element_in_bath_mask(self, bath_identifiers: tuple[int, ...] = DEFAULT_BATH_IDENTIFIERS) -> np.ndarray:
        return np.isin(self.element_regions, bath_identifiers)

    def boundary_nodes(self) -> np.ndarray:
        """Nodes on facets that belong to exactly one element."""
        if self._boundary_nodes is None:
            facet_size = self.elements.shape[1] - 1
            counts: Counter[tuple[int, ...]] = Counter()
            for element in self.elements:
                for facet in itertools.combinations(sorted(int(n) for n in element), facet_size):
                    counts[facet] += 1
            on_boundary = sorted({n for facet, c in counts.items() if c == 1 for n in facet})
            self._boundary_nodes = np.array(on_boundary, dtype=int)
        return self._boundary_nodes

    @classmethod
    def construct_regular_slab_mesh(
        cls,
        space_step: float,
        *dimensions: float,
        group: ProcessGroup | None = None,
    ) -> "Mesh":
        """Regular mesh of a 1-D fibre, 2-D sheet or 3-D slab anchored at the origin."""
        if space_step <= 0:
            raise ConfigurationError("Space step must be positive.")
        if not 1 <= len(dimensions) <= 3:
            raise ConfigurationError("A slab mesh has between one and three dimensions.")
        counts = []
        for width in dimensions:
            n = int(np.floor(width / space_step + 0.5))
            if n < 1 or abs(n * space_step - width) > 1e-10 * max(1.0, abs(width)):
                raise ConfigurationError("Space step does not divide the size of the mesh.")
            counts.append(n)

        axes = [np.linspace(0.0, n * space_step, n + 1) for n in counts]
        grid = np.meshgrid(*axes, indexing="ij")
        nodes = np.stack([g.ravel() for g in grid], axis=1)
        shape = tuple(n + 1 for n in counts)

        def node_id(index: tuple[int, ...]) -> int:
            return int(np.ravel_multi_index(index, shape))

        dim = len(counts)
        # Kuhn triangulation: one simplex per ordering of the axes.
        paths = []
        for perm in itertools.permutations(range(dim)):
            corner = [0] * dim
            path = [tuple(corner)]
            for axis in perm:
                corner[axis] = 1
                path.append(tuple(corner))
            paths.append(path)

        elements = []
        for cell in itertools.product(*(range(n) for n in counts)):
            for path in paths:
                elements.append([node_id(tuple(c + o for c, o in zip(cell, offset))) for offset in path])

        logger.debug("Constructed %d-D slab mesh with %d nodes", dim, nodes.shape[0])
        return cls(nodes, np.array(elements, dtype=int), group=group)

    @classmethod
    def from_file(cls, path: str | Path, group: ProcessGroup | None = None) -> "Mesh":
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Mesh file '{path}' does not exist.")
        raw = meshio.read(str(path))
        blocks = [block for block in raw.cells if block.type in _DIMENSION_BY_CELL_TYPE]
        if not blocks:
            raise ConfigurationError(f"Mesh file '{path}' contains no line, triangle or tetrahedral cells.")
        element_dim = max(_DIMENSION_BY_CELL_TYPE[b.type] for b in blocks)
        cell_type = _CELL_TYPES_BY_DIMENSION[element_dim]
        chosen = [i for i, b in enumerate(raw.cells) if b.type == cell_type]
        elements = np.concatenate([raw.cells[i].data for i in chosen], axis=0)

        points = np.asarray(raw.points, dtype=float)
        # Drop trailing coordinates that are identically zero (2-D meshes stored with z = 0).
        space_dim = points.shape[1]
        while space_dim > element_dim and np.allclose(points[:, space_dim - 1], 0.0):
            space_dim -= 1
        points = points[:, :space_dim]

        node_regions = None
        if "region" in raw.point_data:
            node_regions = np.asarray(raw.point_data["region"], dtype=int).ravel()
        element_regions = None
        if "region" in raw.cell_data:
            element_regions = np.concatenate(
                [np.asarray(raw.cell_data["region"][i], dtype=int).ravel() for i in chosen]
            )
        logger.info("Read mesh '%s': %d nodes, %d %s elements", path, points.shape[0], elements.shape[0], cell_type)
        return cls(points, elements, node_regions=node_regions, element_regions=element_regions, group=group)
