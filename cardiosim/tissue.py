from __future__ import annotations

import logging
import math

import numpy as np
from scipy import sparse

from .cells import AbstractCardiacCell, AbstractCardiacCellFactory
from .errors import ConfigurationError
from .mesh import Mesh
from .models import ProblemConfig


logger = logging.getLogger(__name__)


def _element_geometry(mesh: Mesh) -> tuple[np.ndarray, np.ndarray]:
    """Return element measures ``(E,)`` and barycentric gradients ``(E, k+1, d)``."""
    coords = mesh.nodes[mesh.elements]                  # (E, k+1, d)
    edges = coords[:, 1:, :] - coords[:, :1, :]         # (E, k, d)
    k = edges.shape[1]
    gram = edges @ np.swapaxes(edges, 1, 2)             # (E, k, k)
    det = np.linalg.det(gram)
    if np.any(det <= 0.0):
        raise ConfigurationError("Mesh contains degenerate elements.")
    measures = np.sqrt(det) / math.factorial(k)
    # Tangential gradients of the reference coordinates, also valid for embedded elements.
    jacobian = np.swapaxes(edges, 1, 2)                 # (E, d, k)
    grad_xi = np.linalg.pinv(jacobian)                  # (E, k, d)
    grad_0 = -np.sum(grad_xi, axis=1, keepdims=True)    # (E, 1, d)
    return measures, np.concatenate([grad_0, grad_xi], axis=1)


def assemble_stiffness(mesh: Mesh, conductivity: np.ndarray | float) -> sparse.csr_matrix:
    """Assemble the P1 stiffness matrix with piecewise-constant conductivity."""
    measures, grads = _element_geometry(mesh)
    sigma = np.broadcast_to(np.asarray(conductivity, dtype=float), measures.shape)
    local = (measures * sigma)[:, None, None] * (grads @ np.swapaxes(grads, 1, 2))
    n_local = mesh.elements.shape[1]
    rows = np.repeat(mesh.elements, n_local, axis=1).ravel()
    cols = np.tile(mesh.elements, (1, n_local)).ravel()
    n = mesh.num_nodes
    return sparse.coo_matrix((local.ravel(), (rows, cols)), shape=(n, n)).tocsr()


def assemble_lumped_mass(mesh: Mesh) -> np.ndarray:
    measures, _ = _element_geometry(mesh)
    n_local = mesh.elements.shape[1]
    mass = np.zeros(mesh.num_nodes, dtype=float)
    np.add.at(mass, mesh.elements.ravel(), np.repeat(measures / n_local, n_local))
    return mass


class CardiacTissue:
    """Per-node cell models for the locally owned nodes plus the assembled operators."""

    def __init__(
        self,
        cell_factory: AbstractCardiacCellFactory,
        mesh: Mesh,
        config: ProblemConfig,
        has_bath: bool = False,
    ) -> None:
        self.mesh = mesh
        self.config = config
        self.has_bath = has_bath
        self.surface_area_to_volume_ratio = config.surface_area_to_volume_ratio
        self.capacitance = config.capacitance
        factory = mesh.get_distributed_vector_factory()
        self._owned = factory.owned()
        self._cells: dict[int, AbstractCardiacCell] = {}
        self._cells2: dict[int, AbstractCardiacCell] = {}
        self._cells3: dict[int, AbstractCardiacCell] = {}
        for node in self._owned:
            if has_bath:
                cell = cell_factory.create_cell_for_node(node, config.bath_identifiers)
            else:
                cell = cell_factory.create_cardiac_cell_for_tissue_node(node)
            cell.ode_time_step = config.ode_time_step
            self._cells[node] = cell
            if has_bath and mesh.is_node_in_bath(node, config.bath_identifiers):
                continue
            for store, create in (
                (self._cells2, cell_factory.create_cardiac_cell2),
                (self._cells3, cell_factory.create_cardiac_cell3),
            ):
                extra = create(node)
                if extra is not None:
                    extra.ode_time_step = config.ode_time_step
                    store[node] = extra
        self._intracellular: sparse.csr_matrix | None = None
        self._extracellular: sparse.csr_matrix | None = None
        self._mass: np.ndarray | None = None
        logger.debug("Created tissue with %d local cells", len(self._cells))

    @property
    def owned_nodes(self) -> range:
        return self._owned

    @property
    def chi_cm(self) -> float:
        return self.surface_area_to_volume_ratio * self.capacitance

    def _lookup(self, store: dict[int, AbstractCardiacCell], node: int, label: str) -> AbstractCardiacCell:
        try:
            return store[node]
        except KeyError:
            if node not in self._cells:
                raise ConfigurationError(f"Node {node} is not owned by this process.") from None
            raise ConfigurationError(f"Node {node} has no {label} cell model.") from None

    def get_cardiac_cell(self, node: int) -> AbstractCardiacCell:
        return self._lookup(self._cells, node, "primary")

    def get_cardiac_cell2(self, node: int) -> AbstractCardiacCell:
        return self._lookup(self._cells2, node, "second")

    def get_cardiac_cell3(self, node: int) -> AbstractCardiacCell:
        return self._lookup(self._cells3, node, "third")

    def get_cell(self, node: int, cell_index: int) -> AbstractCardiacCell:
        getters = (self.get_cardiac_cell, self.get_cardiac_cell2, self.get_cardiac_cell3)
        return getters[cell_index](node)

    def is_node_in_bath(self, node: int) -> bool:
        return self.has_bath and self.mesh.is_node_in_bath(node, self.config.bath_identifiers)

    def solve_cell_systems(self, voltages: np.ndarray, t0: float, t1: float) -> np.ndarray:
        """Advance every local cell from *t0* to *t1* starting at *voltages*; return new voltages."""
        voltages = np.asarray(voltages, dtype=float)
        if voltages.shape != (len(self._owned),):
            raise ValueError("voltages must hold one value per locally owned node.")
        updated = np.empty_like(voltages)
        for k, node in enumerate(self._owned):
            cell = self._cells[node]
            cell.set_voltage(voltages[k])
            cell.solve_and_update_state(t0, t1)
            updated[k] = cell.get_voltage()
        return updated

    def get_cell_states(self) -> list[np.ndarray]:
        return [np.array(self._cells[node].state, copy=True) for node in self._owned]

    def set_cell_states(self, states: list[np.ndarray]) -> None:
        if len(states) != len(self._owned):
            raise ValueError("Need one state vector per locally owned node.")
        for node, state in zip(self._owned, states):
            cell = self._cells[node]
            state = np.asarray(state, dtype=float)
            if state.shape != cell.state.shape:
                raise ValueError(f"State for node {node} has shape {state.shape}, expected {cell.state.shape}.")
            cell.state = np.array(state, copy=True)

    @property
    def lumped_mass(self) -> np.ndarray:
        if self._mass is None:
            self._mass = assemble_lumped_mass(self.mesh)
        return self._mass

    @property
    def intracellular_stiffness(self) -> sparse.csr_matrix:
        if self._intracellular is None:
            sigma = np.full(self.mesh.num_elements, self.config.intracellular_conductivity)
            if self.has_bath:
                sigma[self.mesh.element_in_bath_mask(self.config.bath_identifiers)] = 0.0
            self._intracellular = assemble_stiffness(self.mesh, sigma)
        return self._intracellular

    @property
    def extracellular_stiffness(self) -> sparse.csr_matrix:
        if self._extracellular is None:
            sigma = np.full(self.mesh.num_elements, self.config.extracellular_conductivity)
            if self.has_bath:
                sigma[self.mesh.element_in_bath_mask(self.config.bath_identifiers)] = self.config.bath_conductivity
            self._extracellular = assemble_stiffness(self.mesh, sigma)
        return self._extracellular
