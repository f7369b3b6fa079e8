"""Per-element quadrature data computed once per mesh.

For every quadrature node of every element the cache stores its physical
coordinates, the Jacobi matrix of the reference map (flattened as
``[x_xi, x_eta, y_xi, y_eta]`` in 2D), its determinant, the quadrature
weight multiplied by ``|det J|`` and the physical shape-function gradients.
Quadrature nodes of element ``e`` occupy rows ``shifts[e]:shifts[e+1]`` of
the flat arrays.
"""

from __future__ import annotations

import logging
from typing import Dict, NamedTuple, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from .elements import get_element
from .errors import ConfigurationError
from .mesh import BoundaryGroup, Mesh

log = logging.getLogger(__name__)

# |det J| below this marks a degenerate element
DEGENERATE_TOL = 1e-14


class ElementQuadrature(NamedTuple):
    """Quadrature data of a single element."""

    N: NDArray[np.float64]  # (n, q) shape values
    gradients: NDArray[np.float64]  # (n, dim, q) physical gradients
    weights: NDArray[np.float64]  # (q,) weight * |det J|
    coords: NDArray[np.float64]  # (q, dim) physical coordinates


def _inverse_jacobian(J: NDArray[np.float64], det: NDArray[np.float64]) -> NDArray[np.float64]:
    """J^-1 through the cofactor matrix, for stacks of 1x1 or 2x2 matrices."""
    if J.shape[-1] == 1:
        return 1.0 / J
    inv = np.empty_like(J)
    inv[..., 0, 0] = J[..., 1, 1]
    inv[..., 0, 1] = -J[..., 0, 1]
    inv[..., 1, 0] = -J[..., 1, 0]
    inv[..., 1, 1] = J[..., 0, 0]
    return inv / det[..., None, None]


class QuadratureCache:
    """Shape-function, Jacobian and coordinate tables for all elements of a mesh."""

    def __init__(self, mesh: Mesh, quadrature_order: int | None = None):
        if mesh is None:
            raise ConfigurationError("QuadratureCache needs a mesh")
        self.mesh = mesh
        self.quadrature_order = quadrature_order
        dim = mesh.dimension

        self._elements = [
            get_element(int(t), quadrature_order) for t in mesh.element_types
        ]
        counts = np.array([el.qnodes_count for el in self._elements], dtype=np.int64)
        self.shifts = np.zeros(mesh.elements_count + 1, dtype=np.int64)
        np.cumsum(counts, out=self.shifts[1:])

        total = self.shifts[-1]
        self.coords = np.empty((total, dim))
        self.jacobi_matrices = np.empty((total, dim * dim))
        self.jacobians = np.empty(total)
        self.weights = np.empty(total)
        self._gradients: Dict[int, NDArray[np.float64]] = {}
        self._slot = np.empty(mesh.elements_count, dtype=np.int64)
        self._padded: Optional[Tuple[NDArray[np.float64], ...]] = None

        for etype in np.unique(mesh.element_types):
            self._fill_type(int(etype))
        log.debug(f"Quadrature cache: {total} nodes over {mesh.elements_count} elements")

    def _fill_type(self, etype: int) -> None:
        mesh = self.mesh
        el = get_element(etype, self.quadrature_order)
        ids = np.flatnonzero(mesh.element_types == etype)
        X = mesh.nodes[mesh.elements[ids, : el.nodes_count]]  # (m, n, dim)

        xq = np.einsum("iq,mid->mqd", el.qN, X)
        J = np.einsum("ikq,mid->mqdk", el.qdN, X)  # J[d, k] = dx_d / dxi_k
        if J.shape[-1] == 1:
            det = J[..., 0, 0]
        else:
            det = J[..., 0, 0] * J[..., 1, 1] - J[..., 0, 1] * J[..., 1, 0]
        if np.any(np.abs(det) < DEGENERATE_TOL):
            bad = ids[np.any(np.abs(det) < DEGENERATE_TOL, axis=1)]
            raise ConfigurationError(f"Degenerate elements (zero Jacobian): {bad[:10]}")

        inv = _inverse_jacobian(J, det)
        self._gradients[etype] = np.einsum("ikq,mqkd->midq", el.qdN, inv)
        self._slot[ids] = np.arange(len(ids))

        rows = (self.shifts[ids][:, None] + np.arange(el.qnodes_count)).ravel()
        self.coords[rows] = xq.reshape(-1, mesh.dimension)
        self.jacobi_matrices[rows] = J.reshape(len(rows), -1)
        self.jacobians[rows] = det.ravel()
        self.weights[rows] = (np.abs(det) * el.weights).ravel()

    @property
    def qnodes_count(self) -> int:
        return int(self.shifts[-1])

    def element(self, e: int) -> ElementQuadrature:
        first, last = self.shifts[e], self.shifts[e + 1]
        etype = int(self.mesh.element_types[e])
        return ElementQuadrature(
            N=self._elements[e].qN,
            gradients=self._gradients[etype][self._slot[e]],
            weights=self.weights[first:last],
            coords=self.coords[first:last],
        )

    def padded(self) -> Tuple[NDArray[np.float64], ...]:
        """
        Tables of all elements padded to the largest element, for compiled kernels.

        Returns
        -------
        N : ndarray (E, n, q)
        gradients : ndarray (E, n, dim, q)
        weights : ndarray (E, q)
            Zero on padded quadrature nodes.
        coords : ndarray (E, q, dim)
        """
        if self._padded is not None:
            return self._padded
        mesh = self.mesh
        E, n, dim = mesh.elements_count, mesh.elements.shape[1], mesh.dimension
        q = int(np.diff(self.shifts).max())
        N = np.zeros((E, n, q))
        gradients = np.zeros((E, n, dim, q))
        weights = np.zeros((E, q))
        coords = np.zeros((E, q, dim))
        for etype, grads in self._gradients.items():
            el = get_element(etype, self.quadrature_order)
            ids = np.flatnonzero(mesh.element_types == etype)
            m, k = el.nodes_count, el.qnodes_count
            rows = self.shifts[ids][:, None] + np.arange(k)
            N[ids, :m, :k] = el.qN
            gradients[ids, :m, :, :k] = grads
            weights[ids, :k] = self.weights[rows]
            coords[ids, :k] = self.coords[rows]
        self._padded = (N, gradients, weights, coords)
        return self._padded

    def boundary(self, name: str) -> BoundaryQuadrature:
        if name not in self.mesh.boundaries:
            raise ConfigurationError(f"Unknown boundary group {name!r}")
        return BoundaryQuadrature(self.mesh, self.mesh.boundaries[name])


class BoundaryQuadrature:
    """Quadrature on the elements of one boundary group.

    The surface Jacobian is the length of dx/dxi for edges and 1 for the end
    points of 1D meshes.
    """

    def __init__(self, mesh: Mesh, group: BoundaryGroup):
        self.group = group
        self.N = []
        self.weights = []
        self.coords = []
        for k in range(group.elements_count):
            el = group.element(k)
            X = mesh.nodes[group.element_nodes(k)]  # (n, dim)
            tangent = np.einsum("ikq,id->qdk", el.qdN, X)[..., 0] if el.dimension else None
            jac = np.linalg.norm(tangent, axis=1) if tangent is not None else np.ones(1)
            self.N.append(el.qN)
            self.weights.append(el.weights * jac)
            self.coords.append(el.qN.T @ X)

    def __len__(self) -> int:
        return self.group.elements_count

    def element(self, k: int) -> ElementQuadrature:
        return ElementQuadrature(self.N[k], None, self.weights[k], self.coords[k])
