"""Matrix and vector assembly driven by traversal rules.

A ``SystemMatrix`` owns the inner block (unknown-to-unknown, upper
triangle) and the boundary block (unknown rows, constrained columns) on a
fixed portrait. Assembly functions take a block rule, a closure over the
quadrature cache and the material constants, and hand it to a traversal
visitor; the blocks it returns are routed into the two matrices.

``assemble_parallel`` is the compiled path for the built-in forms and
influence functions. It walks rows node by node like the portrait pass:
every row range belongs to one thread, which computes the block rows of
its nodes and adds them into the CSR data of those rows only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import numpy as np
from numba import njit, prange
from numpy.typing import NDArray
from scipy import sparse
from scipy.sparse import csr_matrix

from .datastructures import LOOP_ORDERS
from .errors import ConfigurationError, PortraitError
from .influence import CUSTOM, InfluenceFunction, influence_value
from .mesh import Mesh
from .portrait import Portrait, coupling, locate, position, row_ranges
from .quadrature import QuadratureCache
from .traversal import for_each_element, for_each_element_pair, for_each_node

log = logging.getLogger(__name__)

# Buffered block entries before they are scattered into the matrices
FLUSH_SIZE = 2_000_000

# Block forms of the compiled fill
DIFFUSION, PLANE_STRESS, MASS = 0, 1, 2


def element_dofs(mesh: Mesh, e: int, dofs_per_node: int = 1) -> NDArray[np.int64]:
    """Interleaved global DoFs of element e."""
    nodes = mesh.element_nodes(e)
    if dofs_per_node == 1:
        return nodes
    return (dofs_per_node * nodes[:, None] + np.arange(dofs_per_node)).ravel()


def _scatter(matrix: csr_matrix, rows, cols, values) -> None:
    positions = locate(matrix.indptr, matrix.indices, rows, cols, bool(matrix.has_sorted_indices))
    missing = positions < 0
    if np.any(missing):
        k = np.flatnonzero(missing)[0]
        raise PortraitError(f"Entry ({rows[k]}, {cols[k]}) is outside the matrix portrait")
    np.add.at(matrix.data, positions, values)


@dataclass
class SystemMatrix:
    """
    Symmetric system matrix split for first-kind elimination.

    Attributes
    ----------
    inner : csr_matrix
        Upper triangle of the unknown-to-unknown block. Constrained DoFs
        keep a single unit diagonal entry, augmented rows stay empty.
    bound : csr_matrix
        Couplings of unknown rows to constrained columns, full rows.
    inner_mask : ndarray of bool
        False for constrained DoFs.
    augmented : int
        Number of solvability rows appended after the DoFs.
    """

    inner: csr_matrix
    bound: csr_matrix
    inner_mask: NDArray[np.bool_]
    augmented: int = 0

    n_dofs: int = field(init=False)

    def __post_init__(self) -> None:
        self.n_dofs = len(self.inner_mask)

    @classmethod
    def from_portrait(cls, portrait: Portrait, sort: bool = True) -> SystemMatrix:
        inner, bound = portrait.build(sort)
        return cls(inner, bound, portrait.inner, portrait.augmented)

    @property
    def size(self) -> int:
        return self.inner.shape[0]

    def zeros_like(self) -> SystemMatrix:
        """Matrix on the same portrait (index arrays shared) with zero values."""

        def empty(m):
            return csr_matrix((np.zeros_like(m.data), m.indices, m.indptr), shape=m.shape)

        return SystemMatrix(empty(self.inner), empty(self.bound), self.inner_mask, self.augmented)

    def same_portrait(self, other: SystemMatrix) -> bool:
        return all(
            np.array_equal(a.indptr, b.indptr) and np.array_equal(a.indices, b.indices)
            for a, b in ((self.inner, other.inner), (self.bound, other.bound))
        )

    def combine(self, other: SystemMatrix, alpha: float = 1.0, beta: float = 1.0) -> SystemMatrix:
        """alpha * self + beta * other, both on the same portrait."""
        if not self.same_portrait(other):
            raise PortraitError("Cannot combine matrices with different portraits")
        result = self.zeros_like()
        result.inner.data[:] = alpha * self.inner.data + beta * other.inner.data
        result.bound.data[:] = alpha * self.bound.data + beta * other.bound.data
        return result

    def add(self, rows: NDArray[np.int64], cols: NDArray[np.int64], values: NDArray[np.float64]) -> None:
        """
        Accumulate entries of the full matrix.

        Unknown-to-unknown entries with row <= col go to ``inner``, entries
        from an unknown row to a constrained column go to ``bound``, the
        rest is dropped: lower-triangle entries are mirrors of stored ones
        and constrained rows are replaced by the identity.
        """
        rows = np.asarray(rows, dtype=np.int64)
        cols = np.asarray(cols, dtype=np.int64)
        values = np.asarray(values, dtype=np.float64)
        row_inner = self.inner_mask[rows]
        col_inner = self.inner_mask[cols]

        upper = row_inner & col_inner & (rows <= cols)
        _scatter(self.inner, rows[upper], cols[upper], values[upper])
        coupling = row_inner & ~col_inner
        _scatter(self.bound, rows[coupling], cols[coupling], values[coupling])

    def set_constrained_diagonal(self) -> None:
        constrained = np.flatnonzero(~self.inner_mask)
        positions = locate(
            self.inner.indptr, self.inner.indices, constrained, constrained,
            bool(self.inner.has_sorted_indices),
        )
        if np.any(positions < 0):
            raise PortraitError("Constrained DoF without a diagonal entry")
        self.inner.data[positions] = 1.0

    def add_augmentation(self, integrals: NDArray[np.float64], dofs_per_node: int = 1) -> None:
        """Couple every unknown DoF of component k to row n + k with coefficient ∫N_i."""
        if not self.augmented:
            raise PortraitError("Portrait has no augmented rows")
        rows = np.flatnonzero(self.inner_mask)
        cols = self.n_dofs + rows % dofs_per_node
        _scatter(self.inner, rows, cols, integrals[rows])

    def full(self) -> csr_matrix:
        """Symmetric matrix restored from the stored upper triangle."""
        return (self.inner + sparse.triu(self.inner, k=1).T).tocsr()

    def bound_product(self, x: NDArray[np.float64]) -> NDArray[np.float64]:
        """K_bound @ x for x over the DoFs."""
        padded = np.zeros(self.size)
        padded[: len(x)] = x
        return self.bound @ padded

    @property
    def nnz(self) -> int:
        return self.inner.nnz


class BlockAccumulator:
    """Buffers element blocks and scatters them into a SystemMatrix in batches."""

    def __init__(self, system: SystemMatrix):
        self.system = system
        self._rows: List[NDArray[np.int64]] = []
        self._cols: List[NDArray[np.int64]] = []
        self._values: List[NDArray[np.float64]] = []
        self._buffered = 0

    def add_block(self, row_dofs, col_dofs, block) -> None:
        self._rows.append(np.repeat(row_dofs, len(col_dofs)))
        self._cols.append(np.tile(col_dofs, len(row_dofs)))
        self._values.append(np.asarray(block).ravel())
        self._buffered += block.size
        if self._buffered >= FLUSH_SIZE:
            self.flush()

    def flush(self) -> None:
        if not self._buffered:
            return
        self.system.add(
            np.concatenate(self._rows), np.concatenate(self._cols), np.concatenate(self._values)
        )
        self._rows, self._cols, self._values = [], [], []
        self._buffered = 0


def assemble_local(
    system: SystemMatrix,
    mesh: Mesh,
    block: Callable[[int], NDArray[np.float64]],
    dofs_per_node: int = 1,
) -> None:
    """Add ``block(e)`` of every element."""
    acc = BlockAccumulator(system)

    def rule(e: int) -> None:
        dofs = element_dofs(mesh, e, dofs_per_node)
        acc.add_block(dofs, dofs, block(e))

    for_each_element(mesh, rule)
    acc.flush()


def assemble_nonlocal(
    system: SystemMatrix,
    mesh: Mesh,
    block: Callable[[int, int], NDArray[np.float64]],
    dofs_per_node: int = 1,
) -> None:
    """Add ``block(eL, eNL)`` of every element and each of its neighbours."""
    acc = BlockAccumulator(system)

    def rule(eL: int, eNL: int) -> None:
        acc.add_block(
            element_dofs(mesh, eL, dofs_per_node),
            element_dofs(mesh, eNL, dofs_per_node),
            block(eL, eNL),
        )

    for_each_element_pair(mesh, rule)
    acc.flush()


def assemble_vector(
    mesh: Mesh,
    element_vector: Callable[[int], NDArray[np.float64]],
    dofs_per_node: int = 1,
    out: Optional[NDArray[np.float64]] = None,
) -> NDArray[np.float64]:
    """
    Sum element vectors into a global vector.

    Element vectors are computed once per element, then gathered node by
    node so that every entry has a single writer.
    """
    vectors = [None] * mesh.elements_count

    def compute(e: int) -> None:
        vectors[e] = np.asarray(element_vector(e)).reshape(-1, dofs_per_node)

    for_each_element(mesh, compute)

    f = np.zeros((mesh.nodes_count, dofs_per_node)) if out is None else out.reshape(-1, dofs_per_node)

    def gather(node: int, e: int, i: int) -> None:
        f[node] += vectors[e][i]

    for_each_node(mesh, gather)
    return f.ravel()


@njit
def _block_row(
    form, i, eL, eNL, use_nonlocal, local_outer, N, gradients, weights, coords, kernel, P
):
    """
    Row i of the (eL, eNL) block before the material coefficients.

    Fills P[k, l, j] = ∫ dN_i/dx_k dN_j/dx_l (local) or the double
    integral with phi (nonlocal). For MASS only P[0, 0, j] = ∫ N_i N_j.
    """
    kind, norm, radius, p, q = kernel
    dim = gradients.shape[2]
    n = P.shape[2]
    nq = weights.shape[1]
    P[:] = 0.0
    if form == MASS:
        for j in range(n):
            s = 0.0
            for g in range(nq):
                s += N[eL, i, g] * N[eL, j, g] * weights[eL, g]
            P[0, 0, j] = s
        return
    if not use_nonlocal:
        for g in range(nq):
            w = weights[eL, g]
            if w == 0.0:
                continue
            for j in range(n):
                for k in range(dim):
                    a = gradients[eL, i, k, g] * w
                    for l in range(dim):
                        P[k, l, j] += a * gradients[eL, j, l, g]
        return
    if local_outer:
        for g in range(nq):
            wL = weights[eL, g]
            if wL == 0.0:
                continue
            for s in range(nq):
                wNL = weights[eNL, s]
                if wNL == 0.0:
                    continue
                phi = influence_value(kind, norm, radius, p, q, coords[eL, g], coords[eNL, s])
                if phi == 0.0:
                    continue
                phi *= wL * wNL
                for j in range(n):
                    for k in range(dim):
                        a = gradients[eL, i, k, g] * phi
                        for l in range(dim):
                            P[k, l, j] += a * gradients[eNL, j, l, s]
        return
    convolved = np.zeros((dim, nq))
    for g in range(nq):
        wL = weights[eL, g]
        if wL == 0.0:
            continue
        for s in range(nq):
            if weights[eNL, s] == 0.0:
                continue
            phi = influence_value(kind, norm, radius, p, q, coords[eL, g], coords[eNL, s]) * wL
            for k in range(dim):
                convolved[k, s] += gradients[eL, i, k, g] * phi
    for s in range(nq):
        wNL = weights[eNL, s]
        if wNL == 0.0:
            continue
        for j in range(n):
            for k in range(dim):
                a = convolved[k, s] * wNL
                for l in range(dim):
                    P[k, l, j] += a * gradients[eNL, j, l, s]


@njit
def _entry(form, coefficients, P, a, b, j):
    factor = coefficients[0]
    if form == DIFFUSION:
        s = 0.0
        for k in range(P.shape[0]):
            s += P[k, k, j]
        return factor * s
    if form == MASS:
        return factor * P[0, 0, j]
    D0, D1, D2 = coefficients[1], coefficients[2], coefficients[3]
    if a == 0 and b == 0:
        return factor * (D0 * P[0, 0, j] + D2 * P[1, 1, j])
    if a == 0:
        return factor * (D1 * P[0, 1, j] + D2 * P[1, 0, j])
    if b == 0:
        return factor * (D1 * P[1, 0, j] + D2 * P[0, 1, j])
    return factor * (D0 * P[1, 1, j] + D2 * P[0, 0, j])


@njit(parallel=True)
def _fill_pass(
    ranges,
    dofs,
    node_elements_ptr,
    node_elements,
    node_local,
    coupled_ptr,
    coupled,
    elements,
    sizes,
    inner_mask,
    N,
    gradients,
    weights,
    coords,
    form,
    coefficients,
    use_nonlocal,
    local_outer,
    kernel,
    inner_indptr,
    inner_indices,
    inner_data,
    bound_indptr,
    bound_indices,
    bound_data,
    sorted_rows,
):
    """
    Add block rows of all nodes in each thread's row range.

    Only rows of the range's nodes are written. Returns the number of
    entries per range that had no position in the portrait.
    """
    chunks = ranges.shape[0] - 1
    dim = gradients.shape[2]
    missing = np.zeros(chunks, dtype=np.int64)
    for t in prange(chunks):
        P = np.empty((dim, dim, elements.shape[1]))
        for node in range(ranges[t], ranges[t + 1]):
            owned = False
            for a in range(dofs):
                if inner_mask[dofs * node + a]:
                    owned = True
            if not owned:
                continue
            for k in range(node_elements_ptr[node], node_elements_ptr[node + 1]):
                e = node_elements[k]
                i = node_local[k]
                for c in range(coupled_ptr[e], coupled_ptr[e + 1]):
                    eNL = coupled[c]
                    _block_row(
                        form, i, e, eNL, use_nonlocal, local_outer, N, gradients, weights, coords, kernel, P
                    )
                    for j in range(sizes[eNL]):
                        other = elements[eNL, j]
                        for a in range(dofs):
                            row = dofs * node + a
                            if not inner_mask[row]:
                                continue
                            for b in range(dofs):
                                col = dofs * other + b
                                if inner_mask[col]:
                                    if row > col:
                                        continue
                                    pos = position(inner_indptr, inner_indices, row, col, sorted_rows)
                                    if pos < 0:
                                        missing[t] += 1
                                    else:
                                        inner_data[pos] += _entry(form, coefficients, P, a, b, j)
                                else:
                                    pos = position(bound_indptr, bound_indices, row, col, sorted_rows)
                                    if pos < 0:
                                        missing[t] += 1
                                    else:
                                        bound_data[pos] += _entry(form, coefficients, P, a, b, j)
    return missing


def assemble_parallel(
    system: SystemMatrix,
    mesh: Mesh,
    cache: QuadratureCache,
    form: int,
    factor: float,
    D=(0.0, 0.0, 0.0),
    influence: Optional[InfluenceFunction] = None,
    loop_order: str = "local_outer",
    dofs_per_node: int = 1,
    chunks: Optional[int] = None,
) -> None:
    """
    Compiled, row-parallel assembly of a built-in block form.

    Parameters
    ----------
    form : int
        ``DIFFUSION`` (``factor * ∫ grad N_i . grad N_j``), ``PLANE_STRESS``
        (``factor`` times the XX, XY, YX, YY blocks with ``D``) or ``MASS``.
    influence : InfluenceFunction, optional
        With an influence function the nonlocal double integral is added
        over every element and each of its neighbours.
    chunks : int, optional
        Number of row ranges; defaults to the numba thread count.
    """
    use_nonlocal = influence is not None
    if use_nonlocal:
        if influence.kind == CUSTOM:
            raise ConfigurationError(
                f"{type(influence).__name__} has no compiled form; use assemble_nonlocal"
            )
        if form == MASS:
            raise ConfigurationError("The mass form has no nonlocal term")
        if not mesh.has_neighbours:
            raise ConfigurationError("Nonlocal assembly needs mesh.find_neighbours() first")
        kernel = influence.kernel_parameters()
    else:
        kernel = (CUSTOM, 0.0, 1.0, 0.0, 0.0)
    if form == PLANE_STRESS and (dofs_per_node != 2 or mesh.dimension != 2):
        raise ConfigurationError("Plane elasticity needs a 2D mesh and two DoFs per node")
    if form not in (DIFFUSION, PLANE_STRESS, MASS):
        raise ConfigurationError(f"Unknown block form {form}")
    if loop_order not in LOOP_ORDERS:
        raise ConfigurationError(f"Unknown loop order {loop_order!r}. Use one of {LOOP_ORDERS}.")

    coupled_ptr, coupled = coupling(mesh, use_nonlocal)
    N, gradients, weights, coords = cache.padded()
    sorted_rows = bool(system.inner.has_sorted_indices and system.bound.has_sorted_indices)
    missing = _fill_pass(
        row_ranges(mesh.nodes_count, chunks),
        dofs_per_node,
        mesh.node_elements_ptr,
        mesh.node_elements,
        mesh.node_local,
        coupled_ptr,
        coupled,
        mesh.elements,
        mesh.element_sizes,
        system.inner_mask,
        N,
        gradients,
        weights,
        coords,
        form,
        np.array([factor, *D], dtype=np.float64),
        use_nonlocal,
        loop_order == "local_outer",
        kernel,
        system.inner.indptr,
        system.inner.indices,
        system.inner.data,
        system.bound.indptr,
        system.bound.indices,
        system.bound.data,
        sorted_rows,
    )
    if missing.sum():
        raise PortraitError(f"{missing.sum()} entries are outside the matrix portrait")
