"""Sparse matrix portrait: which (row, col) pairs of K are nonzero.

The portrait is built in two passes over the same node-centric traversal.
The first pass only counts the columns of every row, the second writes
them into storage allocated from the prefix sums of those counts. Rows are
split into contiguous ranges, one per thread, and every thread owns the
rows of its range, so neither pass needs locks.

Only the upper triangle (row <= col) is stored. A DoF with a first-kind
condition keeps a single diagonal entry in the inner matrix; its couplings
to unknown DoFs go to the boundary matrix, stored in the unknown's row.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

import numba
import numpy as np
from numba import njit, prange
from numpy.typing import NDArray
from scipy.sparse import csr_matrix

from .errors import ConfigurationError, PortraitError
from .mesh import Mesh

log = logging.getLogger(__name__)


class SparseBuilder:
    """Two-phase CSR construction.

    Counting phase: ``reserve_row`` / ``reserve_rows`` declare how many
    entries each row will hold. ``allocate`` turns the counts into row
    pointers and switches to the filling phase, where ``append_entry`` /
    ``append_entries`` write column indices. ``finalize`` checks that every
    row received exactly what it reserved and returns the matrix.
    """

    COUNTING, FILLING, FINALIZED = "counting", "filling", "finalized"

    def __init__(self, n_rows: int, n_cols: int | None = None):
        self.shape = (n_rows, n_rows if n_cols is None else n_cols)
        self.phase = self.COUNTING
        self._counts = np.zeros(n_rows, dtype=np.int64)
        self._indptr: NDArray[np.int64] | None = None
        self._indices: NDArray[np.int64] | None = None
        self._cursor: NDArray[np.int64] | None = None

    def _require(self, phase: str, action: str) -> None:
        if self.phase != phase:
            raise PortraitError(f"Cannot {action} in the {self.phase} phase")

    @property
    def nnz(self) -> int:
        return int(self._counts.sum())

    @property
    def counts(self) -> NDArray[np.int64]:
        return self._counts.copy()

    # Counting phase

    def reserve_row(self, row: int, count: int = 1) -> None:
        self._require(self.COUNTING, "reserve rows")
        self._counts[row] += count

    def reserve_rows(self, counts: NDArray[np.int64]) -> None:
        self._require(self.COUNTING, "reserve rows")
        self._counts += counts

    def counting_view(self) -> NDArray[np.int64]:
        """Per-row counters for bulk counting kernels."""
        self._require(self.COUNTING, "count entries")
        return self._counts

    def allocate(self) -> None:
        self._require(self.COUNTING, "allocate")
        self._indptr = np.zeros(self.shape[0] + 1, dtype=np.int64)
        np.cumsum(self._counts, out=self._indptr[1:])
        self._indices = np.full(self._indptr[-1], -1, dtype=np.int64)
        self._cursor = self._indptr[:-1].copy()
        self.phase = self.FILLING

    # Filling phase

    def filling_view(self) -> tuple[NDArray[np.int64], NDArray[np.int64]]:
        """(cursor, indices) for bulk filling kernels."""
        self._require(self.FILLING, "fill entries")
        return self._cursor, self._indices

    def append_entry(self, row: int, col: int) -> None:
        self._require(self.FILLING, "append entries")
        if not 0 <= col < self.shape[1]:
            raise PortraitError(f"Column {col} outside matrix of shape {self.shape}")
        if self._cursor[row] >= self._indptr[row + 1]:
            raise PortraitError(f"Row {row} overflows its {self._counts[row]} reserved entries")
        self._indices[self._cursor[row]] = col
        self._cursor[row] += 1

    def append_entries(self, rows: NDArray[np.int64], cols: NDArray[np.int64]) -> None:
        self._require(self.FILLING, "append entries")
        rows = np.asarray(rows, dtype=np.int64)
        cols = np.asarray(cols, dtype=np.int64)
        if np.any((cols < 0) | (cols >= self.shape[1])):
            raise PortraitError(f"Columns outside matrix of shape {self.shape}")
        order = np.argsort(rows, kind="stable")
        rows, cols = rows[order], cols[order]
        rank = np.arange(len(rows)) - np.searchsorted(rows, rows, side="left")
        positions = self._cursor[rows] + rank
        if np.any(positions >= self._indptr[rows + 1]):
            raise PortraitError("Appended entries overflow their reserved rows")
        self._indices[positions] = cols
        np.add.at(self._cursor, rows, 1)

    def finalize(self, sort: bool = True) -> csr_matrix:
        self._require(self.FILLING, "finalize")
        short = np.flatnonzero(self._cursor != self._indptr[1:])
        if len(short):
            raise PortraitError(
                f"{len(short)} rows hold fewer entries than counted, first is row {short[0]}"
            )
        if sort:
            _sort_rows(self._indptr, self._indices)
            row_of = np.repeat(np.arange(self.shape[0]), self._counts)
            repeated = (np.diff(self._indices) <= 0) & (row_of[1:] == row_of[:-1])
            if np.any(repeated):
                raise PortraitError(f"Duplicate columns in row {row_of[1:][repeated][0]}")

        matrix = csr_matrix(
            (np.zeros(len(self._indices)), self._indices, self._indptr), shape=self.shape
        )
        matrix.has_sorted_indices = sort
        self.phase = self.FINALIZED
        return matrix


@njit(parallel=True)
def _sort_rows(indptr, indices):
    for row in prange(indptr.shape[0] - 1):
        indices[indptr[row] : indptr[row + 1]] = np.sort(indices[indptr[row] : indptr[row + 1]])


@njit(parallel=True)
def _portrait_pass(
    ranges,
    dofs,
    node_elements_ptr,
    node_elements,
    coupled_ptr,
    coupled,
    elements,
    sizes,
    inner,
    fill,
    inner_cursor,
    inner_indices,
    bound_cursor,
    bound_indices,
):
    """
    Node-centric traversal shared by both phases.

    Every row range is owned by one thread. ``seen[other] == node`` marks the
    column nodes already visited for the current row node, so overlapping
    elements do not produce duplicate columns. Without ``fill`` the cursors
    are plain counters.
    """
    n_nodes = node_elements_ptr.shape[0] - 1
    for t in prange(ranges.shape[0] - 1):
        seen = np.full(n_nodes, -1, dtype=np.int64)
        for node in range(ranges[t], ranges[t + 1]):
            for k in range(node_elements_ptr[node], node_elements_ptr[node + 1]):
                e = node_elements[k]
                for s in range(coupled_ptr[e], coupled_ptr[e + 1]):
                    eNL = coupled[s]
                    for j in range(sizes[eNL]):
                        other = elements[eNL, j]
                        if seen[other] == node:
                            continue
                        seen[other] = node
                        for a in range(dofs):
                            row = dofs * node + a
                            for b in range(dofs):
                                col = dofs * other + b
                                if inner[row]:
                                    if inner[col]:
                                        if row <= col:
                                            if fill:
                                                inner_indices[inner_cursor[row]] = col
                                            inner_cursor[row] += 1
                                    else:
                                        if fill:
                                            bound_indices[bound_cursor[row]] = col
                                        bound_cursor[row] += 1
                                elif row == col:
                                    if fill:
                                        inner_indices[inner_cursor[row]] = col
                                    inner_cursor[row] += 1


@njit
def position(indptr, indices, row, col, sorted_rows):
    """Position of (row, col) in CSR storage, -1 if absent.

    Binary search when the rows are sorted, linear scan otherwise.
    """
    first, last = indptr[row], indptr[row + 1]
    if sorted_rows:
        p = first + np.searchsorted(indices[first:last], col)
        if p < last and indices[p] == col:
            return p
        return -1
    for p in range(first, last):
        if indices[p] == col:
            return p
    return -1


@njit
def locate(indptr, indices, rows, cols, sorted_rows=True):
    """Positions of (rows[k], cols[k]) in CSR storage, -1 if absent."""
    positions = np.empty(rows.shape[0], dtype=np.int64)
    for k in range(rows.shape[0]):
        positions[k] = position(indptr, indices, rows[k], cols[k], sorted_rows)
    return positions


def coupling(mesh: Mesh, use_nonlocal: bool) -> tuple[NDArray[np.int64], NDArray[np.int64]]:
    """Element -> coupled elements CSR: the neighbour lists, or each element with itself."""
    if use_nonlocal:
        return mesh.neighbours_ptr, mesh.neighbours
    n = mesh.elements_count
    return np.arange(n + 1, dtype=np.int64), np.arange(n, dtype=np.int64)


def row_ranges(n_rows: int, chunks: int | None = None) -> NDArray[np.int64]:
    """Contiguous row ranges, one per thread."""
    chunks = numba.get_num_threads() if chunks is None else chunks
    chunks = max(1, min(chunks, n_rows))
    return np.linspace(0, n_rows, chunks + 1).round().astype(np.int64)


@dataclass
class Portrait:
    """
    Portrait of the inner and boundary matrices of one problem.

    Parameters
    ----------
    mesh : Mesh
        Mesh with neighbours found if ``use_nonlocal``.
    inner : ndarray of bool (nodes_count * dofs_per_node,)
        False for DoFs with a first-kind condition.
    dofs_per_node : int
        1 for heat, 2 for plane elasticity (DoF = dofs_per_node * node + component).
    use_nonlocal : bool
        Couple every node with the nodes of all neighbour elements.
    augmented : int
        Extra solvability rows for pure second-kind problems; row
        ``n + k`` pairs with every DoF of component k.
    """

    mesh: Mesh
    inner: NDArray[np.bool_]
    dofs_per_node: int = 1
    use_nonlocal: bool = False
    augmented: int = 0
    chunks: int | None = None

    n_dofs: int = field(init=False)
    size: int = field(init=False)

    def __post_init__(self) -> None:
        if self.mesh is None:
            raise ConfigurationError("Portrait needs a mesh")
        self.n_dofs = self.mesh.nodes_count * self.dofs_per_node
        self.size = self.n_dofs + self.augmented
        self.inner = np.asarray(self.inner, dtype=np.bool_)
        if self.inner.shape != (self.n_dofs,):
            raise ConfigurationError(
                f"Inner DoF mask has shape {self.inner.shape}, expected ({self.n_dofs},)"
            )
        if self.augmented not in (0, self.dofs_per_node):
            raise ConfigurationError(
                f"augmented must be 0 or {self.dofs_per_node}, got {self.augmented}"
            )
        if self.use_nonlocal and not self.mesh.has_neighbours:
            raise ConfigurationError("Nonlocal portrait needs mesh.find_neighbours() first")

    def _run(self, fill, inner_cursor, inner_indices, bound_cursor, bound_indices) -> None:
        coupled_ptr, coupled = coupling(self.mesh, self.use_nonlocal)
        _portrait_pass(
            row_ranges(self.mesh.nodes_count, self.chunks),
            self.dofs_per_node,
            self.mesh.node_elements_ptr,
            self.mesh.node_elements,
            coupled_ptr,
            coupled,
            self.mesh.elements,
            self.mesh.element_sizes,
            self.inner,
            fill,
            inner_cursor,
            inner_indices,
            bound_cursor,
            bound_indices,
        )

    def _augmented_entries(self) -> tuple[NDArray[np.int64], NDArray[np.int64]]:
        rows = np.flatnonzero(self.inner)
        return rows, self.n_dofs + rows % self.dofs_per_node

    def count(self) -> tuple[SparseBuilder, SparseBuilder]:
        """First pass: builders with every row's entry count reserved."""
        inner_builder = SparseBuilder(self.size)
        bound_builder = SparseBuilder(self.size)
        empty = np.empty(0, dtype=np.int64)
        inner_counts = np.zeros(self.size, dtype=np.int64)
        bound_counts = np.zeros(self.size, dtype=np.int64)
        self._run(False, inner_counts, empty, bound_counts, empty)
        inner_builder.reserve_rows(inner_counts)
        bound_builder.reserve_rows(bound_counts)
        if self.augmented:
            rows, _ = self._augmented_entries()
            np.add.at(inner_builder.counting_view(), rows, 1)
        return inner_builder, bound_builder

    def build(self, sort: bool = True) -> tuple[csr_matrix, csr_matrix]:
        """Both passes; returns (K_inner, K_bound) with zero values."""
        start = time.perf_counter()
        inner_builder, bound_builder = self.count()
        inner_builder.allocate()
        bound_builder.allocate()

        inner_cursor, inner_indices = inner_builder.filling_view()
        bound_cursor, bound_indices = bound_builder.filling_view()
        self._run(True, inner_cursor, inner_indices, bound_cursor, bound_indices)
        if self.augmented:
            inner_builder.append_entries(*self._augmented_entries())

        K_inner = inner_builder.finalize(sort)
        K_bound = bound_builder.finalize(sort)
        log.info(
            f"Portrait: {K_inner.nnz} inner + {K_bound.nnz} boundary nonzeros, "
            f"{self.size} rows ({'nonlocal' if self.use_nonlocal else 'local'})"
        )
        log.debug(f"Portrait built in {time.perf_counter() - start:.3f}s")
        return K_inner, K_bound
