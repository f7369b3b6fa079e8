"""Mesh topology adapter.

Holds node coordinates, padded element connectivity with per-element type
tags, boundary groups, the node→element map with global-to-local numbering
and, once ``find_neighbours`` has run, the element neighbour lists used by
the nonlocal traversal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import meshio
import numpy as np
from numpy.typing import NDArray
from scipy.spatial import cKDTree

from .elements import BOUNDARY_ELEMENT, ElementType, FiniteElement, get_element
from .errors import ConfigurationError

log = logging.getLogger(__name__)

# Boundary group names of generated meshes, counter-clockwise from the bottom
DOWN, RIGHT, UP, LEFT = "down", "right", "up", "left"

# meshio cell names understood by the reader
MESHIO_CELL_TYPES = {
    "vertex": ElementType.VERTEX,
    "line": ElementType.LINEAR,
    "line3": ElementType.QUADRATIC,
    "triangle": ElementType.TRIANGLE,
    "triangle6": ElementType.QUADRATIC_TRIANGLE,
    "quad": ElementType.BILINEAR,
    "quad8": ElementType.SERENDIPITY,
    "quad9": ElementType.BIQUADRATIC,
}

# cell_data keys that carry boundary group tags, by reader
MESHIO_TAG_KEYS = ("gmsh:physical", "su2:tag", "medit:ref", "cell_tags")


def _pad(blocks: list[NDArray[np.int64]]) -> NDArray[np.int64]:
    width = max(block.shape[1] for block in blocks)
    padded = [
        np.pad(block, ((0, 0), (0, width - block.shape[1])), constant_values=-1)
        for block in blocks
    ]
    return np.vstack(padded).astype(np.int64)


def _drop_unused_nodes(nodes, elements, boundaries):
    """Remove nodes no element references (serendipity cell centres, CAD points)."""
    used = np.unique(elements[elements >= 0])
    if len(used) == len(nodes):
        return nodes, elements, boundaries
    remap = np.full(len(nodes), -1, dtype=np.int64)
    remap[used] = np.arange(len(used))

    def renumber(conn):
        return np.where(conn >= 0, remap[np.where(conn >= 0, conn, 0)], -1)

    boundaries = {
        name: BoundaryGroup(name, renumber(g.elements), g.element_types)
        for name, g in boundaries.items()
    }
    return nodes[used], renumber(elements), boundaries


@dataclass
class BoundaryGroup:
    """Boundary elements of one named group (edges in 2D, points in 1D)."""

    name: str
    elements: NDArray[np.int64]
    element_types: NDArray[np.int64]

    def __post_init__(self) -> None:
        self.elements = np.atleast_2d(np.asarray(self.elements, dtype=np.int64))
        self.element_types = np.asarray(self.element_types, dtype=np.int64).ravel()
        if len(self.element_types) != len(self.elements):
            raise ConfigurationError(
                f"Boundary group {self.name!r}: {len(self.elements)} elements "
                f"but {len(self.element_types)} type tags"
            )

    @property
    def elements_count(self) -> int:
        return len(self.elements)

    @property
    def nodes(self) -> NDArray[np.int64]:
        return np.unique(self.elements[self.elements >= 0])

    def element(self, k: int) -> FiniteElement:
        return get_element(int(self.element_types[k]))

    def element_nodes(self, k: int) -> NDArray[np.int64]:
        return self.elements[k, : self.element(k).nodes_count]


@dataclass
class Mesh:
    """Finite element mesh of mixed 1D or 2D elements.

    Attributes
    ----------
    nodes : ndarray (n_nodes, dimension)
        Node coordinates
    elements : ndarray (n_elem, max_nodes)
        Element-to-node connectivity in VTK order, padded with -1
    element_types : ndarray (n_elem,)
        ``ElementType`` tag of every element
    boundaries : dict
        Boundary groups by name, in insertion order
    """

    nodes: NDArray[np.float64]
    elements: NDArray[np.int64]
    element_types: NDArray[np.int64]
    boundaries: Dict[str, BoundaryGroup] = field(default_factory=dict)

    # Node -> element map (CSR) and local index of the node in each element
    element_sizes: NDArray[np.int64] = field(init=False, repr=False)
    node_elements_ptr: NDArray[np.int64] = field(init=False, repr=False)
    node_elements: NDArray[np.int64] = field(init=False, repr=False)
    node_local: NDArray[np.int64] = field(init=False, repr=False)

    # Element -> neighbour elements (CSR), filled by find_neighbours
    neighbours_ptr: Optional[NDArray[np.int64]] = field(init=False, default=None, repr=False)
    neighbours: Optional[NDArray[np.int64]] = field(init=False, default=None, repr=False)
    radius: float = field(init=False, default=0.0)

    def __post_init__(self) -> None:
        self.nodes = np.asarray(self.nodes, dtype=np.float64)
        if self.nodes.ndim == 1:
            self.nodes = self.nodes[:, None]
        self.elements = np.atleast_2d(np.asarray(self.elements, dtype=np.int64))
        self.element_types = np.asarray(self.element_types, dtype=np.int64).ravel()
        self._validate()
        self._compute_node_elements()

    def _validate(self) -> None:
        if self.nodes.ndim != 2 or self.dimension not in (1, 2):
            raise ConfigurationError(f"Only 1D and 2D meshes are supported, got {self.nodes.shape}")
        if len(self.element_types) != len(self.elements):
            raise ConfigurationError(
                f"{len(self.elements)} elements but {len(self.element_types)} type tags"
            )
        if len(self.elements) == 0:
            raise ConfigurationError("Mesh has no elements")

        self.element_sizes = (self.elements >= 0).sum(axis=1)
        for etype in np.unique(self.element_types):
            element = get_element(int(etype))
            if element.dimension != self.dimension:
                raise ConfigurationError(
                    f"{ElementType(int(etype)).name} elements in a {self.dimension}D mesh"
                )
            if np.any(self.element_sizes[self.element_types == etype] != element.nodes_count):
                raise ConfigurationError(
                    f"{ElementType(int(etype)).name} elements need {element.nodes_count} nodes"
                )
        used = self.elements[self.elements >= 0]
        if used.max() >= self.nodes_count:
            raise ConfigurationError(
                f"Connectivity references node {used.max()} of {self.nodes_count}"
            )
        for name, group in self.boundaries.items():
            if group.elements.size and group.elements.max() >= self.nodes_count:
                raise ConfigurationError(f"Boundary group {name!r} references unknown nodes")

    def _compute_node_elements(self) -> None:
        e_idx, i_idx = np.nonzero(self.elements >= 0)
        owners = self.elements[e_idx, i_idx]
        counts = np.bincount(owners, minlength=self.nodes_count)
        if np.any(counts == 0):
            orphans = np.flatnonzero(counts == 0)
            raise ConfigurationError(f"Nodes not referenced by any element: {orphans[:10]}")

        order = np.argsort(owners, kind="stable")
        self.node_elements = e_idx[order]
        self.node_local = i_idx[order]
        self.node_elements_ptr = np.zeros(self.nodes_count + 1, dtype=np.int64)
        np.cumsum(counts, out=self.node_elements_ptr[1:])

    # ------------------------------------------------------------------
    # Topology queries
    # ------------------------------------------------------------------

    @property
    def dimension(self) -> int:
        return self.nodes.shape[1]

    @property
    def nodes_count(self) -> int:
        return len(self.nodes)

    @property
    def elements_count(self) -> int:
        return len(self.elements)

    @property
    def boundary_groups_count(self) -> int:
        return len(self.boundaries)

    def node(self, i: int) -> NDArray[np.float64]:
        return self.nodes[i]

    def node_number(self, e: int, i: int) -> int:
        return int(self.elements[e, i])

    def element(self, e: int) -> FiniteElement:
        return get_element(int(self.element_types[e]))

    def element_nodes(self, e: int) -> NDArray[np.int64]:
        return self.elements[e, : self.element_sizes[e]]

    def elements_of_node(self, node: int) -> NDArray[np.int64]:
        return self.node_elements[self.node_elements_ptr[node] : self.node_elements_ptr[node + 1]]

    def global_to_local(self, node: int, e: int) -> int:
        """Position of ``node`` inside element ``e``."""
        first, last = self.node_elements_ptr[node], self.node_elements_ptr[node + 1]
        hits = np.flatnonzero(self.node_elements[first:last] == e)
        if len(hits) == 0:
            raise KeyError(f"Node {node} does not belong to element {e}")
        return int(self.node_local[first + hits[0]])

    def element_centres(self) -> NDArray[np.float64]:
        coords = self.nodes[np.where(self.elements >= 0, self.elements, 0)]
        mask = (self.elements >= 0)[:, :, None]
        return (coords * mask).sum(axis=1) / self.element_sizes[:, None]

    # ------------------------------------------------------------------
    # Nonlocal neighbours
    # ------------------------------------------------------------------

    @property
    def has_neighbours(self) -> bool:
        return self.neighbours_ptr is not None

    def find_neighbours(self, radius: float) -> None:
        """Collect, for every element, the elements whose centres lie within ``radius``.

        The relation is symmetric and every element is its own neighbour.
        """
        if radius < 0.0:
            raise ConfigurationError(f"Neighbour radius must be non-negative, got {radius}")
        centres = self.element_centres()
        tree = cKDTree(centres)
        found = tree.query_ball_point(centres, r=radius)

        counts = np.fromiter((len(f) for f in found), dtype=np.int64, count=len(found))
        self.neighbours_ptr = np.zeros(self.elements_count + 1, dtype=np.int64)
        np.cumsum(counts, out=self.neighbours_ptr[1:])
        self.neighbours = np.concatenate([np.sort(f) for f in found]).astype(np.int64)
        self.radius = radius
        log.info(
            f"Neighbours found for r={radius}: {counts.mean():.1f} per element on average"
        )

    def neighbours_of(self, e: int) -> NDArray[np.int64]:
        if not self.has_neighbours:
            raise ConfigurationError("Neighbours requested before find_neighbours()")
        return self.neighbours[self.neighbours_ptr[e] : self.neighbours_ptr[e + 1]]

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_meshio(cls, mesh: meshio.Mesh | str | Path) -> Mesh:
        """
        Create a Mesh from a meshio mesh or any file meshio can read (SU2, Gmsh, VTK...).

        Parameters
        ----------
        mesh : meshio.Mesh or str or Path
            Either a meshio Mesh object or path to a mesh file.

        Returns
        -------
        Mesh
            Domain cells of the highest dimension become elements, cells one
            dimension lower become boundary groups keyed by their tag.
        """
        if isinstance(mesh, (str, Path)):
            mesh = meshio.read(mesh)

        blocks = [
            (i, MESHIO_CELL_TYPES[block.type], np.asarray(block.data, dtype=np.int64))
            for i, block in enumerate(mesh.cells)
            if block.type in MESHIO_CELL_TYPES
        ]
        if not blocks:
            raise ConfigurationError("No supported cells found in mesh")
        dimension = max(get_element(t).dimension for _, t, _ in blocks)

        domain = [(i, t, data) for i, t, data in blocks if get_element(t).dimension == dimension]
        bounds = [(i, t, data) for i, t, data in blocks if get_element(t).dimension == dimension - 1]

        elements = _pad([data for _, _, data in domain])
        element_types = np.concatenate([np.full(len(data), t) for _, t, data in domain])

        tag_key = next((k for k in MESHIO_TAG_KEYS if k in mesh.cell_data), None)
        names = {int(v[0]): name for name, v in getattr(mesh, "field_data", {}).items()}
        grouped: Dict[str, list] = {}
        for i, t, data in bounds:
            tags = (
                np.asarray(mesh.cell_data[tag_key][i]).ravel()
                if tag_key is not None
                else np.zeros(len(data), dtype=np.int64)
            )
            for tag in np.unique(tags):
                name = names.get(int(tag), str(int(tag)))
                grouped.setdefault(name, []).append((t, data[tags == tag]))

        boundaries = {
            name: BoundaryGroup(
                name,
                _pad([data for _, data in parts]),
                np.concatenate([np.full(len(data), t) for t, data in parts]),
            )
            for name, parts in grouped.items()
        }
        log.info(
            f"Read mesh: {len(elements)} elements, {len(mesh.points)} points, "
            f"boundary groups {list(boundaries)}"
        )
        nodes, elements, boundaries = _drop_unused_nodes(
            np.asarray(mesh.points[:, :dimension], dtype=np.float64), elements, boundaries
        )
        return cls(nodes, elements, element_types, boundaries)


def line_mesh(length: float, n_elem: int, order: int = 1, x0: float = 0.0) -> Mesh:
    """Create 1D mesh on [x0, x0 + length] with boundary points ``left`` and ``right``."""
    if n_elem <= 0 or length <= 0.0:
        raise ConfigurationError("line_mesh needs a positive length and element count")
    if order not in (1, 2):
        raise ConfigurationError(f"Unsupported element order={order}. Use 1 or 2.")

    VX = np.linspace(x0, x0 + length, order * n_elem + 1)
    first = order * np.arange(n_elem)
    if order == 1:
        EToV = np.column_stack([first, first + 1])
        etype = ElementType.LINEAR
    else:
        EToV = np.column_stack([first, first + 2, first + 1])
        etype = ElementType.QUADRATIC

    boundaries = {
        LEFT: BoundaryGroup(LEFT, [[0]], [ElementType.VERTEX]),
        RIGHT: BoundaryGroup(RIGHT, [[len(VX) - 1]], [ElementType.VERTEX]),
    }
    return Mesh(VX, EToV, np.full(n_elem, etype), boundaries)


# Node offsets on the refined grid, one template per element of a cell
_CELL_TEMPLATES = {
    ElementType.TRIANGLE: [[(0, 0), (1, 0), (1, 1)], [(0, 0), (1, 1), (0, 1)]],
    ElementType.BILINEAR: [[(0, 0), (1, 0), (1, 1), (0, 1)]],
    ElementType.QUADRATIC_TRIANGLE: [
        [(0, 0), (2, 0), (2, 2), (1, 0), (2, 1), (1, 1)],
        [(0, 0), (2, 2), (0, 2), (1, 1), (1, 2), (0, 1)],
    ],
    ElementType.SERENDIPITY: [
        [(0, 0), (2, 0), (2, 2), (0, 2), (1, 0), (2, 1), (1, 2), (0, 1)]
    ],
    ElementType.BIQUADRATIC: [
        [(0, 0), (2, 0), (2, 2), (0, 2), (1, 0), (2, 1), (1, 2), (0, 1), (1, 1)]
    ],
}


def rectangle_mesh(
    L1: float,
    L2: float,
    noelms1: int,
    noelms2: int,
    element: ElementType | int = ElementType.BILINEAR,
    x0: float = 0.0,
    y0: float = 0.0,
) -> Mesh:
    """
    Structured mesh of the rectangle [x0, x0+L1] x [y0, y0+L2].

    Parameters
    ----------
    L1, L2 : float
        Side lengths
    noelms1, noelms2 : int
        Number of cells along x and y (triangles split every cell in two)
    element : ElementType
        Any 2D element type

    Returns
    -------
    Mesh
        With boundary groups ``down``, ``right``, ``up``, ``left``.
    """
    element = ElementType(int(element))
    if element not in _CELL_TEMPLATES:
        raise ConfigurationError(f"{element.name} is not a 2D element type")
    if noelms1 <= 0 or noelms2 <= 0 or L1 <= 0.0 or L2 <= 0.0:
        raise ConfigurationError("rectangle_mesh needs positive sizes and cell counts")

    order = 2 if get_element(element).nodes_count > 4 else 1
    nx, ny = order * noelms1 + 1, order * noelms2 + 1
    XX, YY = np.meshgrid(np.linspace(x0, x0 + L1, nx), np.linspace(y0, y0 + L2, ny))
    nodes = np.column_stack([XX.ravel(), YY.ravel()])

    def g(I, J):
        return J * nx + I

    cj, ci = np.meshgrid(np.arange(noelms2), np.arange(noelms1), indexing="ij")
    I0, J0 = order * ci.ravel(), order * cj.ravel()
    per_template = [
        np.column_stack([g(I0 + dI, J0 + dJ) for dI, dJ in template])
        for template in _CELL_TEMPLATES[element]
    ]
    EToV = np.stack(per_template, axis=1).reshape(-1, per_template[0].shape[1])

    edge_type = BOUNDARY_ELEMENT[element]
    sides = {
        DOWN: (noelms1, lambda t: g(t, 0)),
        RIGHT: (noelms2, lambda t: g(nx - 1, t)),
        UP: (noelms1, lambda t: g(order * noelms1 - t, ny - 1)),
        LEFT: (noelms2, lambda t: g(0, order * noelms2 - t)),
    }
    boundaries = {}
    for name, (count, at) in sides.items():
        start = order * np.arange(count)
        columns = [at(start), at(start + order)]
        if order == 2:
            columns.append(at(start + 1))
        boundaries[name] = BoundaryGroup(name, np.column_stack(columns), np.full(count, edge_type))

    nodes, EToV, boundaries = _drop_unused_nodes(nodes, EToV, boundaries)
    return Mesh(nodes, EToV, np.full(len(EToV), element), boundaries)
