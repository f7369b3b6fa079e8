"""Reference finite elements with cached quadrature tables.

Every element type is identified at runtime by an ``ElementType`` tag whose
value is the VTK cell type number, so connectivity read from VTK/SU2 files
and written back to legacy VTK needs no translation. Node orderings follow
VTK as well.

Each ``FiniteElement`` evaluates its shape functions once at its quadrature
points and keeps the tables:

- ``qN[i, q]``        value of shape function i at quadrature point q
- ``qdN[i, k, q]``    derivative along reference coordinate k
- ``weights[q]``      quadrature weight on the reference element

Use ``get_element`` to obtain the shared instance for a tag.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import IntEnum
from functools import lru_cache
from typing import Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from .errors import ConfigurationError


class ElementType(IntEnum):
    VERTEX = 1
    LINEAR = 3
    TRIANGLE = 5
    BILINEAR = 9
    QUADRATIC = 21
    QUADRATIC_TRIANGLE = 22
    SERENDIPITY = 23
    BIQUADRATIC = 28


# Pre-computed Gauss quadrature points and weights on [-1, 1]
_GAUSS_QUAD = {
    1: (np.array([0.0]), np.array([2.0])),
    2: (np.array([-1.0 / np.sqrt(3), 1.0 / np.sqrt(3)]), np.array([1.0, 1.0])),
    3: (np.array([-np.sqrt(3 / 5), 0.0, np.sqrt(3 / 5)]), np.array([5 / 9, 8 / 9, 5 / 9])),
}

# Symmetric rules on the reference triangle (0,0)-(1,0)-(0,1), weights sum to 1/2
_A4, _B4 = 0.445948490915965, 0.091576213509771
_W4A, _W4B = 0.223381589678011 / 2, 0.109951743655322 / 2
_TRIANGLE_QUAD = {
    1: (np.array([[1 / 3, 1 / 3]]), np.array([0.5])),
    2: (
        np.array([[1 / 6, 1 / 6], [2 / 3, 1 / 6], [1 / 6, 2 / 3]]),
        np.full(3, 1 / 6),
    ),
    4: (
        np.array([
            [_A4, _A4], [1 - 2 * _A4, _A4], [_A4, 1 - 2 * _A4],
            [_B4, _B4], [1 - 2 * _B4, _B4], [_B4, 1 - 2 * _B4],
        ]),
        np.array([_W4A, _W4A, _W4A, _W4B, _W4B, _W4B]),
    ),
}


def gauss_legendre(n: int) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Gauss-Legendre points and weights on [-1, 1]."""
    if n <= 0:
        raise ConfigurationError(f"Quadrature needs at least one point, got n={n}")
    if n in _GAUSS_QUAD:
        return _GAUSS_QUAD[n]
    return np.polynomial.legendre.leggauss(n)


def _lagrange_1d(
    nodes: NDArray[np.float64], x: NDArray[np.float64]
) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Values and derivatives of the 1D Lagrange basis on ``nodes`` at ``x``.

    Returns
    -------
    L, dL : ndarray (len(nodes), len(x))
    """
    n = len(nodes)
    L = np.ones((n, len(x)))
    dL = np.zeros((n, len(x)))
    for a in range(n):
        others = [b for b in range(n) if b != a]
        for b in others:
            L[a] *= (x - nodes[b]) / (nodes[a] - nodes[b])
        for b in others:
            term = np.full(len(x), 1.0 / (nodes[a] - nodes[b]))
            for c in others:
                if c != b:
                    term *= (x - nodes[c]) / (nodes[a] - nodes[c])
            dL[a] += term
    return L, dL


class FiniteElement(ABC):
    """Reference element: shape functions plus a quadrature rule.

    Parameters
    ----------
    quadrature_order : int, optional
        Number of Gauss points per direction (segments and quadrilaterals) or
        polynomial degree of the rule (triangles). Defaults to a rule that is
        exact for the element's mass matrix.
    """

    element_type: ElementType
    dimension: int
    nodes: NDArray[np.float64]
    default_quadrature: int

    def __init__(self, quadrature_order: Optional[int] = None):
        order = self.default_quadrature if quadrature_order is None else quadrature_order
        self.quadrature_order = order
        self.qpoints, self.weights = self.quadrature(order)
        self.qN, self.qdN = self.shapes(self.qpoints)

    @abstractmethod
    def quadrature(self, order: int) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Quadrature points (q, dimension) and weights (q,)."""

    @abstractmethod
    def shapes(
        self, points: NDArray[np.float64]
    ) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Shape values (n, p) and reference gradients (n, dimension, p) at ``points``."""

    @property
    def nodes_count(self) -> int:
        return len(self.nodes)

    @property
    def qnodes_count(self) -> int:
        return len(self.weights)

    def shape_value(self, i: int, q: int) -> float:
        return self.qN[i, q]

    def shape_gradient(self, i: int, q: int) -> NDArray[np.float64]:
        return self.qdN[i, :, q]

    def weight(self, q: int) -> float:
        return self.weights[q]

    def __repr__(self) -> str:
        return f"{type(self).__name__}(quadrature_order={self.quadrature_order})"


class Vertex(FiniteElement):
    """Point element used for the boundary of 1D meshes."""

    element_type = ElementType.VERTEX
    dimension = 0
    nodes = np.zeros((1, 0))
    default_quadrature = 1

    def quadrature(self, order):
        return np.zeros((1, 0)), np.ones(1)

    def shapes(self, points):
        return np.ones((1, len(points))), np.zeros((1, 0, len(points)))


class LagrangeSegment(FiniteElement):
    """Lagrange element on [-1, 1]; end nodes first, then interior nodes."""

    dimension = 1
    _nodes_1d: NDArray[np.float64]

    def quadrature(self, order):
        points, weights = gauss_legendre(order)
        return points[:, None], weights

    def shapes(self, points):
        L, dL = _lagrange_1d(self._nodes_1d, points[:, 0])
        return L, dL[:, None, :]


class LinearElement(LagrangeSegment):
    element_type = ElementType.LINEAR
    _nodes_1d = np.array([-1.0, 1.0])
    nodes = _nodes_1d[:, None]
    default_quadrature = 2


class QuadraticElement(LagrangeSegment):
    element_type = ElementType.QUADRATIC
    _nodes_1d = np.array([-1.0, 1.0, 0.0])
    nodes = _nodes_1d[:, None]
    default_quadrature = 3


class TriangleBase(FiniteElement):
    dimension = 2

    def quadrature(self, order):
        if order not in _TRIANGLE_QUAD:
            raise ConfigurationError(
                f"Unsupported triangle quadrature order={order}. Use {sorted(_TRIANGLE_QUAD)}."
            )
        return _TRIANGLE_QUAD[order]


class TriangleElement(TriangleBase):
    element_type = ElementType.TRIANGLE
    nodes = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
    default_quadrature = 2

    def shapes(self, points):
        x, y = points[:, 0], points[:, 1]
        N = np.array([1.0 - x - y, x, y])
        dN = np.empty((3, 2, len(points)))
        dN[:, 0, :] = np.array([-1.0, 1.0, 0.0])[:, None]
        dN[:, 1, :] = np.array([-1.0, 0.0, 1.0])[:, None]
        return N, dN


class QuadraticTriangleElement(TriangleBase):
    element_type = ElementType.QUADRATIC_TRIANGLE
    nodes = np.array([
        [0.0, 0.0], [1.0, 0.0], [0.0, 1.0],
        [0.5, 0.0], [0.5, 0.5], [0.0, 0.5],
    ])
    default_quadrature = 4
    # Mid-side node k sits between these vertices
    _EDGES = ((0, 1), (1, 2), (2, 0))

    def shapes(self, points):
        x, y = points[:, 0], points[:, 1]
        L = np.array([1.0 - x - y, x, y])
        dL = np.array([[-1.0, -1.0], [1.0, 0.0], [0.0, 1.0]])

        N = np.empty((6, len(points)))
        dN = np.empty((6, 2, len(points)))
        for v in range(3):
            N[v] = L[v] * (2.0 * L[v] - 1.0)
            dN[v] = np.outer(dL[v], 4.0 * L[v] - 1.0)
        for k, (a, b) in enumerate(self._EDGES):
            N[3 + k] = 4.0 * L[a] * L[b]
            dN[3 + k] = 4.0 * (np.outer(dL[a], L[b]) + np.outer(dL[b], L[a]))
        return N, dN


class QuadrilateralBase(FiniteElement):
    dimension = 2

    def quadrature(self, order):
        g, w = gauss_legendre(order)
        X, Y = np.meshgrid(g, g, indexing="ij")
        return np.column_stack([X.ravel(), Y.ravel()]), np.outer(w, w).ravel()


class TensorLagrangeQuad(QuadrilateralBase):
    """Tensor product of 1D Lagrange bases on [-1, 1]^2."""

    _nodes_1d: NDArray[np.float64]

    def shapes(self, points):
        Lx, dLx = _lagrange_1d(self._nodes_1d, points[:, 0])
        Ly, dLy = _lagrange_1d(self._nodes_1d, points[:, 1])
        ix = np.searchsorted(self._nodes_1d, self.nodes[:, 0])
        iy = np.searchsorted(self._nodes_1d, self.nodes[:, 1])
        N = Lx[ix] * Ly[iy]
        dN = np.stack([dLx[ix] * Ly[iy], Lx[ix] * dLy[iy]], axis=1)
        return N, dN


class BilinearElement(TensorLagrangeQuad):
    element_type = ElementType.BILINEAR
    _nodes_1d = np.array([-1.0, 1.0])
    nodes = np.array([[-1.0, -1.0], [1.0, -1.0], [1.0, 1.0], [-1.0, 1.0]])
    default_quadrature = 2


class BiquadraticElement(TensorLagrangeQuad):
    element_type = ElementType.BIQUADRATIC
    _nodes_1d = np.array([-1.0, 0.0, 1.0])
    nodes = np.array([
        [-1.0, -1.0], [1.0, -1.0], [1.0, 1.0], [-1.0, 1.0],
        [0.0, -1.0], [1.0, 0.0], [0.0, 1.0], [-1.0, 0.0],
        [0.0, 0.0],
    ])
    default_quadrature = 3


class SerendipityElement(QuadrilateralBase):
    element_type = ElementType.SERENDIPITY
    nodes = BiquadraticElement.nodes[:8]
    default_quadrature = 3

    def shapes(self, points):
        x, y = points[:, 0], points[:, 1]
        N = np.empty((8, len(points)))
        dN = np.empty((8, 2, len(points)))
        for i, (xi, eta) in enumerate(self.nodes):
            if i < 4:
                s = xi * x + eta * y - 1.0
                N[i] = 0.25 * (1 + xi * x) * (1 + eta * y) * s
                dN[i, 0] = 0.25 * xi * (1 + eta * y) * (s + 1 + xi * x)
                dN[i, 1] = 0.25 * eta * (1 + xi * x) * (s + 1 + eta * y)
            elif xi == 0.0:
                N[i] = 0.5 * (1 - x * x) * (1 + eta * y)
                dN[i, 0] = -x * (1 + eta * y)
                dN[i, 1] = 0.5 * eta * (1 - x * x)
            else:
                N[i] = 0.5 * (1 + xi * x) * (1 - y * y)
                dN[i, 0] = 0.5 * xi * (1 - y * y)
                dN[i, 1] = -y * (1 + xi * x)
        return N, dN


_ELEMENTS = {
    ElementType.VERTEX: Vertex,
    ElementType.LINEAR: LinearElement,
    ElementType.QUADRATIC: QuadraticElement,
    ElementType.TRIANGLE: TriangleElement,
    ElementType.QUADRATIC_TRIANGLE: QuadraticTriangleElement,
    ElementType.BILINEAR: BilinearElement,
    ElementType.SERENDIPITY: SerendipityElement,
    ElementType.BIQUADRATIC: BiquadraticElement,
}

# Edge element used on the boundary of each 2D element type
BOUNDARY_ELEMENT = {
    ElementType.LINEAR: ElementType.VERTEX,
    ElementType.QUADRATIC: ElementType.VERTEX,
    ElementType.TRIANGLE: ElementType.LINEAR,
    ElementType.BILINEAR: ElementType.LINEAR,
    ElementType.QUADRATIC_TRIANGLE: ElementType.QUADRATIC,
    ElementType.SERENDIPITY: ElementType.QUADRATIC,
    ElementType.BIQUADRATIC: ElementType.QUADRATIC,
}


@lru_cache(maxsize=None)
def get_element(element_type: int, quadrature_order: Optional[int] = None) -> FiniteElement:
    """Shared reference element for a runtime tag."""
    try:
        cls = _ELEMENTS[ElementType(int(element_type))]
    except (KeyError, ValueError):
        raise ConfigurationError(f"Unsupported element type: {element_type}") from None
    return cls(quadrature_order)
