"""Element integration kernels.

Every kernel integrates one element (or one element pair) by quadrature
and returns the whole block at once. Bilinear forms return ``(rows, cols)``
matrices, linear forms return vectors. Vector problems use interleaved
DoFs: row ``d * i + k`` is component k of local node i.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from .datastructures import LOOP_ORDERS
from .errors import ConfigurationError
from .influence import InfluenceFunction
from .quadrature import ElementQuadrature


def gradient_products(
    qL: ElementQuadrature,
    qNL: Optional[ElementQuadrature] = None,
    influence: Optional[InfluenceFunction] = None,
    loop_order: str = "local_outer",
) -> NDArray[np.float64]:
    """
    Integrals of products of shape-function derivatives.

    Without ``qNL`` this is the local form
    ``P[k, l, i, j] = ∫ dN_i/dx_k dN_j/dx_l dx`` over one element. With
    ``qNL`` it is the nonlocal double integral
    ``P[k, l, i, j] = ∫∫ phi(x, y) dN_i/dx_k(x) dN_j/dx_l(y) dy dx``
    with x in the local element and y in its neighbour.

    Parameters
    ----------
    qL, qNL : ElementQuadrature
        Quadrature of the local and the neighbour element
    influence : InfluenceFunction
        Kernel phi, required with ``qNL``
    loop_order : str
        ``"local_outer"`` contracts the neighbour quadrature first for each
        local point, ``"nonlocal_outer"`` contracts the local quadrature first.

    Returns
    -------
    ndarray (dim, dim, n_L, n_NL)
    """
    A = qL.gradients * qL.weights  # (n, dim, q)
    if qNL is None:
        return np.einsum("ikq,jlq->klij", A, qL.gradients)
    if influence is None:
        raise ConfigurationError("Nonlocal integration needs an influence function")

    phi = influence(qL.coords[:, None, :], qNL.coords[None, :, :])  # (qL, qNL)
    B = qNL.gradients * qNL.weights
    if loop_order == "local_outer":
        convolved = np.einsum("ps,jls->jlp", phi, B)
        return np.einsum("ikp,jlp->klij", A, convolved)
    if loop_order == "nonlocal_outer":
        convolved = np.einsum("ikp,ps->iks", A, phi)
        return np.einsum("iks,jls->klij", convolved, B)
    raise ConfigurationError(f"Unknown loop order {loop_order!r}. Use one of {LOOP_ORDERS}.")


def stiffness(
    qL: ElementQuadrature,
    qNL: Optional[ElementQuadrature] = None,
    influence: Optional[InfluenceFunction] = None,
    factor: float = 1.0,
    loop_order: str = "local_outer",
) -> NDArray[np.float64]:
    """Scalar diffusion block ``factor * ∫ grad N_i . grad N_j`` (local or nonlocal)."""
    P = gradient_products(qL, qNL, influence, loop_order)
    return factor * np.trace(P, axis1=0, axis2=1)


def mass(q: ElementQuadrature, factor: float = 1.0) -> NDArray[np.float64]:
    """Consistent mass block ``factor * ∫ N_i N_j``."""
    return factor * np.einsum("iq,jq,q->ij", q.N, q.N, q.weights)


def plane_stress_blocks(P: NDArray[np.float64], D: Tuple[float, float, float]) -> NDArray[np.float64]:
    """
    Interleave the XX, XY, YX, YY blocks of plane-stress stiffness.

    With a = d/dx and b = d/dy of the shape functions::

        XX = D0 a_i a_j + D2 b_i b_j      XY = D1 a_i b_j + D2 b_i a_j
        YX = D1 b_i a_j + D2 a_i b_j      YY = D0 b_i b_j + D2 a_i a_j
    """
    D0, D1, D2 = D
    if P.shape[0] != 2:
        raise ConfigurationError("Plane elasticity needs a 2D mesh")
    n, m = P.shape[2:]
    K = np.empty((2 * n, 2 * m))
    K[0::2, 0::2] = D0 * P[0, 0] + D2 * P[1, 1]
    K[0::2, 1::2] = D1 * P[0, 1] + D2 * P[1, 0]
    K[1::2, 0::2] = D1 * P[1, 0] + D2 * P[0, 1]
    K[1::2, 1::2] = D0 * P[1, 1] + D2 * P[0, 0]
    return K


def elastic_stiffness(
    qL: ElementQuadrature,
    D: Tuple[float, float, float],
    qNL: Optional[ElementQuadrature] = None,
    influence: Optional[InfluenceFunction] = None,
    factor: float = 1.0,
    loop_order: str = "local_outer",
) -> NDArray[np.float64]:
    """Plane-stress stiffness block of size (2 n_L, 2 n_NL), local or nonlocal."""
    return factor * plane_stress_blocks(gradient_products(qL, qNL, influence, loop_order), D)


def basis_integrals(q: ElementQuadrature) -> NDArray[np.float64]:
    """∫ N_i over the element."""
    return q.N @ q.weights


def linear_form(q: ElementQuadrature, values: NDArray[np.float64], factor: float = 1.0) -> NDArray[np.float64]:
    """
    ``factor * ∫ N_i f`` for f sampled at the quadrature nodes.

    Serves both the volume source and the boundary flux: the quadrature
    weights already carry the volume or the surface Jacobian. ``values`` of
    shape (q, d) gives an interleaved vector of length n * d.
    """
    values = np.asarray(values, dtype=np.float64)
    if values.ndim == 1:
        return factor * (q.N @ (q.weights * values))
    return factor * (q.N @ (q.weights[:, None] * values)).ravel()


def element_gradient(q: ElementQuadrature, values: NDArray[np.float64]) -> NDArray[np.float64]:
    """Gradient of the interpolated field at the quadrature nodes, shape (q, dim)."""
    return np.einsum("i,idq->qd", values, q.gradients)
