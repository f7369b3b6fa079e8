"""Tests for reference elements and quadrature tables.

Run with: pytest tests/test_elements.py -v
"""

import numpy as np
import pytest

from nonlocalfem import ConfigurationError, ElementType, get_element
from nonlocalfem.elements import gauss_legendre

ALL_TYPES = list(ElementType)
DOMAIN_TYPES = [t for t in ElementType if t is not ElementType.VERTEX]


class TestShapeFunctions:
    """Test shape-function tables of every element."""

    @pytest.mark.parametrize("etype", ALL_TYPES)
    def test_partition_of_unity(self, etype):
        """Shape functions sum to one and their derivatives to zero."""
        el = get_element(etype)
        assert np.allclose(el.qN.sum(axis=0), 1.0)
        assert np.allclose(el.qdN.sum(axis=0), 0.0)

    @pytest.mark.parametrize("etype", DOMAIN_TYPES)
    def test_kronecker_property(self, etype):
        """N_i(node_j) = delta_ij."""
        el = get_element(etype)
        N, _ = el.shapes(el.nodes)
        assert np.allclose(N, np.eye(el.nodes_count))

    @pytest.mark.parametrize("etype", DOMAIN_TYPES)
    def test_gradient_of_coordinates(self, etype):
        """Interpolating the node coordinates reproduces the identity Jacobian."""
        el = get_element(etype)
        J = np.einsum("ikq,id->qdk", el.qdN, el.nodes)
        assert np.allclose(J, np.eye(el.dimension))

    def test_accessors(self):
        """Scalar accessors read the cached tables."""
        el = get_element(ElementType.BILINEAR)
        assert el.nodes_count == 4
        assert el.qnodes_count == 4
        assert el.shape_value(0, 0) == el.qN[0, 0]
        assert np.array_equal(el.shape_gradient(2, 1), el.qdN[2, :, 1])
        assert el.weight(3) == 1.0


class TestQuadrature:
    """Test quadrature rules."""

    @pytest.mark.parametrize(
        "etype, area",
        [
            (ElementType.LINEAR, 2.0),
            (ElementType.QUADRATIC, 2.0),
            (ElementType.TRIANGLE, 0.5),
            (ElementType.QUADRATIC_TRIANGLE, 0.5),
            (ElementType.BILINEAR, 4.0),
            (ElementType.SERENDIPITY, 4.0),
            (ElementType.BIQUADRATIC, 4.0),
        ],
    )
    def test_weights_sum_to_reference_measure(self, etype, area):
        """Weights sum to the size of the reference element."""
        assert np.isclose(get_element(etype).weights.sum(), area)

    def test_gauss_exactness(self):
        """n-point Gauss rule integrates x^(2n-1) exactly."""
        for n in [1, 2, 3, 5]:
            x, w = gauss_legendre(n)
            for k in range(2 * n):
                exact = 2.0 / (k + 1) if k % 2 == 0 else 0.0
                assert np.isclose(np.sum(w * x**k), exact)

    def test_triangle_rule_degree_four(self):
        """Six-point triangle rule integrates x^2 y^2 exactly (1/180)."""
        el = get_element(ElementType.QUADRATIC_TRIANGLE)
        x, y = el.qpoints[:, 0], el.qpoints[:, 1]
        assert np.isclose(np.sum(el.weights * x**2 * y**2), 1.0 / 180.0)

    def test_custom_order(self):
        """An explicit quadrature order gives a separate cached element."""
        default = get_element(ElementType.BILINEAR)
        fine = get_element(ElementType.BILINEAR, 3)
        assert fine.qnodes_count == 9
        assert fine is not default
        assert get_element(ElementType.BILINEAR, 3) is fine


class TestDispatch:
    """Test runtime tag dispatch."""

    def test_tags_are_vtk_cell_types(self):
        """Tags equal the VTK cell type numbers."""
        assert [int(t) for t in ElementType] == [1, 3, 5, 9, 21, 22, 23, 28]

    def test_unknown_tag(self):
        """Unknown tags raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            get_element(42)

    def test_unsupported_triangle_order(self):
        """Triangle rules exist only for the tabulated degrees."""
        with pytest.raises(ConfigurationError):
            get_element(ElementType.TRIANGLE, 3)
