"""Tests for the mesh adapter, generators and neighbour search.

Run with: pytest tests/test_mesh.py -v
"""

import meshio
import numpy as np
import pytest

from nonlocalfem import (
    DOWN,
    LEFT,
    RIGHT,
    UP,
    ConfigurationError,
    ElementType,
    Mesh,
    line_mesh,
    rectangle_mesh,
)


class TestLineMesh:
    """Test 1D mesh generation."""

    def test_linear(self):
        """Linear line mesh has n+1 nodes and end-point groups."""
        mesh = line_mesh(2.0, 4)
        assert mesh.dimension == 1
        assert mesh.nodes_count == 5
        assert mesh.elements_count == 4
        assert np.allclose(mesh.nodes[:, 0], [0.0, 0.5, 1.0, 1.5, 2.0])
        assert mesh.boundaries[LEFT].nodes.tolist() == [0]
        assert mesh.boundaries[RIGHT].nodes.tolist() == [4]

    def test_quadratic(self):
        """Quadratic elements list end nodes first, then the middle node."""
        mesh = line_mesh(1.0, 3, order=2)
        assert mesh.nodes_count == 7
        assert mesh.element_nodes(1).tolist() == [2, 4, 3]

    def test_invalid(self):
        """Non-positive sizes and unknown orders are rejected."""
        with pytest.raises(ConfigurationError):
            line_mesh(1.0, 0)
        with pytest.raises(ConfigurationError):
            line_mesh(1.0, 2, order=3)


class TestRectangleMesh:
    """Test structured 2D meshes."""

    @pytest.mark.parametrize(
        "etype, nodes, elements",
        [
            (ElementType.BILINEAR, 12, 6),
            (ElementType.TRIANGLE, 12, 12),
            (ElementType.BIQUADRATIC, 35, 6),
            (ElementType.SERENDIPITY, 29, 6),
            (ElementType.QUADRATIC_TRIANGLE, 35, 12),
        ],
    )
    def test_counts(self, etype, nodes, elements):
        """Node and element counts of a 2x3 cell grid."""
        mesh = rectangle_mesh(1.0, 1.5, 2, 3, etype)
        assert mesh.nodes_count == nodes
        assert mesh.elements_count == elements
        assert np.all(mesh.element_types == etype)

    def test_boundary_groups(self):
        """Groups down/right/up/left cover the sides counter-clockwise."""
        mesh = rectangle_mesh(1.0, 1.5, 2, 3)
        assert list(mesh.boundaries) == [DOWN, RIGHT, UP, LEFT]
        assert mesh.boundaries[DOWN].elements_count == 2
        assert mesh.boundaries[RIGHT].elements_count == 3
        assert np.allclose(mesh.nodes[mesh.boundaries[DOWN].nodes, 1], 0.0)
        assert np.allclose(mesh.nodes[mesh.boundaries[RIGHT].nodes, 0], 1.0)
        assert np.allclose(mesh.nodes[mesh.boundaries[UP].nodes, 1], 1.5)
        assert np.allclose(mesh.nodes[mesh.boundaries[LEFT].nodes, 0], 0.0)

    def test_quadratic_edges(self):
        """Quadratic boundary edges hold start, end and the mid node."""
        mesh = rectangle_mesh(1.0, 1.0, 1, 1, ElementType.BIQUADRATIC)
        group = mesh.boundaries[DOWN]
        assert group.element_types.tolist() == [ElementType.QUADRATIC]
        start, end, mid = mesh.nodes[group.element_nodes(0)]
        assert np.allclose(mid, 0.5 * (start + end))

    def test_positive_orientation(self):
        """Elements are counter-clockwise (positive Jacobian)."""
        for etype in [ElementType.TRIANGLE, ElementType.BILINEAR]:
            mesh = rectangle_mesh(1.0, 1.0, 2, 2, etype)
            for e in range(mesh.elements_count):
                x = mesh.nodes[mesh.element_nodes(e)[:3]]
                a, b = x[1] - x[0], x[2] - x[0]
                assert a[0] * b[1] - a[1] * b[0] > 0.0


class TestTopology:
    """Test node-element maps and validation."""

    def test_global_to_local(self):
        """global_to_local inverts the connectivity."""
        mesh = rectangle_mesh(1.0, 1.0, 3, 2, ElementType.QUADRATIC_TRIANGLE)
        for e in range(mesh.elements_count):
            for i, node in enumerate(mesh.element_nodes(e)):
                assert mesh.global_to_local(node, e) == i
                assert e in mesh.elements_of_node(node)

    def test_node_not_in_element(self):
        """Looking up a node in a foreign element raises KeyError."""
        mesh = line_mesh(1.0, 3)
        with pytest.raises(KeyError):
            mesh.global_to_local(3, 0)

    def test_accessors(self):
        """Adapter accessors agree with the raw arrays."""
        mesh = rectangle_mesh(2.0, 1.0, 2, 1)
        assert mesh.boundary_groups_count == 4
        assert mesh.node_number(1, 2) == mesh.elements[1, 2]
        assert np.allclose(mesh.node(5), [2.0, 1.0])
        assert mesh.element(0).nodes_count == 4
        assert np.allclose(mesh.element_centres(), [[0.5, 0.5], [1.5, 0.5]])

    def test_orphan_node(self):
        """Nodes that no element uses are rejected."""
        with pytest.raises(ConfigurationError):
            Mesh(np.array([0.0, 1.0, 2.0]), [[0, 1]], [ElementType.LINEAR])

    def test_wrong_node_count(self):
        """Connectivity must match the element type."""
        with pytest.raises(ConfigurationError):
            Mesh(np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]]), [[0, 1, 2]], [ElementType.BILINEAR])

    def test_mixed_elements(self):
        """Triangles and quadrilaterals share one padded connectivity."""
        nodes = np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0], [2.0, 0.5]])
        mesh = Mesh(
            nodes,
            [[0, 1, 2, 3], [1, 4, 2, -1]],
            [ElementType.BILINEAR, ElementType.TRIANGLE],
        )
        assert mesh.element_sizes.tolist() == [4, 3]
        assert mesh.element_nodes(1).tolist() == [1, 4, 2]


class TestNeighbours:
    """Test the radius neighbour search."""

    def test_symmetric_and_reflexive(self):
        """Every element neighbours itself and the relation is symmetric."""
        mesh = rectangle_mesh(1.0, 1.0, 4, 4, ElementType.TRIANGLE)
        mesh.find_neighbours(0.3)
        for e in range(mesh.elements_count):
            assert e in mesh.neighbours_of(e)
            for other in mesh.neighbours_of(e):
                assert e in mesh.neighbours_of(other)

    def test_sorted_lists(self):
        """Neighbour lists are sorted."""
        mesh = rectangle_mesh(1.0, 1.0, 5, 5)
        mesh.find_neighbours(0.45)
        for e in range(mesh.elements_count):
            assert np.all(np.diff(mesh.neighbours_of(e)) > 0)

    def test_zero_radius(self):
        """With zero radius each element only sees itself."""
        mesh = line_mesh(1.0, 5)
        mesh.find_neighbours(0.0)
        assert mesh.neighbours.tolist() == list(range(5))
        assert mesh.radius == 0.0

    def test_before_search(self):
        """Neighbours are unavailable before find_neighbours."""
        mesh = line_mesh(1.0, 5)
        assert not mesh.has_neighbours
        with pytest.raises(ConfigurationError):
            mesh.neighbours_of(0)


class TestMeshio:
    """Test import from meshio meshes."""

    def test_from_meshio(self):
        """Quad cells become elements, tagged lines become named groups."""
        points = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [1.0, 1.0, 0.0], [0.0, 1.0, 0.0]])
        m = meshio.Mesh(
            points,
            [("quad", np.array([[0, 1, 2, 3]])), ("line", np.array([[0, 1], [1, 2], [2, 3], [3, 0]]))],
            cell_data={"gmsh:physical": [np.array([5]), np.array([1, 2, 1, 2])]},
            field_data={"wall": np.array([1, 1]), "open": np.array([2, 1])},
        )
        mesh = Mesh.from_meshio(m)
        assert mesh.dimension == 2
        assert mesh.elements_count == 1
        assert set(mesh.boundaries) == {"wall", "open"}
        assert mesh.boundaries["wall"].elements_count == 2
        assert mesh.boundaries["open"].nodes.tolist() == [0, 1, 2, 3]

    def test_from_meshio_file(self, tmp_path):
        """Files are read through meshio; untagged boundaries form one group."""
        points = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [2.0, 2.0]])
        path = tmp_path / "tri.vtk"
        meshio.write(path, meshio.Mesh(points, [("triangle", np.array([[0, 1, 2]]))]))
        mesh = Mesh.from_meshio(path)
        assert mesh.elements_count == 1
        assert mesh.nodes_count == 3
        assert mesh.boundary_groups_count == 0
