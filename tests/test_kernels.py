"""Tests for integration kernels and matrix assembly.

Run with: pytest tests/test_kernels.py -v
"""

import numpy as np
import pytest

from nonlocalfem import (
    AssemblyConfig,
    ConfigurationError,
    ElasticParameters,
    ElementType,
    Portrait,
    PortraitError,
    QuadratureCache,
    SystemMatrix,
    assemble_local,
    assemble_nonlocal,
    assemble_vector,
    bell,
    line_mesh,
    rectangle_mesh,
)
from nonlocalfem import kernels
from nonlocalfem.influence import CUSTOM
from nonlocalfem.assembly import DIFFUSION, MASS, PLANE_STRESS, assemble_parallel, element_dofs


def all_inner(mesh, dofs_per_node=1):
    return np.ones(mesh.nodes_count * dofs_per_node, dtype=bool)


def nonlocal_setup(etype=ElementType.BILINEAR, cells=4, radius=0.4):
    mesh = rectangle_mesh(1.0, 1.0, cells, cells, etype)
    mesh.find_neighbours(radius)
    return mesh, QuadratureCache(mesh), bell(radius)


def assembled(mesh, cache, phi, p1, inner=None):
    """Nonlocal diffusion through the block rules and the traversal visitors."""
    inner = all_inner(mesh) if inner is None else inner
    system = SystemMatrix.from_portrait(Portrait(mesh, inner, use_nonlocal=True))
    assemble_local(system, mesh, lambda e: kernels.stiffness(cache.element(e), factor=p1))
    assemble_nonlocal(
        system,
        mesh,
        lambda eL, eNL: kernels.stiffness(cache.element(eL), cache.element(eNL), phi, 1 - p1),
    )
    return system


class TestLocalKernels:
    """Test single-element bilinear and linear forms."""

    def test_unit_square_stiffness(self):
        """Bilinear Laplacian on the unit square matches the closed form."""
        mesh = rectangle_mesh(1.0, 1.0, 1, 1)
        q = QuadratureCache(mesh).element(0)
        expected = np.array([[4, -1, -2, -1], [-1, 4, -1, -2], [-2, -1, 4, -1], [-1, -2, -1, 4]]) / 6.0
        assert np.allclose(kernels.stiffness(q), expected)

    def test_line_stiffness_and_mass(self):
        """Linear segment of length h: (1/h)[1 -1; -1 1] and (h/6)[2 1; 1 2]."""
        mesh = line_mesh(0.5, 1)
        q = QuadratureCache(mesh).element(0)
        assert np.allclose(kernels.stiffness(q), 2.0 * np.array([[1, -1], [-1, 1]]))
        assert np.allclose(kernels.mass(q), 0.5 / 6.0 * np.array([[2, 1], [1, 2]]))

    @pytest.mark.parametrize(
        "etype",
        [
            ElementType.TRIANGLE,
            ElementType.BILINEAR,
            ElementType.QUADRATIC_TRIANGLE,
            ElementType.SERENDIPITY,
            ElementType.BIQUADRATIC,
        ],
    )
    def test_mass_sums_to_area(self, etype):
        """Mass matrix entries sum to the element area; stiffness rows sum to zero."""
        mesh = rectangle_mesh(2.0, 0.5, 1, 1, etype)
        cache = QuadratureCache(mesh)
        total = sum(kernels.mass(cache.element(e)).sum() for e in range(mesh.elements_count))
        assert np.isclose(total, 1.0)
        for e in range(mesh.elements_count):
            assert np.allclose(kernels.stiffness(cache.element(e)).sum(axis=1), 0.0)

    def test_basis_integrals(self):
        """∫N_i of a linear segment is h/2 and equals the linear form of 1."""
        mesh = line_mesh(3.0, 1)
        q = QuadratureCache(mesh).element(0)
        assert np.allclose(kernels.basis_integrals(q), [1.5, 1.5])
        assert np.allclose(kernels.linear_form(q, np.ones(q.weights.shape)), [1.5, 1.5])

    def test_vector_linear_form(self):
        """Two-component values give an interleaved vector."""
        mesh = rectangle_mesh(1.0, 1.0, 1, 1)
        q = QuadratureCache(mesh).element(0)
        values = np.column_stack([np.ones(4), 2.0 * np.ones(4)])
        assert np.allclose(kernels.linear_form(q, values), np.tile([0.25, 0.5], 4))


class TestElasticKernels:
    """Test plane-stress stiffness."""

    def test_constitutive_constants(self):
        """D0 = E/(1-nu^2), D1 = nu D0, D2 = E/(2(1+nu))."""
        D0, D1, D2 = ElasticParameters(young_modulus=2.0, poisson_ratio=0.25).D
        assert np.isclose(D0, 2.0 / (1.0 - 0.0625))
        assert np.isclose(D1, 0.25 * D0)
        assert np.isclose(D2, 0.8)

    def test_rigid_body_modes(self):
        """Translations and the infinitesimal rotation produce no forces."""
        mesh = rectangle_mesh(2.0, 1.0, 1, 1, ElementType.BIQUADRATIC)
        q = QuadratureCache(mesh).element(0)
        K = kernels.elastic_stiffness(q, ElasticParameters(poisson_ratio=0.3).D)
        x = mesh.nodes[mesh.element_nodes(0)]
        for mode in [np.tile([1.0, 0.0], 9), np.tile([0.0, 1.0], 9), np.column_stack([-x[:, 1], x[:, 0]]).ravel()]:
            assert np.allclose(K @ mode, 0.0)
        assert np.allclose(K, K.T)

    def test_needs_2d(self):
        """Plane stress on a 1D mesh is rejected."""
        q = QuadratureCache(line_mesh(1.0, 1)).element(0)
        with pytest.raises(ConfigurationError):
            kernels.elastic_stiffness(q, (1.0, 0.3, 0.4))


class TestNonlocalKernels:
    """Test the double-quadrature kernel."""

    def test_loop_orders_agree(self):
        """Both contraction orders give the same block."""
        mesh, cache, phi = nonlocal_setup(ElementType.QUADRATIC_TRIANGLE)
        for eL in range(0, mesh.elements_count, 5):
            for eNL in mesh.neighbours_of(eL):
                a = kernels.stiffness(cache.element(eL), cache.element(eNL), phi, loop_order="local_outer")
                b = kernels.stiffness(cache.element(eL), cache.element(eNL), phi, loop_order="nonlocal_outer")
                assert np.allclose(a, b, rtol=1e-12, atol=1e-14)

    def test_elastic_loop_orders_agree(self):
        """Both contraction orders give the same elastic block."""
        mesh, cache, phi = nonlocal_setup()
        D = ElasticParameters().D
        qa, qb = cache.element(0), cache.element(1)
        a = kernels.elastic_stiffness(qa, D, qb, phi, loop_order="local_outer")
        b = kernels.elastic_stiffness(qa, D, qb, phi, loop_order="nonlocal_outer")
        assert np.allclose(a, b, rtol=1e-12, atol=1e-14)

    def test_pair_symmetry(self):
        """Block (a, b) is the transpose of block (b, a)."""
        mesh, cache, phi = nonlocal_setup()
        qa, qb = cache.element(0), cache.element(1)
        assert np.allclose(kernels.stiffness(qa, qb, phi), kernels.stiffness(qb, qa, phi).T)

    def test_unknown_loop_order(self):
        """Unknown loop orders are rejected."""
        mesh, cache, phi = nonlocal_setup()
        q = cache.element(0)
        with pytest.raises(ConfigurationError):
            kernels.stiffness(q, q, phi, loop_order="diagonal")
        with pytest.raises(ConfigurationError):
            kernels.gradient_products(q, q)


class TestAssembly:
    """Test routing of element blocks into the system matrix."""

    def dense_nonlocal(self, mesh, cache, phi, p1):
        """Brute-force dense assembly over all neighbour pairs."""
        K = np.zeros((mesh.nodes_count, mesh.nodes_count))
        for eL in range(mesh.elements_count):
            dL = element_dofs(mesh, eL)
            K[np.ix_(dL, dL)] += p1 * kernels.stiffness(cache.element(eL))
            for eNL in mesh.neighbours_of(eL):
                dNL = element_dofs(mesh, eNL)
                K[np.ix_(dL, dNL)] += (1 - p1) * kernels.stiffness(cache.element(eL), cache.element(eNL), phi)
        return K

    def test_matches_dense(self):
        """Symmetric storage expands to the brute-force matrix."""
        mesh, cache, phi = nonlocal_setup(cells=3, radius=0.5)
        K = assembled(mesh, cache, phi, 0.5).full().toarray()
        assert np.allclose(K, self.dense_nonlocal(mesh, cache, phi, 0.5))

    def test_symmetric(self):
        """The expanded nonlocal matrix is symmetric with zero row sums."""
        mesh, cache, phi = nonlocal_setup(ElementType.TRIANGLE, cells=4, radius=0.35)
        K = assembled(mesh, cache, phi, 0.3).full().toarray()
        assert np.allclose(K, K.T)
        assert np.allclose(K.sum(axis=1), 0.0)

    def test_bound_block(self):
        """Bound holds the full-matrix columns of constrained DoFs."""
        mesh, cache, phi = nonlocal_setup(cells=3, radius=0.5)
        inner = ~np.isclose(mesh.nodes[:, 0], 0.0)
        system = assembled(mesh, cache, phi, 0.5, inner)
        system.set_constrained_diagonal()
        dense = self.dense_nonlocal(mesh, cache, phi, 0.5)
        B = system.bound.toarray()
        assert np.allclose(B[np.ix_(inner, ~inner)], dense[np.ix_(inner, ~inner)])
        assert np.allclose(system.inner.diagonal()[~inner], 1.0)
        K = system.full().toarray()
        assert np.allclose(K[np.ix_(inner, inner)], dense[np.ix_(inner, inner)])

    def test_locality_limit(self):
        """With p1 = 1 the nonlocal blocks vanish and the local matrix remains."""
        mesh, cache, phi = nonlocal_setup(cells=3, radius=0.5)
        local = SystemMatrix.from_portrait(Portrait(mesh, all_inner(mesh)))
        assemble_local(local, mesh, lambda e: kernels.stiffness(cache.element(e)))
        mixed = assembled(mesh, cache, phi, 1.0)
        assert np.allclose(mixed.full().toarray(), local.full().toarray())

    def test_entry_outside_portrait(self):
        """Writing outside the portrait raises PortraitError."""
        mesh, cache, phi = nonlocal_setup(cells=3, radius=0.5)
        system = SystemMatrix.from_portrait(Portrait(mesh, all_inner(mesh)))
        with pytest.raises(PortraitError):
            assemble_nonlocal(
                system, mesh, lambda eL, eNL: kernels.stiffness(cache.element(eL), cache.element(eNL), phi)
            )

    def test_combine(self):
        """Matrices on one portrait combine entrywise."""
        mesh = rectangle_mesh(1.0, 1.0, 2, 2)
        cache = QuadratureCache(mesh)
        K = SystemMatrix.from_portrait(Portrait(mesh, all_inner(mesh)))
        C = K.zeros_like()
        assemble_local(K, mesh, lambda e: kernels.stiffness(cache.element(e)))
        assemble_local(C, mesh, lambda e: kernels.mass(cache.element(e)))
        A = C.combine(K, 1.0, 0.1)
        expected = C.full().toarray() + 0.1 * K.full().toarray()
        assert np.allclose(A.full().toarray(), expected)
        other = SystemMatrix.from_portrait(Portrait(line_mesh(1.0, 8), np.ones(9, dtype=bool)))
        with pytest.raises(PortraitError):
            K.combine(other)

    def test_unsorted_portrait(self):
        """Assembly works on portraits finalized without sorting."""
        mesh = rectangle_mesh(1.0, 1.0, 3, 3, ElementType.TRIANGLE)
        cache = QuadratureCache(mesh)
        results = []
        for sort in [True, False]:
            system = SystemMatrix.from_portrait(Portrait(mesh, all_inner(mesh)), sort=sort)
            assemble_local(system, mesh, lambda e: kernels.stiffness(cache.element(e)))
            results.append(system.full().toarray())
        assert np.allclose(results[0], results[1])

    def test_assemble_vector(self):
        """Node-centric gathering sums the contributions of every element."""
        mesh = line_mesh(1.0, 4)
        cache = QuadratureCache(mesh)
        f = assemble_vector(mesh, lambda e: kernels.basis_integrals(cache.element(e)))
        assert np.allclose(f, [0.125, 0.25, 0.25, 0.25, 0.125])

    def test_config_loop_order_validation(self):
        """AssemblyConfig rejects unknown loop orders and solvers."""
        with pytest.raises(ConfigurationError):
            AssemblyConfig(nonlocal_loop_order="inner_first")
        with pytest.raises(ConfigurationError):
            AssemblyConfig(linear_solver="gmres")
        assert AssemblyConfig().is_nonlocal(0.5)
        assert not AssemblyConfig().is_nonlocal(0.9995)
        assert AssemblyConfig(max_local_weight=1.0).is_nonlocal(0.9995)


class TestParallelAssembly:
    """Test the compiled row-parallel fill against the block rules."""

    @pytest.mark.parametrize("order", ["local_outer", "nonlocal_outer"])
    @pytest.mark.parametrize("chunks", [1, 3])
    def test_diffusion_matches_rules(self, order, chunks):
        """Local and nonlocal diffusion agree in both blocks, for any number of row ranges."""
        mesh, cache, phi = nonlocal_setup(ElementType.TRIANGLE, cells=4, radius=0.35)
        inner = ~np.isclose(mesh.nodes[:, 0], 0.0)
        expected = assembled(mesh, cache, phi, 0.3, inner)
        system = SystemMatrix.from_portrait(Portrait(mesh, inner, use_nonlocal=True))
        assemble_parallel(system, mesh, cache, DIFFUSION, 0.3, chunks=chunks)
        assemble_parallel(system, mesh, cache, DIFFUSION, 0.7, influence=phi, loop_order=order, chunks=chunks)
        assert np.allclose(system.inner.toarray(), expected.inner.toarray())
        assert np.allclose(system.bound.toarray(), expected.bound.toarray())

    def test_plane_stress_matches_rules(self):
        """Interleaved elastic blocks agree on biquadratic elements."""
        mesh, cache, phi = nonlocal_setup(ElementType.BIQUADRATIC, cells=2, radius=0.6)
        D = ElasticParameters(poisson_ratio=0.25).D
        inner = all_inner(mesh, 2)
        inner[0::2] = ~np.isclose(mesh.nodes[:, 0], 0.0)
        rules = SystemMatrix.from_portrait(Portrait(mesh, inner, 2, use_nonlocal=True))
        compiled = rules.zeros_like()
        assemble_local(rules, mesh, lambda e: kernels.elastic_stiffness(cache.element(e), D, factor=0.4), 2)
        assemble_nonlocal(
            rules,
            mesh,
            lambda eL, eNL: kernels.elastic_stiffness(cache.element(eL), D, cache.element(eNL), phi, 0.6),
            2,
        )
        assemble_parallel(compiled, mesh, cache, PLANE_STRESS, 0.4, D, dofs_per_node=2)
        assemble_parallel(compiled, mesh, cache, PLANE_STRESS, 0.6, D, phi, dofs_per_node=2)
        assert np.allclose(compiled.inner.toarray(), rules.inner.toarray())
        assert np.allclose(compiled.bound.toarray(), rules.bound.toarray())

    def test_mass_matches_rules(self):
        """The compiled mass form matches the element mass blocks."""
        mesh = line_mesh(1.0, 5, order=2)
        cache = QuadratureCache(mesh)
        rules = SystemMatrix.from_portrait(Portrait(mesh, all_inner(mesh)))
        compiled = rules.zeros_like()
        assemble_local(rules, mesh, lambda e: kernels.mass(cache.element(e), 2.0))
        assemble_parallel(compiled, mesh, cache, MASS, 2.0)
        assert np.allclose(compiled.inner.data, rules.inner.data)

    def test_unsorted_portrait(self):
        """Rows without sorted columns are searched linearly."""
        mesh, cache, phi = nonlocal_setup(cells=3, radius=0.5)
        results = []
        for sort in [True, False]:
            system = SystemMatrix.from_portrait(Portrait(mesh, all_inner(mesh), use_nonlocal=True), sort=sort)
            assemble_parallel(system, mesh, cache, DIFFUSION, 0.5)
            assemble_parallel(system, mesh, cache, DIFFUSION, 0.5, influence=phi)
            results.append(system.full().toarray())
        assert np.allclose(results[0], results[1])

    def test_entry_outside_portrait(self):
        """Nonlocal values on a local portrait raise PortraitError."""
        mesh, cache, phi = nonlocal_setup(cells=3, radius=0.5)
        system = SystemMatrix.from_portrait(Portrait(mesh, all_inner(mesh)))
        with pytest.raises(PortraitError):
            assemble_parallel(system, mesh, cache, DIFFUSION, 1.0, influence=phi)

    def test_rejected_inputs(self):
        """Custom kernels, nonlocal mass and unknown loop orders are refused."""
        mesh, cache, phi = nonlocal_setup(cells=2, radius=0.5)
        system = SystemMatrix.from_portrait(Portrait(mesh, all_inner(mesh), use_nonlocal=True))

        class Custom(type(phi)):
            kind = CUSTOM

        with pytest.raises(ConfigurationError):
            assemble_parallel(system, mesh, cache, DIFFUSION, 1.0, influence=Custom(radius=0.5))
        with pytest.raises(ConfigurationError):
            assemble_parallel(system, mesh, cache, MASS, 1.0, influence=phi)
        with pytest.raises(ConfigurationError):
            assemble_parallel(system, mesh, cache, DIFFUSION, 1.0, influence=phi, loop_order="inner_first")
        with pytest.raises(ConfigurationError):
            assemble_parallel(system, mesh, cache, PLANE_STRESS, 1.0, (1.0, 0.3, 0.35))
