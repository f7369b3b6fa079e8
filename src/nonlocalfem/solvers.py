"""Stationary and transient solvers for nonlocal heat and plane elasticity.

Each solve walks the states

    CONFIGURED -> PORTRAIT_BUILT -> ASSEMBLED -> BOUNDARY_APPLIED -> SOLVED

A transient run goes through ASSEMBLED once and then alternates between
BOUNDARY_APPLIED and SOLVED every step.
"""

from __future__ import annotations

import logging
import time
import warnings
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union

import numpy as np
from numpy.typing import NDArray
from scipy.sparse.linalg import MatrixRankWarning, cg, splu

from . import kernels
from .assembly import (
    DIFFUSION,
    MASS,
    PLANE_STRESS,
    SystemMatrix,
    assemble_local,
    assemble_nonlocal,
    assemble_parallel,
    assemble_vector,
)
from .boundary import (
    apply_first_kind,
    check_solvability,
    first_kind_values,
    inner_dofs,
    integrate_second_kind,
    is_pure_neumann,
    normalize_conditions,
)
from .datastructures import (
    AssemblyConfig,
    ElasticParameters,
    HeatParameters,
    Metrics,
    TimeParameters,
    TimeSeries,
)
from .errors import ConfigurationError, SolverError
from .influence import CUSTOM, InfluenceFunction, bell
from .mesh import Mesh
from .portrait import Portrait
from .quadrature import QuadratureCache
from .solution import ElasticSolution, HeatSolution

log = logging.getLogger(__name__)

Field = Union[float, NDArray[np.float64], Callable[..., NDArray[np.float64]]]


class SolverState(Enum):
    CONFIGURED = 0
    PORTRAIT_BUILT = 1
    ASSEMBLED = 2
    BOUNDARY_APPLIED = 3
    SOLVED = 4


class LinearSolver:
    """
    Solve K x = f for a SystemMatrix.

    The direct solver factorizes once and reuses the factors for every
    right-hand side. Conjugate gradients warm-start from ``x0``. A
    numerically singular factorization and direct solutions whose relative
    residual exceeds ``config.residual_tolerance`` raise ``SolverError``.
    """

    def __init__(self, system: SystemMatrix, config: AssemblyConfig):
        self.config = config
        self.matrix = system.full()
        self._lu = None
        if config.linear_solver == "cg":
            if system.augmented:
                raise ConfigurationError(
                    "Conjugate gradients needs a definite matrix; use the direct solver "
                    "for pure second-kind problems"
                )
            return
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("error", MatrixRankWarning)
                self._lu = splu(self.matrix.tocsc())
        except (RuntimeError, MatrixRankWarning) as exc:
            raise SolverError(f"Factorization failed: {exc}") from exc

        pivots = np.abs(self._lu.U.diagonal())
        ratio = pivots.min() / pivots.max() if pivots.max() > 0.0 else 0.0
        if ratio <= self.matrix.shape[0] * np.finfo(np.float64).eps:
            raise SolverError(f"Matrix is numerically singular: pivot ratio {ratio:.3e}")

    def __call__(self, f: NDArray[np.float64], x0: Optional[NDArray[np.float64]] = None) -> NDArray[np.float64]:
        if self._lu is not None:
            x = self._lu.solve(f)
        else:
            x, info = cg(self.matrix, f, x0=x0, rtol=self.config.cg_tolerance)
            if info > 0:
                raise SolverError(f"Conjugate gradients did not converge in {info} iterations")
            if info < 0:
                raise SolverError("Conjugate gradients broke down")
        if not np.all(np.isfinite(x)):
            raise SolverError("Solution contains non-finite values")
        if self._lu is not None:
            residual = np.linalg.norm(self.matrix @ x - f)
            if residual > self.config.residual_tolerance * np.linalg.norm(f):
                raise SolverError(
                    f"Residual {residual:.3e} too large for |f| = {np.linalg.norm(f):.3e}"
                )
        return x


def _nodal_field(mesh: Mesh, value: Field, components: int = 1) -> NDArray[np.float64]:
    if callable(value):
        value = value(mesh.nodes)
    shape = (mesh.nodes_count,) if components == 1 else (mesh.nodes_count, components)
    try:
        return np.array(np.broadcast_to(np.asarray(value, dtype=np.float64), shape)).ravel()
    except ValueError:
        raise ConfigurationError(f"Field of shape {np.shape(value)} does not fit {shape}") from None


class _Solver:
    """State handling and shared assembly steps of the concrete solvers."""

    components = 1

    def __init__(
        self,
        mesh: Mesh,
        parameters: Union[HeatParameters, ElasticParameters],
        influence: Optional[InfluenceFunction],
        config: Optional[AssemblyConfig],
        quadrature_order: Optional[int],
    ):
        if mesh is None:
            raise ConfigurationError("Solver needs a mesh")
        self.mesh = mesh
        self.config = config or AssemblyConfig()
        p1, radius = parameters.p1, parameters.radius
        self.nonlocal_model = self.config.is_nonlocal(p1)
        self.influence = None
        if self.nonlocal_model:
            if influence is not None and radius > 0.0 and not np.isclose(radius, influence.radius):
                raise ConfigurationError(
                    f"Influence radius {influence.radius} differs from radius={radius}; "
                    "use neighbour_radius to widen the element search"
                )
            self.influence = influence or (bell(radius, mesh.dimension) if radius > 0.0 else None)
            if self.influence is None:
                raise ConfigurationError(f"Nonlocal model (p1={p1}) needs a positive radius")
            search = parameters.neighbour_radius or self.influence.radius
            if not mesh.has_neighbours or mesh.radius != search:
                mesh.find_neighbours(search)
        self.compiled = self.influence is None or self.influence.kind != CUSTOM
        self.cache = QuadratureCache(mesh, quadrature_order)
        self.metrics = Metrics(dofs=mesh.nodes_count * self.components, nonlocal_model=self.nonlocal_model)
        self.state = SolverState.CONFIGURED

    def _advance(self, state: SolverState) -> None:
        log.info(f"{type(self).__name__}: {self.state.name} -> {state.name}")
        self.state = state

    def _portrait(self, inner: NDArray[np.bool_], augmented: int) -> SystemMatrix:
        start = time.perf_counter()
        system = SystemMatrix.from_portrait(
            Portrait(self.mesh, inner, self.components, self.nonlocal_model, augmented),
            sort=self.config.sort_indices,
        )
        self.metrics.portrait_seconds += time.perf_counter() - start
        self.metrics.nonzeros = system.inner.nnz
        self.metrics.bound_nonzeros = system.bound.nnz
        self._advance(SolverState.PORTRAIT_BUILT)
        return system

    def _assemble(self, system: SystemMatrix, form: int, scale: float, D, local_block, nonlocal_block) -> None:
        """
        Local term weighted by p1, nonlocal term by p2.

        Built-in influence functions go through the compiled row-parallel
        fill; custom ones through the block rules and the traversal visitors.
        """
        start = time.perf_counter()
        p1, p2 = self.parameters.p1, self.parameters.p2
        if self.compiled:
            assemble_parallel(
                system, self.mesh, self.cache, form, scale * p1, D, dofs_per_node=self.components
            )
            if self.nonlocal_model:
                assemble_parallel(
                    system, self.mesh, self.cache, form, scale * p2, D, self.influence,
                    self.config.nonlocal_loop_order, self.components,
                )
        else:
            assemble_local(system, self.mesh, local_block, self.components)
            assemble_nonlocal(system, self.mesh, nonlocal_block, self.components)
        self.metrics.assembly_seconds += time.perf_counter() - start

    def _basis_integrals(self) -> NDArray[np.float64]:
        integrals = assemble_vector(self.mesh, lambda e: kernels.basis_integrals(self.cache.element(e)))
        return np.repeat(integrals, self.components)

    def _source(
        self, source: Optional[Callable], t: Optional[float] = None, time_dependent: bool = False
    ) -> NDArray[np.float64]:
        if source is None:
            return np.zeros(self.mesh.nodes_count * self.components)
        if not callable(source):
            raise ConfigurationError("Source must be a callable of the coordinates")

        def element_vector(e):
            q = self.cache.element(e)
            values = source(q.coords, t) if time_dependent else source(q.coords)
            if self.components > 1:
                values = np.broadcast_to(np.asarray(values, dtype=np.float64), (len(q.coords), self.components))
            else:
                values = np.broadcast_to(np.asarray(values, dtype=np.float64), (len(q.coords),))
            return kernels.linear_form(q, values)

        return assemble_vector(self.mesh, element_vector, self.components)

    def _solve_stationary(self, conditions, load: NDArray[np.float64], assemble) -> NDArray[np.float64]:
        """Shared stationary pipeline; returns the DoF values."""
        n = self.mesh.nodes_count * self.components
        pure = is_pure_neumann(conditions)
        if pure:
            check_solvability(load, self.components, self.config.neumann_tolerance)

        system = self._portrait(
            inner_dofs(self.mesh, conditions, self.components), self.components if pure else 0
        )
        assemble(system)
        system.set_constrained_diagonal()
        if pure:
            system.add_augmentation(self._basis_integrals(), self.components)
        self._advance(SolverState.ASSEMBLED)

        f = np.zeros(system.size)
        f[:n] = load
        dofs, values = first_kind_values(self.mesh, conditions, self.components)
        apply_first_kind(f, system, dofs, values)
        self._advance(SolverState.BOUNDARY_APPLIED)

        start = time.perf_counter()
        x = LinearSolver(system, self.config)(f)
        self.metrics.solve_seconds += time.perf_counter() - start
        self._advance(SolverState.SOLVED)
        return x[:n]


class HeatSolver(_Solver):
    """
    Heat conduction with the nonlocal conductivity model.

    The stiffness is ``p1 * λ ∫ grad T . grad v`` plus, when p1 is below
    ``config.max_local_weight``, the nonlocal term
    ``(1 - p1) * λ ∫∫ phi(x, y) grad T(y) . grad v(x)``.
    """

    def __init__(
        self,
        mesh: Mesh,
        parameters: Optional[HeatParameters] = None,
        influence: Optional[InfluenceFunction] = None,
        config: Optional[AssemblyConfig] = None,
        quadrature_order: Optional[int] = None,
    ):
        self.parameters = parameters or HeatParameters()
        super().__init__(mesh, self.parameters, influence, config, quadrature_order)

    def _assemble_stiffness(self, system: SystemMatrix) -> None:
        lam, p1, p2 = self.parameters.conductivity, self.parameters.p1, self.parameters.p2
        cache, order = self.cache, self.config.nonlocal_loop_order
        self._assemble(
            system,
            DIFFUSION,
            lam,
            (),
            lambda e: kernels.stiffness(cache.element(e), factor=lam * p1),
            lambda eL, eNL: kernels.stiffness(
                cache.element(eL), cache.element(eNL), self.influence, lam * p2, order
            ),
        )

    def _assemble_capacity(self, system: SystemMatrix) -> None:
        rho_c = self.parameters.density * self.parameters.capacity
        assemble_parallel(system, self.mesh, self.cache, MASS, rho_c)

    def _solution(self, temperature, time_series=None) -> HeatSolution:
        return HeatSolution(
            self.mesh, temperature, self.parameters, self.cache, time_series=time_series
        )

    def stationary(self, boundaries, source: Optional[Callable] = None) -> HeatSolution:
        """
        Solve -div(λ grad T) = source.

        Parameters
        ----------
        boundaries : mapping or sequence
            One condition per boundary group
        source : callable, optional
            Heat source of the coordinates (q, dim)

        Raises
        ------
        UnsolvableProblemError
            For second-kind conditions only and a net load above tolerance,
            before the portrait is built.
        """
        self.state = SolverState.CONFIGURED
        conditions = normalize_conditions(self.mesh, boundaries)
        load = integrate_second_kind(self.mesh, self.cache, conditions) + self._source(source)
        T = self._solve_stationary(conditions, load, self._assemble_stiffness)

        solution = self._solution(T)
        self.metrics.energy = solution.integral
        log.info(f"Stationary heat solved: {len(T)} DoFs, ∫T = {solution.integral:.6e}")
        return solution

    def nonstationary(
        self,
        boundaries,
        initial: Field = 0.0,
        time_parameters: Optional[TimeParameters] = None,
        source: Optional[Callable] = None,
        source_time_dependent: bool = False,
    ) -> HeatSolution:
        """
        Implicit Euler: (C + τK) T_next = τ f + C T_prev.

        Boundary values and the source may depend on time: callables of
        ``(x, t)`` when declared time-dependent (``time_dependent=True`` on
        the condition, ``source_time_dependent=True`` for the source),
        callables of ``x`` otherwise. The initial field is recorded as step 0.
        The matrix is factorized once; CG warm-starts from the previous step.
        """
        if source_time_dependent and not callable(source):
            raise ConfigurationError("A time-dependent source must be a callable of (x, t)")
        tp = time_parameters or TimeParameters()
        tau = tp.tau
        self.state = SolverState.CONFIGURED
        conditions = normalize_conditions(self.mesh, boundaries)
        inner = inner_dofs(self.mesh, conditions)

        K = self._portrait(inner, augmented=0)
        C = K.zeros_like()
        self._assemble_stiffness(K)
        self._assemble_capacity(C)
        A = C.combine(K, 1.0, tau)
        A.set_constrained_diagonal()
        self._advance(SolverState.ASSEMBLED)

        solve = LinearSolver(A, self.config)
        C_full = C.full()
        T = _nodal_field(self.mesh, initial)
        save_path = Path(tp.save_path) if tp.save_path is not None else None
        if save_path is not None:
            save_path.mkdir(parents=True, exist_ok=True)
        series = TimeSeries()
        t0 = tp.time_interval[0]

        def record(step: int, t: float) -> None:
            log.info(f"step = {step}")
            snapshot = self._solution(T)
            if tp.calc_energy:
                series.append(step, t, snapshot.integral)
            if save_path is not None and tp.save_csv:
                snapshot.save_as_csv(save_path / f"{step}.csv")

        record(0, t0)
        steady_source = None
        if source is not None and not source_time_dependent:
            steady_source = self._source(source)

        for step in range(1, tp.steps + 1):
            t = t0 + step * tau
            load = integrate_second_kind(self.mesh, self.cache, conditions, t=t)
            if steady_source is not None:
                load += steady_source
            elif source is not None:
                load += self._source(source, t, time_dependent=True)
            f = tau * load + C_full @ T + C.bound_product(T)
            dofs, values = first_kind_values(self.mesh, conditions, t=t)
            apply_first_kind(f, A, dofs, values)
            self.state = SolverState.BOUNDARY_APPLIED

            start = time.perf_counter()
            T = solve(f, x0=T)
            self.metrics.solve_seconds += time.perf_counter() - start
            self.state = SolverState.SOLVED

            if step % tp.save_freq == 0 or step == tp.steps:
                record(step, t)

        self.metrics.steps = tp.steps
        solution = self._solution(T, time_series=series)
        self.metrics.energy = solution.integral
        return solution


class ElasticitySolver(_Solver):
    """Plane-stress elasticity with the nonlocal stiffness model."""

    components = 2

    def __init__(
        self,
        mesh: Mesh,
        parameters: Optional[ElasticParameters] = None,
        influence: Optional[InfluenceFunction] = None,
        config: Optional[AssemblyConfig] = None,
        quadrature_order: Optional[int] = None,
    ):
        if mesh is not None and mesh.dimension != 2:
            raise ConfigurationError("Plane elasticity needs a 2D mesh")
        self.parameters = parameters or ElasticParameters()
        super().__init__(mesh, self.parameters, influence, config, quadrature_order)

    def _assemble_stiffness(self, system: SystemMatrix) -> None:
        D, p1, p2 = self.parameters.D, self.parameters.p1, self.parameters.p2
        cache, order = self.cache, self.config.nonlocal_loop_order
        self._assemble(
            system,
            PLANE_STRESS,
            1.0,
            D,
            lambda e: kernels.elastic_stiffness(cache.element(e), D, factor=p1),
            lambda eL, eNL: kernels.elastic_stiffness(
                cache.element(eL), D, cache.element(eNL), self.influence, p2, order
            ),
        )

    def stationary(self, boundaries, body_force: Optional[Callable] = None) -> ElasticSolution:
        """
        Solve -div(sigma(u)) = body_force.

        ``boundaries`` gives (x, y) condition pairs per group: displacements
        (first kind) or surface tractions (second kind). ``body_force`` maps
        coordinates (q, 2) to forces (q, 2).
        """
        self.state = SolverState.CONFIGURED
        conditions = normalize_conditions(self.mesh, boundaries, self.components)
        load = integrate_second_kind(self.mesh, self.cache, conditions, self.components)
        load += self._source(body_force)
        u = self._solve_stationary(conditions, load, self._assemble_stiffness)
        log.info(f"Stationary elasticity solved: {len(u)} DoFs")
        return ElasticSolution(
            self.mesh,
            u.reshape(-1, 2),
            self.parameters,
            self.cache,
            influence=self.influence if self.nonlocal_model else None,
        )
