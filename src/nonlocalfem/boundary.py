"""Boundary conditions of the first and second kind.

Conditions are given per boundary group and per physical component,
either as a mapping from group name or as a sequence in the mesh's group
order::

    {"left": temperature(0.0), "right": flux(lambda x: x[:, 1])}
    {"left": (displacement(0.0), displacement(0.0)), "right": (force(1.0), force(0.0))}

Values are numbers or callables of the boundary coordinates ``x`` of shape
(q, dim); time-dependent callables take ``(x, t)``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from .errors import ConfigurationError, UnsolvableProblemError
from .kernels import linear_form
from .mesh import Mesh
from .quadrature import QuadratureCache

log = logging.getLogger(__name__)

Value = Union[float, Callable[..., NDArray[np.float64]]]


class BoundaryKind(Enum):
    FIRST_KIND = "first_kind"  # prescribed value
    SECOND_KIND = "second_kind"  # prescribed flux

    @classmethod
    def parse(cls, kind) -> BoundaryKind:
        if isinstance(kind, cls):
            return kind
        try:
            return cls(str(kind).lower())
        except ValueError:
            raise ConfigurationError(
                f"Unknown boundary condition kind {kind!r}. Use first_kind or second_kind."
            ) from None


@dataclass(frozen=True)
class BoundaryCondition:
    kind: BoundaryKind
    value: Value = 0.0
    time_dependent: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", BoundaryKind.parse(self.kind))
        if self.time_dependent and not callable(self.value):
            raise ConfigurationError("A time-dependent condition needs a callable value")

    @property
    def is_first_kind(self) -> bool:
        return self.kind is BoundaryKind.FIRST_KIND

    def evaluate(self, x: NDArray[np.float64], t: float = 0.0) -> NDArray[np.float64]:
        if not callable(self.value):
            return np.full(len(x), float(self.value))
        result = self.value(x, t) if self.time_dependent else self.value(x)
        try:
            return np.broadcast_to(np.asarray(result, dtype=np.float64), (len(x),))
        except ValueError:
            raise ConfigurationError(
                f"Boundary value returned shape {np.shape(result)} for {len(x)} points"
            ) from None


def temperature(value: Value, time_dependent: bool = False) -> BoundaryCondition:
    return BoundaryCondition(BoundaryKind.FIRST_KIND, value, time_dependent)


def flux(value: Value, time_dependent: bool = False) -> BoundaryCondition:
    return BoundaryCondition(BoundaryKind.SECOND_KIND, value, time_dependent)


# Elasticity reads better with its own names
displacement = temperature
force = flux

Conditions = Dict[str, Tuple[BoundaryCondition, ...]]


def normalize_conditions(mesh: Mesh, conditions, components: int = 1) -> Conditions:
    """
    Validate a boundary specification against the mesh.

    Every boundary group needs exactly one condition per component.

    Raises
    ------
    ConfigurationError
        For a missing or unknown group, a sequence of the wrong length or a
        wrong number of components.
    """
    names = list(mesh.boundaries)
    if conditions is None:
        raise ConfigurationError("Boundary conditions are required")
    if isinstance(conditions, Mapping):
        missing = [n for n in names if n not in conditions]
        unknown = [n for n in conditions if n not in mesh.boundaries]
        if missing or unknown:
            raise ConfigurationError(
                f"Boundary conditions do not match the mesh groups {names}: "
                f"missing {missing}, unknown {unknown}"
            )
        items = [(n, conditions[n]) for n in names]
    elif isinstance(conditions, Sequence):
        if len(conditions) != len(names):
            raise ConfigurationError(
                f"{len(conditions)} boundary conditions for {len(names)} boundary groups"
            )
        items = list(zip(names, conditions))
    else:
        raise ConfigurationError(f"Unsupported boundary specification {type(conditions).__name__}")

    result = {}
    for name, value in items:
        per_component = (value,) if isinstance(value, BoundaryCondition) else tuple(value)
        if len(per_component) != components or not all(
            isinstance(bc, BoundaryCondition) for bc in per_component
        ):
            raise ConfigurationError(
                f"Boundary group {name!r} needs {components} condition(s), got {value!r}"
            )
        result[name] = per_component
    return result


def is_pure_neumann(conditions: Conditions, component: int | None = None) -> bool:
    """True if no condition (of the component) is of the first kind."""
    return not any(
        bc.is_first_kind
        for per_component in conditions.values()
        for k, bc in enumerate(per_component)
        if component is None or k == component
    )


def inner_dofs(mesh: Mesh, conditions: Conditions, components: int = 1) -> NDArray[np.bool_]:
    """Mask of DoFs without a first-kind condition."""
    inner = np.ones(mesh.nodes_count * components, dtype=np.bool_)
    for name, per_component in conditions.items():
        nodes = mesh.boundaries[name].nodes
        for k, bc in enumerate(per_component):
            if bc.is_first_kind:
                inner[components * nodes + k] = False
    return inner


def first_kind_values(
    mesh: Mesh, conditions: Conditions, components: int = 1, t: float = 0.0
) -> Tuple[NDArray[np.int64], NDArray[np.float64]]:
    """
    Prescribed DoFs and their values.

    A DoF shared by several groups must get the same value from each.

    Raises
    ------
    ConfigurationError
        If two groups prescribe different values to the same DoF.
    """
    dofs, values, sources = [], [], []
    for name, per_component in conditions.items():
        nodes = mesh.boundaries[name].nodes
        for k, bc in enumerate(per_component):
            if bc.is_first_kind:
                dofs.append(components * nodes + k)
                values.append(bc.evaluate(mesh.nodes[nodes], t))
                sources.extend([name] * len(nodes))
    if not dofs:
        return np.empty(0, dtype=np.int64), np.empty(0)

    dofs = np.concatenate(dofs)
    values = np.concatenate(values)
    order = np.argsort(dofs, kind="stable")
    dofs, values = dofs[order], values[order]
    first = np.r_[True, dofs[1:] != dofs[:-1]]

    reference = np.repeat(values[first], np.diff(np.r_[np.flatnonzero(first), len(dofs)]))
    conflict = ~np.isclose(values, reference, rtol=1e-12, atol=1e-12)
    if np.any(conflict):
        k = np.flatnonzero(conflict)[0]
        groups = sorted({sources[order[j]] for j in np.flatnonzero(dofs == dofs[k])})
        raise ConfigurationError(
            f"Conflicting first-kind values for DoF {dofs[k]} from groups {groups}: "
            f"{reference[k]} and {values[k]}"
        )
    return dofs[first], values[first]


def apply_first_kind(f: NDArray[np.float64], system, dofs, values) -> NDArray[np.float64]:
    """Eliminate prescribed DoFs: f -= K_bound x, then f[dofs] = values."""
    x = np.zeros(system.n_dofs)
    x[dofs] = values
    f -= system.bound_product(x)
    f[dofs] = values
    return f


def integrate_second_kind(
    mesh: Mesh,
    cache: QuadratureCache,
    conditions: Conditions,
    components: int = 1,
    t: float = 0.0,
) -> NDArray[np.float64]:
    """Load vector of all second-kind conditions, ∫ N_i q over each group."""
    f = np.zeros(mesh.nodes_count * components)
    for name, per_component in conditions.items():
        if all(bc.is_first_kind for bc in per_component):
            continue
        quadrature = cache.boundary(name)
        group = mesh.boundaries[name]
        for k in range(len(quadrature)):
            q = quadrature.element(k)
            nodes = group.element_nodes(k)
            for c, bc in enumerate(per_component):
                if not bc.is_first_kind:
                    np.add.at(f, components * nodes + c, linear_form(q, bc.evaluate(q.coords, t)))
    return f


def check_solvability(load: NDArray[np.float64], components: int = 1, tolerance: float = 1e-5) -> None:
    """
    Net load of a problem without first-kind conditions must vanish.

    The shape functions sum to one, so summing the load vector per
    component gives the boundary flux plus the source integral.

    Raises
    ------
    UnsolvableProblemError
    """
    net = load.reshape(-1, components).sum(axis=0)
    log.debug(f"Net load of pure second-kind problem: {net}")
    if np.any(np.abs(net) > tolerance):
        raise UnsolvableProblemError(
            f"The problem is unsolvable. Contour integral != 0 (net load {net})."
        )
