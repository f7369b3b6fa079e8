"""Solution fields and their post-processing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import cached_property
from pathlib import Path
from typing import Callable, Dict, Optional

import numpy as np
import pyvista as pv
from numpy.typing import NDArray

from . import io
from .datastructures import ElasticParameters, HeatParameters, TimeSeries
from .influence import InfluenceFunction
from .kernels import basis_integrals, element_gradient
from .mesh import Mesh
from .quadrature import QuadratureCache
from .traversal import for_each_element, for_each_node

log = logging.getLogger(__name__)


def element_means(
    mesh: Mesh, cache: QuadratureCache, quantity: Callable[[int], NDArray[np.float64]]
) -> NDArray[np.float64]:
    """Volume average over every element of ``quantity(e)``, sampled at its quadrature nodes (q, k)."""
    means = [None] * mesh.elements_count

    def rule(e: int) -> None:
        w = cache.element(e).weights
        means[e] = w @ quantity(e) / w.sum()

    for_each_element(mesh, rule)
    return np.array(means)


def average_to_nodes(mesh: Mesh, per_element: NDArray[np.float64]) -> NDArray[np.float64]:
    """Mean of the values of all elements touching each node."""
    total = np.zeros((mesh.nodes_count,) + per_element.shape[1:])
    count = np.zeros(mesh.nodes_count)

    def rule(node: int, e: int, i: int) -> None:
        total[node] += per_element[e]
        count[node] += 1

    for_each_node(mesh, rule)
    return total / count.reshape((-1,) + (1,) * (total.ndim - 1))


@dataclass
class HeatSolution:
    """Nodal temperature with gradient, integrals and writers."""

    mesh: Mesh
    temperature: NDArray[np.float64]
    parameters: HeatParameters
    cache: QuadratureCache
    time_series: Optional[TimeSeries] = None

    def _element_gradients(self, e: int) -> NDArray[np.float64]:
        return element_gradient(self.cache.element(e), self.temperature[self.mesh.element_nodes(e)])

    @cached_property
    def gradient(self) -> NDArray[np.float64]:
        """Nodal gradient (n, dim), averaged over the elements around each node."""
        return average_to_nodes(self.mesh, element_means(self.mesh, self.cache, self._element_gradients))

    @cached_property
    def integral(self) -> float:
        """∫ T over the domain."""
        total = 0.0
        for e in range(self.mesh.elements_count):
            total += basis_integrals(self.cache.element(e)) @ self.temperature[self.mesh.element_nodes(e)]
        return float(total)

    @cached_property
    def energy(self) -> float:
        """∫ λ |grad T|^2 over the domain."""
        total = 0.0
        for e in range(self.mesh.elements_count):
            grad = self._element_gradients(e)
            total += self.cache.element(e).weights @ np.sum(grad**2, axis=1)
        return float(self.parameters.conductivity * total)

    def save_as_vtk(self, path) -> Path:
        return io.write_vtk(path, self.mesh, {"Temperature": self.temperature})

    def save_as_csv(self, path) -> Path:
        return io.write_csv(path, self.mesh, self.temperature)

    def to_vtk(self) -> pv.UnstructuredGrid:
        fields = {"Temperature": self.temperature}
        for d, axis in enumerate("xyz"[: self.mesh.dimension]):
            fields[f"dT_d{axis}"] = self.gradient[:, d]
        return io.to_pyvista(self.mesh, fields)


# VTK field name -> CSV file stem
ELASTIC_FIELDS = {
    "U_X": "u_x",
    "U_Y": "u_y",
    "EPS_XX": "eps11",
    "EPS_YY": "eps22",
    "EPS_XY": "eps12",
    "SIGMA_XX": "sigma11",
    "SIGMA_YY": "sigma22",
    "SIGMA_XY": "sigma12",
}


@dataclass
class ElasticSolution:
    """
    Nodal displacements with strain and stress.

    Strain is the tensor (eps_xx, eps_yy, eps_xy) with the shear
    eps_xy = (du_x/dy + du_y/dx) / 2, half the engineering shear. Stress is
    (sigma_xx, sigma_yy, sigma_xy) with sigma_xy = 2 D2 eps_xy.
    With an influence function the stress is nonlocal::

        sigma(x) = p1 * sigma_loc(x) + (1 - p1) * ∫ phi(x, y) D eps(y) dy
    """

    mesh: Mesh
    displacement: NDArray[np.float64]  # (n, 2)
    parameters: ElasticParameters
    cache: QuadratureCache
    influence: Optional[InfluenceFunction] = None

    def _strain_at_quadrature(self, e: int) -> NDArray[np.float64]:
        q = self.cache.element(e)
        du = np.einsum("ic,idq->qcd", self.displacement[self.mesh.element_nodes(e)], q.gradients)
        return np.column_stack([du[:, 0, 0], du[:, 1, 1], 0.5 * (du[:, 0, 1] + du[:, 1, 0])])

    def _stress_from_strain(self, eps: NDArray[np.float64]) -> NDArray[np.float64]:
        D0, D1, D2 = self.parameters.D
        return np.column_stack(
            [D0 * eps[:, 0] + D1 * eps[:, 1], D1 * eps[:, 0] + D0 * eps[:, 1], 2.0 * D2 * eps[:, 2]]
        )

    @cached_property
    def strain(self) -> NDArray[np.float64]:
        return average_to_nodes(self.mesh, element_means(self.mesh, self.cache, self._strain_at_quadrature))

    @cached_property
    def local_stress(self) -> NDArray[np.float64]:
        return self._stress_from_strain(self.strain)

    @cached_property
    def stress(self) -> NDArray[np.float64]:
        if self.influence is None:
            return self.local_stress
        mesh, cache = self.mesh, self.cache
        sigma_q = np.vstack(
            [self._stress_from_strain(self._strain_at_quadrature(e)) for e in range(mesh.elements_count)]
        )
        nonlocal_stress = np.zeros((mesh.nodes_count, 3))
        for node in range(mesh.nodes_count):
            elements = np.unique(np.concatenate([mesh.neighbours_of(e) for e in mesh.elements_of_node(node)]))
            rows = np.concatenate([np.arange(cache.shifts[e], cache.shifts[e + 1]) for e in elements])
            phi = self.influence(mesh.nodes[node], cache.coords[rows])
            nonlocal_stress[node] = (phi * cache.weights[rows]) @ sigma_q[rows]
        log.debug("Nonlocal stress integrated at all nodes")
        return self.parameters.p1 * self.local_stress + self.parameters.p2 * nonlocal_stress

    def fields(self) -> Dict[str, NDArray[np.float64]]:
        values = np.column_stack([self.displacement, self.strain, self.stress])
        return {name: values[:, k] for k, name in enumerate(ELASTIC_FIELDS)}

    def save_as_vtk(self, path) -> Path:
        return io.write_vtk(path, self.mesh, self.fields())

    def save_as_csv(self, directory) -> Path:
        """One ``x,y,value`` file per field: u_x.csv, eps11.csv, sigma12.csv..."""
        directory = Path(directory)
        for name, values in self.fields().items():
            io.write_csv(directory / f"{ELASTIC_FIELDS[name]}.csv", self.mesh, values)
        return directory

    def to_vtk(self) -> pv.UnstructuredGrid:
        return io.to_pyvista(self.mesh, self.fields())
