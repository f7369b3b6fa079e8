"""Writers for legacy VTK files, CSV tables and pyvista grids."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping

import numpy as np
import pandas as pd
import pyvista as pv
from numpy.typing import NDArray

from .errors import ConfigurationError
from .mesh import Mesh

log = logging.getLogger(__name__)

VTK_HEADER = "# vtk DataFile Version 4.2"


def _points3d(mesh: Mesh) -> NDArray[np.float64]:
    points = np.zeros((mesh.nodes_count, 3))
    points[:, : mesh.dimension] = mesh.nodes
    return points


def _cells(mesh: Mesh) -> NDArray[np.int64]:
    """Flat VTK cell array: [size, node ids..., size, node ids...]."""
    rows = [np.r_[mesh.element_sizes[e], mesh.element_nodes(e)] for e in range(mesh.elements_count)]
    return np.concatenate(rows).astype(np.int64)


def _check_fields(mesh: Mesh, fields: Mapping[str, NDArray[np.float64]]) -> None:
    for name, values in fields.items():
        if np.shape(values) != (mesh.nodes_count,):
            raise ConfigurationError(
                f"Field {name!r} has shape {np.shape(values)}, expected ({mesh.nodes_count},)"
            )


def write_vtk(path, mesh: Mesh, fields: Mapping[str, NDArray[np.float64]], title: str = "nonlocalfem") -> Path:
    """
    Write an ASCII legacy VTK unstructured grid with scalar point data.

    Parameters
    ----------
    path : str or Path
        Output file
    mesh : Mesh
        Points and cells; 1D and 2D points are padded with zeros
    fields : mapping
        Scalar field name -> values per node, written as SCALARS blocks
    """
    _check_fields(mesh, fields)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    cells = _cells(mesh)

    with open(path, "w") as out:
        out.write(f"{VTK_HEADER}\n{title}\nASCII\nDATASET UNSTRUCTURED_GRID\n")
        out.write(f"POINTS {mesh.nodes_count} double\n")
        np.savetxt(out, _points3d(mesh), fmt="%.17g")
        out.write(f"CELLS {mesh.elements_count} {len(cells)}\n")
        for e in range(mesh.elements_count):
            nodes = mesh.element_nodes(e)
            out.write(f"{len(nodes)} {' '.join(map(str, nodes))}\n")
        out.write(f"CELL_TYPES {mesh.elements_count}\n")
        np.savetxt(out, mesh.element_types, fmt="%d")
        out.write(f"POINT_DATA {mesh.nodes_count}\n")
        for name, values in fields.items():
            out.write(f"SCALARS {name} double 1\nLOOKUP_TABLE default\n")
            np.savetxt(out, np.asarray(values, dtype=np.float64), fmt="%.17g")

    log.info(f"Wrote {path}")
    return path


def write_csv(path, mesh: Mesh, values: NDArray[np.float64]) -> Path:
    """Write one ``x,y,value`` row per node (``x,value`` for 1D meshes), no header."""
    _check_fields(mesh, {"value": values})
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    columns = ["x", "y"][: mesh.dimension]
    df = pd.DataFrame(mesh.nodes, columns=columns)
    df["value"] = values
    df.to_csv(path, header=False, index=False, float_format="%.17g")
    log.debug(f"Wrote {path}")
    return path


def to_pyvista(mesh: Mesh, fields: Mapping[str, NDArray[np.float64]]) -> pv.UnstructuredGrid:
    """Unstructured grid with the given point data, for plotting or VTU export."""
    _check_fields(mesh, fields)
    grid = pv.UnstructuredGrid(_cells(mesh), mesh.element_types.astype(np.uint8), _points3d(mesh))
    for name, values in fields.items():
        grid.point_data[name] = np.asarray(values)
    return grid
