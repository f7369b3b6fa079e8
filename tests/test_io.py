"""Tests for VTK, CSV and pyvista output.

Run with: pytest tests/test_io.py -v
"""

import numpy as np
import pandas as pd
import pytest

from nonlocalfem import (
    ConfigurationError,
    ElasticitySolver,
    ElementType,
    HeatSolver,
    displacement,
    flux,
    force,
    line_mesh,
    rectangle_mesh,
    temperature,
)
from nonlocalfem.io import VTK_HEADER, to_pyvista, write_csv, write_vtk


@pytest.fixture
def square_solution():
    """Single bilinear element with T = y - 1/2."""
    mesh = rectangle_mesh(1.0, 1.0, 1, 1)
    return HeatSolver(mesh).stationary([flux(-1.0), flux(0.0), flux(1.0), flux(0.0)])


class TestVTK:
    """Test the legacy VTK writer."""

    def test_layout(self, square_solution, tmp_path):
        """Header, points, cells, types and scalars appear in order."""
        path = square_solution.save_as_vtk(tmp_path / "T.vtk")
        lines = path.read_text().splitlines()
        assert lines[0] == VTK_HEADER == "# vtk DataFile Version 4.2"
        assert lines[2] == "ASCII"
        assert lines[3] == "DATASET UNSTRUCTURED_GRID"
        assert lines[4] == "POINTS 4 double"
        assert lines[5].split() == ["0", "0", "0"]
        assert lines[9] == "CELLS 1 5"
        assert lines[10].split() == ["4", "0", "1", "3", "2"]
        assert lines[11] == "CELL_TYPES 1"
        assert lines[12] == "9"
        assert lines[13] == "POINT_DATA 4"
        assert lines[14] == "SCALARS Temperature double 1"
        assert lines[15] == "LOOKUP_TABLE default"
        assert np.allclose([float(v) for v in lines[16:20]], square_solution.temperature)

    def test_1d_points(self, tmp_path):
        """1D points are padded to three coordinates."""
        mesh = line_mesh(1.0, 2, order=2)
        path = write_vtk(tmp_path / "bar.vtk", mesh, {"T": np.arange(5.0)})
        text = path.read_text()
        assert "CELLS 2 8" in text
        assert "\n21\n21\n" in text
        assert "0.5 0 0" in text

    def test_elastic_fields(self, tmp_path):
        """Elastic output holds eight named scalar fields."""
        mesh = rectangle_mesh(1.0, 1.0, 2, 2)
        conditions = {
            "down": (force(0.0), displacement(0.0)),
            "right": (force(1.0), force(0.0)),
            "up": (force(0.0), force(0.0)),
            "left": (displacement(0.0), force(0.0)),
        }
        solution = ElasticitySolver(mesh).stationary(conditions)
        text = solution.save_as_vtk(tmp_path / "u.vtk").read_text()
        for name in ["U_X", "U_Y", "EPS_XX", "EPS_YY", "EPS_XY", "SIGMA_XX", "SIGMA_YY", "SIGMA_XY"]:
            assert f"SCALARS {name} double 1" in text

        solution.save_as_csv(tmp_path / "csv")
        names = sorted(p.stem for p in (tmp_path / "csv").iterdir())
        assert names == sorted(["u_x", "u_y", "eps11", "eps22", "eps12", "sigma11", "sigma22", "sigma12"])

    def test_wrong_field_size(self, tmp_path):
        """Fields must have one value per node."""
        with pytest.raises(ConfigurationError):
            write_vtk(tmp_path / "bad.vtk", line_mesh(1.0, 2), {"T": np.zeros(4)})


class TestCSV:
    """Test the coordinate-value CSV writer."""

    def test_2d(self, square_solution, tmp_path):
        """2D files hold x, y, value without a header."""
        path = square_solution.save_as_csv(tmp_path / "T.csv")
        df = pd.read_csv(path, header=None)
        assert df.shape == (4, 3)
        assert np.allclose(df[2], df[1] - 0.5)

    def test_1d(self, tmp_path):
        """1D files hold x, value."""
        mesh = line_mesh(1.0, 4)
        solution = HeatSolver(mesh).stationary({"left": temperature(0.0), "right": temperature(1.0)})
        df = pd.read_csv(solution.save_as_csv(tmp_path / "bar.csv"), header=None)
        assert df.shape == (5, 2)
        assert np.allclose(df[0], df[1])

    def test_creates_directory(self, tmp_path):
        """Missing parent directories are created."""
        mesh = line_mesh(1.0, 1)
        path = write_csv(tmp_path / "a" / "b" / "T.csv", mesh, np.zeros(2))
        assert path.exists()


class TestPyvista:
    """Test conversion to pyvista grids."""

    def test_grid(self, square_solution):
        """The grid carries points, cells and the temperature with its gradient."""
        grid = square_solution.to_vtk()
        assert grid.n_points == 4
        assert grid.n_cells == 1
        assert np.allclose(grid.point_data["Temperature"], square_solution.temperature)
        assert np.allclose(grid.point_data["dT_dy"], 1.0)

    def test_triangles(self):
        """Triangle meshes keep their cell type."""
        mesh = rectangle_mesh(1.0, 1.0, 2, 2, ElementType.TRIANGLE)
        grid = to_pyvista(mesh, {"zero": np.zeros(mesh.nodes_count)})
        assert grid.n_cells == 8
        assert set(grid.celltypes.tolist()) == {5}
