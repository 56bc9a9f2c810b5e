"""Tests for VTK export, pyvista conversion and matplotlib figures.

Run with: uv run pytest tests/test_views.py -v
"""

import matplotlib

matplotlib.use("Agg")

import meshio
import numpy as np
import pytest

pytest.importorskip("pyvista")

from hpfem import (
    ALUMINUM,
    COPPER,
    ConstantEssentialBC,
    EssentialBCs,
    H1Space,
    LinearSolver,
    WeakFormPoisson,
    l_shape_mesh,
    vector_to_solution,
)
from hpfem.views import (
    Linearizer,
    Orderizer,
    ScalarView,
    plot_orders,
    plot_solution,
    save_figure,
    solution_to_polydata,
    space_to_polydata,
)

MARKERS = ["Bottom", "Inner", "Outer", "Left"]


@pytest.fixture
def solved():
    mesh = l_shape_mesh()
    mesh.refine_single(ALUMINUM)
    space = H1Space(mesh, EssentialBCs(ConstantEssentialBC(MARKERS, 20.0)), 1)
    for i, el in enumerate(mesh.active_elements(), start=1):
        space.set_element_order(el.id, i % 4 + 1)
    solver = LinearSolver(WeakFormPoisson({ALUMINUM: 236.0, COPPER: 386.0}, source=500.0), space)
    solver.solve()
    return space, vector_to_solution(solver.get_sln_vector(), space)


class TestVTKExport:
    """meshio output of solutions and orders."""

    def test_solution_vtk(self, solved, tmp_path):
        space, sln = solved
        path = Linearizer.save_solution_vtk(sln, tmp_path / "sln.vtu", field_name="T", subdivisions=2)
        data = meshio.read(path)
        # 5 quads (9 points) and 5 triangles (6 points)
        assert len(data.points) == 5 * 9 + 5 * 6
        assert np.allclose(data.point_data["T"].min(), sln.min_max(2)[0])
        assert "element" in data.cell_data

    def test_orders_vtk(self, solved, tmp_path):
        space, _ = solved
        path = Orderizer.save_orders_vtk(space, tmp_path / "orders.vtu")
        data = meshio.read(path)
        orders = np.concatenate(data.cell_data["order"])
        assert sorted(orders.tolist()) == sorted(space.element_orders().values())

    def test_mesh_vtk(self, solved, tmp_path):
        space, _ = solved
        data = meshio.read(Orderizer.save_mesh_vtk(space, tmp_path / "nested" / "mesh.vtu"))
        assert sum(len(block.data) for block in data.cells) == space.mesh.num_active_elements
        assert set(np.concatenate(data.cell_data["region"]).tolist()) == {0, 1}


class TestPolyData:
    """Conversion for interactive views."""

    def test_solution_polydata(self, solved):
        _, sln = solved
        poly = solution_to_polydata(sln, subdivisions=3)
        assert poly.n_points == 5 * 16 + 5 * 10
        assert poly.n_cells == 5 * 18 + 5 * 9

    def test_space_polydata(self, solved):
        space, _ = solved
        poly = space_to_polydata(space)
        assert poly.n_cells == space.mesh.num_active_elements
        assert poly.cell_data["order"].max() == 4

    def test_screenshot_before_show(self):
        view = ScalarView("Solution", off_screen=True)
        with pytest.raises(RuntimeError):
            view.screenshot("unused.png")
        view.wait_for_close()


class TestFigures:
    """Matplotlib output."""

    def test_plot_solution(self, solved, tmp_path):
        _, sln = solved
        fig, ax = plot_solution(sln, subdivisions=2)
        assert save_figure(fig, tmp_path / "solution.png").exists()

    def test_plot_orders(self, solved, tmp_path):
        space, _ = solved
        fig, ax = plot_orders(space)
        assert len(ax.texts) == space.mesh.num_active_elements
        assert save_figure(fig, tmp_path / "figs" / "orders.pdf").exists()
