"""VTK export (meshio), interactive views (pyvista) and matplotlib plots."""

from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import meshio
import numpy as np
import pyvista as pv
from matplotlib.collections import PolyCollection

from .solution import Solution
from .space import H1Space

log = logging.getLogger(__name__)

FIGURES_DIR = Path("figures")
STYLE_PATH = Path(__file__).resolve().parent / "hpfem.mplstyle"

_CELL_TYPES = {3: "triangle", 4: "quad"}


def _points3d(points: np.ndarray) -> np.ndarray:
    return np.column_stack([points, np.zeros(len(points))])


def _element_cells(space: H1Space) -> tuple[np.ndarray, list[tuple[str, np.ndarray]], dict]:
    """Active elements as meshio cell blocks with per-cell order, region and id data."""
    mesh = space.mesh
    active = mesh.active_elements()
    regions = {name: i for i, name in enumerate(sorted(mesh.regions()))}
    blocks, data = [], {"order": [], "region": [], "element": []}
    for nvert, cell_type in _CELL_TYPES.items():
        els = [el for el in active if el.nvert == nvert]
        if not els:
            continue
        blocks.append((cell_type, np.array([el.vertices for el in els], dtype=np.int64)))
        data["order"].append(np.array([space.get_element_order(el.id) for el in els]))
        data["region"].append(np.array([regions[el.marker] for el in els]))
        data["element"].append(np.array([el.id for el in els]))
    return _points3d(mesh.coords), blocks, data


class Linearizer:
    """Writes solutions as piecewise-linear triangle fields."""

    @staticmethod
    def save_solution_vtk(
        solution: Solution,
        filepath: str | Path,
        field_name: str = "u",
        subdivisions: int = 4,
    ) -> Path:
        """
        Save a solution sampled on a refined lattice of every element.

        Parameters
        ----------
        subdivisions : int
            Lattice subdivisions per element edge; raise for high orders.
        """
        points, triangles, values, owner = solution.linearize(subdivisions)
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        meshio.Mesh(
            _points3d(points),
            [("triangle", triangles)],
            point_data={field_name: values},
            cell_data={"element": [owner]},
        ).write(filepath)
        log.info(f"Saved {field_name} ({len(triangles)} triangles) to {filepath}")
        return filepath


class Orderizer:
    """Writes the mesh of a space and its element orders."""

    @staticmethod
    def save_mesh_vtk(space: H1Space, filepath: str | Path) -> Path:
        """Active elements with region and element-id cell data."""
        points, blocks, data = _element_cells(space)
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        meshio.Mesh(
            points, blocks, cell_data={"region": data["region"], "element": data["element"]}
        ).write(filepath)
        log.info(f"Saved mesh ({space.mesh.num_active_elements} elements) to {filepath}")
        return filepath

    @staticmethod
    def save_orders_vtk(space: H1Space, filepath: str | Path) -> Path:
        """Active elements with their polynomial order as cell data."""
        points, blocks, data = _element_cells(space)
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        meshio.Mesh(points, blocks, cell_data={"order": data["order"]}).write(filepath)
        log.info(f"Saved element orders to {filepath}")
        return filepath


# ============================================================================
# PyVista views
# ============================================================================


def solution_to_polydata(solution: Solution, subdivisions: int = 4, field_name: str = "u") -> pv.PolyData:
    points, triangles, values, _ = solution.linearize(subdivisions)
    faces = np.column_stack([np.full(len(triangles), 3), triangles]).ravel()
    poly = pv.PolyData(_points3d(points), faces)
    poly.point_data[field_name] = values
    return poly


def space_to_polydata(space: H1Space) -> pv.PolyData:
    mesh = space.mesh
    active = mesh.active_elements()
    faces = np.concatenate([[el.nvert, *el.vertices] for el in active])
    poly = pv.PolyData(_points3d(mesh.coords), faces)
    poly.cell_data["order"] = np.array([space.get_element_order(el.id) for el in active])
    return poly


class _View:
    """
    Render-and-block contract shared by the views.

    ``show`` builds the scene; ``wait_for_close`` opens the window and blocks
    until it is dismissed. Off-screen views render into a buffer that can be
    saved with ``screenshot``.
    """

    def __init__(self, title: str = "", window_size=(800, 700), off_screen: bool = False):
        self.title = title
        self.window_size = list(window_size)
        self.off_screen = off_screen
        self.plotter: pv.Plotter | None = None

    def _new_plotter(self) -> pv.Plotter:
        if self.plotter is not None:
            self.plotter.close()
        pv.set_plot_theme("document")
        self.plotter = pv.Plotter(window_size=self.window_size, off_screen=self.off_screen)
        if self.title:
            self.plotter.add_title(self.title)
        return self.plotter

    def screenshot(self, filepath: str | Path) -> Path:
        if self.plotter is None:
            raise RuntimeError("Nothing to save; call show() first")
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        self.plotter.screenshot(str(filepath))
        log.info(f"Saved: {filepath}")
        return filepath

    def wait_for_close(self) -> None:
        if self.plotter is None:
            return
        if not self.off_screen:
            self.plotter.show()
        self.plotter.close()
        self.plotter = None


class ScalarView(_View):
    """Colour plot of a scalar solution."""

    def show(self, solution: Solution, subdivisions: int = 4, cmap: str = "inferno") -> None:
        plotter = self._new_plotter()
        poly = solution_to_polydata(solution, subdivisions)
        plotter.add_mesh(poly, scalars="u", cmap=cmap, scalar_bar_args={"title": "u"})
        plotter.view_xy()


class OrderView(_View):
    """Element orders of a space, one colour per order."""

    def show(self, space: H1Space, cmap: str = "viridis") -> None:
        plotter = self._new_plotter()
        poly = space_to_polydata(space)
        plotter.add_mesh(
            poly,
            scalars="order",
            cmap=cmap,
            show_edges=True,
            edge_color="gray",
            categories=True,
            scalar_bar_args={"title": "order"},
        )
        plotter.view_xy()


# ============================================================================
# Matplotlib figures
# ============================================================================


def setup_style():
    """Apply shared matplotlib style."""
    if STYLE_PATH.exists():
        plt.style.use(STYLE_PATH)
    plt.rcParams.setdefault("savefig.bbox", "tight")


def save_figure(fig, filename: str | Path):
    """
    Save figure to the specified path.
    """
    filepath = Path(filename)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(filepath, bbox_inches="tight")
    log.info(f"Saved: {filepath}")
    return filepath


def plot_solution(solution: Solution, ax=None, subdivisions: int = 4, levels: int = 30):
    """Filled contours of the linearized solution."""
    points, triangles, values, _ = solution.linearize(subdivisions)
    if ax is None:
        fig, ax = plt.subplots(figsize=(6, 5))
    else:
        fig = ax.figure
    tcf = ax.tricontourf(points[:, 0], points[:, 1], triangles, values, levels=levels, cmap="inferno")
    fig.colorbar(tcf, ax=ax, label="u")
    ax.set_aspect("equal")
    ax.set_xlabel("x")
    ax.set_ylabel("y")
    return fig, ax


def plot_orders(space: H1Space, ax=None, annotate: bool = True):
    """Elements coloured and labelled by polynomial order."""
    mesh = space.mesh
    active = mesh.active_elements()
    polys = [mesh.element_coords(el.id) for el in active]
    orders = np.array([space.get_element_order(el.id) for el in active])
    if ax is None:
        fig, ax = plt.subplots(figsize=(6, 5))
    else:
        fig = ax.figure
    coll = PolyCollection(polys, array=orders, cmap="viridis", edgecolors="k", linewidths=0.5)
    ax.add_collection(coll)
    if annotate:
        for poly, p in zip(polys, orders):
            cx, cy = poly.mean(axis=0)
            ax.text(cx, cy, str(p), ha="center", va="center", fontsize=7)
    fig.colorbar(coll, ax=ax, label="order")
    ax.autoscale_view()
    ax.set_aspect("equal")
    return fig, ax
