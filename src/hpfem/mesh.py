"""Mesh factories and meshio-based mesh file I/O."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

import meshio
import numpy as np

from .datastructures import Mesh, QUAD, TRIANGLE
from .exceptions import ParseError

log = logging.getLogger(__name__)

# Boundary markers of the built-in domains
BOTTOM, RIGHT, TOP, LEFT = "Bottom", "Right", "Top", "Left"
INNER, OUTER = "Inner", "Outer"

# Region names of the two-material L-shaped domain
ALUMINUM, COPPER = "Aluminum", "Copper"

_CELL_TYPES = {"triangle": TRIANGLE, "quad": QUAD}


def l_shape_mesh() -> Mesh:
    """
    Two-material L-shaped domain (aluminum and copper).

    The re-entrant corner sits at the origin; its two edges carry the
    ``Inner`` marker, the bottom edge ``Bottom``, the left edge ``Left`` and
    the remaining outer polygon ``Outer``.
    """
    s = np.sqrt(0.5)
    points = [
        [0.0, -1.0],
        [1.0, -1.0],
        [-1.0, 0.0],
        [0.0, 0.0],
        [1.0, 0.0],
        [-1.0, 1.0],
        [0.0, 1.0],
        [s, s],
    ]
    cells = [
        ((0, 1, 4, 3), COPPER),
        ((3, 4, 7), COPPER),
        ((3, 7, 6), ALUMINUM),
        ((2, 3, 6, 5), ALUMINUM),
    ]
    boundaries = [
        (0, 1, BOTTOM),
        (1, 4, OUTER),
        (4, 7, OUTER),
        (7, 6, OUTER),
        (6, 5, OUTER),
        (5, 2, LEFT),
        (2, 3, INNER),
        (3, 0, INNER),
    ]
    return Mesh.from_arrays(points, cells, boundaries)


def rectangle_mesh(
    x0: float,
    y0: float,
    L1: float,
    L2: float,
    noelms1: int,
    noelms2: int,
    kind: str = "quad",
    region: str | Callable[[float, float], str] = "Domain",
) -> Mesh:
    """
    Structured mesh of the rectangle [x0, x0+L1] x [y0, y0+L2].

    Parameters
    ----------
    kind : {"quad", "triangle"}
        Quads, or each quad split along its SW-NE diagonal.
    region : str or callable
        Region name, or a function of the cell centroid returning one.
    """
    if kind not in ("quad", "triangle"):
        raise ValueError(f"Unknown element kind: {kind}")

    xs = np.linspace(x0, x0 + L1, noelms1 + 1)
    ys = np.linspace(y0, y0 + L2, noelms2 + 1)
    XX, YY = np.meshgrid(xs, ys, indexing="ij")
    points = np.column_stack([XX.ravel(), YY.ravel()])

    def node(i: int, j: int) -> int:
        return i * (noelms2 + 1) + j

    def tag(cx: float, cy: float) -> str:
        return region(cx, cy) if callable(region) else region

    cells = []
    for i in range(noelms1):
        for j in range(noelms2):
            sw, se, ne, nw = node(i, j), node(i + 1, j), node(i + 1, j + 1), node(i, j + 1)
            name = tag(0.5 * (xs[i] + xs[i + 1]), 0.5 * (ys[j] + ys[j + 1]))
            if kind == "quad":
                cells.append(((sw, se, ne, nw), name))
            else:
                cells.append(((sw, se, ne), name))
                cells.append(((sw, ne, nw), name))

    boundaries = []
    for i in range(noelms1):
        boundaries.append((node(i, 0), node(i + 1, 0), BOTTOM))
        boundaries.append((node(i, noelms2), node(i + 1, noelms2), TOP))
    for j in range(noelms2):
        boundaries.append((node(0, j), node(0, j + 1), LEFT))
        boundaries.append((node(noelms1, j), node(noelms1, j + 1), RIGHT))

    return Mesh.from_arrays(points, cells, boundaries)


def load_mesh(filepath: str | Path) -> Mesh:
    """
    Load a mesh file readable by meshio.

    Triangle and quad cells need a ``gmsh:physical`` tag (region); line cells
    carry boundary marker tags. Names come from ``field_data`` when present,
    otherwise the numeric tag is used as the name.

    Raises
    ------
    ParseError
        If the file cannot be read or is missing the required tags.
    """
    try:
        raw = meshio.read(filepath)
    except (meshio.ReadError, OSError, ValueError, KeyError) as exc:
        raise ParseError(f"Cannot read mesh file {filepath}: {exc}") from exc

    names: dict[tuple[int, int], str] = {}
    for name, data in raw.field_data.items():
        data = np.atleast_1d(data)
        dim = int(data[1]) if len(data) > 1 else -1
        names[(int(data[0]), dim)] = name

    def lookup(tag: int, dim: int) -> str:
        return names.get((tag, dim), names.get((tag, -1), str(tag)))

    physical = raw.cell_data.get("gmsh:physical")
    if physical is None:
        raise ParseError(f"{filepath}: cells carry no 'gmsh:physical' tags")

    cells = []
    boundaries = []
    for block, tags in zip(raw.cells, physical):
        if block.type in _CELL_TYPES:
            for conn, t in zip(block.data, tags):
                cells.append((conn, lookup(int(t), 2)))
        elif block.type == "line":
            for (a, b), t in zip(block.data, tags):
                boundaries.append((int(a), int(b), lookup(int(t), 1)))

    mesh = Mesh.from_arrays(raw.points[:, :2], cells, boundaries)
    log.info(f"Loaded {filepath}: {len(mesh.vertices)} vertices, {len(mesh.elements)} elements")
    return mesh


def save_mesh(filepath: str | Path, mesh: Mesh) -> None:
    """
    Write the active elements and marked boundary edges of a mesh.

    ``.msh`` files are written as ASCII gmsh 2.2; other suffixes use meshio's
    format detection. Irregular meshes (hanging vertices) cannot be
    represented as a flat cell list and are rejected.
    """
    if not mesh.is_regular():
        raise ValueError("Cannot save an irregular mesh (hanging vertices present)")

    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    active = mesh.active_elements()
    regions = sorted({el.marker for el in active})
    markers = sorted(mesh.boundary_markers())
    region_tag = {name: i + 1 for i, name in enumerate(regions)}
    marker_tag = {name: len(regions) + i + 1 for i, name in enumerate(markers)}

    blocks, tags = [], []
    for cell_type, nvert in _CELL_TYPES.items():
        els = [el for el in active if el.nvert == nvert]
        if els:
            blocks.append((cell_type, np.array([el.vertices for el in els], dtype=np.int64)))
            tags.append(np.array([region_tag[el.marker] for el in els], dtype=np.int64))

    lines = []
    for eid in sorted(mesh.active_edge_elements()):
        edge = mesh.edges[eid]
        if edge.boundary and edge.marker is not None:
            lines.append((edge.v1, edge.v2, marker_tag[edge.marker]))
    if lines:
        arr = np.array(lines, dtype=np.int64)
        blocks.append(("line", arr[:, :2]))
        tags.append(arr[:, 2])

    field_data = {name: np.array([t, 2]) for name, t in region_tag.items()}
    field_data.update({name: np.array([t, 1]) for name, t in marker_tag.items()})

    points = np.column_stack([mesh.coords, np.zeros(len(mesh.vertices))])
    out = meshio.Mesh(
        points,
        blocks,
        cell_data={"gmsh:physical": tags, "gmsh:geometrical": [t.copy() for t in tags]},
        field_data=field_data,
    )
    if filepath.suffix == ".msh":
        meshio.write(filepath, out, file_format="gmsh22", binary=False)
    else:
        meshio.write(filepath, out)
    log.info(f"Saved mesh to {filepath}")
