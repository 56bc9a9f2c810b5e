from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Sequence

import numpy as np
from numpy.typing import NDArray

from .exceptions import (
    FrozenMeshError,
    InvalidElementError,
    InvalidRegionError,
    ParseError,
)

log = logging.getLogger(__name__)

# Element modes (number of vertices)
TRIANGLE = 3
QUAD = 4

# Tolerance for degenerate element detection
AREA_TOL = 1e-14


@dataclass
class Vertex:
    """Mesh vertex, addressed by its index in ``Mesh.vertices``."""

    id: int
    x: float
    y: float


@dataclass
class Edge:
    """Mesh edge. Endpoints are stored with ``v1 < v2`` (global orientation)."""

    id: int
    v1: int
    v2: int
    boundary: bool = False
    marker: str | None = None
    elements: list[int] = field(default_factory=list)

    # Refinement tree. t_range holds the parameters of v1 and v2 along the
    # parent edge (0 at parent.v1, 1 at parent.v2).
    parent: int = -1
    t_range: tuple[float, float] = (0.0, 1.0)
    children: tuple[int, int] | None = None
    midpoint: int = -1


@dataclass
class Element:
    """Triangle or quadrilateral; vertices counter-clockwise, edge i joins vertex i and i+1."""

    id: int
    vertices: tuple[int, ...]
    edges: tuple[int, ...]
    marker: str
    active: bool = True
    parent: int = -1
    children: tuple[int, ...] = ()
    level: int = 0

    @property
    def nvert(self) -> int:
        return len(self.vertices)

    @property
    def is_triangle(self) -> bool:
        return len(self.vertices) == TRIANGLE


class Mesh:
    """2D mesh of triangles and quads stored as an index-addressed arena.

    Refinement only appends vertices, edges and elements and retires parents,
    so every index handed out stays valid for the lifetime of the mesh.
    ``revision`` increments on every mutation; function spaces compare it
    against the revision they were numbered for.
    """

    def __init__(self) -> None:
        self.vertices: list[Vertex] = []
        self.edges: list[Edge] = []
        self.elements: list[Element] = []
        self.revision = 0
        self._edge_map: dict[tuple[int, int], int] = {}
        self._frozen = 0

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def from_arrays(
        cls,
        points: NDArray[np.float64] | Sequence[Sequence[float]],
        cells: Iterable[tuple[Sequence[int], str]],
        boundaries: Iterable[tuple[int, int, str]] = (),
    ) -> Mesh:
        """
        Build a mesh from a geometry description.

        Parameters
        ----------
        points : (n, 2) array-like
            Vertex coordinates.
        cells : iterable of (vertex_ids, region)
            Triangles (3 ids) or quads (4 ids) tagged with a region name.
            Clockwise cells are reoriented.
        boundaries : iterable of (v1, v2, marker)
            Boundary edges with their marker names.

        Raises
        ------
        ParseError
            If the description is inconsistent.
        """
        mesh = cls()
        pts = np.asarray(points, dtype=np.float64)
        if pts.ndim != 2 or pts.shape[1] < 2:
            raise ParseError(f"Expected (n, 2) vertex array, got shape {pts.shape}")
        for x, y in pts[:, :2]:
            mesh._add_vertex(float(x), float(y))

        n_vertices = len(mesh.vertices)
        for vertex_ids, region in cells:
            ids = [int(v) for v in vertex_ids]
            if len(ids) not in (TRIANGLE, QUAD):
                raise ParseError(f"Element with {len(ids)} vertices is not supported")
            if any(v < 0 or v >= n_vertices for v in ids):
                raise ParseError(f"Element {ids} references a missing vertex")
            area = _signed_area(pts[ids, :2])
            if abs(area) < AREA_TOL:
                raise ParseError(f"Degenerate element {ids}")
            if area < 0:
                ids = ids[::-1]
            mesh._add_element(tuple(ids), str(region))

        if not mesh.elements:
            raise ParseError("Geometry description contains no elements")

        for edge in mesh.edges:
            edge.boundary = len(edge.elements) == 1

        for a, b, marker in boundaries:
            key = (min(int(a), int(b)), max(int(a), int(b)))
            eid = mesh._edge_map.get(key)
            if eid is None:
                raise ParseError(f"Boundary edge {key} is not an element edge")
            if not mesh.edges[eid].boundary:
                raise ParseError(f"Edge {key} marked '{marker}' is not on the boundary")
            mesh.edges[eid].marker = str(marker)

        log.debug(
            f"Mesh created: {len(mesh.vertices)} vertices, "
            f"{len(mesh.edges)} edges, {len(mesh.elements)} elements"
        )
        return mesh

    def copy_from(self, other: Mesh) -> None:
        """Replace this mesh by a deep copy of ``other``."""
        self._check_mutable()
        self.vertices = copy.deepcopy(other.vertices)
        self.edges = copy.deepcopy(other.edges)
        self.elements = copy.deepcopy(other.elements)
        self._edge_map = dict(other._edge_map)
        self.revision = other.revision + 1

    def _add_vertex(self, x: float, y: float) -> int:
        vid = len(self.vertices)
        self.vertices.append(Vertex(vid, x, y))
        return vid

    def _add_edge(
        self,
        a: int,
        b: int,
        parent: int = -1,
        t_range: tuple[float, float] = (0.0, 1.0),
    ) -> int:
        if a > b:
            a, b = b, a
            t_range = (t_range[1], t_range[0])
        eid = len(self.edges)
        edge = Edge(eid, a, b, parent=parent, t_range=t_range)
        if parent >= 0:
            edge.boundary = self.edges[parent].boundary
            edge.marker = self.edges[parent].marker
        self.edges.append(edge)
        self._edge_map[(a, b)] = eid
        return eid

    def _get_or_create_edge(self, a: int, b: int) -> int:
        eid = self._edge_map.get((min(a, b), max(a, b)))
        if eid is None:
            eid = self._add_edge(a, b)
        return eid

    def _add_element(
        self, vertices: tuple[int, ...], marker: str, parent: int = -1, level: int = 0
    ) -> int:
        n = len(vertices)
        edges = tuple(
            self._get_or_create_edge(vertices[i], vertices[(i + 1) % n]) for i in range(n)
        )
        eid = len(self.elements)
        self.elements.append(Element(eid, vertices, edges, marker, parent=parent, level=level))
        for e in edges:
            self.edges[e].elements.append(eid)
        return eid

    # ------------------------------------------------------------------
    # Refinement
    # ------------------------------------------------------------------
    def refine(self, region_names: str | Iterable[str], levels: int = 1) -> None:
        """
        Refine every active element of the given regions ``levels`` times.

        Raises
        ------
        InvalidRegionError
            If a name matches no active element. The mesh is left untouched.
        FrozenMeshError
            If the mesh is frozen by an assembly in progress.
        """
        names = [region_names] if isinstance(region_names, str) else list(region_names)
        self._check_mutable()
        if levels < 0:
            raise ValueError(f"levels must be non-negative, got {levels}")
        known = self.regions()
        missing = [name for name in names if name not in known]
        if missing:
            raise InvalidRegionError(
                f"Unknown region(s) {missing}; mesh regions are {sorted(known)}"
            )

        wanted = set(names)
        n_split = 0
        for _ in range(levels):
            for el in self.active_elements():
                if el.marker in wanted:
                    self._split(el.id)
                    n_split += 1
        if n_split:
            self.revision += 1
            log.info(
                f"Refined {sorted(wanted)} x{levels}: "
                f"{self.num_active_elements} active elements"
            )

    def refine_single(self, region_name: str) -> None:
        """Refine the active elements of one region once."""
        self.refine([region_name], 1)

    def refine_all(self, levels: int = 1) -> None:
        """Uniform refinement of every active element."""
        self.refine(sorted(self.regions()), levels)

    def refine_element(self, element_id: int) -> None:
        """Split one active element into four children."""
        self._check_mutable()
        self._require_active(element_id)
        self._split(element_id)
        self.revision += 1

    def _split_edge(self, eid: int) -> int:
        """Split an edge once (idempotent); return the midpoint vertex."""
        edge = self.edges[eid]
        if edge.children is None:
            a, b = self.vertices[edge.v1], self.vertices[edge.v2]
            mid = self._add_vertex(0.5 * (a.x + b.x), 0.5 * (a.y + b.y))
            c1 = self._add_edge(edge.v1, mid, parent=eid, t_range=(0.0, 0.5))
            c2 = self._add_edge(mid, edge.v2, parent=eid, t_range=(0.5, 1.0))
            edge = self.edges[eid]
            edge.children = (c1, c2)
            edge.midpoint = mid
        return edge.midpoint

    def _split(self, element_id: int) -> None:
        el = self.elements[element_id]
        v = el.vertices
        m = [self._split_edge(e) for e in el.edges]
        level = el.level + 1

        if el.is_triangle:
            sons = [
                (v[0], m[0], m[2]),
                (m[0], v[1], m[1]),
                (m[2], m[1], v[2]),
                (m[0], m[1], m[2]),
            ]
        else:
            xs = [self.vertices[i].x for i in v]
            ys = [self.vertices[i].y for i in v]
            c = self._add_vertex(sum(xs) / 4.0, sum(ys) / 4.0)
            sons = [
                (v[0], m[0], c, m[3]),
                (m[0], v[1], m[1], c),
                (c, m[1], v[2], m[2]),
                (m[3], c, m[2], v[3]),
            ]

        children = tuple(
            self._add_element(son, el.marker, parent=element_id, level=level) for son in sons
        )
        el = self.elements[element_id]
        el.active = False
        el.children = children

    # ------------------------------------------------------------------
    # Freezing
    # ------------------------------------------------------------------
    @contextmanager
    def frozen(self) -> Iterator[Mesh]:
        """Forbid refinement for the duration of the block."""
        self._frozen += 1
        try:
            yield self
        finally:
            self._frozen -= 1

    @property
    def is_frozen(self) -> bool:
        return self._frozen > 0

    def _check_mutable(self) -> None:
        if self._frozen:
            raise FrozenMeshError("Mesh cannot be modified while an assembly is in progress")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def active_elements(self) -> list[Element]:
        """Active (leaf) elements in increasing index order."""
        return [el for el in self.elements if el.active]

    def active_element_ids(self) -> NDArray[np.int64]:
        return np.array([el.id for el in self.elements if el.active], dtype=np.int64)

    @property
    def num_active_elements(self) -> int:
        return sum(1 for el in self.elements if el.active)

    @property
    def is_empty(self) -> bool:
        return not self.elements

    def regions(self) -> set[str]:
        return {el.marker for el in self.elements if el.active}

    def boundary_markers(self) -> set[str]:
        return {e.marker for e in self.edges if e.boundary and e.marker is not None}

    def get_element(self, element_id: int) -> Element:
        self._require_active(element_id)
        return self.elements[element_id]

    def _require_active(self, element_id: int) -> None:
        if not (0 <= element_id < len(self.elements)) or not self.elements[element_id].active:
            raise InvalidElementError(f"Element {element_id} is not an active element")

    @property
    def coords(self) -> NDArray[np.float64]:
        """(n_vertices, 2) vertex coordinates."""
        return np.array([[v.x, v.y] for v in self.vertices], dtype=np.float64).reshape(-1, 2)

    def element_coords(self, element_id: int) -> NDArray[np.float64]:
        el = self.elements[element_id]
        return np.array([[self.vertices[i].x, self.vertices[i].y] for i in el.vertices])

    def active_edge_elements(self) -> dict[int, list[int]]:
        """Map edge id -> active elements containing it, for edges of active elements."""
        result: dict[int, list[int]] = {}
        for el in self.elements:
            if el.active:
                for e in el.edges:
                    result.setdefault(e, []).append(el.id)
        return result

    def is_regular(self) -> bool:
        """True when no interior edge of an active element is missing its neighbour."""
        for eid, elems in self.active_edge_elements().items():
            if not self.edges[eid].boundary and len(elems) == 1:
                return False
        return True

    def is_compatible(self, other: Mesh) -> bool:
        """Same vertex/edge/element arena, connectivity and active flags."""
        if (
            len(self.vertices) != len(other.vertices)
            or len(self.edges) != len(other.edges)
            or len(self.elements) != len(other.elements)
        ):
            return False
        for a, b in zip(self.edges, other.edges):
            if (a.v1, a.v2) != (b.v1, b.v2):
                return False
        for a, b in zip(self.elements, other.elements):
            if a.vertices != b.vertices or a.active != b.active:
                return False
        return True

    def check_consistency(self) -> None:
        """
        Verify edge/element cross references.

        Raises
        ------
        ValueError
            On the first inconsistent reference.
        """
        for el in self.elements:
            n = el.nvert
            for i, eid in enumerate(el.edges):
                edge = self.edges[eid]
                a, b = el.vertices[i], el.vertices[(i + 1) % n]
                if (edge.v1, edge.v2) != (min(a, b), max(a, b)):
                    raise ValueError(f"Edge {eid} of element {el.id} joins the wrong vertices")
                if el.id not in edge.elements:
                    raise ValueError(f"Edge {eid} does not list element {el.id}")
        for edge in self.edges:
            for el_id in edge.elements:
                if edge.id not in self.elements[el_id].edges:
                    raise ValueError(f"Stale element reference {el_id} on edge {edge.id}")


def _signed_area(pts: NDArray[np.float64]) -> float:
    """Shoelace formula."""
    x, y = pts[:, 0], pts[:, 1]
    return 0.5 * float(np.sum(x * np.roll(y, -1) - np.roll(x, -1) * y))
