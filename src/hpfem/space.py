"""
hp H1 function space over a locally refined mesh.

DOFs are numbered in three consecutive blocks: vertex functions (by vertex
index), edge functions (by edge index, ``q - 1`` per edge of order ``q``) and
bubble functions (by element index). Entities on the essential boundary carry
no DOF; their coefficients form the Dirichlet lift.

Meshes with hanging vertices are handled by constraints. An active interior
edge with a single active element is either a *master* (the coarse side,
whose neighbour has been refined) or a *slave* (a fine edge lying inside a
master). Slave edges and hanging vertices carry no DOFs: their functions are
expanded into the functions of the master edge, which keeps the space
conforming.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, Iterator

import numpy as np
from numpy.typing import NDArray

from .boundary import EssentialBC, EssentialBCs
from .datastructures import Mesh
from .exceptions import (
    AssemblyError,
    FrozenMeshError,
    IncompatibleMeshError,
    InvalidElementError,
)
from .shapeset import (
    EDGE,
    MAX_ORDER,
    VERTEX,
    ShapeFunction,
    bubble_count,
    edge_projection,
    element_functions,
    trace_functions,
)

log = logging.getLogger(__name__)

# Edge classes
INACTIVE, BOUNDARY, REGULAR, MASTER, SLAVE = -1, 0, 1, 2, 3

# Hanging-vertex parameters closer than this to an end are endpoints
_T_TOL = 1e-12

Expansion = tuple[dict[int, float], float]


@dataclass
class AssemblyList:
    """
    Local basis of an active element and its expansion into global DOFs.

    Local function ``i`` equals ``sum_j T[i, j] * phi_{dofs[j]} + lift[i]``,
    where ``lift`` collects the Dirichlet data.
    """

    element_id: int
    order: int
    functions: tuple[ShapeFunction, ...]
    flips: tuple[bool, ...]
    dofs: NDArray[np.int64]
    T: NDArray[np.float64]
    lift: NDArray[np.float64]

    @property
    def n_functions(self) -> int:
        return len(self.functions)


def _check_order(order: int, error: type[Exception] = ValueError) -> None:
    if not 1 <= order <= MAX_ORDER:
        raise error(f"Polynomial order must be in [1, {MAX_ORDER}], got {order}")


def _offsets(counts: NDArray[np.int64], start: int) -> NDArray[np.int64]:
    """First DOF of each entity in a block of consecutive counts."""
    return start + np.cumsum(counts) - counts


class H1Space:
    """
    Continuous hierarchical finite-element space with per-element order.

    Parameters
    ----------
    mesh : Mesh, optional
        Mesh to build on; an empty mesh leaves the space empty until ``copy``.
    essential_bcs : EssentialBCs or EssentialBC or iterable of EssentialBC
        Dirichlet conditions.
    default_order : int
        Polynomial order given to every active element (1..10).
    """

    def __init__(
        self,
        mesh: Mesh | None = None,
        essential_bcs: EssentialBCs | EssentialBC | Iterable[EssentialBC] | None = None,
        default_order: int = 1,
    ):
        _check_order(default_order)
        self.mesh = mesh if mesh is not None else Mesh()
        if essential_bcs is None:
            essential_bcs = EssentialBCs()
        elif not isinstance(essential_bcs, EssentialBCs):
            essential_bcs = EssentialBCs(essential_bcs)
        self.essential_bcs = essential_bcs
        self.default_order = default_order

        self._orders = np.zeros(0, dtype=np.int64)
        self._revision = -1
        self._frozen = 0
        self._clear_numbering()
        if not self.mesh.is_empty:
            self.assign_dofs()

    # ------------------------------------------------------------------
    # Numbering
    # ------------------------------------------------------------------
    def _clear_numbering(self) -> None:
        self._edge_elements: dict[int, list[int]] = {}
        self._edge_kind = np.zeros(0, dtype=np.int64)
        self._edge_master = np.zeros(0, dtype=np.int64)
        self._slave_interval: dict[int, tuple[float, float]] = {}
        self._slaves: dict[int, list[int]] = {}
        self._hanging: dict[int, tuple[int, float]] = {}
        self._essential_edges: dict[int, EssentialBC] = {}
        self._vertex_bc: dict[int, EssentialBC] = {}
        self._vertex_dof = np.zeros(0, dtype=np.int64)
        self._edge_orders = np.zeros(0, dtype=np.int64)
        self._edge_counts = np.zeros(0, dtype=np.int64)
        self._bubble_counts = np.zeros(0, dtype=np.int64)
        self._edge_offset = np.zeros(0, dtype=np.int64)
        self._bubble_offset = np.zeros(0, dtype=np.int64)
        self._n_vertex_dofs = 0
        self._invalidate_caches()

    def _invalidate_caches(self) -> None:
        self._expansions: dict[tuple[int, ...], Expansion] = {}
        self._restrictions: dict[int, NDArray[np.float64]] = {}
        self._edge_lifts: dict[int, NDArray[np.float64]] = {}
        self._assembly_lists: dict[int, AssemblyList] = {}

    def assign_dofs(self) -> int:
        """
        (Re)build the numbering for the current state of the mesh.

        Elements created by refinement since the last numbering inherit the
        order of their nearest ancestor that had one.

        Returns
        -------
        int
            Number of DOFs.
        """
        self._check_mutable()
        self._clear_numbering()
        self._sync_orders()
        self._classify_edges()
        self._find_essential()
        self._number_vertices()

        for eid in self._edge_elements:
            if self._edge_kind[eid] != SLAVE:
                self._edge_orders[eid] = self._compute_edge_order(eid)
        for eid in self._edge_elements:
            if self._edge_kind[eid] == SLAVE:
                self._edge_orders[eid] = self._edge_orders[self._edge_master[eid]]
        for eid in self._edge_elements:
            self._edge_counts[eid] = self._edge_dof_count(eid)
        for el in self.mesh.active_elements():
            self._bubble_counts[el.id] = bubble_count(el.nvert, int(self._orders[el.id]))

        self._compact()
        self._revision = self.mesh.revision
        self.essential_bcs.check_markers(self.mesh.boundary_markers())
        log.info(
            f"H1Space: {self.get_num_dofs()} DOFs (vertex {self.get_vertex_functions_count()}, "
            f"edge {self.get_edge_functions_count()}, bubble {self.get_bubble_functions_count()}) "
            f"on {self.mesh.num_active_elements} elements"
        )
        return self.get_num_dofs()

    def _sync_orders(self) -> None:
        elements = self.mesh.elements
        orders = np.zeros(len(elements), dtype=np.int64)
        n = min(len(elements), len(self._orders))
        orders[:n] = self._orders[:n]
        for el in elements:
            if el.active and orders[el.id] == 0:
                p = el.parent
                while p >= 0 and orders[p] == 0:
                    p = elements[p].parent
                orders[el.id] = orders[p] if p >= 0 else self.default_order
        self._orders = orders

    def _classify_edges(self) -> None:
        mesh = self.mesh
        n_edges = len(mesh.edges)
        self._edge_elements = dict(sorted(mesh.active_edge_elements().items()))
        self._edge_kind = np.full(n_edges, INACTIVE, dtype=np.int64)
        self._edge_master = np.full(n_edges, -1, dtype=np.int64)
        self._edge_orders = np.zeros(n_edges, dtype=np.int64)
        self._edge_counts = np.zeros(n_edges, dtype=np.int64)
        self._bubble_counts = np.zeros(len(mesh.elements), dtype=np.int64)

        for eid, elems in self._edge_elements.items():
            edge = mesh.edges[eid]
            if edge.boundary:
                self._edge_kind[eid] = BOUNDARY
            elif len(elems) == 2:
                self._edge_kind[eid] = REGULAR
            else:
                master, ta, tb = self._find_master(eid)
                if master < 0:
                    self._edge_kind[eid] = MASTER
                    continue
                self._edge_kind[eid] = SLAVE
                self._edge_master[eid] = master
                self._slave_interval[eid] = (ta, tb)
                self._slaves.setdefault(master, []).append(eid)
                for v, t in ((edge.v1, ta), (edge.v2, tb)):
                    if _T_TOL < t < 1.0 - _T_TOL:
                        self._hanging[v] = (master, t)

        if self._hanging:
            log.debug(
                f"{len(self._slaves)} master edge(s), {len(self._slave_interval)} constrained "
                f"edge(s), {len(self._hanging)} hanging vertex(es)"
            )

    def _find_master(self, eid: int) -> tuple[int, float, float]:
        """Nearest active ancestor edge and the parameters of ``eid``'s ends along it."""
        edges = self.mesh.edges
        ta, tb = edges[eid].t_range
        p = edges[eid].parent
        while p >= 0:
            if p in self._edge_elements:
                return p, ta, tb
            r0, r1 = edges[p].t_range
            ta, tb = r0 + ta * (r1 - r0), r0 + tb * (r1 - r0)
            p = edges[p].parent
        return -1, ta, tb

    def _find_essential(self) -> None:
        edges = self.mesh.edges
        for eid in self._edge_elements:
            edge = edges[eid]
            if self._edge_kind[eid] != BOUNDARY:
                continue
            bc = self.essential_bcs.get_boundary_condition(edge.marker)
            if bc is None:
                continue
            self._essential_edges[eid] = bc
            for v in (edge.v1, edge.v2):
                self._vertex_bc.setdefault(v, bc)

    def _number_vertices(self) -> None:
        active = sorted({v for el in self.mesh.active_elements() for v in el.vertices})
        self._vertex_dof = np.full(len(self.mesh.vertices), -1, dtype=np.int64)
        n = 0
        for v in active:
            if v in self._vertex_bc or v in self._hanging:
                continue
            self._vertex_dof[v] = n
            n += 1
        self._n_vertex_dofs = n

    def _compute_edge_order(self, eid: int) -> int:
        """Minimum rule; a master edge also sees every element along its slaves."""
        elems = list(self._edge_elements[eid])
        for s in self._slaves.get(eid, ()):
            elems.extend(self._edge_elements[s])
        return int(self._orders[elems].min())

    def _edge_dof_count(self, eid: int) -> int:
        if self._edge_kind[eid] == SLAVE or eid in self._essential_edges:
            return 0
        return int(self._edge_orders[eid]) - 1

    def _compact(self) -> None:
        n_edge = int(self._edge_counts.sum())
        self._edge_offset = _offsets(self._edge_counts, self._n_vertex_dofs)
        self._bubble_offset = _offsets(self._bubble_counts, self._n_vertex_dofs + n_edge)
        self._invalidate_caches()

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    def set_element_order(self, element_id: int, order: int) -> None:
        """
        Change the order of one active element.

        Only the edges touching the element (and the master/slave groups they
        belong to) and the element's bubbles are recounted; offsets are then
        compacted, so vertex DOFs and every entity numbered before the first
        changed one keep their indices.

        Raises
        ------
        InvalidElementError
            If ``element_id`` is not active or ``order`` is outside 1..10.
        """
        self._check_mutable()
        self.mesh._require_active(element_id)
        _check_order(order, InvalidElementError)
        if not self.is_up_to_date():
            self.assign_dofs()

        old = int(self._orders[element_id])
        if old == order:
            return
        self._orders[element_id] = order
        el = self.mesh.elements[element_id]

        touched: set[int] = set()
        for eid in el.edges:
            touched.add(eid)
            if self._edge_kind[eid] == SLAVE:
                touched.add(int(self._edge_master[eid]))
        for eid in list(touched):
            touched.update(self._slaves.get(eid, ()))

        changed = []
        for eid in sorted(touched, key=lambda e: self._edge_kind[e] == SLAVE):
            if self._edge_kind[eid] == SLAVE:
                q = int(self._edge_orders[self._edge_master[eid]])
            else:
                q = self._compute_edge_order(eid)
            if q != self._edge_orders[eid]:
                self._edge_orders[eid] = q
                self._edge_counts[eid] = self._edge_dof_count(eid)
                changed.append(eid)

        self._bubble_counts[element_id] = bubble_count(el.nvert, order)
        self._compact()
        log.debug(
            f"Element {element_id}: order {old} -> {order}, edge(s) {sorted(changed)} recounted; "
            f"{self.get_num_dofs()} DOFs"
        )

    def get_element_order(self, element_id: int) -> int:
        self.mesh._require_active(element_id)
        return int(self._orders[element_id])

    def get_edge_order(self, edge_id: int) -> int:
        if not (0 <= edge_id < len(self._edge_kind)) or self._edge_kind[edge_id] == INACTIVE:
            raise ValueError(f"Edge {edge_id} is not an edge of an active element")
        return int(self._edge_orders[edge_id])

    def element_orders(self) -> dict[int, int]:
        """Order of every active element, by element id."""
        return {el.id: int(self._orders[el.id]) for el in self.mesh.active_elements()}

    # ------------------------------------------------------------------
    # Counts
    # ------------------------------------------------------------------
    def get_num_dofs(self) -> int:
        return (
            self.get_vertex_functions_count()
            + self.get_edge_functions_count()
            + self.get_bubble_functions_count()
        )

    def get_vertex_functions_count(self) -> int:
        return self._n_vertex_dofs

    def get_edge_functions_count(self) -> int:
        return int(self._edge_counts.sum())

    def get_bubble_functions_count(self) -> int:
        return int(self._bubble_counts.sum())

    def is_up_to_date(self) -> bool:
        """False once the mesh has been refined after the last numbering."""
        return self._revision == self.mesh.revision

    # ------------------------------------------------------------------
    # Cloning
    # ------------------------------------------------------------------
    def copy(self, other: H1Space, target_mesh: Mesh) -> None:
        """
        Make this space an independent clone of ``other`` on ``target_mesh``.

        An empty ``target_mesh`` is first filled with a deep copy of
        ``other.mesh``; a non-empty one must have the same topology.

        Raises
        ------
        IncompatibleMeshError
            If ``target_mesh`` differs in counts or connectivity.
        """
        self._check_mutable()
        if target_mesh.is_empty:
            target_mesh.copy_from(other.mesh)
        elif not target_mesh.is_compatible(other.mesh):
            raise IncompatibleMeshError(
                "Target mesh topology differs from the source space's mesh "
                f"({len(target_mesh.elements)} vs {len(other.mesh.elements)} elements)"
            )
        self.mesh = target_mesh
        self.essential_bcs = other.essential_bcs
        self.default_order = other.default_order
        self._orders = other._orders.copy()
        self.assign_dofs()

    # ------------------------------------------------------------------
    # Freezing
    # ------------------------------------------------------------------
    @contextmanager
    def frozen(self) -> Iterator[H1Space]:
        """Freeze the space and its mesh; used while an assembly is running."""
        self._frozen += 1
        try:
            with self.mesh.frozen():
                yield self
        finally:
            self._frozen -= 1

    def _check_mutable(self) -> None:
        if self._frozen:
            raise FrozenMeshError("Space cannot be modified while an assembly is in progress")

    # ------------------------------------------------------------------
    # Expansion into global DOFs
    # ------------------------------------------------------------------
    def get_element_assembly_list(self, element_id: int) -> AssemblyList:
        """
        Local functions of an active element with their global DOFs.

        Raises
        ------
        AssemblyError
            If the mesh was refined after the last numbering.
        InvalidElementError
            If the element is not active.
        """
        if not self.is_up_to_date():
            raise AssemblyError(
                f"Space numbered for mesh revision {self._revision} but the mesh is at "
                f"revision {self.mesh.revision}; call assign_dofs()"
            )
        self.mesh._require_active(element_id)
        cached = self._assembly_lists.get(element_id)
        if cached is not None:
            return cached

        el = self.mesh.elements[element_id]
        n = el.nvert
        order = int(self._orders[element_id])
        edge_orders = tuple(int(self._edge_orders[e]) for e in el.edges)
        functions = element_functions(n, order, edge_orders)
        flips = tuple(el.vertices[i] > el.vertices[(i + 1) % n] for i in range(n))

        expansions = []
        bubble = int(self._bubble_offset[element_id])
        for kind, a, k in functions:
            if kind == VERTEX:
                expansions.append(self._vertex_expansion(el.vertices[a]))
            elif kind == EDGE:
                expansions.append(self._edge_expansion(el.edges[a], k))
            else:
                expansions.append(({bubble: 1.0}, 0.0))
                bubble += 1

        dofs = sorted(set().union(*(coefs for coefs, _ in expansions)))
        column = {d: j for j, d in enumerate(dofs)}
        T = np.zeros((len(functions), len(dofs)))
        lift = np.zeros(len(functions))
        for i, (coefs, const) in enumerate(expansions):
            for d, c in coefs.items():
                T[i, column[d]] += c
            lift[i] = const

        alist = AssemblyList(
            element_id, order, functions, flips, np.array(dofs, dtype=np.int64), T, lift
        )
        self._assembly_lists[element_id] = alist
        return alist

    def _vertex_expansion(self, v: int) -> Expansion:
        key = (VERTEX, v)
        if key in self._expansions:
            return self._expansions[key]

        if self._vertex_dof[v] >= 0:
            result = ({int(self._vertex_dof[v]): 1.0}, 0.0)
        elif v in self._vertex_bc:
            vert = self.mesh.vertices[v]
            result = ({}, float(self._vertex_bc[v].value(np.array(vert.x), np.array(vert.y))))
        elif v in self._hanging:
            master, t = self._hanging[v]
            q = int(self._edge_orders[master])
            weights = trace_functions(q, np.array([2.0 * t - 1.0]))[:, 0]
            result = self._combine(master, weights)
        else:
            raise AssemblyError(f"Vertex {v} does not belong to the numbering")

        self._expansions[key] = result
        return result

    def _edge_expansion(self, eid: int, k: int) -> Expansion:
        key = (EDGE, eid, k)
        if key in self._expansions:
            return self._expansions[key]

        if self._edge_kind[eid] == SLAVE:
            R = self._restriction(eid)
            result = self._combine(int(self._edge_master[eid]), R[k - 2])
        elif eid in self._essential_edges:
            result = ({}, float(self._edge_lift(eid)[k - 2]))
        else:
            result = ({int(self._edge_offset[eid]) + k - 2: 1.0}, 0.0)

        self._expansions[key] = result
        return result

    def _combine(self, master: int, weights: NDArray[np.float64]) -> Expansion:
        """Linear combination of the master edge functions [v1, v2, l_2, ..., l_q]."""
        edge = self.mesh.edges[master]
        coefs: dict[int, float] = {}
        const = 0.0
        for j, w in enumerate(weights):
            if w == 0.0:
                continue
            if j == 0:
                sub = self._vertex_expansion(edge.v1)
            elif j == 1:
                sub = self._vertex_expansion(edge.v2)
            else:
                sub = self._edge_expansion(master, j)
            for d, c in sub[0].items():
                coefs[d] = coefs.get(d, 0.0) + w * c
            const += w * sub[1]
        return coefs, const

    def _restriction(self, eid: int) -> NDArray[np.float64]:
        """
        Edge-function coefficients of the master functions restricted to a slave.

        Row k-2 holds the coefficient of the slave's l_k for each master
        function [v1, v2, l_2, ..., l_q]; vertex values are handled by the
        slave's end vertices.
        """
        if eid in self._restrictions:
            return self._restrictions[eid]
        master = int(self._edge_master[eid])
        q_master = int(self._edge_orders[master])
        q = int(self._edge_orders[eid])
        ta, tb = self._slave_interval[eid]
        s, M, E = edge_projection(q, q_master + 2)
        t = ta + 0.5 * (s + 1.0) * (tb - ta)
        ends = np.array([ta, tb])
        R = M @ trace_functions(q_master, 2.0 * t - 1.0).T + E @ trace_functions(
            q_master, 2.0 * ends - 1.0
        ).T
        self._restrictions[eid] = R
        return R

    def _edge_lift(self, eid: int) -> NDArray[np.float64]:
        if eid not in self._edge_lifts:
            edge = self.mesh.edges[eid]
            a = np.array([self.mesh.vertices[edge.v1].x, self.mesh.vertices[edge.v1].y])
            b = np.array([self.mesh.vertices[edge.v2].x, self.mesh.vertices[edge.v2].y])
            q = int(self._edge_orders[eid])
            self._edge_lifts[eid] = self._essential_edges[eid].edge_lift(a, b, q)
        return self._edge_lifts[eid]

    def __repr__(self) -> str:
        return (
            f"H1Space(ndofs={self.get_num_dofs()}, elements={self.mesh.num_active_elements}, "
            f"default_order={self.default_order})"
        )
