"""Essential (Dirichlet) boundary conditions."""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Iterator

import numpy as np
from numpy.typing import NDArray

from .shapeset import edge_projection

log = logging.getLogger(__name__)

BoundaryFunction = Callable[[NDArray[np.float64], NDArray[np.float64]], NDArray[np.float64]]

# Gauss points beyond the edge order used to project non-polynomial data
_EXTRA_POINTS = 8


class EssentialBC:
    """
    Dirichlet condition u = g(x, y) on the edges carrying any of ``markers``.

    Parameters
    ----------
    markers : str or iterable of str
        Boundary markers the condition applies to.
    value : callable
        Vectorized function g(x, y).
    """

    def __init__(self, markers: str | Iterable[str], value: BoundaryFunction):
        self.markers = (markers,) if isinstance(markers, str) else tuple(markers)
        if not self.markers:
            raise ValueError("An essential boundary condition needs at least one marker")
        self._value = value

    def value(self, x: NDArray[np.float64], y: NDArray[np.float64]) -> NDArray[np.float64]:
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        return np.broadcast_to(np.asarray(self._value(x, y), dtype=np.float64), x.shape)

    def edge_lift(
        self, a: NDArray[np.float64], b: NDArray[np.float64], q: int
    ) -> NDArray[np.float64]:
        """
        Coefficients of the edge functions l_2..l_q for the edge from ``a`` to ``b``.

        The vertex values g(a), g(b) carry the linear part; the remainder is
        projected in the H1_0 seminorm.
        """
        s, M, E = edge_projection(q, q + _EXTRA_POINTS)
        t = 0.5 * (s + 1.0)
        x = a[0] + t * (b[0] - a[0])
        y = a[1] + t * (b[1] - a[1])
        ends = self.value(np.array([a[0], b[0]]), np.array([a[1], b[1]]))
        return M @ self.value(x, y) + E @ ends

    def __repr__(self) -> str:
        return f"{type(self).__name__}(markers={list(self.markers)})"


class ConstantEssentialBC(EssentialBC):
    """Dirichlet condition with a constant value."""

    def __init__(self, markers: str | Iterable[str], value: float):
        self.constant = float(value)
        super().__init__(markers, lambda x, y: np.full_like(x, self.constant))

    def edge_lift(self, a, b, q):
        # Constants have no component along l_k, k >= 2
        return np.zeros(max(q - 1, 0))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(markers={list(self.markers)}, value={self.constant})"


class EssentialBCs:
    """Collection of essential conditions addressed by boundary marker."""

    def __init__(self, conditions: EssentialBC | Iterable[EssentialBC] = ()):
        self._by_marker: dict[str, EssentialBC] = {}
        self._conditions: list[EssentialBC] = []
        if isinstance(conditions, EssentialBC):
            conditions = [conditions]
        for bc in conditions:
            self.add_boundary_condition(bc)

    def add_boundary_condition(self, bc: EssentialBC) -> None:
        clash = [m for m in bc.markers if m in self._by_marker]
        if clash:
            raise ValueError(f"Markers {clash} already carry an essential condition")
        self._conditions.append(bc)
        for marker in bc.markers:
            self._by_marker[marker] = bc

    def get_boundary_condition(self, marker: str | None) -> EssentialBC | None:
        if marker is None:
            return None
        return self._by_marker.get(marker)

    @property
    def markers(self) -> set[str]:
        return set(self._by_marker)

    def check_markers(self, mesh_markers: set[str]) -> list[str]:
        """Log and return markers that no boundary edge of the mesh carries."""
        unused = sorted(self.markers - mesh_markers)
        for marker in unused:
            log.warning(
                f"Essential BC marker '{marker}' matches no boundary edge; "
                f"that part of the boundary stays free"
            )
        return unused

    def __iter__(self) -> Iterator[EssentialBC]:
        return iter(self._conditions)

    def __len__(self) -> int:
        return len(self._conditions)
