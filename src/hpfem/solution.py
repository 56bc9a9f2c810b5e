"""Finite-element fields: coefficient vectors bound to a space."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

import numpy as np
from numpy.typing import NDArray

from .elements import contains_reference, physical_gradients, geometry, physical_to_reference
from .exceptions import DimensionMismatchError, NotSolvedError
from .shapeset import ShapeFunction, evaluate
from .space import H1Space


@dataclass(frozen=True)
class _ElementData:
    """Snapshot of one element: geometry, local basis and local coefficients."""

    element_id: int
    marker: str
    order: int
    coords: NDArray[np.float64]
    functions: tuple[ShapeFunction, ...]
    flips: tuple[bool, ...]
    coefficients: NDArray[np.float64]

    @property
    def nvert(self) -> int:
        return len(self.coords)


@lru_cache(maxsize=None)
def reference_lattice(nvert: int, n: int) -> tuple[NDArray[np.float64], NDArray[np.int64]]:
    """
    Uniform subdivision of a reference element into triangles.

    Returns
    -------
    points : (m, 2)
        Lattice points in reference coordinates.
    triangles : (k, 3)
        Counter-clockwise triangles indexing ``points``.
    """
    if n < 1:
        raise ValueError(f"subdivisions must be >= 1, got {n}")
    triangles = []
    if nvert == 3:
        index = {}
        points = []
        for j in range(n + 1):
            for i in range(n + 1 - j):
                index[i, j] = len(points)
                points.append((i / n, j / n))
        for j in range(n):
            for i in range(n - j):
                triangles.append((index[i, j], index[i + 1, j], index[i, j + 1]))
                if i + j < n - 1:
                    triangles.append((index[i + 1, j], index[i + 1, j + 1], index[i, j + 1]))
    else:
        s = np.linspace(-1.0, 1.0, n + 1)
        points = [(x, y) for y in s for x in s]
        for j in range(n):
            for i in range(n):
                a = j * (n + 1) + i
                b, c, d = a + 1, a + n + 2, a + n + 1
                triangles.extend([(a, b, c), (a, c, d)])
    pts = np.array(points, dtype=np.float64)
    tris = np.array(triangles, dtype=np.int64)
    pts.setflags(write=False)
    tris.setflags(write=False)
    return pts, tris


class Solution:
    """
    Read-only finite-element field.

    Created empty and bound by :func:`vector_to_solution`. Binding snapshots
    each active element's geometry, basis and local coefficients, so later
    refinement or renumbering of the space does not alter the field.
    """

    def __init__(self) -> None:
        self._vector: NDArray[np.float64] | None = None
        self._elements: list[_ElementData] = []

    def _bind(self, space: H1Space, vector: NDArray[np.float64]) -> None:
        mesh = space.mesh
        elements = []
        for el in mesh.active_elements():
            alist = space.get_element_assembly_list(el.id)
            local = alist.T @ vector[alist.dofs] + alist.lift
            local.setflags(write=False)
            elements.append(
                _ElementData(
                    el.id,
                    el.marker,
                    alist.order,
                    mesh.element_coords(el.id),
                    alist.functions,
                    alist.flips,
                    local,
                )
            )
        vector = vector.copy()
        vector.setflags(write=False)
        self._vector = vector
        self._elements = elements

    @property
    def is_bound(self) -> bool:
        return self._vector is not None

    def _require_bound(self) -> None:
        if self._vector is None:
            raise NotSolvedError("Solution is empty; bind a vector with vector_to_solution()")

    @property
    def vector(self) -> NDArray[np.float64]:
        """Global coefficient vector (read-only)."""
        self._require_bound()
        return self._vector

    @property
    def num_elements(self) -> int:
        return len(self._elements)

    def element_values(
        self, index: int, ref_points: NDArray[np.float64]
    ) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Physical points and field values of the ``index``-th element at reference points."""
        self._require_bound()
        data = self._elements[index]
        values, _ = evaluate(data.nvert, data.functions, data.flips, ref_points)
        x, _, _ = geometry(data.coords, ref_points)
        return x, data.coefficients @ values

    def _locate(self, x: float, y: float) -> tuple[_ElementData, NDArray[np.float64]]:
        for data in self._elements:
            lo, hi = data.coords.min(axis=0), data.coords.max(axis=0)
            if not (lo[0] - 1e-12 <= x <= hi[0] + 1e-12 and lo[1] - 1e-12 <= y <= hi[1] + 1e-12):
                continue
            ref = physical_to_reference(data.coords, x, y)
            if contains_reference(data.nvert, ref):
                return data, ref
        raise ValueError(f"Point ({x}, {y}) lies outside the mesh")

    def get_pt_value(self, x: float, y: float) -> float:
        """Field value at a physical point."""
        self._require_bound()
        data, ref = self._locate(x, y)
        values, _ = evaluate(data.nvert, data.functions, data.flips, ref[None, :])
        return float(data.coefficients @ values[:, 0])

    def get_pt_gradient(self, x: float, y: float) -> NDArray[np.float64]:
        """Field gradient at a physical point."""
        self._require_bound()
        data, ref = self._locate(x, y)
        _, grads = evaluate(data.nvert, data.functions, data.flips, ref[None, :])
        _, _, invJT = geometry(data.coords, ref[None, :])
        return data.coefficients @ physical_gradients(grads, invJT)[:, 0, :]

    def __call__(self, x: float, y: float) -> float:
        return self.get_pt_value(x, y)

    def linearize(
        self, subdivisions: int = 4
    ) -> tuple[NDArray[np.float64], NDArray[np.int64], NDArray[np.float64], NDArray[np.int64]]:
        """
        Piecewise-linear sampling of the field.

        Every element is subdivided ``subdivisions`` times per direction;
        points are not shared between elements.

        Returns
        -------
        points : (n, 2)
        triangles : (m, 3)
        values : (n,)
        element_index : (m,)
            Source element id of every triangle.
        """
        self._require_bound()
        points, triangles, values, owner = [], [], [], []
        offset = 0
        for i, data in enumerate(self._elements):
            ref, tris = reference_lattice(data.nvert, subdivisions)
            x, v = self.element_values(i, ref)
            points.append(x)
            values.append(v)
            triangles.append(tris + offset)
            owner.append(np.full(len(tris), data.element_id, dtype=np.int64))
            offset += len(ref)
        return (
            np.concatenate(points),
            np.concatenate(triangles),
            np.concatenate(values),
            np.concatenate(owner),
        )

    def min_max(self, subdivisions: int = 4) -> tuple[float, float]:
        """Minimum and maximum over the linearization lattice."""
        _, _, values, _ = self.linearize(subdivisions)
        return float(values.min()), float(values.max())


def vector_to_solution(
    coeff_vector: NDArray[np.float64], space: H1Space, out_solution: Solution | None = None
) -> Solution:
    """
    Bind a coefficient vector to ``space``.

    Raises
    ------
    DimensionMismatchError
        If the vector length differs from ``space.get_num_dofs()``; the
        output solution is left untouched.
    """
    vector = np.asarray(coeff_vector, dtype=np.float64)
    ndofs = space.get_num_dofs()
    if vector.ndim != 1 or len(vector) != ndofs:
        raise DimensionMismatchError(
            f"Coefficient vector has shape {vector.shape}, space has {ndofs} DOFs"
        )
    if out_solution is None:
        out_solution = Solution()
    out_solution._bind(space, vector)
    return out_solution
