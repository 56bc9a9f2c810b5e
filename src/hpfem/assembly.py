"""Global assembly of the constrained stiffness matrix and load vector."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor

import numpy as np
from numpy.typing import NDArray
from scipy.sparse import coo_matrix, csr_matrix

from .config import AssemblyParameters
from .elements import element_diffusion, element_load, geometry
from .exceptions import AssemblyError
from .quadrature import MAX_QUAD_ORDER
from .shapeset import evaluate_at_rule
from .space import AssemblyList, H1Space
from .weakform import WeakForm

log = logging.getLogger(__name__)

# (rows, cols, values) of the matrix and (rows, values) of the load vector
Buffer = tuple[NDArray[np.int64], NDArray[np.int64], NDArray[np.float64], NDArray[np.int64], NDArray[np.float64]]


def element_system(
    space: H1Space, weak_form: WeakForm, alist: AssemblyList, extra_order: int = 2
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Local matrix and load vector of one element in terms of its global DOFs.

    The element integrals are computed on the local basis and transformed
    with the expansion matrix: ``T^T K T`` and ``T^T (f - K lift)``.
    """
    mesh = space.mesh
    el = mesh.elements[alist.element_id]
    matrix_forms, vector_forms = weak_form.get_forms(el.marker)
    if not matrix_forms:
        raise AssemblyError(f"No matrix form for region '{el.marker}' (element {el.id})")

    order = min(2 * alist.order + extra_order, MAX_QUAD_ORDER)
    points, weights, values, grads = evaluate_at_rule(el.nvert, alist.functions, alist.flips, order)
    x, detJ, invJT = geometry(mesh.element_coords(el.id), points)
    wdet = weights * detJ

    n = alist.n_functions
    Ke = np.zeros((n, n))
    for form in matrix_forms:
        Ke += element_diffusion(grads, invJT, wdet, form.evaluate(x[:, 0], x[:, 1]))
    fe = np.zeros(n)
    for form in vector_forms:
        fe += element_load(values, wdet, form.evaluate(x[:, 0], x[:, 1]))

    T = alist.T
    return T.T @ Ke @ T, T.T @ (fe - Ke @ alist.lift)


class Assembler:
    """
    Assembles ``K u = f`` for a space and a weak form.

    Elements are processed in mesh order. With ``num_threads > 1`` they are
    split into contiguous chunks, each chunk fills its own COO buffer and the
    buffers are concatenated in chunk order, so the matrix is identical to a
    serial assembly.
    """

    def __init__(
        self, space: H1Space, weak_form: WeakForm, params: AssemblyParameters | None = None
    ):
        self.space = space
        self.weak_form = weak_form
        self.params = params or AssemblyParameters()
        self.elapsed = 0.0

    def _check(self, regions: set[str]) -> None:
        if not self.space.is_up_to_date():
            raise AssemblyError(
                "Mesh was refined after the space was numbered; call space.assign_dofs()"
            )
        missing = sorted(regions - self.weak_form.regions)
        if missing:
            raise AssemblyError(f"Weak form has no matrix form for region(s) {missing}")

    def _assemble_chunk(self, lists: list[AssemblyList]) -> Buffer:
        rows, cols, vals, frows, fvals = [], [], [], [], []
        extra = self.params.extra_quadrature_order
        for alist in lists:
            if len(alist.dofs) == 0:
                continue
            Kc, fc = element_system(self.space, self.weak_form, alist, extra)
            dofs = alist.dofs
            rows.append(np.repeat(dofs, len(dofs)))
            cols.append(np.tile(dofs, len(dofs)))
            vals.append(Kc.ravel())
            frows.append(dofs)
            fvals.append(fc)
        if not rows:
            empty_i, empty_f = np.zeros(0, dtype=np.int64), np.zeros(0)
            return empty_i, empty_i, empty_f, empty_i, empty_f
        return (
            np.concatenate(rows),
            np.concatenate(cols),
            np.concatenate(vals),
            np.concatenate(frows),
            np.concatenate(fvals),
        )

    def assemble(self) -> tuple[csr_matrix, NDArray[np.float64]]:
        """
        Returns
        -------
        K : csr_matrix (ndofs, ndofs)
        f : ndarray (ndofs,)

        Raises
        ------
        AssemblyError
            If the space is stale or a region has no matrix form.
        """
        space = self.space
        active = space.mesh.active_elements()
        self._check({el.marker for el in active})
        ndofs = space.get_num_dofs()

        start = time.perf_counter()
        with space.frozen():
            # Built serially; the space caches expansions
            lists = [space.get_element_assembly_list(el.id) for el in active]
            n_chunks = min(self.params.num_threads, max(len(lists), 1))
            bounds = np.linspace(0, len(lists), n_chunks + 1).astype(int)
            chunks = [lists[bounds[i] : bounds[i + 1]] for i in range(n_chunks)]

            if n_chunks == 1:
                buffers = [self._assemble_chunk(chunks[0])]
            else:
                with ThreadPoolExecutor(max_workers=n_chunks) as pool:
                    buffers = list(pool.map(self._assemble_chunk, chunks))

        rows, cols, vals, frows, fvals = (np.concatenate(parts) for parts in zip(*buffers))
        K = coo_matrix((vals, (rows, cols)), shape=(ndofs, ndofs)).tocsr()
        f = np.bincount(frows, weights=fvals, minlength=ndofs).astype(np.float64)
        self.elapsed = time.perf_counter() - start

        log.info(
            f"Assembled {ndofs} DOFs from {len(lists)} elements "
            f"({n_chunks} chunk(s)): nnz={K.nnz}, {self.elapsed:.3f}s"
        )
        return K, f


def assemble(
    space: H1Space, weak_form: WeakForm, params: AssemblyParameters | None = None
) -> tuple[csr_matrix, NDArray[np.float64]]:
    """Assemble the linear system of ``weak_form`` on ``space``."""
    return Assembler(space, weak_form, params).assemble()
