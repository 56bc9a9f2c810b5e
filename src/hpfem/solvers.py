"""Linear solvers for the assembled system."""

from __future__ import annotations

import logging
import time

import numpy as np
import scipy.sparse.linalg as spla
from numpy.typing import NDArray
from scipy.sparse import csr_matrix

from .assembly import Assembler
from .config import AssemblyParameters, Metrics, SolverParameters
from .exceptions import NotSolvedError, SolverError
from .space import H1Space
from .weakform import WeakForm

log = logging.getLogger(__name__)

_ITERATIVE = {"cg": spla.cg, "gmres": spla.gmres, "bicgstab": spla.bicgstab}


class _BudgetExceeded(Exception):
    """Raised from the iteration callback to abort a run over its time budget."""


class LinearSolver:
    """
    Assemble and solve ``K u = f`` for a weak form on a space.

    Parameters
    ----------
    weak_form, space : optional
        Problem to solve; can also be passed to ``solve``.
    params : SolverParameters
        Method, tolerance, iteration and time budgets.
    assembly_params : AssemblyParameters
        Passed to the Assembler.
    """

    def __init__(
        self,
        weak_form: WeakForm | None = None,
        space: H1Space | None = None,
        params: SolverParameters | None = None,
        assembly_params: AssemblyParameters | None = None,
    ):
        self.weak_form = weak_form
        self.space = space
        self.params = params or SolverParameters()
        self.assembly_params = assembly_params or AssemblyParameters()
        self.metrics = Metrics()
        self.matrix: csr_matrix | None = None
        self.rhs: NDArray[np.float64] | None = None
        self._sln_vector: NDArray[np.float64] | None = None

    def solve(self, weak_form: WeakForm | None = None, space: H1Space | None = None) -> bool:
        """
        Assemble and solve.

        Returns
        -------
        bool
            True on success.

        Raises
        ------
        SolverError
            If the system is singular, the result is not finite, or an
            iterative method does not converge within its budget.
        AssemblyError
            Propagated from the Assembler.
        """
        if weak_form is not None:
            self.weak_form = weak_form
        if space is not None:
            self.space = space
        if self.weak_form is None or self.space is None:
            raise ValueError("LinearSolver needs a weak form and a space")

        self._sln_vector = None
        assembler = Assembler(self.space, self.weak_form, self.assembly_params)
        self.matrix, self.rhs = assembler.assemble()
        self.metrics = Metrics(
            num_dofs=self.space.get_num_dofs(),
            num_elements=self.space.mesh.num_active_elements,
            nnz=int(self.matrix.nnz),
            assembly_time_seconds=assembler.elapsed,
        )

        start = time.perf_counter()
        if self.params.is_direct:
            u, iterations = self._solve_direct(), 1
        else:
            u, iterations = self._solve_iterative(start)
        elapsed = time.perf_counter() - start

        residual = self._relative_residual(u)
        if not np.all(np.isfinite(u)):
            raise SolverError(
                "Linear solve produced non-finite values",
                self._diagnostic(iterations, residual, elapsed, "non-finite"),
            )

        self.metrics.solve_time_seconds = elapsed
        self.metrics.iterations = iterations
        self.metrics.residual = residual
        self.metrics.converged = True
        self._sln_vector = u
        self._sln_vector.setflags(write=False)
        log.info(
            f"Solved {self.metrics.num_dofs} DOFs with {self.params.method}: "
            f"{iterations} iteration(s), residual={residual:.2e}, {elapsed:.3f}s"
        )
        return True

    def _solve_direct(self) -> NDArray[np.float64]:
        if self.matrix.shape[0] == 0:
            return np.zeros(0)
        try:
            lu = spla.splu(self.matrix.tocsc())
        except RuntimeError as exc:
            raise SolverError(
                f"Direct factorization failed: {exc}",
                self._diagnostic(0, float("inf"), 0.0, "singular"),
            ) from exc
        return lu.solve(self.rhs)

    def _solve_iterative(self, start: float) -> tuple[NDArray[np.float64], int]:
        params = self.params
        iterations = 0
        last = np.zeros_like(self.rhs)

        def callback(xk):
            nonlocal iterations
            iterations += 1
            if isinstance(xk, np.ndarray) and xk.shape == last.shape:
                last[:] = xk
            if params.time_budget is not None and time.perf_counter() - start > params.time_budget:
                raise _BudgetExceeded

        kwargs = dict(rtol=params.tolerance, atol=0.0, maxiter=params.max_iterations, callback=callback)
        if params.method == "gmres":
            kwargs.update(restart=params.restart, callback_type="x")

        try:
            u, info = _ITERATIVE[params.method](self.matrix, self.rhs, **kwargs)
        except _BudgetExceeded:
            elapsed = time.perf_counter() - start
            raise SolverError(
                f"{params.method} exceeded its time budget of {params.time_budget}s "
                f"after {iterations} iteration(s)",
                self._diagnostic(iterations, self._relative_residual(last), elapsed, "time budget"),
            ) from None

        if info != 0:
            elapsed = time.perf_counter() - start
            reason = "max iterations" if info > 0 else "breakdown"
            raise SolverError(
                f"{params.method} did not converge ({reason}, info={info})",
                self._diagnostic(iterations, self._relative_residual(u), elapsed, reason),
            )
        return u, iterations

    def _relative_residual(self, u: NDArray[np.float64]) -> float:
        norm_f = np.linalg.norm(self.rhs)
        res = np.linalg.norm(self.matrix @ u - self.rhs)
        return float(res / norm_f) if norm_f > 0 else float(res)

    def _diagnostic(self, iterations: int, residual: float, elapsed: float, reason: str) -> dict:
        self.metrics.iterations = iterations
        self.metrics.residual = residual
        self.metrics.solve_time_seconds = elapsed
        self.metrics.converged = False
        return {
            "reason": reason,
            "method": self.params.method,
            "num_dofs": self.metrics.num_dofs,
            "iterations": iterations,
            "residual": residual,
            "elapsed_seconds": elapsed,
        }

    def get_sln_vector(self) -> NDArray[np.float64]:
        """Coefficient vector of the last successful solve (read-only)."""
        if self._sln_vector is None:
            raise NotSolvedError("No solution available; call solve() first")
        return self._sln_vector
