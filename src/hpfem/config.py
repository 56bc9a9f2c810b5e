"""Parameter and metrics records.

             Params (input/config)          Metrics (output/results)
             ─────────────────────          ────────────────────────
Assembly     AssemblyParameters             Metrics.assembly_time_seconds
             num_threads, extra order       nnz
Solve        SolverParameters               Metrics
             method, tolerance, budget      iterations, residual, solve time
"""

from dataclasses import dataclass

import pandas as pd

DIRECT_METHODS = ("direct", "splu")
ITERATIVE_METHODS = ("cg", "gmres", "bicgstab")


@dataclass
class AssemblyParameters:
    """Assembler configuration."""

    num_threads: int = 1
    extra_quadrature_order: int = 2  # added to 2p for quads and non-constant data

    def __post_init__(self):
        if self.num_threads < 1:
            raise ValueError(f"num_threads must be >= 1, got {self.num_threads}")
        if self.extra_quadrature_order < 0:
            raise ValueError(
                f"extra_quadrature_order must be >= 0, got {self.extra_quadrature_order}"
            )

    def to_mlflow(self) -> dict:
        return dict(self.__dict__)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([self.to_mlflow()])


@dataclass
class SolverParameters:
    """Linear solver configuration.

    ``time_budget`` (seconds) and ``max_iterations`` only bound the iterative
    methods; ``None`` disables the time budget.
    """

    method: str = "direct"
    tolerance: float = 1e-10
    max_iterations: int = 10000
    time_budget: float | None = None
    restart: int = 50  # GMRES only

    def __post_init__(self):
        if self.method not in DIRECT_METHODS + ITERATIVE_METHODS:
            raise ValueError(
                f"Unknown solver method '{self.method}'; "
                f"choose from {DIRECT_METHODS + ITERATIVE_METHODS}"
            )
        if self.tolerance <= 0:
            raise ValueError(f"tolerance must be positive, got {self.tolerance}")

    @property
    def is_direct(self) -> bool:
        return self.method in DIRECT_METHODS

    def to_mlflow(self) -> dict:
        """Convert to MLflow-compatible params dict (None as string)."""
        return {k: ("none" if v is None else v) for k, v in self.__dict__.items()}

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([self.to_mlflow()])


@dataclass
class Metrics:
    """Results of one assemble-and-solve cycle."""

    num_dofs: int = 0
    num_elements: int = 0
    nnz: int = 0
    assembly_time_seconds: float = 0.0
    solve_time_seconds: float = 0.0
    iterations: int = 0
    residual: float = float("inf")
    converged: bool = False

    def to_mlflow(self) -> dict:
        """Convert to MLflow-compatible dict (bools as int, skip inf)."""
        return {
            k: (int(v) if isinstance(v, bool) else v)
            for k, v in self.__dict__.items()
            if v != float("inf")
        }

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([self.to_mlflow()])
