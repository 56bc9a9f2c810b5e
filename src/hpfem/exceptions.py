"""Error taxonomy for the finite-element pipeline."""


class FEMError(Exception):
    """Base class for all errors raised by hpfem."""


class InvalidRegionError(FEMError, ValueError):
    """Raised when a region (material) name matches no element of the mesh."""


class InvalidElementError(FEMError, ValueError):
    """Raised when an element id is not an active element (or the order is invalid)."""


class IncompatibleMeshError(FEMError, ValueError):
    """Raised when a space is cloned onto a mesh with a different topology."""


class FrozenMeshError(FEMError, RuntimeError):
    """Raised when a mesh or space is mutated while an assembly is in flight."""


class ParseError(FEMError, ValueError):
    """Raised when a mesh file cannot be interpreted."""


class AssemblyError(FEMError, RuntimeError):
    """Raised when the weak form does not cover an element or the space is stale."""


class SolverError(FEMError, RuntimeError):
    """Raised when the linear system is singular, diverges or exceeds its budget."""

    def __init__(self, message: str, diagnostic: dict | None = None):
        super().__init__(message)
        self.diagnostic = diagnostic or {}


class NotSolvedError(FEMError, RuntimeError):
    """Raised when the solution vector is requested before a successful solve."""


class DimensionMismatchError(FEMError, ValueError):
    """Raised when a coefficient vector does not match the space dimension."""
