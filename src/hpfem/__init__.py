"""hp-FEM package for steady heat conduction in heterogeneous materials.

Solves -div(lambda grad u) = f with hierarchical H1 elements of variable
order on locally refined triangle/quad meshes (hanging vertices allowed).

Main components:
- Mesh: index-based mesh with region tags and local refinement
- H1Space: DOF numbering, per-element orders, hanging-vertex constraints
- WeakFormPoisson: per-region conductivity and heat source
- Assembler / LinearSolver: sparse system assembly and solution
- Solution: evaluable field bound to a coefficient vector

Visualization and VTK export live in ``hpfem.views``.
"""

from .datastructures import Mesh, Vertex, Edge, Element, TRIANGLE, QUAD
from .mesh import (
    l_shape_mesh,
    rectangle_mesh,
    load_mesh,
    save_mesh,
    ALUMINUM,
    COPPER,
    BOTTOM,
    RIGHT,
    TOP,
    LEFT,
    INNER,
    OUTER,
)
from .boundary import EssentialBC, ConstantEssentialBC, EssentialBCs
from .space import H1Space, AssemblyList
from .weakform import WeakForm, WeakFormPoisson, DiffusionMatrixForm, SourceVectorForm
from .assembly import Assembler, assemble
from .config import AssemblyParameters, SolverParameters, Metrics
from .solvers import LinearSolver
from .solution import Solution, vector_to_solution
from .exceptions import (
    FEMError,
    InvalidRegionError,
    InvalidElementError,
    IncompatibleMeshError,
    FrozenMeshError,
    ParseError,
    AssemblyError,
    SolverError,
    NotSolvedError,
    DimensionMismatchError,
)

__all__ = [
    # Mesh
    "Mesh",
    "Vertex",
    "Edge",
    "Element",
    "TRIANGLE",
    "QUAD",
    "l_shape_mesh",
    "rectangle_mesh",
    "load_mesh",
    "save_mesh",
    "ALUMINUM",
    "COPPER",
    "BOTTOM",
    "RIGHT",
    "TOP",
    "LEFT",
    "INNER",
    "OUTER",
    # Boundary conditions
    "EssentialBC",
    "ConstantEssentialBC",
    "EssentialBCs",
    # Space
    "H1Space",
    "AssemblyList",
    # Weak forms
    "WeakForm",
    "WeakFormPoisson",
    "DiffusionMatrixForm",
    "SourceVectorForm",
    # Assembly and solvers
    "Assembler",
    "assemble",
    "AssemblyParameters",
    "SolverParameters",
    "Metrics",
    "LinearSolver",
    "Solution",
    "vector_to_solution",
    # Errors
    "FEMError",
    "InvalidRegionError",
    "InvalidElementError",
    "IncompatibleMeshError",
    "FrozenMeshError",
    "ParseError",
    "AssemblyError",
    "SolverError",
    "NotSolvedError",
    "DimensionMismatchError",
]
