"""Nonlocal finite element package.

Assembles and solves heat conduction and plane-stress elasticity with an
optional nonlocal (integral) term on 1D and 2D meshes.

Pipeline:
---------
Mesh -> QuadratureCache -> Portrait (count, fill) -> SystemMatrix
     -> compiled row-parallel assembly -> boundary conditions -> LinearSolver
     -> HeatSolution / ElasticSolution -> VTK / CSV
"""

from .assembly import (
    DIFFUSION,
    MASS,
    PLANE_STRESS,
    SystemMatrix,
    assemble_local,
    assemble_nonlocal,
    assemble_parallel,
    assemble_vector,
)
from .boundary import (
    BoundaryCondition,
    BoundaryKind,
    displacement,
    flux,
    force,
    temperature,
)
from .datastructures import (
    AssemblyConfig,
    ElasticParameters,
    HeatParameters,
    Metrics,
    TimeParameters,
    TimeSeries,
)
from .elements import ElementType, FiniteElement, get_element
from .errors import (
    ConfigurationError,
    NonlocalFEMError,
    PortraitError,
    SolverError,
    UnsolvableProblemError,
)
from .influence import ConstantInfluence, InfluenceFunction, NormalInfluence, PolynomialInfluence, bell
from .mesh import DOWN, LEFT, RIGHT, UP, BoundaryGroup, Mesh, line_mesh, rectangle_mesh
from .portrait import Portrait, SparseBuilder
from .quadrature import QuadratureCache
from .solution import ElasticSolution, HeatSolution
from .solvers import ElasticitySolver, HeatSolver, LinearSolver, SolverState

__all__ = [
    # Mesh and elements
    "Mesh",
    "BoundaryGroup",
    "line_mesh",
    "rectangle_mesh",
    "DOWN",
    "RIGHT",
    "UP",
    "LEFT",
    "ElementType",
    "FiniteElement",
    "get_element",
    "QuadratureCache",
    # Influence functions
    "InfluenceFunction",
    "PolynomialInfluence",
    "ConstantInfluence",
    "NormalInfluence",
    "bell",
    # Assembly
    "SparseBuilder",
    "Portrait",
    "SystemMatrix",
    "assemble_local",
    "assemble_nonlocal",
    "assemble_parallel",
    "DIFFUSION",
    "PLANE_STRESS",
    "MASS",
    "assemble_vector",
    # Boundary conditions
    "BoundaryKind",
    "BoundaryCondition",
    "temperature",
    "flux",
    "displacement",
    "force",
    # Parameters and results
    "AssemblyConfig",
    "HeatParameters",
    "ElasticParameters",
    "TimeParameters",
    "Metrics",
    "TimeSeries",
    # Solvers
    "SolverState",
    "LinearSolver",
    "HeatSolver",
    "ElasticitySolver",
    "HeatSolution",
    "ElasticSolution",
    # Errors
    "NonlocalFEMError",
    "ConfigurationError",
    "UnsolvableProblemError",
    "PortraitError",
    "SolverError",
]
