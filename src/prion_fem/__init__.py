"""
prion_fem: Distributed finite element solver for prion spreading

Solves the Fisher-KPP reaction-diffusion model

    du/dt = div(D grad u) + alpha u (1 - u)

on a tetrahedral mesh split across MPI processes, with P1 elements,
backward Euler in time and a full Newton iteration per step.

Default configuration:
- Reaction rate alpha = 2.0
- Diffusivity D = d_ext I + d_axn (n x n), d_ext = 5, d_axn = 0
- T = 15.0, dt = 0.1, snapshot every 30 steps
- CG with SSOR preconditioning, Newton tolerance 1e-10

Quick start:
    from prion_fem import PrionSimulation, SimulationConfig, ProblemParameters

    config = SimulationConfig(problem=ProblemParameters.cube())
    simulation = PrionSimulation(config)
    result = simulation.run()
"""

__version__ = "0.1.0"

from .parallel import ProcessGroup
from .mesh import MeshError, MeshGenerator, TetMesh, load_mesh, save_mesh
from .basis import P1Tetrahedron, QuadratureRule, ElementValues, gauss_simplex, compute_element_values
from .partition import DomainPartition, PartitionError, recursive_coordinate_bisection
from .distributed import DistributedMatrix, DistributedVector, GhostExchange
from .coefficients import Coefficient, constant, diffusivity_tensor, gaussian_bump
from .assembly import WeakFormAssembler
from .linear_solver import LinearSolver, LinearSolveResult, LinearSolverWarning, ssor_preconditioner
from .newton import (
    NewtonDivergenceError,
    NewtonDivergenceWarning,
    NewtonResult,
    NewtonSolver,
    NewtonState,
    SolutionVectors,
)
from .time_integrator import IntegrationResult, StepRecord, TimeIntegrator
from .io import SnapshotSink, VTUSnapshotWriter, load_snapshot
from .config import (
    ConfigurationError,
    ProblemParameters,
    RunConfig,
    SimulationConfig,
    SolverConfig,
    load_config,
)
from .simulation import PrionSimulation
from .timer import SectionTimer
from .logging import get_logger

__all__ = [
    # Parallel
    "ProcessGroup",
    # Mesh
    "MeshError",
    "MeshGenerator",
    "TetMesh",
    "load_mesh",
    "save_mesh",
    # Basis and quadrature
    "P1Tetrahedron",
    "QuadratureRule",
    "ElementValues",
    "gauss_simplex",
    "compute_element_values",
    # Partition
    "DomainPartition",
    "PartitionError",
    "recursive_coordinate_bisection",
    # Distributed containers
    "DistributedMatrix",
    "DistributedVector",
    "GhostExchange",
    # Coefficients
    "Coefficient",
    "constant",
    "diffusivity_tensor",
    "gaussian_bump",
    # Solver chain
    "WeakFormAssembler",
    "LinearSolver",
    "LinearSolveResult",
    "LinearSolverWarning",
    "ssor_preconditioner",
    "NewtonDivergenceError",
    "NewtonDivergenceWarning",
    "NewtonResult",
    "NewtonSolver",
    "NewtonState",
    "SolutionVectors",
    "IntegrationResult",
    "StepRecord",
    "TimeIntegrator",
    # Output
    "SnapshotSink",
    "VTUSnapshotWriter",
    "load_snapshot",
    # Configuration
    "ConfigurationError",
    "ProblemParameters",
    "RunConfig",
    "SimulationConfig",
    "SolverConfig",
    "load_config",
    # Driver
    "PrionSimulation",
    "SectionTimer",
    "get_logger",
]
