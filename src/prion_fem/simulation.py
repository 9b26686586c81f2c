"""
Setup and execution of a prion spreading simulation.

PrionSimulation wires the components together:

    mesh -> partition -> ghost exchange -> assembler -> linear solver
         -> Newton driver -> time integrator -> snapshot writer

and reports progress through a rank-0 logger and a section timer.
"""

from typing import TYPE_CHECKING, Optional
import logging

import numpy as np
from numpy.typing import NDArray

from .assembly import WeakFormAssembler
from .basis import P1Tetrahedron
from .coefficients import constant, diffusivity_tensor, gaussian_bump
from .config import SimulationConfig
from .distributed import GhostExchange
from .io import SnapshotSink, VTUSnapshotWriter
from .linear_solver import LinearSolver
from .logging import get_logger
from .mesh import MeshGenerator, TetMesh, load_mesh
from .newton import NewtonSolver, SolutionVectors
from .parallel import ProcessGroup
from .partition import DomainPartition
from .time_integrator import IntegrationResult, TimeIntegrator
from .timer import SectionTimer

SEPARATOR = "-----------------------------------------------"


class PrionSimulation:
    """
    Prion spreading simulation on a distributed tetrahedral mesh.

    Example usage:
        config = SimulationConfig()
        config.problem = ProblemParameters.cube()
        sim = PrionSimulation(config)
        sim.setup()
        result = sim.run()
    """

    def __init__(
        self,
        config: SimulationConfig,
        group: Optional[ProcessGroup] = None,
        mesh: Optional[TetMesh] = None,
        sink: Optional[SnapshotSink] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the simulation.

        Args:
            config: Problem, solver and run configuration (validated here).
            group: Process group (MPI.COMM_WORLD when None).
            mesh: Mesh to use instead of the configured file or box.
            sink: Snapshot sink (VTU files in ``run.output_dir`` when None).
            logger: Progress logger (rank-0 stdout logger when None).
        """
        config.validate()
        self.config = config
        self.group = group if group is not None else ProcessGroup.world()
        self.mesh = mesh
        self.sink = sink
        self.logger = logger if logger is not None else get_logger(
            "prion_fem", group=self.group
        )
        self.timer = SectionTimer(self.group)

        self.partition: Optional[DomainPartition] = None
        self.exchange: Optional[GhostExchange] = None
        self.solution: Optional[SolutionVectors] = None
        self.newton: Optional[NewtonSolver] = None
        self.integrator: Optional[TimeIntegrator] = None

    # ---------------------------
    # Setup
    # ---------------------------

    def setup(self) -> None:
        """Build mesh, partition, assembler and solvers. Collective."""
        run = self.config.run
        solver_config = self.config.solver
        problem = self.config.problem
        log = self.logger.info

        with self.timer.section("Mesh initialization"):
            log("Initializing the mesh")
            if self.mesh is None:
                if run.mesh_file is not None:
                    self.mesh = load_mesh(run.mesh_file)
                else:
                    self.mesh = MeshGenerator().box(run.N + 1)
            self.mesh.check_degenerate()
            self.partition = DomainPartition.for_group(self.mesh, self.group)
            log(f"  Number of elements = {self.mesh.num_elements}")
        log(SEPARATOR)

        element = P1Tetrahedron()
        quadrature = element.default_quadrature()
        log("Initializing the finite element space")
        log(f"  Degree                     = {element.degree}")
        log(f"  DoFs per cell              = {element.dofs_per_cell}")
        log(f"  Quadrature points per cell = {quadrature.size}")
        log(SEPARATOR)

        with self.timer.section("Initialize DoFs"):
            log("Initializing the DoF handler")
            self.exchange = GhostExchange(self.partition, self.group)
            log(f"  Number of DoFs = {self.partition.n_global_dofs}")
        log(SEPARATOR)

        log("Initializing the linear system")
        constrained = None
        if solver_config.boundary_condition == "zero_dirichlet":
            constrained = self.partition.node_to_dof[self.mesh.boundary_nodes]

        assembler = WeakFormAssembler(
            self.mesh,
            self.partition,
            reaction_rate=constant(problem.reaction_rate, name="alpha"),
            diffusivity=diffusivity_tensor(problem.d_ext, problem.d_axn, problem.axon_direction),
            dt=run.dt,
            element=element,
            quadrature=quadrature,
            constrained_dofs=constrained,
        )
        linear_solver = LinearSolver(solver_config, self.group, logger=self.logger)
        self.newton = NewtonSolver(
            assembler,
            linear_solver,
            self.exchange,
            solver_config,
            logger=self.logger,
            timer=self.timer,
        )
        self.solution = SolutionVectors(self.exchange)

        if self.sink is None:
            self.sink = VTUSnapshotWriter(
                self.mesh,
                self.partition,
                self.group,
                output_dir=run.output_dir,
                basename=run.output_basename,
                write_partitioning=run.write_partitioning,
            )

        self.integrator = TimeIntegrator(
            self.newton,
            self.solution,
            T=run.T,
            dt=run.dt,
            output_every=run.output_every,
            sink=self.sink,
            logger=self.logger,
            timer=self.timer,
        )

    # ---------------------------
    # Run
    # ---------------------------

    def owned_dof_coordinates(self) -> NDArray[np.float64]:
        """Coordinates of the DOFs owned by this rank."""
        nodes = self.partition.dof_to_node[self.partition.owned_dofs]
        return self.mesh.nodes[nodes]

    def apply_initial_condition(self) -> None:
        """Interpolate the seed bump into the owned DOFs. Collective."""
        problem = self.config.problem
        u_0 = gaussian_bump(
            problem.seed_center,
            problem.seed_sharpness,
            problem.seed_half_width,
            problem.seed_amplitude,
        )
        values = u_0.evaluate(self.owned_dof_coordinates())

        if self.config.solver.boundary_condition == "zero_dirichlet":
            boundary = self.partition.node_to_dof[self.mesh.boundary_nodes]
            owned = boundary[self.partition.is_owned(boundary)]
            values[owned - self.partition.owned_range[0]] = 0.0

        self.solution.set_owned(values)

    def run(self) -> IntegrationResult:
        """
        Apply the initial condition and run the time loop. Collective.

        Returns:
            IntegrationResult.
        """
        if self.integrator is None:
            self.setup()

        self.logger.info("===============================================")
        self.logger.info("Applying the initial condition")
        self.apply_initial_condition()

        result = self.integrator.run()

        if result.diverged_steps:
            self.logger.info(
                f"Newton did not converge in {len(result.diverged_steps)} step(s): "
                f"{result.diverged_steps[:10]}"
            )
        self.timer.log_summary(self.logger)
        return result
