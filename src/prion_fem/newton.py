"""
Newton-Raphson driver for one backward-Euler time step.

Per iteration: assemble J and R from the current iterate, stop if
||R|| <= tolerance, otherwise solve J delta = R, add delta to the owned
solution and refresh the ghost-complete copy. Every iteration is a fresh
linearization (full Newton). After the last allowed increment the residual
is assembled once more, so a diverged result still reports the residual of
the iterate it keeps.

Divergence and linear non-convergence warnings are issued on rank 0 only.
"""

from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, List, Optional
import logging
import warnings

import numpy as np
from numpy.typing import NDArray

from .assembly import WeakFormAssembler
from .config import SolverConfig
from .distributed import DistributedMatrix, DistributedVector, GhostExchange
from .linear_solver import LinearSolver

if TYPE_CHECKING:
    from .timer import SectionTimer


class NewtonState(Enum):
    """State of the Newton iteration."""
    ITERATING = "iterating"
    CONVERGED = "converged"
    DIVERGED = "diverged"


class NewtonDivergenceWarning(RuntimeWarning):
    """Newton reached its iteration cap; the last iterate is kept."""


class NewtonDivergenceError(RuntimeError):
    """Newton reached its iteration cap under the abort policy."""

    def __init__(self, message: str, result: "NewtonResult"):
        super().__init__(message)
        self.result = result


@dataclass
class NewtonResult:
    """
    Outcome of one Newton solve.

    Attributes:
        state: Final state (CONVERGED or DIVERGED).
        iterations: Number of increments applied.
        residual_norms: ||R|| at every assembly; the last entry belongs to
            the returned iterate.
        linear_iterations: Krylov iterations of every linear solve.
        unconverged_linear_solves: Linear solves that hit their cap.
    """

    state: NewtonState = NewtonState.ITERATING
    iterations: int = 0
    residual_norms: List[float] = field(default_factory=list)
    linear_iterations: List[int] = field(default_factory=list)
    unconverged_linear_solves: int = 0

    @property
    def converged(self) -> bool:
        return self.state is NewtonState.CONVERGED

    @property
    def final_residual(self) -> float:
        return self.residual_norms[-1] if self.residual_norms else float("nan")


class SolutionVectors:
    """
    The three solution copies of the time loop.

    Attributes:
        current: Ghost-complete Newton iterate, read during assembly.
        current_owned: Authoritative owned values, updated by Newton.
        previous: Ghost-complete solution at the start of the time step.
    """

    def __init__(self, exchange: GhostExchange):
        self.current = DistributedVector(exchange)
        self.current_owned = DistributedVector(exchange)
        self.previous = DistributedVector(exchange)

    def set_owned(self, values: NDArray[np.float64]) -> None:
        """Set the owned values and refresh ``current``. Collective."""
        self.current_owned.assign_owned(values)
        self.sync_current()

    def sync_current(self) -> None:
        """Copy ``current_owned`` into ``current`` and refresh ghosts. Collective."""
        self.current.assign_owned(self.current_owned.owned)
        self.current.update_ghosts()

    def snapshot_previous(self) -> None:
        """Freeze ``current`` (owned and ghosts) as the previous time step."""
        self.previous.copy_from(self.current)


class NewtonSolver:
    """
    Newton-Raphson iteration with configurable divergence policy.

    Example:
        newton = NewtonSolver(assembler, LinearSolver(config, group), exchange, config)
        result = newton.solve(solution)
    """

    def __init__(
        self,
        assembler: WeakFormAssembler,
        linear_solver: LinearSolver,
        exchange: GhostExchange,
        config: SolverConfig,
        logger: Optional[logging.Logger] = None,
        timer: Optional["SectionTimer"] = None,
    ):
        self.assembler = assembler
        self.linear_solver = linear_solver
        self.config = config
        self.logger = logger
        self.timer = timer
        self.group = exchange.group
        self.jacobian = DistributedMatrix(exchange)
        self.residual = DistributedVector(exchange)

    def _section(self, name: str):
        if self.timer is None:
            return nullcontext()
        return self.timer.section(name)

    def _log(self, message: str) -> None:
        if self.logger is not None:
            self.logger.info(message)

    def solve(self, solution: SolutionVectors) -> NewtonResult:
        """
        Iterate to convergence or the iteration cap. Collective.

        ``solution.current_owned`` holds the starting guess (the previous time
        step's solution) and receives the final iterate.

        Returns:
            NewtonResult.

        Raises:
            NewtonDivergenceError: On divergence with ``on_divergence="abort"``.
        """
        config = self.config
        max_iter = config.newton_max_iterations
        result = NewtonResult()

        solution.sync_current()

        while result.state is NewtonState.ITERATING:
            with self._section("Assemble system"):
                self.assembler.assemble(
                    solution.current, solution.previous, self.jacobian, self.residual
                )
            residual_norm = self.residual.norm()
            result.residual_norms.append(residual_norm)

            header = f"  Newton iteration {result.iterations}/{max_iter} - ||r|| = {residual_norm:.6e}"
            if residual_norm <= config.newton_tolerance:
                self._log(header + " < tolerance")
                result.state = NewtonState.CONVERGED
                break
            self._log(header)
            # The residual of the kept iterate is measured before giving up
            if result.iterations >= max_iter:
                result.state = NewtonState.DIVERGED
                break

            with self._section("Solve system"):
                linear = self.linear_solver.solve(self.jacobian, self.residual)
            result.linear_iterations.append(linear.iterations)
            if not linear.converged:
                result.unconverged_linear_solves += 1

            solution.current_owned.add_owned(linear.increment)
            solution.sync_current()

            result.iterations += 1

        if result.state is NewtonState.DIVERGED:
            message = (
                f"Newton did not converge in {max_iter} iterations "
                f"(final ||r|| = {result.final_residual:.6e})"
            )
            if config.on_divergence == "abort":
                raise NewtonDivergenceError(message, result)
            if self.group.is_root:
                warnings.warn(message + "; keeping the last iterate", NewtonDivergenceWarning, stacklevel=2)

        return result
