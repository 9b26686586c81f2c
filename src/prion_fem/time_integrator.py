"""
Backward-Euler time loop.

Advances t from 0 in steps of dt while ``t < T - dt/2``, so accumulated
rounding never adds a spurious final step. Each step freezes the current
solution as the previous time step and runs Newton; every ``output_every``
steps a frame is written. Frame 0 (t = 0) is always written.
"""

from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, List, Optional, Tuple
import logging

from .config import ConfigurationError
from .newton import NewtonResult, NewtonSolver, SolutionVectors
from .io import SnapshotSink

if TYPE_CHECKING:
    from .timer import SectionTimer


@dataclass
class StepRecord:
    """Result of one time step."""

    step: int
    time: float
    newton: NewtonResult


@dataclass
class IntegrationResult:
    """
    Outcome of a run.

    Attributes:
        steps: One record per time step.
        frames: (frame index, time) of every snapshot written.
        final_time: Time after the last step.
    """

    steps: List[StepRecord] = field(default_factory=list)
    frames: List[Tuple[int, float]] = field(default_factory=list)
    final_time: float = 0.0

    @property
    def num_steps(self) -> int:
        return len(self.steps)

    @property
    def diverged_steps(self) -> List[int]:
        return [rec.step for rec in self.steps if not rec.newton.converged]


class TimeIntegrator:
    """
    Fixed-step implicit Euler integrator.

    Example:
        integrator = TimeIntegrator(newton, solution, T=15.0, dt=0.1, sink=writer)
        result = integrator.run()
    """

    def __init__(
        self,
        newton: NewtonSolver,
        solution: SolutionVectors,
        T: float,
        dt: float,
        output_every: int = 30,
        sink: Optional[SnapshotSink] = None,
        logger: Optional[logging.Logger] = None,
        timer: Optional["SectionTimer"] = None,
        callback: Optional[Callable[[int, float, NewtonResult], None]] = None,
    ):
        if not dt > 0:
            raise ConfigurationError(f"Time step must be positive, got dt={dt}")
        if output_every < 0:
            raise ConfigurationError("output_every must be non-negative")
        self.newton = newton
        self.solution = solution
        self.T = float(T)
        self.dt = float(dt)
        self.output_every = int(output_every)
        self.sink = sink
        self.logger = logger
        self.timer = timer
        self.callback = callback

    def _log(self, message: str) -> None:
        if self.logger is not None:
            self.logger.info(message)

    def _write(self, frame: int, time: float, result: IntegrationResult) -> None:
        if self.sink is not None:
            with self.timer.section("Writing") if self.timer is not None else nullcontext():
                self.sink.write(frame, time, self.solution.current)
        result.frames.append((frame, time))

    def run(self) -> IntegrationResult:
        """
        Run the time loop from t = 0. Collective.

        ``solution`` must already hold the initial condition.

        Returns:
            IntegrationResult.
        """
        result = IntegrationResult()
        time = 0.0
        step = 0
        frame = 0

        self.solution.sync_current()
        self._write(frame, time, result)
        frame += 1
        self._log("-----------------------------------------------")

        while time < self.T - 0.5 * self.dt:
            time += self.dt
            step += 1

            self.solution.snapshot_previous()

            self._log(f"n = {step:3d}, t = {time:5.3f}")
            newton_result = self.newton.solve(self.solution)
            result.steps.append(StepRecord(step=step, time=time, newton=newton_result))

            if self.callback is not None:
                self.callback(step, time, newton_result)

            if self.output_every and step % self.output_every == 0:
                self._write(frame, time, result)
                frame += 1

            self._log("")

        result.final_time = time
        return result
