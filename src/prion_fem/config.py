"""
Run, solver and problem configuration.

Three dataclasses describe a simulation:

- ProblemParameters: the physics (reaction rate, diffusivity, seed bump).
- SolverConfig: Newton and Krylov settings, backend and boundary handling.
- RunConfig: discretization and time stepping (N, degree, T, dt, output).

Each has ``validate()``, ``to_dict()``/``from_dict()`` and named presets.
``load_config`` reads all three from a JSON file.
"""

from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, Optional, Tuple
import json
from pathlib import Path

import numpy as np


class ConfigurationError(ValueError):
    """Raised for invalid run, solver or problem parameters."""


SUPPORTED_DEGREES = (1,)
KRYLOV_METHODS = ("cg", "gmres")
PRECONDITIONERS = ("ssor", "jacobi", "amg")
BACKENDS = ("auto", "scipy", "petsc")
DIVERGENCE_POLICIES = ("continue", "abort")
BOUNDARY_CONDITIONS = ("natural", "zero_dirichlet")


def _as_triple(value: Any, name: str) -> Tuple[float, float, float]:
    arr = np.asarray(value, dtype=np.float64).ravel()
    if arr.shape != (3,):
        raise ConfigurationError(f"{name} must have 3 components, got {value!r}")
    return (float(arr[0]), float(arr[1]), float(arr[2]))


def _check_keys(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown {cls.__name__} keys: {', '.join(sorted(unknown))}"
        )
    return dict(data)


@dataclass
class ProblemParameters:
    """
    Physical parameters of the prion spreading model.

    The diffusivity tensor is ``d_ext * I + d_axn * (n x n)`` with ``n`` the
    normalized axon direction. The initial condition is a Gaussian bump of
    amplitude ``seed_amplitude`` around ``seed_center``, cut off outside the
    box of half-width ``seed_half_width``.

    Example usage:
        # Brain mesh in millimetres
        params = ProblemParameters.brain()

        # Unit cube test domain
        params = ProblemParameters.cube()
    """

    reaction_rate: float = 2.0
    d_ext: float = 5.0
    d_axn: float = 0.0
    axon_direction: Tuple[float, float, float] = (1.0, 1.0, 1.0)

    seed_center: Tuple[float, float, float] = (50.0, 80.0, 70.0)
    seed_sharpness: float = 2.0
    seed_half_width: float = 1.0
    seed_amplitude: float = 1.0

    @classmethod
    def brain(cls) -> "ProblemParameters":
        """Defaults for the half-brain mesh (coordinates in mm)."""
        return cls()

    @classmethod
    def cube(cls) -> "ProblemParameters":
        """Seed in the middle of the unit cube."""
        return cls(
            seed_center=(0.5, 0.5, 0.5),
            seed_sharpness=30.0,
            seed_half_width=0.1,
            seed_amplitude=0.1,
        )

    def validate(self) -> None:
        """Raise ConfigurationError if any parameter is out of range."""
        if self.d_ext < 0 or self.d_axn < 0:
            raise ConfigurationError(
                f"Diffusivities must be non-negative (d_ext={self.d_ext}, d_axn={self.d_axn})"
            )
        self.axon_direction = _as_triple(self.axon_direction, "axon_direction")
        if np.linalg.norm(self.axon_direction) == 0.0:
            raise ConfigurationError("axon_direction must be non-zero")
        self.seed_center = _as_triple(self.seed_center, "seed_center")
        if self.seed_half_width <= 0:
            raise ConfigurationError("seed_half_width must be positive")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = asdict(self)
        data["axon_direction"] = list(self.axon_direction)
        data["seed_center"] = list(self.seed_center)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProblemParameters":
        """Create from dictionary."""
        params = cls(**_check_keys(cls, data))
        params.validate()
        return params


@dataclass
class SolverConfig:
    """
    Nonlinear and linear solver settings.

    Example usage:
        # Settings of the reference run (CG + SSOR, keep going on divergence)
        config = SolverConfig.default()

        # Stop the run when Newton fails to converge
        config = SolverConfig.strict()
    """

    # Newton
    newton_tolerance: float = 1e-10
    newton_max_iterations: int = 1000
    on_divergence: str = "continue"

    # Krylov
    linear_rtol: float = 1e-6
    linear_max_iterations: int = 1000
    krylov_method: str = "cg"
    preconditioner: str = "ssor"
    ssor_omega: float = 1.0
    backend: str = "auto"

    boundary_condition: str = "natural"

    @classmethod
    def default(cls) -> "SolverConfig":
        """Settings of the reference run."""
        return cls()

    @classmethod
    def strict(cls) -> "SolverConfig":
        """Abort on Newton divergence instead of continuing."""
        return cls(on_divergence="abort")

    def validate(self) -> None:
        """Raise ConfigurationError if any setting is invalid."""
        if self.newton_tolerance <= 0:
            raise ConfigurationError("newton_tolerance must be positive")
        if self.newton_max_iterations < 1:
            raise ConfigurationError("newton_max_iterations must be at least 1")
        if self.linear_rtol <= 0:
            raise ConfigurationError("linear_rtol must be positive")
        if self.linear_max_iterations < 1:
            raise ConfigurationError("linear_max_iterations must be at least 1")
        if not 0.0 < self.ssor_omega < 2.0:
            raise ConfigurationError(
                f"ssor_omega must lie in (0, 2), got {self.ssor_omega}"
            )
        for name, value, allowed in (
            ("on_divergence", self.on_divergence, DIVERGENCE_POLICIES),
            ("krylov_method", self.krylov_method, KRYLOV_METHODS),
            ("preconditioner", self.preconditioner, PRECONDITIONERS),
            ("backend", self.backend, BACKENDS),
            ("boundary_condition", self.boundary_condition, BOUNDARY_CONDITIONS),
        ):
            if value not in allowed:
                raise ConfigurationError(
                    f"Unknown {name} {value!r}; expected one of {', '.join(allowed)}"
                )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SolverConfig":
        """Create from dictionary."""
        config = cls(**_check_keys(cls, data))
        config.validate()
        return config


@dataclass
class RunConfig:
    """
    Discretization and time stepping of a run.

    Attributes:
        N: Mesh resolution proxy; the built-in box mesh has N + 1 cells per axis.
        degree: Polynomial degree of the finite element (only 1 is supported).
        T: Final time.
        dt: Time step.
        output_every: Write a snapshot every this many steps (0: only t = 0).
        mesh_file: Optional mesh file; the unit cube is used when None.
        output_dir: Directory for snapshots and logs.
        output_basename: Snapshot file prefix.
        write_partitioning: Add the element owner rank to snapshots.
    """

    N: int = 19
    degree: int = 1
    T: float = 15.0
    dt: float = 0.1
    output_every: int = 30
    mesh_file: Optional[str] = None
    output_dir: str = "output"
    output_basename: str = "output"
    write_partitioning: bool = False

    @property
    def num_steps(self) -> int:
        """Number of time steps the loop ``while t < T - dt/2`` performs."""
        t = 0.0
        steps = 0
        while t < self.T - 0.5 * self.dt:
            t += self.dt
            steps += 1
        return steps

    def validate(self) -> None:
        """Raise ConfigurationError if any setting is invalid."""
        if not self.dt > 0:
            raise ConfigurationError(f"Time step must be positive, got dt={self.dt}")
        if self.T < 0:
            raise ConfigurationError(f"Final time must be non-negative, got T={self.T}")
        if self.degree not in SUPPORTED_DEGREES:
            raise ConfigurationError(
                f"Only degree 1 (P1) elements are supported, got degree={self.degree}"
            )
        if self.N < 0:
            raise ConfigurationError(f"N must be non-negative, got N={self.N}")
        if self.output_every < 0:
            raise ConfigurationError("output_every must be non-negative")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunConfig":
        """Create from dictionary."""
        config = cls(**_check_keys(cls, data))
        config.validate()
        return config


@dataclass
class SimulationConfig:
    """The three configuration sections of a run."""

    problem: ProblemParameters = field(default_factory=ProblemParameters)
    solver: SolverConfig = field(default_factory=SolverConfig)
    run: RunConfig = field(default_factory=RunConfig)

    def validate(self) -> None:
        self.problem.validate()
        self.solver.validate()
        self.run.validate()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "problem": self.problem.to_dict(),
            "solver": self.solver.to_dict(),
            "run": self.run.to_dict(),
        }


def load_config(path: str) -> SimulationConfig:
    """
    Load a simulation configuration from a JSON file.

    The file may contain ``problem``, ``solver`` and ``run`` sections; missing
    sections and keys keep their defaults.

    Args:
        path: Path to the JSON file.

    Returns:
        Validated SimulationConfig.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, "r") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a JSON object")

    unknown = set(data) - {"problem", "solver", "run"}
    if unknown:
        raise ConfigurationError(
            f"Unknown configuration sections: {', '.join(sorted(unknown))}"
        )

    return SimulationConfig(
        problem=ProblemParameters.from_dict(data.get("problem", {})),
        solver=SolverConfig.from_dict(data.get("solver", {})),
        run=RunConfig.from_dict(data.get("run", {})),
    )
