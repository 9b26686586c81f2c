"""
Command-line interface for prion spreading simulations.

Run in parallel with, e.g.:

    mpiexec -n 4 prion-simulate --mesh half-brain.msh --backend petsc
"""

import argparse
import logging
import sys
from typing import Optional

from .config import (
    BACKENDS,
    DIVERGENCE_POLICIES,
    PRECONDITIONERS,
    ProblemParameters,
    SimulationConfig,
    load_config,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="prion-simulate",
        description="Simulate prion spreading (Fisher-KPP reaction-diffusion) on a tetrahedral mesh",
    )

    parser.add_argument(
        "--config",
        default=None,
        help="JSON configuration file with problem/solver/run sections",
    )
    parser.add_argument(
        "--mesh",
        default=None,
        help="Tetrahedral mesh file (.msh, .vtu, ...); unit cube if omitted",
    )
    parser.add_argument(
        "-N",
        type=int,
        default=None,
        help="Unit cube resolution; the cube has N + 1 cells per axis (default: 19)",
    )
    parser.add_argument(
        "--degree",
        type=int,
        default=None,
        help="Finite element degree (only 1 is supported)",
    )
    parser.add_argument(
        "-T",
        type=float,
        default=None,
        help="Final time (default: 15.0)",
    )
    parser.add_argument(
        "--dt",
        type=float,
        default=None,
        help="Time step (default: 0.1)",
    )
    parser.add_argument(
        "--output-every",
        type=int,
        default=None,
        help="Write a snapshot every K steps, 0 for only the initial one (default: 30)",
    )
    parser.add_argument(
        "-o", "--output",
        default=None,
        help="Output directory for snapshots (default: ./output)",
    )
    parser.add_argument(
        "--preset",
        choices=["brain", "cube"],
        default=None,
        help="Seed location preset (default: cube without --mesh, brain with it)",
    )
    parser.add_argument(
        "--reaction-rate",
        type=float,
        default=None,
        help="Reaction rate alpha (default: 2.0)",
    )
    parser.add_argument(
        "--d-ext",
        type=float,
        default=None,
        help="Extracellular diffusivity (default: 5.0)",
    )
    parser.add_argument(
        "--d-axn",
        type=float,
        default=None,
        help="Axonal diffusivity (default: 0.0)",
    )
    parser.add_argument(
        "--axon-direction",
        type=float,
        nargs=3,
        default=None,
        metavar=("X", "Y", "Z"),
        help="Axon fiber direction (default: 1 1 1)",
    )
    parser.add_argument(
        "--seed-center",
        type=float,
        nargs=3,
        default=None,
        metavar=("X", "Y", "Z"),
        help="Center of the initial Gaussian seed",
    )
    parser.add_argument(
        "--backend",
        choices=BACKENDS,
        default=None,
        help="Linear solver backend (default: auto)",
    )
    parser.add_argument(
        "--preconditioner",
        choices=PRECONDITIONERS,
        default=None,
        help="Krylov preconditioner (default: ssor)",
    )
    parser.add_argument(
        "--on-divergence",
        choices=DIVERGENCE_POLICIES,
        default=None,
        help="What to do when Newton does not converge (default: continue)",
    )
    parser.add_argument(
        "--write-partitioning",
        action="store_true",
        help="Add the owning rank of every element to the snapshots",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 0.1.0",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> SimulationConfig:
    """Merge the config file (if any) with explicit command-line flags."""
    config = load_config(args.config) if args.config else SimulationConfig()
    problem, solver, run = config.problem, config.solver, config.run

    if args.mesh is not None:
        run.mesh_file = args.mesh

    preset = args.preset
    if preset is None and args.config is None:
        preset = "brain" if run.mesh_file else "cube"
    if preset is not None:
        seed = getattr(ProblemParameters, preset)()
        problem.seed_center = seed.seed_center
        problem.seed_sharpness = seed.seed_sharpness
        problem.seed_half_width = seed.seed_half_width
        problem.seed_amplitude = seed.seed_amplitude

    # (section, field, flag value); config sections are unhashable dataclasses
    overrides = [
        (run, "N", args.N),
        (run, "degree", args.degree),
        (run, "T", args.T),
        (run, "dt", args.dt),
        (run, "output_every", args.output_every),
        (run, "output_dir", args.output),
        (problem, "reaction_rate", args.reaction_rate),
        (problem, "d_ext", args.d_ext),
        (problem, "d_axn", args.d_axn),
        (problem, "axon_direction", args.axon_direction),
        (problem, "seed_center", args.seed_center),
        (solver, "backend", args.backend),
        (solver, "preconditioner", args.preconditioner),
        (solver, "on_divergence", args.on_divergence),
    ]
    for section, name, value in overrides:
        if value is not None:
            setattr(section, name, value)
    if args.write_partitioning:
        run.write_partitioning = True

    config.validate()
    return config


def main(args: Optional[list] = None) -> int:
    """
    Main entry point for the prion-simulate CLI.

    Args:
        args: Command line arguments (uses sys.argv if None).

    Returns:
        Exit code (0 for success).
    """
    parser = build_parser()
    parsed_args = parser.parse_args(args)

    try:
        return run_simulation(parsed_args)
    except KeyboardInterrupt:
        print("\nSimulation interrupted by user")
        return 1
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        if parsed_args.verbose:
            import traceback
            traceback.print_exc()
        return 1


def run_simulation(args: argparse.Namespace) -> int:
    """Run the simulation with parsed arguments."""
    from .logging import get_logger
    from .parallel import ProcessGroup
    from .simulation import PrionSimulation

    config = config_from_args(args)
    group = ProcessGroup.world()
    logger = get_logger(
        "prion_fem",
        group=group,
        outdir=config.run.output_dir if group.is_root else None,
        level=logging.DEBUG if args.verbose else logging.INFO,
        force=True,
    )
    if args.verbose:
        logger.debug(f"Configuration: {config.to_dict()}")

    simulation = PrionSimulation(config, group=group, logger=logger)
    simulation.setup()
    result = simulation.run()

    logger.info(
        f"Simulation complete: {result.num_steps} steps, {len(result.frames)} snapshots "
        f"in {config.run.output_dir}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
