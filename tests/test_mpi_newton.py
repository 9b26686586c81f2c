"""
Tests for the Newton and Krylov solve across MPI processes.

Run with: mpirun -np 2 python -m pytest tests/test_mpi_newton.py -v
          mpirun -np 4 python -m pytest tests/test_mpi_newton.py -v

Skipped in a single process and without petsc4py. Every rank also solves the
same problem alone with the scipy backend; rank 0 compares the gathered
distributed solution against that serial result.
"""

import numpy as np
import pytest
from mpi4py import MPI

from prion_fem.coefficients import gaussian_bump
from prion_fem.config import SolverConfig
from prion_fem.linear_solver import LinearSolver, petsc_available
from prion_fem.mesh import MeshGenerator
from prion_fem.newton import NewtonSolver, NewtonState, SolutionVectors
from prion_fem.parallel import ProcessGroup

pytestmark = [
    pytest.mark.skipif(MPI.COMM_WORLD.Get_size() == 1, reason="Needs more than one MPI process"),
    pytest.mark.skipif(not petsc_available(), reason="Needs petsc4py"),
]


@pytest.fixture(scope="module")
def cube_mesh():
    return MeshGenerator().box(4)


def seeded_newton(make_system, mesh, group, backend):
    config = SolverConfig(backend=backend, linear_rtol=1e-10)
    system = make_system(mesh, group)
    newton = NewtonSolver(system.assembler, LinearSolver(config, group), system.exchange, config)
    solution = SolutionVectors(system.exchange)

    bump = gaussian_bump(center=(0.5, 0.5, 0.5), sharpness=3.0, half_width=0.5, amplitude=0.5)
    p = system.partition
    solution.set_owned(bump.evaluate(mesh.nodes[p.dof_to_node[p.owned_dofs]]))
    solution.snapshot_previous()
    return system, newton, solution


def test_partition_spans_ranks(cube_mesh, make_system):
    group = ProcessGroup.world()
    system = make_system(cube_mesh, group)

    assert group.allreduce_sum(system.partition.n_owned) == cube_mesh.num_nodes
    assert group.allreduce_sum(system.partition.n_ghosts) > 0


def test_newton_matches_serial(cube_mesh, make_system):
    group = ProcessGroup.world()
    system, newton, solution = seeded_newton(make_system, cube_mesh, group, "petsc")

    result = newton.solve(solution)
    gathered = solution.current_owned.gather_global()

    serial_system, serial_newton, serial_solution = seeded_newton(
        make_system, cube_mesh, ProcessGroup.serial(), "scipy"
    )
    serial_result = serial_newton.solve(serial_solution)

    assert result.state is NewtonState.CONVERGED
    assert serial_result.state is NewtonState.CONVERGED
    assert result.final_residual <= 1e-10
    if group.is_root:
        u_parallel = system.to_node_order(gathered)
        u_serial = serial_system.to_node_order(serial_solution.current_owned.owned)
        np.testing.assert_allclose(u_parallel, u_serial, rtol=0.0, atol=1e-9)
    else:
        assert gathered is None


def test_linear_increment_matches_serial(cube_mesh, make_system):
    group = ProcessGroup.world()
    system, newton, solution = seeded_newton(make_system, cube_mesh, group, "petsc")
    system.assembler.assemble(solution.current, solution.previous, system.jacobian, system.residual)

    increment = newton.linear_solver.solve(system.jacobian, system.residual)
    gathered = group.gather_array(increment.increment)

    serial_system, serial_newton, serial_solution = seeded_newton(
        make_system, cube_mesh, ProcessGroup.serial(), "scipy"
    )
    serial_system.assembler.assemble(
        serial_solution.current, serial_solution.previous, serial_system.jacobian, serial_system.residual
    )
    serial_increment = serial_newton.linear_solver.solve(serial_system.jacobian, serial_system.residual)

    assert increment.converged
    assert increment.iterations > 0
    assert increment.rhs_norm == pytest.approx(serial_increment.rhs_norm, rel=1e-12)
    if group.is_root:
        scale = np.abs(serial_increment.increment).max()
        np.testing.assert_allclose(
            system.to_node_order(gathered),
            serial_system.to_node_order(serial_increment.increment),
            rtol=0.0,
            atol=1e-8 * scale,
        )
