"""
Tests for the Newton-Raphson driver.
"""

import logging
import warnings

import pytest
import numpy as np

from prion_fem.coefficients import gaussian_bump
from prion_fem.config import SolverConfig
from prion_fem.linear_solver import LinearSolver
from prion_fem.mesh import MeshGenerator
from prion_fem.newton import (
    NewtonDivergenceError,
    NewtonDivergenceWarning,
    NewtonResult,
    NewtonSolver,
    NewtonState,
    SolutionVectors,
)
from prion_fem.timer import SectionTimer


@pytest.fixture
def cube_mesh():
    return MeshGenerator().box(4)


def build_newton(make_system, mesh, group, config=None, logger=None, timer=None):
    config = config if config is not None else SolverConfig(linear_rtol=1e-10)
    system = make_system(mesh, group)
    linear = LinearSolver(config, group, logger=logger)
    newton = NewtonSolver(system.assembler, linear, system.exchange, config, logger=logger, timer=timer)
    solution = SolutionVectors(system.exchange)
    return system, newton, solution


def set_initial(system, solution, node_values):
    p = system.partition
    solution.set_owned(np.asarray(node_values)[p.dof_to_node[p.owned_dofs]])
    solution.snapshot_previous()


def seed(mesh):
    bump = gaussian_bump(center=(0.5, 0.5, 0.5), sharpness=3.0, half_width=0.5, amplitude=0.5)
    return bump.evaluate(mesh.nodes)


class TestSolutionVectors:
    """Tests for the three solution copies."""

    def test_set_owned_refreshes_current(self, box_mesh, serial_group, make_system):
        system = make_system(box_mesh, serial_group)
        solution = SolutionVectors(system.exchange)

        solution.set_owned(np.full(system.partition.n_owned, 0.25))

        assert np.all(solution.current.data == 0.25)
        assert np.all(solution.previous.data == 0.0)

    def test_snapshot_is_a_copy(self, box_mesh, serial_group, make_system):
        system = make_system(box_mesh, serial_group)
        solution = SolutionVectors(system.exchange)
        solution.set_owned(np.ones(system.partition.n_owned))

        solution.snapshot_previous()
        solution.set_owned(np.zeros(system.partition.n_owned))

        assert np.all(solution.previous.data == 1.0)

    def test_ghosts_follow_owners(self, box_mesh, make_system, run_ranks):
        def work(group):
            system = make_system(box_mesh, group)
            solution = SolutionVectors(system.exchange)
            p = system.partition
            solution.set_owned(p.owned_dofs.astype(float))
            return solution.current.data, p.relevant_dofs

        for data, relevant in run_ranks(3, work):
            assert np.array_equal(data, relevant.astype(float))


class TestNewtonSolver:
    """Tests for the Newton iteration."""

    def test_zero_state_converges_immediately(self, cube_mesh, serial_group, make_system):
        system, newton, solution = build_newton(make_system, cube_mesh, serial_group)
        set_initial(system, solution, np.zeros(cube_mesh.num_nodes))

        result = newton.solve(solution)

        assert result.state is NewtonState.CONVERGED
        assert result.iterations == 0
        assert result.residual_norms == [0.0]
        assert result.linear_iterations == []

    def test_converges_from_seed(self, cube_mesh, serial_group, make_system):
        system, newton, solution = build_newton(make_system, cube_mesh, serial_group)
        set_initial(system, solution, seed(cube_mesh))

        result = newton.solve(solution)

        assert result.converged
        assert 1 <= result.iterations <= 10
        assert result.final_residual <= 1e-10
        assert len(result.residual_norms) == result.iterations + 1
        assert len(result.linear_iterations) == result.iterations
        assert result.unconverged_linear_solves == 0
        norms = result.residual_norms
        assert all(later <= earlier for earlier, later in zip(norms, norms[1:]))

    def test_converged_iterate_has_small_residual(self, cube_mesh, serial_group, make_system):
        system, newton, solution = build_newton(make_system, cube_mesh, serial_group)
        set_initial(system, solution, seed(cube_mesh))
        newton.solve(solution)

        system.assembler.assemble(solution.current, solution.previous, system.jacobian, system.residual)

        assert system.residual.norm() <= 1e-10

    def test_diffusion_and_growth(self, cube_mesh, serial_group, make_system):
        """One step smooths the peak and grows the total mass."""
        system, newton, solution = build_newton(make_system, cube_mesh, serial_group)
        u_0 = seed(cube_mesh)
        set_initial(system, solution, u_0)

        newton.solve(solution)
        u_1 = system.to_node_order(solution.current_owned.owned)

        assert u_1.max() < u_0.max()
        volumes = cube_mesh.compute_element_volumes()
        mass = lambda u: np.sum(volumes * u[cube_mesh.elements].mean(axis=1))
        assert mass(u_1) > mass(u_0)

    def test_iteration_cap_warns(self, cube_mesh, serial_group, make_system):
        config = SolverConfig(newton_max_iterations=1, linear_rtol=1e-10)
        system, newton, solution = build_newton(make_system, cube_mesh, serial_group, config=config)
        set_initial(system, solution, seed(cube_mesh))

        with pytest.warns(NewtonDivergenceWarning):
            result = newton.solve(solution)

        assert result.state is NewtonState.DIVERGED
        assert result.iterations == 1
        assert len(result.residual_norms) == 2

    def test_diverged_residual_belongs_to_kept_iterate(self, cube_mesh, serial_group, make_system):
        config = SolverConfig(newton_max_iterations=1, linear_rtol=1e-10)
        system, newton, solution = build_newton(make_system, cube_mesh, serial_group, config=config)
        set_initial(system, solution, seed(cube_mesh))

        with pytest.warns(NewtonDivergenceWarning) as record:
            result = newton.solve(solution)

        system.assembler.assemble(solution.current, solution.previous, system.jacobian, system.residual)
        assert result.final_residual == pytest.approx(system.residual.norm(), rel=1e-12)
        assert result.final_residual < result.residual_norms[0]
        assert f"final ||r|| = {result.final_residual:.6e}" in str(record[0].message)

    def test_divergence_warning_only_on_root(self, cube_mesh, serial_group, non_root_group, make_system):
        config = SolverConfig(newton_max_iterations=1, linear_rtol=1e-10)
        system, newton, solution = build_newton(make_system, cube_mesh, serial_group, config=config)
        newton.group = non_root_group
        set_initial(system, solution, seed(cube_mesh))

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            result = newton.solve(solution)

        assert result.state is NewtonState.DIVERGED

    def test_abort_policy_raises(self, cube_mesh, serial_group, make_system):
        config = SolverConfig(newton_max_iterations=1, on_divergence="abort", linear_rtol=1e-10)
        system, newton, solution = build_newton(make_system, cube_mesh, serial_group, config=config)
        set_initial(system, solution, seed(cube_mesh))

        with pytest.raises(NewtonDivergenceError) as excinfo:
            newton.solve(solution)

        assert excinfo.value.result.state is NewtonState.DIVERGED
        assert "1 iterations" in str(excinfo.value)
        assert len(excinfo.value.result.residual_norms) == 2

    def test_log_lines(self, cube_mesh, serial_group, make_system, caplog):
        logger = logging.getLogger("prion_fem_tests.newton")
        system, newton, solution = build_newton(make_system, cube_mesh, serial_group, logger=logger)
        set_initial(system, solution, seed(cube_mesh))

        with caplog.at_level(logging.INFO, logger="prion_fem_tests.newton"):
            result = newton.solve(solution)

        newton_lines = [m for m in caplog.messages if m.startswith("  Newton iteration")]
        assert len(newton_lines) == result.iterations + 1
        assert newton_lines[0].startswith("  Newton iteration 0/1000 - ||r|| = ")
        assert newton_lines[-1].endswith(" < tolerance")
        assert not any(m.endswith(" < tolerance") for m in newton_lines[:-1])
        assert sum(m.endswith("CG iterations") for m in caplog.messages) == result.iterations

    def test_timer_sections(self, cube_mesh, serial_group, make_system):
        timer = SectionTimer()
        system, newton, solution = build_newton(make_system, cube_mesh, serial_group, timer=timer)
        set_initial(system, solution, seed(cube_mesh))

        result = newton.solve(solution)

        assert timer.sections["Assemble system"].calls == result.iterations + 1
        assert timer.sections["Solve system"].calls == result.iterations

    def test_no_warning_on_convergence(self, cube_mesh, serial_group, make_system):
        system, newton, solution = build_newton(make_system, cube_mesh, serial_group)
        set_initial(system, solution, seed(cube_mesh))

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            newton.solve(solution)


class TestNewtonResult:
    """Tests for the result record."""

    def test_defaults(self):
        result = NewtonResult()

        assert result.state is NewtonState.ITERATING
        assert not result.converged
        assert np.isnan(result.final_residual)
