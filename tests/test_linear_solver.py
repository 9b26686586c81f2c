"""
Tests for the Krylov solve of the Newton system.

Tests cover:
- SSOR and Jacobi preconditioner operators
- CG and GMRES with every preconditioner
- Zero right-hand side and non-convergence reporting
- Backend selection and the petsc4py availability check
"""

import logging
import warnings

import pytest
import numpy as np
from numpy.testing import assert_allclose
from scipy import sparse
from scipy.sparse.linalg import spsolve

from prion_fem.config import ConfigurationError, SolverConfig
from prion_fem.linear_solver import (
    LinearSolver,
    LinearSolverWarning,
    jacobi_preconditioner,
    ssor_preconditioner,
)


def newton_system(make_system, mesh, group):
    """Jacobian and residual of one Newton step from a smooth iterate."""
    system = make_system(mesh, group)
    x, y, z = mesh.nodes.T
    u = 0.3 + 0.2 * np.sin(np.pi * x) * np.cos(np.pi * y) + 0.1 * z
    current = system.field_from_nodes(u)
    previous = system.field_from_nodes(0.8 * u)
    system.assembler.assemble(current, previous, system.jacobian, system.residual)
    return system


@pytest.fixture
def spd_matrix():
    """Small SPD tridiagonal matrix with a non-uniform diagonal."""
    n = 12
    main = 4.0 + np.arange(n) * 0.25
    off = -np.ones(n - 1)
    return sparse.diags([off, main, off], [-1, 0, 1], format="csr")


class TestPreconditioners:
    """Tests for preconditioner operators."""

    @pytest.mark.parametrize("omega", [1.0, 1.4, 0.6])
    def test_ssor_matches_dense_splitting(self, spd_matrix, omega, rng):
        A = spd_matrix.toarray()
        D = np.diag(np.diag(A))
        L = np.tril(A, -1)
        U = np.triu(A, 1)
        M = omega / (2.0 - omega) * (D / omega + L) @ np.linalg.inv(D / omega) @ (D / omega + U)
        r = rng.random(A.shape[0])

        op = ssor_preconditioner(spd_matrix, omega)

        assert_allclose(op.matvec(r), np.linalg.solve(M, r), rtol=1e-12)

    def test_ssor_is_symmetric(self, spd_matrix):
        op = ssor_preconditioner(spd_matrix, 1.2)
        dense = np.column_stack([op.matvec(e) for e in np.eye(spd_matrix.shape[0])])

        assert_allclose(dense, dense.T, atol=1e-13)

    @pytest.mark.parametrize("omega", [0.0, 2.0, -1.0])
    def test_ssor_invalid_omega(self, spd_matrix, omega):
        with pytest.raises(ValueError):
            ssor_preconditioner(spd_matrix, omega)

    def test_zero_diagonal_rejected(self):
        A = sparse.csr_matrix(np.array([[0.0, 1.0], [1.0, 2.0]]))
        with pytest.raises(ValueError):
            ssor_preconditioner(A)
        with pytest.raises(ValueError):
            jacobi_preconditioner(A)

    def test_jacobi(self, spd_matrix, rng):
        r = rng.random(spd_matrix.shape[0])
        op = jacobi_preconditioner(spd_matrix)

        assert_allclose(op.matvec(r), r / spd_matrix.diagonal())


class TestLinearSolver:
    """Tests for solving J delta = R."""

    @pytest.mark.parametrize("method", ["cg", "gmres"])
    @pytest.mark.parametrize("preconditioner", ["ssor", "jacobi", "amg"])
    def test_reaches_tolerance(self, box_mesh, serial_group, make_system, method, preconditioner):
        system = newton_system(make_system, box_mesh, serial_group)
        config = SolverConfig(krylov_method=method, preconditioner=preconditioner, linear_rtol=1e-8)
        solver = LinearSolver(config, serial_group)

        result = solver.solve(system.jacobian, system.residual)

        A = system.jacobian.csr
        b = system.residual.owned
        assert result.converged
        assert result.iterations > 0
        assert np.linalg.norm(b - A @ result.increment) <= 1e-7 * np.linalg.norm(b)
        assert result.rhs_norm == pytest.approx(np.linalg.norm(b))

    def test_matches_direct_solve(self, box_mesh, serial_group, make_system):
        system = newton_system(make_system, box_mesh, serial_group)
        solver = LinearSolver(SolverConfig(linear_rtol=1e-12), serial_group)

        result = solver.solve(system.jacobian, system.residual)
        direct = spsolve(system.jacobian.csr.tocsc(), system.residual.owned)

        assert_allclose(result.increment, direct, rtol=1e-8, atol=1e-9 * np.abs(direct).max())

    def test_zero_rhs(self, box_mesh, serial_group, make_system):
        system = newton_system(make_system, box_mesh, serial_group)
        system.residual.zero()
        solver = LinearSolver(SolverConfig(), serial_group)

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            result = solver.solve(system.jacobian, system.residual)

        assert result.iterations == 0
        assert result.converged
        assert np.all(result.increment == 0.0)

    def test_iteration_cap_warns(self, box_mesh, serial_group, make_system):
        system = newton_system(make_system, box_mesh, serial_group)
        config = SolverConfig(linear_rtol=1e-14, linear_max_iterations=1)
        solver = LinearSolver(config, serial_group)

        with pytest.warns(LinearSolverWarning):
            result = solver.solve(system.jacobian, system.residual)

        assert not result.converged
        assert result.iterations <= 1
        assert result.residual_norm > 0

    def test_iteration_cap_silent_off_root(self, box_mesh, serial_group, non_root_group, make_system):
        system = newton_system(make_system, box_mesh, serial_group)
        config = SolverConfig(linear_rtol=1e-14, linear_max_iterations=1)
        solver = LinearSolver(config, non_root_group)

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            result = solver.solve(system.jacobian, system.residual)

        assert not result.converged

    def test_uncompressed_matrix_rejected(self, box_mesh, serial_group, make_system):
        system = make_system(box_mesh, serial_group)
        solver = LinearSolver(SolverConfig(), serial_group)

        with pytest.raises(RuntimeError):
            solver.solve(system.jacobian, system.residual)

    def test_logs_iterations(self, box_mesh, serial_group, make_system, caplog):
        system = newton_system(make_system, box_mesh, serial_group)
        logger = logging.getLogger("prion_fem_tests.linear")
        solver = LinearSolver(SolverConfig(), serial_group, logger=logger)

        with caplog.at_level(logging.INFO, logger="prion_fem_tests.linear"):
            result = solver.solve(system.jacobian, system.residual)

        assert f"  {result.iterations} CG iterations" in caplog.messages


class TestBackendSelection:
    """Tests for choosing scipy or PETSc."""

    @pytest.mark.parametrize("backend,n_procs,expected", [
        ("auto", 1, "scipy"),
        ("auto", 4, "petsc"),
        ("scipy", 1, "scipy"),
        ("petsc", 1, "petsc"),
        ("petsc", 3, "petsc"),
    ])
    def test_select(self, backend, n_procs, expected, monkeypatch):
        monkeypatch.setattr("prion_fem.linear_solver.petsc_available", lambda: True)
        assert LinearSolver._select_backend(backend, n_procs) == expected

    @pytest.mark.parametrize("backend,n_procs", [("auto", 2), ("petsc", 1)])
    def test_petsc_requires_petsc4py(self, backend, n_procs, monkeypatch):
        monkeypatch.setattr("prion_fem.linear_solver.petsc_available", lambda: False)
        with pytest.raises(ConfigurationError, match=r"prion-fem\[petsc\]"):
            LinearSolver._select_backend(backend, n_procs)

    def test_serial_auto_does_not_need_petsc4py(self, monkeypatch):
        monkeypatch.setattr("prion_fem.linear_solver.petsc_available", lambda: False)
        assert LinearSolver._select_backend("auto", 1) == "scipy"

    def test_missing_petsc4py_fails_at_construction(self, run_ranks, monkeypatch):
        monkeypatch.setattr("prion_fem.linear_solver.petsc_available", lambda: False)

        def work(group):
            with pytest.raises(ConfigurationError, match="petsc4py"):
                LinearSolver(SolverConfig(), group)
            return group.rank

        assert run_ranks(2, work) == [0, 1]

    def test_scipy_is_single_process(self):
        with pytest.raises(ConfigurationError):
            LinearSolver._select_backend("scipy", 2)

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            LinearSolver._select_backend("trilinos", 1)


class TestPetscBackend:
    """Tests for the petsc4py backend (skipped without petsc4py)."""

    @pytest.mark.parametrize("method", ["cg", "gmres"])
    def test_matches_scipy(self, box_mesh, serial_group, make_system, method):
        pytest.importorskip("petsc4py")
        system = newton_system(make_system, box_mesh, serial_group)

        petsc = LinearSolver(
            SolverConfig(backend="petsc", krylov_method=method, linear_rtol=1e-10), serial_group
        ).solve(system.jacobian, system.residual)
        direct = spsolve(system.jacobian.csr.tocsc(), system.residual.owned)

        assert petsc.converged
        assert_allclose(petsc.increment, direct, rtol=1e-6, atol=1e-8 * np.abs(direct).max())
