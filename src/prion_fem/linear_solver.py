"""
Krylov solve of the Newton system J delta = R.

Two backends:

- ``"scipy"``: scipy.sparse.linalg CG/GMRES with an SSOR, Jacobi or pyamg
  AMG preconditioner. Single process only.
- ``"petsc"``: petsc4py KSP on an MPI AIJ matrix, any number of processes.
  SOR in PETSc is processor-local symmetric, i.e. block-Jacobi SSOR.

Both stop when ||R - J delta|| <= rtol ||R|| (zero initial guess, unpreconditioned
residual) or after the iteration cap. Not converging is reported with a
LinearSolverWarning on rank 0 and the last iterate is still returned.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional
import importlib.util
import logging
import math
import warnings

import numpy as np
from numpy.typing import NDArray
from numba import njit
from scipy import sparse
from scipy.sparse.linalg import LinearOperator, cg, gmres
import pyamg

from .config import ConfigurationError, SolverConfig
from .distributed import DistributedMatrix, DistributedVector

if TYPE_CHECKING:
    from .parallel import ProcessGroup


class LinearSolverWarning(RuntimeWarning):
    """The Krylov solver hit its iteration cap before reaching the tolerance."""


@dataclass
class LinearSolveResult:
    """
    Outcome of one linear solve.

    Attributes:
        increment: Owned entries of delta.
        iterations: Krylov iterations performed.
        converged: Whether the tolerance was reached.
        residual_norm: Final ||R - J delta||.
        rhs_norm: ||R||.
    """

    increment: NDArray[np.float64]
    iterations: int
    converged: bool
    residual_norm: float
    rhs_norm: float


# =============================================================================
# SSOR preconditioner
# =============================================================================

@njit(cache=True)
def _ssor_apply_jit(indptr, indices, data, diag, omega, r):
    """
    Apply M^-1 = (2 - w)/w (D/w + U)^-1 (D/w) (D/w + L)^-1 to r.

    L and U are the strict triangles of the CSR matrix (sorted indices).
    """
    n = r.shape[0]
    y = np.empty(n)
    for i in range(n):
        s = r[i]
        for k in range(indptr[i], indptr[i + 1]):
            j = indices[k]
            if j < i:
                s -= data[k] * y[j]
        y[i] = s * omega / diag[i]

    for i in range(n):
        y[i] *= diag[i] / omega

    z = np.empty(n)
    for i in range(n - 1, -1, -1):
        s = y[i]
        for k in range(indptr[i], indptr[i + 1]):
            j = indices[k]
            if j > i:
                s -= data[k] * z[j]
        z[i] = s * omega / diag[i]

    scale = (2.0 - omega) / omega
    for i in range(n):
        z[i] *= scale
    return z


def ssor_preconditioner(A: sparse.spmatrix, omega: float = 1.0) -> LinearOperator:
    """
    Symmetric successive over-relaxation preconditioner.

    Args:
        A: Square sparse matrix with non-zero diagonal.
        omega: Relaxation factor in (0, 2).

    Returns:
        LinearOperator applying the inverse of the SSOR splitting.
    """
    if not 0.0 < omega < 2.0:
        raise ValueError(f"SSOR relaxation must lie in (0, 2), got {omega}")
    A = sparse.csr_matrix(A, dtype=np.float64)
    A.sum_duplicates()
    A.sort_indices()
    diag = A.diagonal()
    if np.any(diag == 0.0):
        raise ValueError("SSOR needs a matrix without zero diagonal entries")

    indptr = A.indptr.astype(np.int64)
    indices = A.indices.astype(np.int64)
    data = A.data
    omega = float(omega)

    def apply(r):
        return _ssor_apply_jit(indptr, indices, data, diag, omega, np.ascontiguousarray(r, dtype=np.float64).ravel())

    return LinearOperator(A.shape, matvec=apply, dtype=np.float64)


def petsc_available() -> bool:
    """True if petsc4py can be imported."""
    return importlib.util.find_spec("petsc4py") is not None


def jacobi_preconditioner(A: sparse.spmatrix) -> LinearOperator:
    """Diagonal scaling preconditioner."""
    diag = sparse.csr_matrix(A).diagonal()
    if np.any(diag == 0.0):
        raise ValueError("Jacobi needs a matrix without zero diagonal entries")
    inv_diag = 1.0 / diag
    return LinearOperator(A.shape, matvec=lambda r: inv_diag * np.ravel(r), dtype=np.float64)


class LinearSolver:
    """
    Preconditioned Krylov solver for the Newton increment.

    Example:
        solver = LinearSolver(SolverConfig.default(), group)
        result = solver.solve(jacobian, residual)
    """

    def __init__(
        self,
        config: SolverConfig,
        group: "ProcessGroup",
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.group = group
        self.logger = logger
        self.backend = self._select_backend(config.backend, group.size)

    @staticmethod
    def _select_backend(backend: str, n_procs: int) -> str:
        if backend == "auto":
            backend = "scipy" if n_procs == 1 else "petsc"
        if backend == "scipy" and n_procs > 1:
            raise ConfigurationError(
                "The scipy backend runs on a single process; use backend='petsc' with MPI"
            )
        if backend not in ("scipy", "petsc"):
            raise ConfigurationError(f"Unknown linear solver backend {backend!r}")
        if backend == "petsc" and not petsc_available():
            raise ConfigurationError(
                f"The petsc backend (needed for {n_procs} process(es)) requires petsc4py; "
                "install it with `pip install prion-fem[petsc]`"
            )
        return backend

    def solve(self, matrix: DistributedMatrix, rhs: DistributedVector) -> LinearSolveResult:
        """
        Solve ``matrix @ delta = rhs``. Collective.

        Args:
            matrix: Compressed Jacobian.
            rhs: Compressed residual.

        Returns:
            LinearSolveResult with the owned part of delta.
        """
        if not matrix.is_compressed:
            raise RuntimeError("Matrix must be compressed before solving")

        rhs_norm = rhs.norm()
        n_owned = matrix.partition.n_owned
        if rhs_norm == 0.0:
            return LinearSolveResult(
                increment=np.zeros(n_owned),
                iterations=0,
                converged=True,
                residual_norm=0.0,
                rhs_norm=0.0,
            )

        if self.backend == "scipy":
            result = self._solve_scipy(matrix, rhs, rhs_norm)
        else:
            result = self._solve_petsc(matrix, rhs, rhs_norm)

        if self.logger is not None:
            self.logger.info(f"  {result.iterations} {self.config.krylov_method.upper()} iterations")

        if not result.converged and self.group.is_root:
            warnings.warn(
                f"Linear solver did not converge in {result.iterations} iterations "
                f"(||R - J delta|| = {result.residual_norm:.3e}, ||R|| = {rhs_norm:.3e})",
                LinearSolverWarning,
                stacklevel=2,
            )
        return result

    # ---------------------------
    # scipy backend
    # ---------------------------

    def _preconditioner(self, A: sparse.csr_matrix):
        kind = self.config.preconditioner
        if kind == "ssor":
            return ssor_preconditioner(A, self.config.ssor_omega)
        if kind == "jacobi":
            return jacobi_preconditioner(A)
        if kind == "amg":
            ml = pyamg.smoothed_aggregation_solver(A, max_coarse=500)
            return ml.aspreconditioner(cycle="V")
        raise ConfigurationError(f"Unknown preconditioner {kind!r}")

    def _solve_scipy(
        self,
        matrix: DistributedMatrix,
        rhs: DistributedVector,
        rhs_norm: float,
    ) -> LinearSolveResult:
        config = self.config
        A = matrix.diagonal_block()
        b = rhs.owned.copy()
        M = self._preconditioner(A)

        iterations = 0

        def count(_):
            nonlocal iterations
            iterations += 1

        if config.krylov_method == "cg":
            x, info = cg(
                A,
                b,
                rtol=config.linear_rtol,
                atol=0.0,
                maxiter=config.linear_max_iterations,
                M=M,
                callback=count,
            )
        elif config.krylov_method == "gmres":
            restart = min(30, config.linear_max_iterations)
            x, info = gmres(
                A,
                b,
                rtol=config.linear_rtol,
                atol=0.0,
                restart=restart,
                maxiter=math.ceil(config.linear_max_iterations / restart),
                M=M,
                callback=count,
                callback_type="pr_norm",
            )
        else:
            raise ConfigurationError(f"Unknown Krylov method {config.krylov_method!r}")

        residual_norm = float(np.linalg.norm(b - A @ x))
        converged = info == 0 or residual_norm <= config.linear_rtol * rhs_norm
        return LinearSolveResult(
            increment=x,
            iterations=iterations,
            converged=bool(converged),
            residual_norm=residual_norm,
            rhs_norm=rhs_norm,
        )

    # ---------------------------
    # petsc backend
    # ---------------------------

    def _solve_petsc(
        self,
        matrix: DistributedMatrix,
        rhs: DistributedVector,
        rhs_norm: float,
    ) -> LinearSolveResult:
        from petsc4py import PETSc

        config = self.config
        partition = matrix.partition
        comm = self.group.mpi_comm
        n_owned = partition.n_owned
        n_global = partition.n_global_dofs

        csr = matrix.csr
        A = PETSc.Mat().createAIJ(
            size=((n_owned, n_global), (n_owned, n_global)),
            csr=(
                csr.indptr.astype(PETSc.IntType),
                csr.indices.astype(PETSc.IntType),
                csr.data,
            ),
            comm=comm,
        )
        A.assemble()

        b = PETSc.Vec().createWithArray(rhs.owned.copy(), size=(n_owned, n_global), comm=comm)
        x = A.createVecRight()
        x.set(0.0)

        prefix = "prion_"
        opts = PETSc.Options()
        opts[f"{prefix}pc_sor_omega"] = config.ssor_omega

        ksp = PETSc.KSP().create(comm=comm)
        ksp.setOptionsPrefix(prefix)
        ksp.setOperators(A)
        ksp.setType(config.krylov_method)
        pc = ksp.getPC()
        pc.setType({"ssor": "sor", "jacobi": "jacobi", "amg": "gamg"}[config.preconditioner])
        if config.krylov_method == "gmres":
            ksp.setPCSide(PETSc.PC.Side.RIGHT)
        ksp.setNormType(PETSc.KSP.NormType.UNPRECONDITIONED)
        ksp.setTolerances(
            rtol=config.linear_rtol,
            atol=0.0,
            max_it=config.linear_max_iterations,
        )
        ksp.setInitialGuessNonzero(False)
        ksp.setFromOptions()

        ksp.solve(b, x)

        result = LinearSolveResult(
            increment=x.getArray().copy(),
            iterations=int(ksp.getIterationNumber()),
            converged=bool(ksp.getConvergedReason() > 0),
            residual_norm=float(ksp.getResidualNorm()),
            rhs_norm=rhs_norm,
        )

        for obj in (ksp, x, b, A):
            obj.destroy()
        del opts[f"{prefix}pc_sor_omega"]
        return result
