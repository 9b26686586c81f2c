"""
Weak-form assembly of the Newton system for the Fisher-KPP prion model.

Backward Euler in time, per unit volume:

    (u - u_prev)/dt v + D grad u . grad v - alpha u (1 - u) v = 0

Linearizing around the Newton iterate u_k gives, per element and summed over
quadrature points with weight w_q,

    J_ij = sum_q [phi_i phi_j / dt + grad phi_i . D grad phi_j
                  - phi_i alpha (1 - 2 u_k) phi_j] w_q
    R_i  = sum_q [-phi_i (u_k - u_prev)/dt - grad phi_i . D grad u_k
                  + phi_i alpha u_k (1 - u_k)] w_q

so that the increment solves J delta = R. Each rank assembles only its own
elements; contributions to DOFs owned elsewhere reach their owners through
the compress step.
"""

from typing import Optional, Tuple

import numpy as np
from numpy.typing import NDArray
from numba import njit

from .basis import P1Tetrahedron, QuadratureRule, compute_element_values
from .coefficients import Coefficient
from .config import ConfigurationError
from .distributed import DistributedMatrix, DistributedVector
from .mesh import TetMesh
from .partition import DomainPartition

# =============================================================================
# JIT-compiled element kernel
# =============================================================================

@njit(cache=True)
def _assemble_local_systems_jit(
    phi: np.ndarray,
    grads: np.ndarray,
    jxw: np.ndarray,
    alpha: np.ndarray,
    u_loc: np.ndarray,
    u_old_loc: np.ndarray,
    D: np.ndarray,
    dt: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Element Jacobians and residuals.

    Args:
        phi: Shape values at quadrature points, (n_q, 4).
        grads: Physical shape gradients, (n_e, 4, 3).
        jxw: Quadrature weights times |det J|, (n_e, n_q).
        alpha: Reaction rate at quadrature points, (n_e, n_q).
        u_loc: Current iterate at element nodes, (n_e, 4).
        u_old_loc: Previous time step at element nodes, (n_e, 4).
        D: Diffusivity tensor, (3, 3).
        dt: Time step.

    Returns:
        cell_matrix (n_e, 4, 4) and cell_residual (n_e, 4).
    """
    n_e = grads.shape[0]
    n_q = phi.shape[0]
    n_loc = phi.shape[1]

    cell_matrix = np.zeros((n_e, n_loc, n_loc))
    cell_residual = np.zeros((n_e, n_loc))
    d_grad = np.empty((n_loc, 3))
    d_grad_u = np.empty(3)

    for e in range(n_e):
        g = grads[e]

        # D grad phi_j; constant on a P1 element
        for j in range(n_loc):
            for a in range(3):
                s = 0.0
                for b in range(3):
                    s += D[a, b] * g[j, b]
                d_grad[j, a] = s

        # D grad u_k
        for a in range(3):
            s = 0.0
            for j in range(n_loc):
                s += u_loc[e, j] * d_grad[j, a]
            d_grad_u[a] = s

        for q in range(n_q):
            w = jxw[e, q]
            u_q = 0.0
            u_old_q = 0.0
            for j in range(n_loc):
                u_q += phi[q, j] * u_loc[e, j]
                u_old_q += phi[q, j] * u_old_loc[e, j]
            a_q = alpha[e, q]
            reaction_lin = a_q * (1.0 - 2.0 * u_q)
            reaction = a_q * u_q * (1.0 - u_q)
            time_term = (u_q - u_old_q) / dt

            for i in range(n_loc):
                p_i = phi[q, i]
                diffusion = g[i, 0] * d_grad_u[0] + g[i, 1] * d_grad_u[1] + g[i, 2] * d_grad_u[2]
                cell_residual[e, i] += (-p_i * time_term - diffusion + p_i * reaction) * w

                for j in range(n_loc):
                    p_j = phi[q, j]
                    stiffness = (
                        g[i, 0] * d_grad[j, 0]
                        + g[i, 1] * d_grad[j, 1]
                        + g[i, 2] * d_grad[j, 2]
                    )
                    cell_matrix[e, i, j] += (
                        p_i * p_j / dt + stiffness - p_i * reaction_lin * p_j
                    ) * w

    return cell_matrix, cell_residual


class WeakFormAssembler:
    """
    Assembles the distributed Newton Jacobian and residual.

    Geometry (shape gradients, JxW, quadrature points) of the local elements
    is computed once at construction; the reaction rate is evaluated at the
    quadrature points on every assembly.
    """

    def __init__(
        self,
        mesh: TetMesh,
        partition: DomainPartition,
        reaction_rate: Coefficient,
        diffusivity: NDArray[np.float64],
        dt: float,
        element: Optional[P1Tetrahedron] = None,
        quadrature: Optional[QuadratureRule] = None,
        constrained_dofs: Optional[NDArray[np.int64]] = None,
    ):
        """
        Initialize the assembler.

        Args:
            mesh: Serial mesh.
            partition: Partition of the calling rank.
            reaction_rate: Reaction-rate coefficient alpha(x).
            diffusivity: Diffusivity tensor D, shape (3, 3).
            dt: Time step; must be positive.
            element: Finite element (P1 by default).
            quadrature: Quadrature rule (element default when None).
            constrained_dofs: Global DOFs with a homogeneous Dirichlet
                condition on the increment; None for natural boundaries.
        """
        if not dt > 0:
            raise ConfigurationError(f"Time step must be positive, got dt={dt}")
        diffusivity = np.ascontiguousarray(diffusivity, dtype=np.float64)
        if diffusivity.shape != (3, 3):
            raise ConfigurationError(f"Diffusivity must be 3x3, got {diffusivity.shape}")

        self.mesh = mesh
        self.partition = partition
        self.reaction_rate = reaction_rate
        self.diffusivity = diffusivity
        self.dt = float(dt)
        self.element = element if element is not None else P1Tetrahedron()
        self.quadrature = quadrature if quadrature is not None else self.element.default_quadrature()
        self.constrained_dofs = (
            None if constrained_dofs is None else np.asarray(constrained_dofs, dtype=np.int64)
        )

        local_cells = mesh.elements[partition.local_elements]
        self.values = compute_element_values(
            mesh.nodes[local_cells], self.element, self.quadrature
        )
        self.local_dofs = partition.local_connectivity
        self.global_dofs = partition.relevant_dofs[self.local_dofs]

    def local_systems(
        self,
        current: DistributedVector,
        previous: DistributedVector,
    ) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
        """
        Element matrices and residuals of the local elements.

        Both vectors must have up-to-date ghost entries.
        """
        values = self.values
        alpha = np.ascontiguousarray(self.reaction_rate.evaluate(values.q_points))
        return _assemble_local_systems_jit(
            np.ascontiguousarray(values.phi),
            values.grads,
            values.jxw,
            alpha.reshape(values.jxw.shape),
            np.ascontiguousarray(current.data[self.local_dofs]),
            np.ascontiguousarray(previous.data[self.local_dofs]),
            self.diffusivity,
            self.dt,
        )

    def assemble(
        self,
        current: DistributedVector,
        previous: DistributedVector,
        jacobian: DistributedMatrix,
        residual: DistributedVector,
    ) -> None:
        """
        Rebuild the Jacobian and residual from scratch. Collective.

        Args:
            current: Ghost-complete Newton iterate.
            previous: Ghost-complete solution at the previous time step.
            jacobian: Output matrix (zeroed here).
            residual: Output vector (zeroed here).
        """
        jacobian.zero()
        residual.zero()

        cell_matrix, cell_residual = self.local_systems(current, previous)

        jacobian.add_element_blocks(self.global_dofs, cell_matrix)
        residual.add_local(self.local_dofs, cell_residual)

        residual.compress_add()
        jacobian.compress()

        if self.constrained_dofs is not None and len(self.constrained_dofs):
            self.apply_zero_dirichlet(jacobian, residual)

    def apply_zero_dirichlet(
        self,
        jacobian: DistributedMatrix,
        residual: DistributedVector,
    ) -> None:
        """Constrain the increment to zero on the constrained DOFs."""
        jacobian.zero_rows_columns(self.constrained_dofs)
        owned = self.partition.is_owned(self.constrained_dofs)
        start, _ = self.partition.owned_range
        residual.owned[self.constrained_dofs[owned] - start] = 0.0
