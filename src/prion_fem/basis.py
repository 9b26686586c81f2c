"""
Reference element and quadrature for linear tetrahedra.

Shape functions on the reference tetrahedron (0,0,0), (1,0,0), (0,1,0),
(0,0,1):

    N0 = 1 - xi - eta - zeta,  N1 = xi,  N2 = eta,  N3 = zeta

The map to a physical element with vertices x0..x3 is x = x0 + E^T xi, where
the rows of E are the edge vectors x_k - x0. Physical gradients are
grad N = E^-1 grad_ref N and the volume element is |det E|.
"""

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from .mesh import MeshError


@dataclass(frozen=True)
class QuadratureRule:
    """
    Quadrature rule on the reference tetrahedron.

    Attributes:
        points: Reference coordinates, shape (n_q, 3).
        weights: Weights summing to the reference volume 1/6, shape (n_q,).
    """

    points: NDArray[np.float64]
    weights: NDArray[np.float64]

    @property
    def size(self) -> int:
        return len(self.weights)


def gauss_simplex(n_points_1d: int) -> QuadratureRule:
    """
    Gauss rule on the simplex.

    Args:
        n_points_1d: Points per direction; 1 gives the centroid rule (exact for
            degree 1), 2 the symmetric 4-point rule (exact for degree 2).

    Returns:
        QuadratureRule.
    """
    if n_points_1d == 1:
        return QuadratureRule(
            points=np.array([[0.25, 0.25, 0.25]]),
            weights=np.array([1.0 / 6.0]),
        )
    if n_points_1d == 2:
        a = 0.1381966011250105
        b = 0.5854101966249685
        return QuadratureRule(
            points=np.array([
                [a, a, a],
                [b, a, a],
                [a, b, a],
                [a, a, b],
            ]),
            weights=np.full(4, 1.0 / 24.0),
        )
    raise ValueError(f"Simplex Gauss rule with {n_points_1d} points per direction not available")


class P1Tetrahedron:
    """Linear Lagrange element on tetrahedra (one DOF per vertex)."""

    degree = 1
    dofs_per_cell = 4

    # Constant reference gradients, row i = grad N_i
    ref_gradients = np.array([
        [-1.0, -1.0, -1.0],
        [1.0, 0.0, 0.0],
        [0.0, 1.0, 0.0],
        [0.0, 0.0, 1.0],
    ])

    @staticmethod
    def values(points: NDArray[np.float64]) -> NDArray[np.float64]:
        """
        Shape function values at reference points.

        Args:
            points: Reference coordinates, shape (n, 3).

        Returns:
            Array of shape (n, 4).
        """
        points = np.atleast_2d(points)
        return np.column_stack([1.0 - points.sum(axis=1), points])

    def default_quadrature(self) -> QuadratureRule:
        """Gauss rule with degree + 1 points per direction."""
        return gauss_simplex(self.degree + 1)


@dataclass
class ElementValues:
    """
    Per-element data at quadrature points.

    Attributes:
        phi: Shape values, shape (n_q, 4), identical on every element.
        grads: Physical shape gradients, shape (n_e, 4, 3).
        jxw: Jacobian determinant times weight, shape (n_e, n_q).
        q_points: Physical quadrature coordinates, shape (n_e, n_q, 3).
    """

    phi: NDArray[np.float64]
    grads: NDArray[np.float64]
    jxw: NDArray[np.float64]
    q_points: NDArray[np.float64]

    @property
    def num_elements(self) -> int:
        return self.grads.shape[0]


def compute_element_values(
    vertex_coords: NDArray[np.float64],
    element: P1Tetrahedron,
    quadrature: QuadratureRule,
    rtol: float = 1e-12,
) -> ElementValues:
    """
    Evaluate shape values, physical gradients and JxW on a set of elements.

    Args:
        vertex_coords: Vertex coordinates, shape (n_e, 4, 3).
        element: Finite element.
        quadrature: Reference quadrature rule.
        rtol: Elements with |det E| below rtol times the mean are rejected.

    Returns:
        ElementValues.

    Raises:
        MeshError: If an element is (near-)degenerate.
    """
    vertex_coords = np.asarray(vertex_coords, dtype=np.float64)
    phi = element.values(quadrature.points)

    if len(vertex_coords) == 0:
        return ElementValues(
            phi=phi,
            grads=np.zeros((0, 4, 3)),
            jxw=np.zeros((0, quadrature.size)),
            q_points=np.zeros((0, quadrature.size, 3)),
        )

    edges = vertex_coords[:, 1:, :] - vertex_coords[:, :1, :]  # E, (n_e, 3, 3)
    det = np.linalg.det(edges)
    abs_det = np.abs(det)
    threshold = rtol * max(float(abs_det.mean()), np.finfo(float).tiny)
    bad = np.flatnonzero(abs_det <= threshold)
    if len(bad):
        raise MeshError(
            f"{len(bad)} degenerate element(s) in element values, first local index {int(bad[0])}"
        )

    # grad N (row form) = grad_ref N @ E^-T
    inv_edges = np.linalg.inv(edges)
    grads = np.einsum("ij,ekj->eik", element.ref_gradients, inv_edges)

    jxw = abs_det[:, None] * quadrature.weights[None, :]
    q_points = np.einsum("qa,eak->eqk", phi, vertex_coords)

    return ElementValues(phi=phi, grads=grads, jxw=jxw, q_points=q_points)
