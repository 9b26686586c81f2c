"""
Spatial coefficients of the prion model.

A Coefficient wraps a vectorized function of physical points; it is evaluated
on demand at quadrature points or DOF locations and stores no field.
"""

from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np
from numpy.typing import NDArray

from .config import ConfigurationError


@dataclass(frozen=True)
class Coefficient:
    """
    Scalar function of position.

    Attributes:
        func: Maps points of shape (n, 3) to values of shape (n,).
        name: Label used in log messages.
    """

    func: Callable[[NDArray[np.float64]], NDArray[np.float64]]
    name: str = "coefficient"

    def evaluate(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        """
        Evaluate at one point (shape (3,)) or many (shape (..., 3)).

        Returns:
            Scalar for one point, otherwise an array of the leading shape.
        """
        points = np.asarray(points, dtype=np.float64)
        flat = points.reshape(-1, 3)
        values = np.asarray(self.func(flat), dtype=np.float64).reshape(len(flat))
        if points.ndim == 1:
            return float(values[0])
        return values.reshape(points.shape[:-1])

    __call__ = evaluate


def constant(value: float, name: str = "constant") -> Coefficient:
    """Coefficient with the same value everywhere."""
    value = float(value)
    return Coefficient(lambda x: np.full(len(x), value), name=name)


def gaussian_bump(
    center: Sequence[float],
    sharpness: float,
    half_width: float,
    amplitude: float = 1.0,
) -> Coefficient:
    """
    Gaussian seed cut off outside a box.

    ``amplitude * exp(-sum_i (sharpness * (x_i - c_i))^2)`` where
    ``|x_i - c_i| < half_width`` for every i, zero elsewhere.
    """
    c = np.asarray(center, dtype=np.float64)

    def bump(x):
        offset = x - c
        inside = np.all(np.abs(offset) < half_width, axis=1)
        values = amplitude * np.exp(-np.sum((sharpness * offset) ** 2, axis=1))
        return np.where(inside, values, 0.0)

    return Coefficient(bump, name="gaussian_bump")


def diffusivity_tensor(
    d_ext: float,
    d_axn: float,
    axon_direction: Sequence[float],
) -> NDArray[np.float64]:
    """
    Anisotropic diffusivity ``d_ext * I + d_axn * (n x n)``.

    Args:
        d_ext: Extracellular (isotropic) diffusivity.
        d_axn: Axonal diffusivity along ``axon_direction``.
        axon_direction: Fiber direction; normalized here.

    Returns:
        Symmetric (3, 3) tensor.
    """
    if d_ext < 0 or d_axn < 0:
        raise ConfigurationError("Diffusivities must be non-negative")
    n = np.asarray(axon_direction, dtype=np.float64)
    norm = np.linalg.norm(n)
    if n.shape != (3,) or norm == 0.0:
        raise ConfigurationError(f"Invalid axon direction {axon_direction!r}")
    n = n / norm
    return d_ext * np.eye(3) + d_axn * np.outer(n, n)
