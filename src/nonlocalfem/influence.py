"""Influence functions of the nonlocal operator.

An influence function weights the coupling between two points by their
distance. All kernels here are symmetric, non-negative and normalised so
that their integral over the plane (or the line) equals one.

Calling a kernel broadcasts over leading axes::

    phi(x[:, None, :], y[None, :, :])  # (len(x), len(y))
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import ClassVar, Tuple

import numpy as np
from numba import njit
from numpy.typing import NDArray
from scipy.special import beta

from .errors import ConfigurationError

# Kernel codes understood by the compiled assembly
CUSTOM, CONSTANT, POLYNOMIAL, NORMAL = -1, 0, 1, 2


@dataclass
class InfluenceFunction(ABC):
    """Kernel of radius ``radius`` in ``dimension`` space dimensions."""

    radius: float
    dimension: int = 2
    norm: float = field(init=False, repr=False)

    kind: ClassVar[int] = CUSTOM

    def __post_init__(self) -> None:
        if self.radius <= 0.0:
            raise ConfigurationError(f"Influence radius must be positive, got {self.radius}")
        if self.dimension not in (1, 2):
            raise ConfigurationError(f"Influence dimension must be 1 or 2, got {self.dimension}")
        self.norm = self._normalization()

    @abstractmethod
    def _normalization(self) -> float:
        """Factor making the kernel integrate to one."""

    @abstractmethod
    def profile(self, rho: NDArray[np.float64]) -> NDArray[np.float64]:
        """Unnormalised kernel as a function of the relative distance |x-y|/r."""

    def __call__(self, x: NDArray[np.float64], y: NDArray[np.float64]) -> NDArray[np.float64]:
        distance = np.linalg.norm(np.asarray(x) - np.asarray(y), axis=-1)
        return self.norm * self.profile(distance / self.radius)

    def kernel_parameters(self) -> Tuple[int, float, float, float, float]:
        """(kind, norm, radius, p, q) for the compiled assembly."""
        return self.kind, float(self.norm), float(self.radius), 0.0, 0.0


@dataclass
class ConstantInfluence(InfluenceFunction):
    """Uniform weight inside the ball of radius r."""

    kind: ClassVar[int] = CONSTANT

    def _normalization(self) -> float:
        if self.dimension == 1:
            return 1.0 / (2.0 * self.radius)
        return 1.0 / (np.pi * self.radius**2)

    def profile(self, rho):
        return (rho <= 1.0).astype(np.float64)


@dataclass
class PolynomialInfluence(InfluenceFunction):
    """(1 - (|x-y|/r)^p)^q inside the ball of radius r, zero outside."""

    p: float = 2.0
    q: float = 1.0
    kind: ClassVar[int] = POLYNOMIAL

    def __post_init__(self) -> None:
        if self.p <= 0.0 or self.q < 0.0:
            raise ConfigurationError(f"Polynomial influence needs p > 0 and q >= 0, got p={self.p} q={self.q}")
        super().__post_init__()

    def _normalization(self) -> float:
        # integral of (1 - t^p)^q t^(dim-1) dt over [0, 1] is B(dim/p, q+1) / p
        radial = beta(self.dimension / self.p, self.q + 1.0) / self.p
        if self.dimension == 1:
            return 1.0 / (2.0 * self.radius * radial)
        return 1.0 / (2.0 * np.pi * self.radius**2 * radial)

    def profile(self, rho):
        inside = rho < 1.0
        return np.where(inside, np.power(np.clip(1.0 - rho**self.p, 0.0, None), self.q), 0.0)

    def kernel_parameters(self):
        return self.kind, float(self.norm), float(self.radius), float(self.p), float(self.q)


@dataclass
class NormalInfluence(InfluenceFunction):
    """Gaussian exp(-|x-y|^2 / r^2); not truncated, pair it with a neighbour radius."""

    kind: ClassVar[int] = NORMAL

    def _normalization(self) -> float:
        if self.dimension == 1:
            return 1.0 / (np.sqrt(np.pi) * self.radius)
        return 1.0 / (np.pi * self.radius**2)

    def profile(self, rho):
        return np.exp(-(rho**2))


def bell(radius: float, dimension: int = 2) -> PolynomialInfluence:
    """The default bell-shaped kernel, (1 - rho^2)."""
    return PolynomialInfluence(radius=radius, dimension=dimension, p=2.0, q=1.0)


@njit
def influence_value(kind, norm, radius, p, q, x, y):
    """Compiled phi(x, y) for the kernels with a ``kind`` code."""
    distance = 0.0
    for d in range(x.shape[0]):
        distance += (x[d] - y[d]) ** 2
    rho = np.sqrt(distance) / radius
    if kind == CONSTANT:
        return norm if rho <= 1.0 else 0.0
    if kind == POLYNOMIAL:
        if rho >= 1.0:
            return 0.0
        return norm * max(1.0 - rho**p, 0.0) ** q
    return norm * np.exp(-rho * rho)
