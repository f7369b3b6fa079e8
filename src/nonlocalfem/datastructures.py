"""Data structures for run configuration and results.

             Params (input/config)         Metrics (output/results)
             ─────────────────────         ────────────────────────
Assembly     AssemblyConfig                Metrics
             thresholds, loop order        dofs, nonzeros, timings

Physics      HeatParameters                TimeSeries
             ElasticParameters             energy per saved step

Time         TimeParameters                -
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import pandas as pd

from .errors import ConfigurationError

LOOP_ORDERS = ("local_outer", "nonlocal_outer")
LINEAR_SOLVERS = ("direct", "cg")


# ============================================================================
# Parameters (Input Configuration)
# ============================================================================


@dataclass
class AssemblyConfig:
    """Tunable thresholds of the assembly pipeline.

    Parameters
    ----------
    max_local_weight : float
        p1 at or above this value is treated as purely local and the
        nonlocal traversal is skipped.
    neumann_tolerance : float
        Largest net flux accepted for a pure second-kind problem.
    sort_indices : bool
        Sort column indices of every row when the portrait is finalized.
    nonlocal_loop_order : str
        Which quadrature sum of the double integral is contracted first.
    linear_solver : str
        ``"direct"`` (SuperLU) or ``"cg"`` (conjugate gradient, SPD systems only).
    cg_tolerance : float
        Relative residual tolerance of the conjugate gradient solver.
    residual_tolerance : float
        Largest relative residual |K x - f| / |f| accepted from the direct solver.
    """

    max_local_weight: float = 0.999
    neumann_tolerance: float = 1e-5
    sort_indices: bool = True
    nonlocal_loop_order: str = "local_outer"
    linear_solver: str = "direct"
    cg_tolerance: float = 1e-10
    residual_tolerance: float = 1e-8

    def __post_init__(self) -> None:
        if not 0.0 < self.max_local_weight <= 1.0:
            raise ConfigurationError(
                f"max_local_weight must lie in (0, 1], got {self.max_local_weight}"
            )
        if self.neumann_tolerance < 0.0:
            raise ConfigurationError("neumann_tolerance must be non-negative")
        if self.residual_tolerance <= 0.0:
            raise ConfigurationError("residual_tolerance must be positive")
        if self.nonlocal_loop_order not in LOOP_ORDERS:
            raise ConfigurationError(
                f"Unknown nonlocal_loop_order={self.nonlocal_loop_order!r}. Use one of {LOOP_ORDERS}."
            )
        if self.linear_solver not in LINEAR_SOLVERS:
            raise ConfigurationError(
                f"Unknown linear_solver={self.linear_solver!r}. Use one of {LINEAR_SOLVERS}."
            )

    def is_nonlocal(self, p1: float) -> bool:
        return p1 < self.max_local_weight


def _check_radii(p1: float, radius: float, neighbour_radius: Optional[float]) -> None:
    if not 0.0 <= p1 <= 1.0:
        raise ConfigurationError(f"Locality weight p1 must lie in [0, 1], got {p1}")
    if radius < 0.0:
        raise ConfigurationError("radius must be non-negative")
    if neighbour_radius is not None and neighbour_radius <= 0.0:
        raise ConfigurationError(f"neighbour_radius must be positive, got {neighbour_radius}")


@dataclass
class HeatParameters:
    """Material constants of the heat equation and its nonlocal model."""

    conductivity: float = 1.0
    density: float = 1.0
    capacity: float = 1.0
    p1: float = 1.0
    radius: float = 0.0
    neighbour_radius: Optional[float] = None  # element search radius, defaults to the influence radius

    def __post_init__(self) -> None:
        _check_radii(self.p1, self.radius, self.neighbour_radius)
        if self.conductivity <= 0.0:
            raise ConfigurationError("conductivity must be positive")
        if self.density <= 0.0 or self.capacity <= 0.0:
            raise ConfigurationError("density and capacity must be positive")

    @property
    def p2(self) -> float:
        return 1.0 - self.p1


@dataclass
class ElasticParameters:
    """Plane-stress material constants."""

    young_modulus: float = 1.0
    poisson_ratio: float = 0.3
    p1: float = 1.0
    radius: float = 0.0
    neighbour_radius: Optional[float] = None  # element search radius, defaults to the influence radius

    def __post_init__(self) -> None:
        _check_radii(self.p1, self.radius, self.neighbour_radius)
        if self.young_modulus <= 0.0:
            raise ConfigurationError("young_modulus must be positive")
        if not -1.0 < self.poisson_ratio < 0.5:
            raise ConfigurationError(
                f"poisson_ratio must lie in (-1, 0.5), got {self.poisson_ratio}"
            )

    @property
    def p2(self) -> float:
        return 1.0 - self.p1

    @property
    def D(self) -> Tuple[float, float, float]:
        """Plane-stress coefficients (D0, D1, D2)."""
        E, nu = self.young_modulus, self.poisson_ratio
        D0 = E / (1.0 - nu * nu)
        return D0, nu * D0, 0.5 * E / (1.0 + nu)


@dataclass
class TimeParameters:
    """Implicit Euler stepping over ``time_interval`` in ``steps`` equal steps."""

    time_interval: Tuple[float, float] = (0.0, 1.0)
    steps: int = 100
    save_freq: int = 1
    save_path: Optional[str] = None
    save_csv: bool = True
    calc_energy: bool = True

    def __post_init__(self) -> None:
        self.time_interval = tuple(self.time_interval)
        if len(self.time_interval) != 2 or self.time_interval[1] <= self.time_interval[0]:
            raise ConfigurationError(
                f"time_interval must be an increasing pair, got {self.time_interval}"
            )
        if self.steps <= 0:
            raise ConfigurationError("steps must be positive")
        if self.save_freq <= 0:
            raise ConfigurationError("save_freq must be positive")

    @property
    def tau(self) -> float:
        return (self.time_interval[1] - self.time_interval[0]) / self.steps


# ============================================================================
# Metrics (Output Results)
# ============================================================================


@dataclass
class Metrics:
    """Sizes and timings collected by a solver run."""

    dofs: int = 0
    nonzeros: int = 0
    bound_nonzeros: int = 0
    nonlocal_model: bool = False
    portrait_seconds: float = 0.0
    assembly_seconds: float = 0.0
    solve_seconds: float = 0.0
    steps: int = 0
    energy: float = float("nan")

    def to_mlflow(self) -> dict:
        """Convert to MLflow-compatible dict (bools as int, skip nan)."""
        return {
            k: (int(v) if isinstance(v, bool) else v)
            for k, v in self.__dict__.items()
            if v == v
        }

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([self.to_mlflow()])


@dataclass
class TimeSeries:
    """Per saved step history of a transient run."""

    step: List[int] = field(default_factory=list)
    time: List[float] = field(default_factory=list)
    energy: List[float] = field(default_factory=list)

    def append(self, step: int, time: float, energy: float) -> None:
        self.step.append(step)
        self.time.append(time)
        self.energy.append(energy)

    def to_mlflow_batch(self) -> list:
        """Convert the energy history to MLflow Metric objects for batch logging."""
        from mlflow.entities import Metric

        return [
            Metric(key="energy", value=value, timestamp=0, step=step)
            for step, value in zip(self.step, self.energy)
        ]

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame({k: v for k, v in self.__dict__.items() if v})
