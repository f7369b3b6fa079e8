"""Exceptions raised by the assembly and solve pipeline.

Every failure is fatal for the current run; nothing here is retried.
"""


class NonlocalFEMError(Exception):
    """Base class for all errors raised by nonlocalfem."""


class ConfigurationError(NonlocalFEMError, ValueError):
    """Malformed input detected before any computation starts."""


class UnsolvableProblemError(NonlocalFEMError, ValueError):
    """The continuous problem has no solution (e.g. nonzero net flux)."""


class PortraitError(NonlocalFEMError, RuntimeError):
    """Sparse portrait was used out of phase or does not match its fill."""


class SolverError(NonlocalFEMError, RuntimeError):
    """The linear solver failed to converge or produced a non-finite result."""
