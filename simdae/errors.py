"""
Exceptions and warnings raised while elaborating and simulating models.
"""

from __future__ import annotations

from typing import Optional


class ModelBalanceError(ValueError):
    """The number of equations does not match the number of unknowns."""

    def __init__(self, n_equations: int, n_unknowns: int, message: Optional[str] = None):
        self.n_equations = n_equations
        self.n_unknowns = n_unknowns
        if message is None:
            message = f"Model is not balanced: {n_equations} equations for {n_unknowns} unknowns"
        super().__init__(message)


class StructuralEventError(ModelBalanceError):
    """A structural event produced a replacement model that does not balance."""


class CyclicDependencyError(ValueError):
    """The Discrete/Parameter dependency graph contains a cycle."""


class IntegrationError(RuntimeError):
    """The integrator could not take a step, even after reducing the step size."""

    def __init__(self, t: float, message: str):
        self.t = t
        super().__init__(f"t={t:.6g}: {message}")


class InitializationWarning(RuntimeWarning):
    """Consistent initial values could not be computed; the initial guess is used."""
