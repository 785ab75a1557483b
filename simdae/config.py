"""
Simulation configuration.

A single frozen SimConfig is passed explicitly to elaboration, assembly and
simulation calls. There is no process-wide verbosity switch: the ``verbose``
flag only decides whether progress messages go to the module loggers at
INFO or at DEBUG level.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Optional

from simdae.types import InitMode


@dataclass(frozen=True)
class SimConfig:
    """
    Tolerances and limits for the numerical collaborators.

    Attributes
    ----------
    reltol, abstol : float
        Relative and absolute tolerances of the local error test that
        chooses the integration step size, also used by the integrator's
        Newton convergence test.
    newton_tol : float
        Residual infinity-norm accepted as converged inside an integration step.
    newton_max_iter : int
        Newton iterations per integration step before the step is rejected.
    init : InitMode
        Consistent initialization strategy at t0.
    init_tol : float
        Residual infinity-norm accepted as a consistent initial point.
    init_max_iter : int
        Iteration limit for the initial-value Newton solve.
    substeps : int
        The integration step is at most the output interval divided by this.
    max_step : float or None
        Upper bound on the integration step size; overrides the bound
        given by ``substeps`` when set.
    event_samples : int
        Points inside each step at which the event conditions are checked
        in addition to the step end.
    event_tol : float
        Width of the time bracket a zero crossing is located to.
    max_events : int
        Maximum number of event instants handled in one run.
    max_step_retries : int
        How many times in a row a step may be rejected and retried smaller
        before the run fails.
    verbose : bool
        Log progress at INFO instead of DEBUG.
    """

    reltol: float = 1e-6
    abstol: float = 1e-8
    newton_tol: float = 1e-10
    newton_max_iter: int = 20
    init: InitMode = InitMode.YA_YDP
    init_tol: float = 1e-8
    init_max_iter: int = 100
    substeps: int = 1
    max_step: Optional[float] = None
    event_samples: int = 4
    event_tol: float = 1e-10
    max_events: int = 10000
    max_step_retries: int = 12
    verbose: bool = False

    def __post_init__(self) -> None:
        if self.substeps < 1:
            raise ValueError(f"substeps must be >= 1, got {self.substeps}")
        if self.event_tol <= 0.0:
            raise ValueError(f"event_tol must be positive, got {self.event_tol}")
        if self.max_step is not None and self.max_step <= 0.0:
            raise ValueError(f"max_step must be positive, got {self.max_step}")
        if self.event_samples < 0:
            raise ValueError(f"event_samples must be >= 0, got {self.event_samples}")

    @property
    def log_level(self) -> int:
        return logging.INFO if self.verbose else logging.DEBUG

    def with_options(self, **changes: Any) -> "SimConfig":
        """Return a copy with some fields changed."""
        return replace(self, **changes)


DEFAULT_CONFIG = SimConfig()
