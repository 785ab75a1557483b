"""
Numerical collaborators: nonlinear solver, DAE integrator and event location.

- newton_solve: damped Newton with backtracking, least squares for
  non-square or singular systems.
- initialize: consistent (y, yp) at a given time, per InitMode.
- BDFIntegrator: variable-step, variable-coefficient BDF on the fully
  implicit residual F(t, y, yp) = 0 with local error control. Order 1
  after every restart, order 2 afterwards.
- find_crossings / locate_crossing / scan_crossings: sign-change detection
  between two points, bisection of the step to the crossing time, and
  sampling inside a step so that double crossings are caught.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import numpy as np

from simdae.config import DEFAULT_CONFIG, SimConfig
from simdae.errors import InitializationWarning, IntegrationError
from simdae.types import Constraint, InitMode

logger = logging.getLogger(__name__)

Array = np.ndarray


@dataclass(frozen=True)
class NewtonConfig:
    """
    Settings for newton_solve.

    Attributes:
        tol: Converged when the residual infinity norm is below this.
        max_iter: Maximum number of Newton iterations.
        damping: Backtrack along the Newton direction until the residual decreases.
        c1: Step reduction factor while backtracking.
        rho: Required residual reduction for a backtracking step to be accepted.
    """

    tol: float = 1e-10
    max_iter: int = 20
    damping: bool = True
    c1: float = 0.5
    rho: float = 0.9


def _linear_step(J: Array, rhs: Array) -> Array:
    if J.shape[0] == J.shape[1]:
        try:
            return np.linalg.solve(J, rhs)
        except np.linalg.LinAlgError:
            pass
    return np.linalg.lstsq(J, rhs, rcond=None)[0]


def newton_solve(
    FJ_fun: Callable[[Array], Tuple[Array, Array]],
    x0: Array,
    cfg: NewtonConfig = NewtonConfig(),
    weights: Optional[Array] = None,
) -> Tuple[Array, bool]:
    """
    Solve F(x) = 0 by Newton iteration.

    Args:
        FJ_fun: Returns (F, J) at x, with J = dF/dx. J may be non-square.
        x0: Initial guess.
        cfg: Tolerances and damping settings.
        weights: If given, the iteration also counts as converged once every
            component of the Newton correction is smaller than its weight.

    Returns:
        (x, converged). On failure x is the last iterate. A non-finite
        residual ends the iteration as a failure.
    """
    x = np.array(x0, dtype=float)
    if x.size == 0:
        F, _ = FJ_fun(x)
        return x, bool(F.size == 0 or np.max(np.abs(F)) <= cfg.tol)

    for _ in range(cfg.max_iter):
        F, J = FJ_fun(x)
        if not np.all(np.isfinite(F)):
            return x, False
        nF = np.max(np.abs(F)) if F.size else 0.0
        if nF <= cfg.tol:
            return x, True
        delta = _linear_step(J, -F)
        if not np.all(np.isfinite(delta)):
            return x, False

        if cfg.damping:
            alpha = 1.0
            base = np.linalg.norm(F)
            while alpha > 1e-4:
                x_try = x + alpha * delta
                F_try, _ = FJ_fun(x_try)
                if np.all(np.isfinite(F_try)) and np.linalg.norm(F_try) < cfg.rho * base:
                    break
                alpha *= cfg.c1
            if alpha <= 1e-4:
                alpha = 1e-4
            delta = alpha * delta
        x = x + delta

        if weights is not None and np.all(np.abs(delta) <= weights):
            F, _ = FJ_fun(x)
            return x, bool(np.all(np.isfinite(F)))

    F, _ = FJ_fun(x)
    ok = bool(np.all(np.isfinite(F)) and (F.size == 0 or np.max(np.abs(F)) <= cfg.tol))
    return x, ok


# =============================================================================
# Consistent initialization
# =============================================================================


def initialize(
    sim,
    t: float,
    y: Array,
    yp: Array,
    config: SimConfig = DEFAULT_CONFIG,
    mode: Optional[InitMode] = None,
    initial_equations: bool = True,
) -> Tuple[Array, Array, bool]:
    """
    Compute consistent (y, yp) at time ``t``.

    InitMode.YA_YDP keeps the differential values and solves the algebraic
    values and the derivatives. InitMode.Y keeps the derivatives and solves
    the values. Fixed unknowns are never changed. With
    ``initial_equations``, the model's initial equations are added to the
    system and non-fixed differential values become free as well.

    Returns (y, yp, converged). When the solve fails an
    InitializationWarning is issued and the given values are returned.
    """
    mode = config.init if mode is None else mode
    y = np.array(y, dtype=float)
    yp = np.array(yp, dtype=float)
    if mode == InitMode.NONE:
        return y, yp, True

    use_initial = initial_equations and len(sim.eqset.initial_equations) > 0
    if mode == InitMode.YA_YDP:
        free_y = ~sim.id & ~sim.fixed
        if use_initial:
            free_y = free_y | (sim.id & ~sim.fixed)
        free_yp = sim.id.copy()
    else:
        free_y = ~sim.fixed
        free_yp = np.zeros_like(sim.id)

    iy = np.flatnonzero(free_y)
    iyp = np.flatnonzero(free_yp)

    def split(x: Array) -> Tuple[Array, Array]:
        y1 = y.copy()
        yp1 = yp.copy()
        y1[iy] = x[: len(iy)]
        yp1[iyp] = x[len(iy) :]
        return y1, yp1

    def FJ(x: Array) -> Tuple[Array, Array]:
        y1, yp1 = split(x)
        if use_initial:
            F, Jy, Jyp = sim.initial_system(t, y1, yp1)
        else:
            F, Jy, Jyp = sim.linearize(t, y1, yp1)
        return F, np.hstack([Jy[:, iy], Jyp[:, iyp]])

    cfg = NewtonConfig(tol=config.init_tol, max_iter=config.init_max_iter, damping=True)
    x, converged = newton_solve(FJ, np.concatenate([y[iy], yp[iyp]]), cfg)
    if not converged:
        warnings.warn(
            f"t={t:.6g}: consistent initial values did not converge; continuing with the initial guess",
            InitializationWarning,
            stacklevel=2,
        )
        return y, yp, False
    y1, yp1 = split(x)
    logger.log(config.log_level, "t=%.6g: consistent initialization (%s) converged", t, mode.name)
    return y1, yp1, True


# =============================================================================
# Integrator
# =============================================================================


@dataclass(frozen=True)
class Step:
    """Result of one successful trial step."""

    t: float
    y: Array
    yp: Array
    order: int = 1
    error: float = 0.0


def _constraints_ok(constraints: List[Constraint], y: Array) -> bool:
    for c, v in zip(constraints, y):
        if c == Constraint.POSITIVE and not v > 0.0:
            return False
        if c == Constraint.NON_NEGATIVE and not v >= 0.0:
            return False
        if c == Constraint.NEGATIVE and not v < 0.0:
            return False
        if c == Constraint.NON_POSITIVE and not v <= 0.0:
            return False
    return True


class BDFIntegrator:
    """
    Variable-step, variable-coefficient BDF integrator for F(t, y, yp) = 0.

    The caller asks for one step toward an end time with attempt() and then
    accepts the returned Step (possibly after shortening it to an event
    with trial()). The first step after construction or restart() is
    backward Euler; later steps use the two-step formula with the
    coefficients of the actual step ratio.

    attempt() chooses the step size. The local error of each step is
    estimated from the difference between the corrector and an explicit
    predictor, weighted by ``abstol + reltol * |y|`` over the differential
    components. Steps with a weighted error above 1 are rejected and
    retried with a smaller step.
    """

    # Largest step ratio for which the two-step formula is used
    MAX_RATIO = 5.0
    # Bounds on the step size change after one step
    GROW = 2.0
    SHRINK = 0.2
    SAFETY = 0.9
    # Local error per unit of corrector - predictor, by order
    ERROR_FACTOR = {1: 0.5, 2: 1.0 / 3.0}

    def __init__(self, sim, t: float, y: Array, yp: Array, config: SimConfig = DEFAULT_CONFIG):
        self.sim = sim
        self.config = config
        self._newton = NewtonConfig(tol=config.newton_tol, max_iter=config.newton_max_iter, damping=False)
        self.restart(t, y, yp)

    def restart(self, t: float, y: Array, yp: Array) -> None:
        """Forget the step history (after an event or a model swap)."""
        self.t = float(t)
        self.y = np.array(y, dtype=float)
        self.yp = np.array(yp, dtype=float)
        self._y_prev: Optional[Array] = None
        self._yp_prev: Optional[Array] = None
        self._h_prev = 0.0
        # Proposed size of the next step; None until the first attempt()
        self.h: Optional[float] = None

    def _weights(self, y: Array) -> Array:
        return self.config.abstol + self.config.reltol * np.abs(y)

    def initial_step(self, h_max: float) -> float:
        """First step size after a restart: the differential values move by about one tolerance unit."""
        diff = self.sim.id
        if not diff.any():
            return h_max
        d = float(np.max(np.abs(self.yp[diff]) / self._weights(self.y)[diff]))
        if not d > 0.0 or not np.isfinite(d):
            return h_max
        return min(h_max, 1.0 / d)

    def _coefficients(self, h: float) -> Tuple[int, float, Array]:
        if self._y_prev is None or h / self._h_prev > self.MAX_RATIO:
            return 1, 1.0 / h, -self.y / h
        w = h / self._h_prev
        alpha = (1.0 + 2.0 * w) / ((1.0 + w) * h)
        beta = (-(1.0 + w) * self.y + (w * w / (1.0 + w)) * self._y_prev) / h
        return 2, alpha, beta

    def _predict(self, order: int, h: float) -> Array:
        y_pred = self.y + h * self.yp
        if order == 2:
            y_pred = y_pred + (0.5 * h * h / self._h_prev) * (self.yp - self._yp_prev)
        return y_pred

    def _error(self, order: int, y1: Array, y_pred: Array) -> float:
        diff = self.sim.id
        if not diff.any():
            return 0.0
        est = self.ERROR_FACTOR[order] * np.abs(y1 - y_pred)
        return float(np.max(est[diff] / self._weights(y1)[diff]))

    def trial(self, t1: float) -> Optional[Step]:
        """
        Try a single step from the current point to ``t1``.

        Returns None if Newton does not converge, the residual is not
        finite, or a constraint is violated. The returned Step carries the
        weighted local error estimate but is not checked against it.
        """
        h = t1 - self.t
        if h <= 0.0:
            raise ValueError(f"step end {t1} is not after the current time {self.t}")
        order, alpha, beta = self._coefficients(h)
        sim = self.sim

        def FJ(y: Array) -> Tuple[Array, Array]:
            F, Jy, Jyp = sim.linearize(t1, y, alpha * y + beta)
            return F, Jy + alpha * Jyp

        y_pred = self._predict(order, h)
        y1, converged = newton_solve(FJ, y_pred, self._newton, self._weights(y_pred))
        if not converged or not np.all(np.isfinite(y1)):
            return None
        if not _constraints_ok(sim.constraints, y1):
            return None
        return Step(t1, y1, alpha * y1 + beta, order, self._error(order, y1, y_pred))

    def attempt(self, t_end: float, h_max: Optional[float] = None) -> Step:
        """
        Take one error-controlled step toward ``t_end``.

        The step is at most ``h_max`` long (default: up to ``t_end``) and
        never passes ``t_end``, so the returned step may end before it.
        A step whose Newton iteration fails is halved; a step whose error
        estimate is too large is shrunk according to the estimate. Raises
        IntegrationError after ``max_step_retries`` rejections in a row or
        when the step size becomes negligible.
        """
        if h_max is None:
            h_max = t_end - self.t
        h = self.h if self.h is not None else self.initial_step(h_max)
        failures = 0
        while True:
            h = min(h, h_max)
            t1 = self.t + h
            clipped = t_end - t1 <= 0.01 * h
            if clipped:
                t1 = t_end
            if t1 - self.t <= 1e-14 * max(1.0, abs(self.t)):
                raise IntegrationError(self.t, f"step size {t1 - self.t:.3g} is too small")
            step = self.trial(t1)
            if step is not None and step.error <= 1.0:
                h_used = t1 - self.t
                self.h = h_used * self._factor(step, self.GROW)
                if clipped:
                    self.h = max(self.h, h)
                return step

            failures += 1
            if failures > self.config.max_step_retries:
                raise IntegrationError(self.t, f"step failed after {self.config.max_step_retries} step size reductions")
            if step is None:
                h = 0.5 * (t1 - self.t)
            else:
                h = (t1 - self.t) * self._factor(step, 1.0)
            logger.debug("t=%.6g: step rejected, retrying with h=%.3g", self.t, h)

    def _factor(self, step: Step, limit: float) -> float:
        if step.error == 0.0:
            return limit
        return min(limit, max(self.SHRINK, self.SAFETY * step.error ** (-1.0 / (step.order + 1))))

    def interpolate(self, step: Step, t: float) -> Tuple[Array, Array]:
        """Cubic Hermite values and derivatives at ``t`` between the current point and ``step``."""
        h = step.t - self.t
        s = (t - self.t) / h
        h00 = 2 * s**3 - 3 * s**2 + 1
        h10 = s**3 - 2 * s**2 + s
        h01 = -2 * s**3 + 3 * s**2
        h11 = s**3 - s**2
        y = h00 * self.y + h10 * h * self.yp + h01 * step.y + h11 * h * step.yp
        dh00 = (6 * s**2 - 6 * s) / h
        dh10 = 3 * s**2 - 4 * s + 1
        dh11 = 3 * s**2 - 2 * s
        yp = dh00 * self.y + dh10 * self.yp - dh00 * step.y + dh11 * step.yp
        return y, yp

    def accept(self, step: Step) -> None:
        self._h_prev = step.t - self.t
        self._y_prev = self.y
        self._yp_prev = self.yp
        self.t = step.t
        self.y = step.y
        self.yp = step.yp


# =============================================================================
# Zero crossings
# =============================================================================


def find_crossings(g0: Array, g1: Array) -> List[Tuple[int, int]]:
    """
    Entries whose sign changed between ``g0`` and ``g1``, in table order.

    A rising crossing goes from < 0 to >= 0; a falling one from > 0 to <= 0.
    Returns (index, direction) pairs.
    """
    out = []
    for i, (a, b) in enumerate(zip(g0, g1)):
        if a < 0.0 <= b:
            out.append((i, 1))
        elif a > 0.0 >= b:
            out.append((i, -1))
    return out


def locate_crossing(
    integrator: BDFIntegrator, step: Step, g0: Array, config: SimConfig = DEFAULT_CONFIG
) -> Tuple[Step, List[Tuple[int, int]]]:
    """
    Shorten ``step`` to the first zero crossing in it.

    Bisects the step interval until it is narrower than ``event_tol``.
    Returns the step ending just after the crossing and the crossings it
    contains.
    """
    sim = integrator.sim
    lo = integrator.t
    hi = step
    crossed = find_crossings(g0, sim.zero_crossings(step.t, step.y, step.yp))
    while hi.t - lo > config.event_tol:
        mid = lo + 0.5 * (hi.t - lo)
        if mid <= lo or mid >= hi.t:
            break
        trial = integrator.trial(mid)
        if trial is None:
            raise IntegrationError(mid, "step failed while locating an event")
        found = find_crossings(g0, sim.zero_crossings(trial.t, trial.y, trial.yp))
        if found:
            hi, crossed = trial, found
        else:
            lo = mid
    return hi, crossed


def scan_crossings(integrator: BDFIntegrator, step: Step, g0: Array, samples: int) -> Tuple[Step, Array]:
    """
    Check the conditions inside ``step`` as well as at its end.

    The conditions are evaluated at ``samples`` evenly spaced points of the
    Hermite interpolant. If one of them has crossed, the step is cut back to
    the first such point so that a condition changing sign twice within
    the step is not missed. Returns the (possibly shortened) step and the
    conditions at its end.
    """
    sim = integrator.sim
    t0 = integrator.t
    for k in range(1, samples + 1):
        ts = t0 + (step.t - t0) * k / (samples + 1)
        ys, yps = integrator.interpolate(step, ts)
        if find_crossings(g0, sim.zero_crossings(ts, ys, yps)):
            short = integrator.trial(ts)
            if short is None:
                raise IntegrationError(ts, "step failed while locating an event")
            return short, sim.zero_crossings(short.t, short.y, short.yp)
    return step, sim.zero_crossings(step.t, step.y, step.yp)
