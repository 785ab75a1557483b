"""
Tests for the Newton solver, consistent initialization, the BDF integrator
and zero-crossing location.
"""

import math

import numpy as np
import pytest


class TestNewton:
    """Test newton_solve()."""

    def test_scalar_root(self) -> None:
        """Test convergence to sqrt(2)."""
        from simdae.solvers import newton_solve

        def FJ(x):
            return x**2 - 2.0, np.diag(2.0 * x)

        x, ok = newton_solve(FJ, np.array([1.0]))
        assert ok
        assert x[0] == pytest.approx(math.sqrt(2.0), abs=1e-9)

    def test_overdetermined_system(self) -> None:
        """Test that a consistent non-square system is solved by least squares."""
        from simdae.solvers import newton_solve

        def FJ(x):
            return np.array([x[0] - 1.0, 2.0 * x[0] - 2.0]), np.array([[1.0], [2.0]])

        x, ok = newton_solve(FJ, np.array([0.0]))
        assert ok
        assert x[0] == pytest.approx(1.0)

    def test_non_finite_residual_fails(self) -> None:
        """Test that a NaN residual is reported as a failure."""
        from simdae.solvers import newton_solve

        def FJ(x):
            return np.array([np.nan]), np.eye(1)

        x, ok = newton_solve(FJ, np.array([3.0]))
        assert not ok
        assert x[0] == 3.0


class TestFindCrossings:
    """Test sign-change detection."""

    def test_directions(self) -> None:
        """Test rising, falling and touching values."""
        from simdae.solvers import find_crossings

        g0 = np.array([-1.0, 1.0, 0.0, -1.0, 2.0])
        g1 = np.array([0.0, -1.0, 1.0, -2.0, 0.0])
        assert find_crossings(g0, g1) == [(0, 1), (1, -1), (4, -1)]


class TestInitialize:
    """Test consistent initialization."""

    def test_ya_ydp(self) -> None:
        """Test that algebraic values and derivatives are solved."""
        from simdae import Unknown, create_sim, der, elaborate
        from simdae.solvers import initialize

        x = Unknown(1.0, "x")
        z = Unknown("z")
        sim = create_sim(elaborate([der(x) + z, z - 2 * x]))
        y, yp, ok = initialize(sim, 0.0, sim.y0, sim.yp0)
        assert ok
        np.testing.assert_allclose(y, [1.0, 2.0], atol=1e-9)
        assert yp[0] == pytest.approx(-2.0)

    def test_initial_equations_free_differential_values(self) -> None:
        """Test that an initial equation overrides the given value."""
        from simdae import create_sim, elaborate
        from simdae.examples.basics import initial_condition
        from simdae.solvers import initialize

        sim = create_sim(elaborate(initial_condition()))
        y, yp, ok = initialize(sim, 0.0, sim.y0, sim.yp0)
        assert ok
        assert y[0] == pytest.approx(2.0)
        assert yp[0] == pytest.approx(-2.0)

    def test_failure_warns(self) -> None:
        """Test that an unsolvable system warns and keeps the initial guess."""
        from simdae import InitializationWarning, Unknown, create_sim, elaborate
        from simdae.solvers import initialize

        x = Unknown(0.0)
        sim = create_sim(elaborate([x**2 + 1.0]))
        with pytest.warns(InitializationWarning, match="did not converge"):
            y, _, ok = initialize(sim, 0.0, sim.y0, sim.yp0)
        assert not ok
        assert y[0] == 0.0

    def test_none_mode(self) -> None:
        """Test that InitMode.NONE returns the given values."""
        from simdae import InitMode, Unknown, create_sim, elaborate
        from simdae.solvers import initialize

        x = Unknown(5.0)
        sim = create_sim(elaborate([x - 1.0]))
        y, _, ok = initialize(sim, 0.0, sim.y0, sim.yp0, mode=InitMode.NONE)
        assert ok
        assert y[0] == 5.0


class TestBDF:
    """Test the integrator."""

    def _decay(self, rate=1.0, config=None, **options):
        from simdae import SimConfig, Unknown, create_sim, der, elaborate
        from simdae.solvers import BDFIntegrator, initialize

        x = Unknown(1.0, "x", **options)
        config = config or SimConfig(max_step_retries=3)
        sim = create_sim(elaborate([der(x) + rate * x]), config)
        y, yp, _ = initialize(sim, 0.0, sim.y0, sim.yp0, config)
        return BDFIntegrator(sim, 0.0, y, yp, config)

    def test_exponential_decay(self) -> None:
        """Test accuracy on x' = -x."""
        integ = self._decay()
        while integ.t < 1.0:
            integ.accept(integ.attempt(1.0, 0.1))
        assert integ.t == 1.0
        assert integ.y[0] == pytest.approx(math.exp(-1.0), abs=1e-4)
        assert integ.yp[0] == pytest.approx(-math.exp(-1.0), abs=1e-3)

    def test_step_never_passes_end(self) -> None:
        """Test that attempt() respects the end time and the step bound."""
        integ = self._decay()
        for _ in range(50):
            step = integ.attempt(0.3, 0.05)
            assert step.t <= 0.3
            # A step may stretch by 1% to land exactly on the end time
            assert step.t - integ.t <= 0.0505 + 1e-12
            integ.accept(step)
            if integ.t == 0.3:
                break
        assert integ.t == 0.3

    def test_tolerance_controls_accuracy(self) -> None:
        """Test that tighter tolerances take more steps and give a smaller error."""
        from simdae import SimConfig

        exact = math.exp(-1.0)
        errors, steps = [], []
        for tol in (1e-3, 1e-8):
            integ = self._decay(rate=5.0, config=SimConfig(reltol=tol, abstol=tol))
            n = 0
            while integ.t < 0.2:
                integ.accept(integ.attempt(0.2))
                n += 1
            errors.append(abs(integ.y[0] - exact))
            steps.append(n)
        assert steps[1] > steps[0]
        assert errors[1] < 1e-5
        assert errors[1] < errors[0]

    def test_restart_forgets_history(self) -> None:
        """Test that the step after restart() is backward Euler."""
        integ = self._decay()
        integ.accept(integ.attempt(0.1))
        integ.restart(integ.t, integ.y, integ.yp)
        assert integ.h is None
        y_start = integ.y.copy()
        t_start = integ.t
        step = integ.trial(t_start + 0.1)
        # Backward Euler: y1 = y0 / (1 + h)
        assert step.order == 1
        assert step.y[0] == pytest.approx(y_start[0] / 1.1, rel=1e-8)

    def test_constraint_violation_fails(self) -> None:
        """Test that a violated sign constraint ends the run."""
        from simdae import Constraint, IntegrationError

        integ = self._decay(constraint=Constraint.NEGATIVE)
        with pytest.raises(IntegrationError, match="step failed"):
            integ.attempt(0.1)

    def test_non_finite_residual_ends_step(self) -> None:
        """Test that a residual that is NaN after any step ends in IntegrationError."""
        from simdae import IntegrationError, SimConfig, Unknown, create_sim, der, elaborate, sqrt
        from simdae.solvers import BDFIntegrator

        x = Unknown(1.0, "x")
        z = Unknown(0.0, "z")
        config = SimConfig(max_step_retries=3)
        sim = create_sim(elaborate([der(x) + 1.0, z - sqrt(x - 1.0)]), config)
        # Consistent at t = 0; x < 1 and so sqrt(x - 1) is NaN for every later time
        integ = BDFIntegrator(sim, 0.0, np.array([1.0, 0.0]), np.array([-1.0, 0.0]), config)
        with pytest.raises(IntegrationError, match="step failed") as exc:
            integ.attempt(0.1)
        assert exc.value.t == 0.0
        assert integ.t == 0.0

    def test_step_must_advance(self) -> None:
        """Test that a step ending at the current time is rejected."""
        integ = self._decay()
        with pytest.raises(ValueError, match="not after"):
            integ.trial(0.0)

    def test_interpolation_matches_end_points(self) -> None:
        """Test the Hermite interpolant at both ends of a step."""
        integ = self._decay()
        step = integ.trial(0.1)
        y0, yp0 = integ.interpolate(step, 0.0)
        y1, yp1 = integ.interpolate(step, 0.1)
        np.testing.assert_allclose(y0, integ.y)
        np.testing.assert_allclose(yp0, integ.yp)
        np.testing.assert_allclose(y1, step.y)
        np.testing.assert_allclose(yp1, step.yp)


class TestLocateCrossing:
    """Test event location by bisection."""

    def test_crossing_time(self) -> None:
        """Test that a linear ramp crosses its threshold at the right time."""
        from simdae import Event, SimConfig, Unknown, create_sim, der, elaborate
        from simdae.solvers import BDFIntegrator, initialize, locate_crossing

        x = Unknown(0.0, "x")
        config = SimConfig()
        sim = create_sim(elaborate([der(x) - 1.0, Event(x - 0.5)]), config)
        y, yp, _ = initialize(sim, 0.0, sim.y0, sim.yp0, config)
        integ = BDFIntegrator(sim, 0.0, y, yp, config)
        g0 = sim.zero_crossings(0.0, y, yp)
        step = integ.trial(1.0)
        hi, crossed = locate_crossing(integ, step, g0, config)
        assert crossed == [(0, 1)]
        assert hi.t >= 0.5
        assert hi.t - 0.5 < 1e-8

    def test_double_crossing_inside_step(self) -> None:
        """Test that a condition going up and down again within one step is found."""
        from simdae import Event, MTime, SimConfig, Unknown, create_sim, der, elaborate
        from simdae.solvers import BDFIntegrator, find_crossings, initialize, locate_crossing, scan_crossings

        x = Unknown(0.0, "x")
        config = SimConfig()
        # Positive only on (0.45, 0.55), so both ends of the step are negative
        sim = create_sim(elaborate([der(x) - 1.0, Event(0.0025 - (MTime - 0.5) ** 2)]), config)
        y, yp, _ = initialize(sim, 0.0, sim.y0, sim.yp0, config)
        integ = BDFIntegrator(sim, 0.0, y, yp, config)
        g0 = sim.zero_crossings(0.0, y, yp)
        step = integ.trial(1.0)
        assert not find_crossings(g0, sim.zero_crossings(step.t, step.y, step.yp))

        short, g1 = scan_crossings(integ, step, g0, 9)
        assert short.t == pytest.approx(0.5)
        assert find_crossings(g0, g1) == [(0, 1)]
        hi, crossed = locate_crossing(integ, short, g0, config)
        assert crossed == [(0, 1)]
        assert hi.t == pytest.approx(0.45, abs=1e-8)
