"""
Tests for the simulation driver and its results.

Covers:
- Output layout and column lookup
- Repeatable runs from model trees and from SimState
- solve() for algebraic models
- Hybrid events, simultaneous crossings and the max_events limit
- Tolerance-driven step size control and integration failures
- Parameters changed between runs
"""

import math

import numpy as np
import pytest
from common import is_finite, rows_at


class TestSimResult:
    """Test the result layout."""

    def test_vanderpol_shape(self) -> None:
        """Test one row per output time and one column per labeled unknown."""
        from simdae import sim
        from simdae.examples.basics import vanderpol

        result = sim(vanderpol(), 10.0)
        assert result.y.shape == (501, 3)
        assert result.colnames == ["x", "y"]
        assert result.t[0] == 0.0
        assert result.t[-1] == pytest.approx(10.0)
        assert result.event_times == []
        assert result.generations == 1
        assert is_finite(result.y)

    def test_lookup_by_label_and_unknown(self) -> None:
        """Test result["x"] and result(x)."""
        from simdae import Unknown, der, sim

        x = Unknown(1.0, "x")
        z = Unknown()
        result = sim([der(x) + z, z - x], 1.0, 10)
        np.testing.assert_array_equal(result["x"], result(x))
        np.testing.assert_array_equal(result["x"], result("x"))
        with pytest.raises(KeyError, match="nope"):
            result["nope"]
        with pytest.raises(KeyError):
            result(z)

    def test_vector_columns(self) -> None:
        """Test that a labeled vector unknown has one column per element."""
        from simdae import Unknown, der, sim

        v = Unknown(np.array([1.0, 2.0]), "v")
        result = sim([der(v) + v], 1.0, 100)
        assert result.colnames == ["v[0]", "v[1]"]
        assert result(v).shape == (101, 2)
        np.testing.assert_allclose(result(v)[-1], [math.exp(-1.0), 2 * math.exp(-1.0)], atol=1e-3)

    def test_bad_arguments(self) -> None:
        """Test the checks on nsteps and tstop."""
        from simdae import sim
        from simdae.examples.basics import vanderpol

        with pytest.raises(ValueError, match="nsteps"):
            sim(vanderpol(), 1.0, 0)
        with pytest.raises(ValueError, match="tstop"):
            sim(vanderpol(), 0.0)


class TestRepeatability:
    """Test that runs leave the model unchanged."""

    def test_rerun_model_tree(self) -> None:
        """Test bit-identical results when simulating the same tree twice."""
        from simdae import sim
        from simdae.examples.basics import vanderpol_with_events

        model = vanderpol_with_events()
        r1 = sim(model, 10.0, 200)
        r2 = sim(model, 10.0, 200)
        assert len(r1.event_times) > 0
        assert np.array_equal(r1.y, r2.y, equal_nan=True)

    def test_rerun_simstate(self) -> None:
        """Test bit-identical results when simulating the same SimState twice."""
        from simdae import create_simstate, sim
        from simdae.examples.basics import vanderpol_with_events

        state = create_simstate(vanderpol_with_events())
        r1 = sim(state, 10.0, 200)
        r2 = sim(state, 10.0, 200)
        assert np.array_equal(r1.y, r2.y, equal_nan=True)
        assert r1.event_times == r2.event_times


class TestSolve:
    """Test solve()."""

    def test_fixed_point(self) -> None:
        """Test the coupled fixed point x = y = W(1)."""
        from simdae import solve
        from simdae.examples.basics import fixed_point

        sol = solve(fixed_point())
        assert sol["x"] == pytest.approx(0.5671432904, abs=1e-6)
        assert sol["y"] == pytest.approx(0.5671432904, abs=1e-6)

    def test_values_are_stored(self) -> None:
        """Test that the solution is written back to the unknowns."""
        from simdae import Unknown, solve

        x = Unknown(1.0, "x")
        solve([x**2 - 2.0])
        assert x.value == pytest.approx(math.sqrt(2.0))

    def test_derivatives_are_rejected(self) -> None:
        """Test that solve() does not integrate."""
        from simdae import solve
        from simdae.examples.basics import vanderpol

        with pytest.raises(ValueError, match="without derivatives"):
            solve(vanderpol())


class TestCircuits:
    """Test node balance in a simulated circuit."""

    def test_sine_resistor_currents(self) -> None:
        """Test Ohm's law and Kirchhoff's current law over time."""
        from simdae import MTime, branch, sim, sin
        from simdae.lib.electrical import Current, Voltage

        n1 = Voltage("n1")
        i_s, v_s = Current("i_s"), Voltage()
        i_r, v_r = Current("i_r"), Voltage()
        model = [
            branch(n1, 0.0, v_s, i_s),
            v_s - 10.0 * sin(2 * math.pi * MTime),
            branch(n1, 0.0, v_r, i_r),
            5.0 * i_r - v_r,
        ]
        result = sim(model, 1.0, 50)
        expected = 10.0 * np.sin(2 * np.pi * result.t) / 5.0
        np.testing.assert_allclose(result["i_r"], expected, atol=1e-6)
        np.testing.assert_allclose(result["i_s"] + result["i_r"], 0.0, atol=1e-9)
        np.testing.assert_allclose(result["n1"], 5.0 * expected, atol=1e-6)

    def test_half_wave_rectifier(self) -> None:
        """Test that the rectifier output stays finite and below the peak."""
        from simdae import sim
        from simdae.examples.basics import half_wave_rectifier

        result = sim(half_wave_rectifier(), 0.05, 200)
        vout = result["Vout"]
        assert is_finite(vout)
        assert np.max(vout) <= 10.0 + 1e-2


class TestInitialization:
    """Test initial equations in a run."""

    def test_initial_equation(self) -> None:
        """Test that the initial equation sets x(0) = 2."""
        from simdae import sim
        from simdae.examples.basics import initial_condition

        result = sim(initial_condition(), 1.0, 100)
        assert result["x"][0] == pytest.approx(2.0)
        assert result["x"][-1] == pytest.approx(2.0 * math.exp(-1.0), abs=1e-3)

    def test_unbalanced_model(self) -> None:
        """Test that sim() refuses an unbalanced model."""
        from simdae import ModelBalanceError, Unknown, sim

        x, y = Unknown(), Unknown()
        with pytest.raises(ModelBalanceError):
            sim([x + y], 1.0)


class TestEvents:
    """Test hybrid events."""

    def test_event_rows_and_response(self) -> None:
        """Test the pre- and post-event rows of the first event."""
        from simdae import sim
        from simdae.examples.basics import vanderpol_with_events

        result = sim(vanderpol_with_events(), 10.0, 200)
        te = result.event_times[0]
        assert type(te) is float
        idx = rows_at(result.t, te)
        assert len(idx) >= 2
        mu = result["mu_unk"]
        # x crosses zero upward first: mu is scaled by 0.75
        assert mu[idx[0]] == pytest.approx(1.0)
        assert mu[idx[1]] == pytest.approx(0.75)
        assert abs(result["x"][idx[0]]) < 1e-6

    def test_max_events(self) -> None:
        """Test that events stop after max_events with a warning."""
        from simdae import SimConfig, sim
        from simdae.examples.basics import vanderpol_with_events

        config = SimConfig(max_events=1)
        with pytest.warns(RuntimeWarning, match="max_events"):
            result = sim(vanderpol_with_events(), 10.0, 200, config)
        assert len(result.event_times) == 1

    def test_parameter_between_runs(self) -> None:
        """Test that a Parameter set from outside is kept and changes the result."""
        from simdae import Parameter, sim
        from simdae.examples.basics import vanderpol_with_parameter

        mu = Parameter(1.0, "mu")
        model = vanderpol_with_parameter(mu)
        r1 = sim(model, 5.0, 100)
        mu.reinit(2.0)
        r2 = sim(model, 5.0, 100)
        assert mu.value == 2.0
        assert not np.allclose(r1["x"], r2["x"])

    def test_fast_condition_is_not_skipped(self) -> None:
        """Test that every crossing is found when the condition oscillates faster than the output grid."""
        from simdae import Event, MTime, Unknown, cos, der, sim

        x = Unknown(1.0, "x")
        result = sim([der(x) + x, Event(cos(20.0 * math.pi * MTime) - 0.5)], 1.0, 10)
        expected = sorted(k / 10.0 + d for k in range(10) for d in (1.0 / 60.0, 5.0 / 60.0))
        assert len(result.event_times) == 20
        np.testing.assert_allclose(result.event_times, expected, atol=1e-8)
        np.testing.assert_allclose(result["x"][-1], math.exp(-1.0), atol=1e-4)

    def test_regular_and_structural_event_together(self) -> None:
        """Test that a regular and a structural event at the same instant both run once, regular first."""
        from simdae import Discrete, Event, MTime, StructuralEvent, Unknown, der, reinit, sim

        d = Discrete(0.0)
        k = Unknown("k")
        x = Unknown(1.0, "x")
        se = StructuralEvent(
            MTime - 1.0,
            [der(x) + x],
            lambda: [der(x) - 1.0],
            pos_response=[reinit(d, d * 10.0 + 2.0)],
        )
        model = [Event(MTime - 1.0, [reinit(d, d * 10.0 + 1.0)]), se, k - d]
        result = sim(model, 2.0, 20)

        assert result.event_times == [pytest.approx(1.0, abs=1e-9)]
        assert result.generations == 2
        # 0 -> 1 -> 12; the other order would give 0 -> 2 -> 21
        np.testing.assert_allclose(result["k"][-1], 12.0)
        pre, post = rows_at(result.t, result.event_times[0])[:2]
        assert result["k"][pre] == 0.0
        assert result["k"][post] == pytest.approx(12.0)
        assert result["x"][-1] == pytest.approx(math.exp(-1.0) + 1.0, abs=1e-3)
        assert d.value == 0.0
        assert not se.activated


class TestAccuracy:
    """Test that tolerances and failures reach the driver."""

    def test_tolerance_controls_error(self) -> None:
        """Test x' = -5x against the exact solution at a tight and a loose tolerance."""
        from simdae import SimConfig, Unknown, der, sim

        def error(tol):
            x = Unknown(1.0, "x")
            result = sim([der(x) + 5.0 * x], 2.0, 10, SimConfig(reltol=tol, abstol=tol))
            return np.max(np.abs(result["x"] - np.exp(-5.0 * result.t)))

        tight = error(1e-9)
        assert tight < 1e-6
        assert error(1e-2) > tight

    def test_non_finite_residual(self) -> None:
        """Test that a model leaving the domain of sqrt ends the run with IntegrationError."""
        from simdae import IntegrationError, SimConfig, Unknown, der, sim, sqrt

        x = Unknown(1.0, "x")
        z = Unknown(0.0, "z")
        with pytest.raises(IntegrationError, match="step failed"):
            sim([der(x) + 1.0, z - sqrt(x - 1.0)], 1.0, 10, SimConfig(max_step_retries=4))
