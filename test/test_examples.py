"""
Tests for configuration, logging and the example models.
"""

import logging

import numpy as np
import pytest
from common import is_finite


class TestConfig:
    """Test SimConfig."""

    def test_defaults(self) -> None:
        """Test the default initialization mode and log level."""
        from simdae import DEFAULT_CONFIG, InitMode

        assert DEFAULT_CONFIG.init == InitMode.YA_YDP
        assert DEFAULT_CONFIG.log_level == logging.DEBUG

    def test_verbose_logs_at_info(self) -> None:
        """Test that verbose raises progress messages to INFO."""
        from simdae import SimConfig

        assert SimConfig(verbose=True).log_level == logging.INFO

    def test_invalid_values(self) -> None:
        """Test validation in __post_init__."""
        from simdae import SimConfig

        with pytest.raises(ValueError, match="substeps"):
            SimConfig(substeps=0)
        with pytest.raises(ValueError, match="event_tol"):
            SimConfig(event_tol=0.0)
        with pytest.raises(ValueError, match="max_step"):
            SimConfig(max_step=-1.0)
        with pytest.raises(ValueError, match="event_samples"):
            SimConfig(event_samples=-1)

    def test_with_options(self) -> None:
        """Test that with_options() returns a modified copy."""
        from simdae import DEFAULT_CONFIG

        config = DEFAULT_CONFIG.with_options(substeps=4)
        assert config.substeps == 4
        assert DEFAULT_CONFIG.substeps == 1

    def test_substeps_keep_output_grid(self) -> None:
        """Test that substeps refine the integration but not the output."""
        from simdae import SimConfig, sim
        from simdae.examples.basics import vanderpol

        coarse = sim(vanderpol(), 2.0, 20)
        fine = sim(vanderpol(), 2.0, 20, SimConfig(substeps=10))
        np.testing.assert_allclose(coarse.t, fine.t)
        np.testing.assert_allclose(coarse["x"], fine["x"], atol=1e-1)


class TestLogging:
    """Test log output."""

    def test_elaboration_is_logged(self, caplog) -> None:
        """Test the debug message emitted by elaborate()."""
        from simdae import elaborate
        from simdae.examples.basics import vanderpol

        with caplog.at_level(logging.DEBUG, logger="simdae"):
            elaborate(vanderpol())
        assert "elaborated generation 1" in caplog.text

    def test_structural_activation_is_logged(self, caplog) -> None:
        """Test the message emitted when a structural event fires."""
        from simdae import SimConfig, sim
        from simdae.examples.basics import breaking_pendulum

        with caplog.at_level(logging.INFO, logger="simdae"):
            sim(breaking_pendulum(t_break=0.5), 1.0, 20, SimConfig(verbose=True))
        assert "structural event" in caplog.text
        assert "elaborated generation 2" in caplog.text


class TestExamples:
    """Smoke tests for the example models."""

    def test_pendulum_in_box(self) -> None:
        """Test that the bob bounces off the box walls."""
        from simdae import sim
        from simdae.examples.basics import breaking_pendulum_in_box

        result = sim(breaking_pendulum_in_box(), 4.0, 400)
        assert result.generations == 2
        assert len(result.event_times) > 1
        for name in ("x", "y"):
            assert is_finite(result[name])
            assert np.all(np.abs(result[name]) <= 1.2 + 1e-3)

    def test_sine_resistor_circuit(self) -> None:
        """Test the node voltage of the two-component circuit."""
        from simdae import sim
        from simdae.examples.basics import sine_resistor_circuit

        result = sim(sine_resistor_circuit(), 1.0, 40)
        np.testing.assert_allclose(result["n1"], 10.0 * np.sin(2 * np.pi * result.t), atol=1e-6)

    def test_rl_circuit_with_current_source(self) -> None:
        """Test a current source feeding a resistor and an inductor in parallel."""
        from simdae import sim
        from simdae.lib.electrical import Voltage, inductor, resistor, signal_current

        n1 = Voltage("n1")
        g = 0.0
        model = [
            signal_current(g, n1, 1.0),
            resistor(n1, g, 2.0),
            inductor(n1, g, 1.0),
        ]
        result = sim(model, 1.0, 100)
        np.testing.assert_allclose(result["n1"], 2.0 * np.exp(-2.0 * result.t), atol=2e-3)

    def test_vanderpol_limit_cycle(self) -> None:
        """Test that the oscillation stays bounded."""
        from simdae import sim
        from simdae.examples.basics import vanderpol

        result = sim(vanderpol(), 20.0, 1000)
        assert np.max(np.abs(result["y"])) < 2.5
