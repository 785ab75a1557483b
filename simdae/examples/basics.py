"""
Example models.

Each function builds a fresh model tree; call it again for an independent
copy.

    from simdae import sim
    from simdae.examples.basics import vanderpol

    result = sim(vanderpol(), 10.0, 500)
"""

from __future__ import annotations

import math

from simdae.equations import Event, InitialEquation, StructuralEvent, reinit
from simdae.expr import cos, exp, sin
from simdae.lib.electrical import (
    Voltage,
    capacitor,
    ideal_diode,
    resistor,
    sine_voltage,
    structural_diode,
)
from simdae.reactive import Discrete, Parameter
from simdae.variables import MTime, Unknown, der


def vanderpol(mu: float = 1.0) -> list:
    """Van der Pol oscillator."""
    y = Unknown(1.0, "y")
    x = Unknown("x")
    return [
        # The -1.0 is the initial value for der(x)
        der(x, -1.0) - (mu * (1 - y**2) * x - y),
        der(y) - x,
    ]


def vanderpol_with_events() -> list:
    """
    Van der Pol oscillator whose damping changes when ``x`` crosses zero.

    ``mu`` is a Discrete; ``mu_unk`` makes its value visible in the output.
    """
    y = Unknown(1.0, "y")
    x = Unknown("x")
    mu_unk = Unknown(1.0, "mu_unk")
    mu = Discrete(1.0, "mu")
    return [
        der(x, -1.0) - (mu * (1 - y**2) * x - y),
        der(y) - x,
        mu_unk - mu,
        Event(x, [reinit(mu, mu * 0.75)], [reinit(mu, mu * 1.8)]),
    ]


def vanderpol_with_parameter(mu: Parameter) -> list:
    """Van der Pol oscillator with its damping given by a Parameter."""
    y = Unknown(1.0, "y")
    x = Unknown("x")
    return [
        der(x, -1.0) - (mu * (1 - y**2) * x - y),
        der(y) - x,
    ]


def initial_condition() -> list:
    """Decay from an initial value fixed by an initial equation instead of the Unknown's value."""
    x = Unknown(0.0, "x")
    return [
        der(x) + x,
        InitialEquation([x - 2.0]),
    ]


def fixed_point() -> list:
    """Two coupled nonlinear equations with the solution x = y = 0.5671..."""
    x = Unknown(0.0, "x")
    y = Unknown(0.0, "y")
    return [
        2 * x - y - exp(-x),
        -x + 2 * y - exp(-y),
    ]


def _pendulum(x, y, vx, vy, L: float, g: float, theta0: float) -> list:
    # Angle form keeps the system index 1; x, y, vx, vy are algebraic here
    theta = Unknown(theta0, "theta")
    omega = Unknown(0.0, "omega")
    return [
        der(theta) - omega,
        der(omega) + g / L * sin(theta),
        x - L * sin(theta),
        y + L * cos(theta),
        vx - L * cos(theta) * omega,
        vy - L * sin(theta) * omega,
    ]


def _free_fall(x, y, vx, vy, g: float) -> list:
    return [
        der(x) - vx,
        der(y) - vy,
        der(vx),
        der(vy) + g,
    ]


def breaking_pendulum(t_break: float = 5.0, L: float = 1.0, g: float = 9.81, theta0: float = math.pi / 4) -> list:
    """Pendulum whose rod breaks at ``t_break``; the bob then falls freely."""
    x = Unknown(L * math.sin(theta0), "x")
    y = Unknown(-L * math.cos(theta0), "y")
    vx = Unknown("vx")
    vy = Unknown("vy")
    return [
        StructuralEvent(
            MTime - t_break,
            _pendulum(x, y, vx, vy, L, g, theta0),
            lambda: _free_fall(x, y, vx, vy, g),
        ),
    ]


def _bounce(u, v, wall: float, restitution: float) -> Event:
    # Reflect when entering the wall, not when leaving it
    response = [reinit(v, -restitution * v)]
    if wall > 0:
        return Event(u - wall, response, [])
    return Event(u - wall, [], response)


def breaking_pendulum_in_box(
    t_break: float = 1.8, L: float = 1.0, g: float = 9.81, theta0: float = math.pi / 4, box: float = 1.2
) -> list:
    """
    Breaking pendulum inside a square box of half-width ``box``.

    After the break the bob bounces off the walls and the floor.
    """
    x = Unknown(L * math.sin(theta0), "x")
    y = Unknown(-L * math.cos(theta0), "y")
    vx = Unknown("vx")
    vy = Unknown("vy")

    def in_box():
        return [
            _free_fall(x, y, vx, vy, g),
            _bounce(x, vx, box, 0.9),
            _bounce(x, vx, -box, 0.9),
            _bounce(y, vy, -box, 0.9),
        ]

    return [
        StructuralEvent(
            MTime - t_break,
            _pendulum(x, y, vx, vy, L, g, theta0),
            in_box,
        ),
    ]


def half_wave_rectifier(V: float = 10.0, f: float = 60.0, R: float = 10.0, C: float = 0.001) -> list:
    """Sine source, ideal diode and an RC load."""
    n1 = Voltage("Vs")
    n2 = Voltage("Vout")
    g = 0.0
    return [
        sine_voltage(n1, g, V, f),
        ideal_diode(n1, n2),
        resistor(n2, g, R),
        capacitor(n2, g, C),
    ]


def structural_half_wave_rectifier(V: float = 10.0, f: float = 1.0, R: float = 10.0) -> list:
    """Sine source and a resistive load behind a structural diode."""
    n1 = Voltage("Vs")
    n2 = Voltage("Vout")
    g = 0.0
    return [
        sine_voltage(n1, g, V, f),
        structural_diode(n1, n2),
        resistor(n2, g, R),
    ]


def sine_resistor_circuit(V: float = 10.0, f: float = 1.0, R: float = 5.0) -> list:
    """Sine source of amplitude ``V`` with a single resistor ``R`` to ground."""
    n1 = Voltage("n1")
    g = 0.0
    return [
        sine_voltage(n1, g, V, f),
        resistor(n1, g, R),
    ]
